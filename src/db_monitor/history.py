"""
Historical storage for index snapshots, slow statements and alerts.

InMemoryHistoryStore keeps everything in process. SQLHistoryStore writes to
monitoring tables in the observed database through the same pool interface
the rest of the monitor uses.
"""

import json
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from ..shared.logging_config import get_logger
from .models import IndexSnapshot, PerformanceAlert, SlowQuerySample
from .pool import ConnectionPool


class HistoryStore(Protocol):
    async def setup(self) -> None:
        ...

    async def store_index_snapshots(self, snapshots: Sequence[IndexSnapshot]) -> None:
        ...

    async def store_slow_queries(self, samples: Sequence[SlowQuerySample]) -> None:
        ...

    async def store_alerts(self, alerts: Sequence[PerformanceAlert]) -> None:
        ...

    async def mark_resolved(self, alert: PerformanceAlert) -> None:
        ...


class InMemoryHistoryStore:
    """Append-only in-process history."""

    def __init__(self):
        self.index_snapshots: List[IndexSnapshot] = []
        self.slow_queries: Dict[str, SlowQuerySample] = {}
        self.alerts: List[PerformanceAlert] = []
        self._lock = threading.Lock()

    async def setup(self) -> None:
        return None

    async def store_index_snapshots(self, snapshots: Sequence[IndexSnapshot]) -> None:
        with self._lock:
            self.index_snapshots.extend(snapshots)

    async def store_slow_queries(self, samples: Sequence[SlowQuerySample]) -> None:
        # keyed by query hash, latest sample wins
        with self._lock:
            for sample in samples:
                self.slow_queries[sample.query_id] = sample

    async def store_alerts(self, alerts: Sequence[PerformanceAlert]) -> None:
        with self._lock:
            self.alerts.extend(alerts)

    async def mark_resolved(self, alert: PerformanceAlert) -> None:
        return None

    def snapshots_for(self, index_name: str) -> List[IndexSnapshot]:
        with self._lock:
            return [s for s in self.index_snapshots if s.index_name == index_name]


MONITORING_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS index_performance_history (
        id SERIAL PRIMARY KEY,
        recorded_at TIMESTAMPTZ DEFAULT NOW(),
        index_name TEXT NOT NULL,
        table_name TEXT NOT NULL,
        index_size_bytes BIGINT NOT NULL,
        index_scans BIGINT DEFAULT 0,
        tuples_read BIGINT DEFAULT 0,
        tuples_returned BIGINT DEFAULT 0,
        scan_ratio NUMERIC(5,2) DEFAULT 0,
        efficiency_score NUMERIC(5,2) DEFAULT 0,
        recommendation TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS slow_queries_history (
        id SERIAL PRIMARY KEY,
        recorded_at TIMESTAMPTZ DEFAULT NOW(),
        query_hash TEXT NOT NULL UNIQUE,
        query_text TEXT NOT NULL,
        execution_count BIGINT DEFAULT 1,
        total_time_ms NUMERIC(14,3) NOT NULL,
        mean_time_ms NUMERIC(14,3) NOT NULL,
        max_time_ms NUMERIC(14,3) NOT NULL,
        affected_tables TEXT[] DEFAULT '{}',
        suggested_indexes TEXT[] DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS performance_alerts (
        id SERIAL PRIMARY KEY,
        alert_id TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        alert_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        message TEXT NOT NULL,
        details JSONB DEFAULT '{}',
        resolved_at TIMESTAMPTZ NULL,
        resolution_notes TEXT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_index_perf_hist_recorded ON index_performance_history (recorded_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_slow_queries_hist_recorded ON slow_queries_history (recorded_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_performance_alerts_created ON performance_alerts (created_at DESC, resolved_at)",
]

INSERT_SNAPSHOT_SQL = """
    INSERT INTO index_performance_history
    (recorded_at, index_name, table_name, index_size_bytes, index_scans, tuples_read,
     tuples_returned, scan_ratio, efficiency_score, recommendation)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
"""

UPSERT_SLOW_QUERY_SQL = """
    INSERT INTO slow_queries_history
    (query_hash, query_text, execution_count, total_time_ms, mean_time_ms, max_time_ms,
     affected_tables, suggested_indexes)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
    ON CONFLICT (query_hash) DO UPDATE SET
        execution_count = EXCLUDED.execution_count,
        total_time_ms = EXCLUDED.total_time_ms,
        mean_time_ms = EXCLUDED.mean_time_ms,
        max_time_ms = EXCLUDED.max_time_ms,
        recorded_at = NOW()
"""

INSERT_ALERT_SQL = """
    INSERT INTO performance_alerts
    (alert_id, created_at, alert_type, severity, message, details)
    VALUES ($1, $2, $3, $4, $5, CAST($6 AS JSONB))
    ON CONFLICT (alert_id) DO NOTHING
"""

RESOLVE_ALERT_SQL = """
    UPDATE performance_alerts SET resolved_at = $1, resolution_notes = $2
    WHERE alert_id = $3
"""


class SQLHistoryStore:
    """History persisted to monitoring tables via the connection pool."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool
        self.logger = get_logger(__name__, 'sql_history')

    async def _run(self, statements) -> None:
        connection = await self.pool.acquire()
        try:
            for sql, params in statements:
                await connection.query(sql, params)
        finally:
            await self.pool.release(connection)

    async def setup(self) -> None:
        await self._run((sql, None) for sql in MONITORING_TABLES_SQL)
        self.logger.info("Monitoring tables ready", operation="setup")

    async def store_index_snapshots(self, snapshots: Sequence[IndexSnapshot]) -> None:
        if not snapshots:
            return
        await self._run(
            (INSERT_SNAPSHOT_SQL, [
                s.recorded_at, s.index_name, s.table_name, s.size_bytes, s.scan_count,
                s.tuples_read, s.tuples_returned, s.scan_ratio, s.efficiency,
                s.recommendation.value,
            ])
            for s in snapshots
        )

    async def store_slow_queries(self, samples: Sequence[SlowQuerySample]) -> None:
        if not samples:
            return
        await self._run(
            (UPSERT_SLOW_QUERY_SQL, [
                s.query_id, s.query, s.calls, s.total_time_ms, s.mean_time_ms, s.max_time_ms,
                list(s.affected_tables), list(s.suggested_indexes),
            ])
            for s in samples
        )

    async def store_alerts(self, alerts: Sequence[PerformanceAlert]) -> None:
        if not alerts:
            return
        await self._run(
            (INSERT_ALERT_SQL, [
                a.alert_id, a.created_at, a.alert_type.value, a.severity.value, a.message,
                json.dumps(a.details, default=str),
            ])
            for a in alerts
        )

    async def mark_resolved(self, alert: PerformanceAlert) -> None:
        resolved_at: Optional[datetime] = alert.resolved_at
        await self._run([(RESOLVE_ALERT_SQL, [resolved_at, alert.resolution_notes, alert.alert_id])])
