"""
Index telemetry poller.

Periodically reads index usage counters from the PostgreSQL statistics
catalog and slow statements from pg_stat_statements, stores them as
history, and feeds the alert engine. Runs as a single background asyncio
task with idempotent start/stop.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from ..shared.config import IndexMonitorSettings, ThresholdSettings
from ..shared.logging_config import CorrelationContext, get_logger
from ..shared.metrics_collector import MetricsCollector
from .alerts import AlertEngine
from .exceptions import TelemetryCollectionError
from .history import HistoryStore, InMemoryHistoryStore
from .models import IndexRecommendation, IndexSnapshot, PerformanceAlert, SlowQuerySample
from .pool import Connection, ConnectionPool
from .sql_text import extract_tables, fingerprint_query, suggest_indexes

MAX_STATEMENT_LENGTH = 500

EXTENSION_CHECK_SQL = """
    SELECT EXISTS(
        SELECT 1 FROM pg_extension WHERE extname = 'pg_stat_statements'
    ) AS has_extension
"""


def compute_scan_ratio(index_scans: int, seq_scans: int) -> float:
    """Percentage of table accesses that went through the index."""
    total = index_scans + seq_scans
    if total <= 0:
        return 0.0
    return round(100.0 * index_scans / total, 2)


def compute_efficiency(index_scans: int, tuples_read: int, tuples_returned: int) -> float:
    """
    Percentage of tuples read through the index that were returned.

    An unscanned index scores 0. A scanned index that read no tuples scores
    100 (nothing was wasted). The result is capped at 100.
    """
    if index_scans == 0:
        return 0.0
    if tuples_read == 0:
        return 100.0
    return min(100.0, round(100.0 * tuples_returned / tuples_read, 2))


def classify_index(scan_count: int, scan_ratio: float, efficiency: float,
                   usage_threshold: float = 10.0) -> IndexRecommendation:
    """First matching rule wins."""
    if scan_count == 0:
        return IndexRecommendation.UNUSED
    if scan_ratio < usage_threshold:
        return IndexRecommendation.LOW_USAGE
    if efficiency < 50:
        return IndexRecommendation.LOW_EFFICIENCY
    if efficiency < 80:
        return IndexRecommendation.MODERATE_EFFICIENCY
    return IndexRecommendation.OPTIMAL


def build_catalog_query(settings: IndexMonitorSettings) -> Tuple[str, List[Any]]:
    """Index statistics query restricted to the configured schema and table patterns."""
    params: List[Any] = [settings.schema_name]
    clauses = []
    for pattern in settings.table_patterns:
        params.append(pattern)
        clauses.append(f"s.relname LIKE ${len(params)}")

    sql = f"""
        SELECT
            s.relname AS table_name,
            s.indexrelname AS index_name,
            pg_relation_size(s.indexrelid) AS index_size_bytes,
            COALESCE(s.idx_scan, 0) AS index_scans,
            COALESCE(s.idx_tup_read, 0) AS tuples_read,
            COALESCE(s.idx_tup_fetch, 0) AS tuples_returned,
            COALESCE(t.seq_scan, 0) AS seq_scans
        FROM pg_stat_user_indexes s
        JOIN pg_stat_user_tables t ON t.relid = s.relid
        WHERE s.schemaname = $1
          AND ({' OR '.join(clauses)})
        ORDER BY index_scans DESC
    """
    return sql, params


def build_statement_query(settings: IndexMonitorSettings, warning_ms: float) -> Tuple[str, List[Any]]:
    """Slow statement query over pg_stat_statements."""
    params: List[Any] = [warning_ms]
    pattern_clause = ""
    if settings.statement_patterns:
        clauses = []
        for pattern in settings.statement_patterns:
            params.append(pattern)
            clauses.append(f"query ILIKE ${len(params)}")
        pattern_clause = f"({' OR '.join(clauses)}) AND "

    params.append(settings.statement_limit)
    sql = f"""
        SELECT
            query,
            calls,
            total_exec_time AS total_time,
            mean_exec_time AS mean_time,
            max_exec_time AS max_time,
            min_exec_time AS min_time,
            stddev_exec_time AS stddev_time
        FROM pg_stat_statements
        WHERE {pattern_clause}mean_exec_time > $1
          AND calls > 1
        ORDER BY mean_exec_time DESC
        LIMIT ${len(params)}
    """
    return sql, params


def snapshot_from_row(row: Dict[str, Any], usage_threshold: float,
                      recorded_at: Optional[datetime] = None) -> IndexSnapshot:
    scans = int(row.get('index_scans') or 0)
    tuples_read = int(row.get('tuples_read') or 0)
    tuples_returned = int(row.get('tuples_returned') or 0)
    seq_scans = int(row.get('seq_scans') or 0)

    scan_ratio = compute_scan_ratio(scans, seq_scans)
    efficiency = compute_efficiency(scans, tuples_read, tuples_returned)

    return IndexSnapshot(
        index_name=row['index_name'],
        table_name=row['table_name'],
        size_bytes=int(row.get('index_size_bytes') or 0),
        scan_count=scans,
        tuples_read=tuples_read,
        tuples_returned=tuples_returned,
        scan_ratio=scan_ratio,
        efficiency=efficiency,
        recommendation=classify_index(scans, scan_ratio, efficiency, usage_threshold),
        seq_scan_count=seq_scans,
        last_used=row.get('last_used'),
        recorded_at=recorded_at or datetime.utcnow(),
    )


def sample_from_row(row: Dict[str, Any], tracked_tables: Sequence[str]) -> SlowQuerySample:
    query = row['query']
    return SlowQuerySample(
        query_id=fingerprint_query(query),
        query=query[:MAX_STATEMENT_LENGTH],
        calls=int(row.get('calls') or 0),
        mean_time_ms=round(float(row.get('mean_time') or 0), 3),
        max_time_ms=round(float(row.get('max_time') or 0), 3),
        total_time_ms=round(float(row.get('total_time') or 0), 3),
        min_time_ms=round(float(row.get('min_time') or 0), 3),
        stddev_time_ms=round(float(row.get('stddev_time') or 0), 3),
        affected_tables=extract_tables(query, tracked_tables),
        suggested_indexes=suggest_indexes(query),
    )


class Ticker:
    """Waits between polling cycles."""

    async def wait(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class CycleResult:
    """What one polling cycle observed and raised."""
    snapshots: List[IndexSnapshot] = field(default_factory=list)
    slow_queries: List[SlowQuerySample] = field(default_factory=list)
    alerts: List[PerformanceAlert] = field(default_factory=list)
    duration_ms: float = 0.0


class IndexTelemetryPoller:
    """Background collector of index and statement telemetry."""

    def __init__(
        self,
        pool: ConnectionPool,
        settings: IndexMonitorSettings,
        thresholds: ThresholdSettings,
        history: Optional[HistoryStore] = None,
        alert_engine: Optional[AlertEngine] = None,
        statistics=None,
        notifier=None,
        metrics: Optional[MetricsCollector] = None,
        ticker: Optional[Ticker] = None,
    ):
        self.pool = pool
        self.settings = settings
        self.thresholds = thresholds
        self.history = history if history is not None else InMemoryHistoryStore()
        self.alert_engine = alert_engine
        self.statistics = statistics
        self.notifier = notifier
        self.metrics = metrics or MetricsCollector()
        self.ticker = ticker or Ticker()
        self.logger = get_logger(__name__, 'index_poller')

        self._task: Optional[asyncio.Task] = None
        self.latest_snapshots: List[IndexSnapshot] = []
        self.latest_slow_queries: List[SlowQuerySample] = []
        self.cycles_completed = 0
        self.cycles_failed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start polling."""
        if self.is_running:
            self.logger.warning("Index telemetry polling is already running", operation="start")
            return

        self._task = asyncio.create_task(self._worker())
        self.logger.info(
            "Index telemetry polling started",
            operation="start",
            interval_seconds=self.settings.interval_seconds,
        )

    async def stop(self) -> None:
        """Stop polling."""
        if self._task is None:
            return

        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        self.logger.info("Index telemetry polling stopped", operation="stop")

    async def _worker(self) -> None:
        while True:
            await self.run_cycle()
            await self.ticker.wait(self.settings.interval_seconds)

    async def run_cycle(self) -> Optional[CycleResult]:
        """Run one collection cycle. Failures are logged and return None."""
        with CorrelationContext(f"poll-{uuid4().hex[:12]}"):
            try:
                result = await self.collect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.cycles_failed += 1
                self.metrics.get_counter(
                    'db_monitor_cycle_failures_total', 'Failed telemetry collection cycles'
                ).increment()
                self.logger.error(f"Index telemetry cycle failed: {e}", operation="collect_metrics")
                return None

        self.cycles_completed += 1
        self.metrics.get_counter('db_monitor_cycles_total', 'Completed telemetry collection cycles').increment()
        self.metrics.get_histogram('db_monitor_cycle_duration_ms', 'Telemetry cycle duration').observe(
            result.duration_ms
        )
        return result

    async def collect(self) -> CycleResult:
        """
        Collect index snapshots and slow statements, persist them and
        evaluate alerts.

        Raises:
            TelemetryCollectionError: when the index catalog cannot be read
        """
        started = time.perf_counter()

        connection = await self.pool.acquire()
        try:
            snapshots = await self._collect_snapshots(connection)
            slow_queries = await self._collect_slow_statements(connection)
        finally:
            await self.pool.release(connection)

        await self._persist('store_index_snapshots', snapshots)
        await self._persist('store_slow_queries', slow_queries)

        slow_queries = slow_queries + self._in_process_samples(slow_queries)

        self.latest_snapshots = snapshots
        self.latest_slow_queries = slow_queries
        self.metrics.get_gauge('db_monitor_indexes_tracked', 'Indexes seen in the last cycle').set(len(snapshots))

        alerts: List[PerformanceAlert] = []
        if self.alert_engine is not None:
            alerts = self.alert_engine.evaluate(snapshots, slow_queries)
            if alerts:
                await self._persist('store_alerts', alerts)
                if self.notifier is not None:
                    await self.notifier.notify(alerts)

        duration_ms = (time.perf_counter() - started) * 1000
        self.logger.info(
            "Index telemetry collected",
            operation="collect_metrics",
            indexes=len(snapshots),
            slow_queries=len(slow_queries),
            alerts=len(alerts),
            duration_ms=round(duration_ms, 2),
        )
        return CycleResult(snapshots=snapshots, slow_queries=slow_queries, alerts=alerts,
                           duration_ms=duration_ms)

    async def _collect_snapshots(self, connection: Connection) -> List[IndexSnapshot]:
        sql, params = build_catalog_query(self.settings)
        try:
            result = await connection.query(sql, params)
        except Exception as e:
            raise TelemetryCollectionError(f"Index statistics query failed: {e}") from e

        recorded_at = datetime.utcnow()
        return [
            snapshot_from_row(row, self.settings.usage_threshold, recorded_at)
            for row in result.rows
        ]

    async def _collect_slow_statements(self, connection: Connection) -> List[SlowQuerySample]:
        try:
            check = await connection.query(EXTENSION_CHECK_SQL)
            if not check.rows or not check.rows[0].get('has_extension'):
                self.logger.info(
                    "pg_stat_statements extension not available for slow query analysis",
                    operation="collect_slow_statements",
                )
                return []

            sql, params = build_statement_query(self.settings, self.thresholds.warning)
            result = await connection.query(sql, params)
        except Exception as e:
            self.logger.warning(
                f"Could not retrieve slow statement data: {e}",
                operation="collect_slow_statements",
            )
            return []

        return [sample_from_row(row, self.settings.tracked_tables) for row in result.rows]

    def _in_process_samples(self, existing: Sequence[SlowQuerySample]) -> List[SlowQuerySample]:
        if self.statistics is None:
            return []

        seen = {sample.query_id for sample in existing}
        samples = []
        for pattern in self.statistics.get_stats().most_frequent_slow_queries:
            query_id = fingerprint_query(pattern.query)
            if query_id in seen:
                continue
            seen.add(query_id)
            samples.append(SlowQuerySample(
                query_id=query_id,
                query=pattern.query[:MAX_STATEMENT_LENGTH],
                calls=pattern.count,
                mean_time_ms=round(pattern.avg_time, 3),
                max_time_ms=round(pattern.max_time, 3),
                total_time_ms=round(pattern.avg_time * pattern.count, 3),
                affected_tables=extract_tables(pattern.query, self.settings.tracked_tables),
                suggested_indexes=suggest_indexes(pattern.query),
                source="in_process",
            ))
        return samples

    async def _persist(self, method: str, items: Sequence[Any]) -> None:
        if not items:
            return
        try:
            await getattr(self.history, method)(items)
        except Exception as e:
            self.logger.error(
                f"Failed to persist monitoring history: {e}",
                operation=method,
                items=len(items),
            )
