"""
Tests for index telemetry polling.

The catalog and pg_stat_statements are scripted on the FakePool; polling
cadence is driven by a ManualTicker so no test sleeps on the wall clock.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import INDEX_ROWS, make_event, wait_until
from src.db_monitor.alerts import AlertEngine
from src.db_monitor.history import InMemoryHistoryStore
from src.db_monitor.index_poller import (
    IndexTelemetryPoller,
    build_catalog_query,
    build_statement_query,
    classify_index,
    compute_efficiency,
    compute_scan_ratio,
)
from src.db_monitor.metrics_store import MetricsStore
from src.db_monitor.models import AlertType, IndexRecommendation
from src.db_monitor.statistics import StatisticsEngine
from src.shared.config import AlertSettings, IndexMonitorSettings, ThresholdSettings
from src.shared.metrics_collector import MetricsCollector

STATEMENT_ROWS = [
    {
        'query': "SELECT * FROM tenant_users WHERE tenant_id = $1 ORDER BY created_at",
        'calls': 40,
        'total_time': 100000.0,
        'mean_time': 2500.0,
        'max_time': 4000.0,
        'min_time': 900.0,
        'stddev_time': 300.0,
    },
]


class TestIndexClassification:
    """Test ratio, efficiency and classification rules."""

    def test_scan_ratio(self):
        assert compute_scan_ratio(90, 10) == 90.0
        assert compute_scan_ratio(1, 2) == 33.33
        assert compute_scan_ratio(0, 0) == 0.0

    def test_efficiency(self):
        assert compute_efficiency(0, 100, 50) == 0.0
        assert compute_efficiency(10, 1000, 950) == 95.0
        assert compute_efficiency(10, 1000, 1500) == 100.0

    def test_efficiency_when_no_tuples_read(self):
        # a scanned index that read nothing wasted nothing
        assert compute_efficiency(10, 0, 0) == 100.0

    @pytest.mark.parametrize("scans,ratio,efficiency,expected", [
        (0, 0, 0, IndexRecommendation.UNUSED),
        (0, 95, 95, IndexRecommendation.UNUSED),
        (5, 9.99, 95, IndexRecommendation.LOW_USAGE),
        (5, 10, 49.99, IndexRecommendation.LOW_EFFICIENCY),
        (5, 10, 50, IndexRecommendation.MODERATE_EFFICIENCY),
        (5, 10, 79.99, IndexRecommendation.MODERATE_EFFICIENCY),
        (5, 10, 80, IndexRecommendation.OPTIMAL),
    ])
    def test_classification_boundaries(self, scans, ratio, efficiency, expected):
        assert classify_index(scans, ratio, efficiency, usage_threshold=10) == expected

    def test_recommendation_text(self):
        assert IndexRecommendation.UNUSED.advice == "Consider dropping this index"


class TestQueryBuilders:
    """Test generated catalog and statement SQL."""

    def test_catalog_query_binds_patterns(self):
        sql, params = build_catalog_query(IndexMonitorSettings())

        assert params == ['public', 'tenant%', 'user_%', 'tenants']
        assert "s.relname LIKE $2 OR s.relname LIKE $3 OR s.relname LIKE $4" in sql
        assert "tenant%" not in sql

    def test_statement_query(self):
        sql, params = build_statement_query(IndexMonitorSettings(), 100.0)

        assert params == [100.0, '%tenant%', '%user%', 50]
        assert "mean_exec_time > $1" in sql
        assert "LIMIT $4" in sql

    def test_statement_query_without_patterns(self):
        sql, params = build_statement_query(IndexMonitorSettings(statement_patterns=[]), 100.0)

        assert params == [100.0, 50]
        assert "ILIKE" not in sql


class TestIndexTelemetryPoller:
    """Test collection cycles and lifecycle."""

    @pytest.fixture
    def thresholds(self):
        return ThresholdSettings()

    @pytest.fixture
    def history(self):
        return InMemoryHistoryStore()

    @pytest.fixture
    def alert_engine(self, thresholds):
        return AlertEngine(thresholds, AlertSettings())

    @pytest.fixture
    def metrics(self):
        return MetricsCollector()

    @pytest.fixture
    def poller(self, pool, thresholds, history, alert_engine, metrics, ticker):
        return IndexTelemetryPoller(
            pool,
            IndexMonitorSettings(interval_seconds=30),
            thresholds,
            history=history,
            alert_engine=alert_engine,
            metrics=metrics,
            ticker=ticker,
        )

    def script_catalog(self, pool, extension=True, statements=STATEMENT_ROWS):
        pool.on("pg_stat_user_indexes", rows=INDEX_ROWS)
        pool.on("pg_extension", rows=[{'has_extension': extension}])
        pool.on("FROM pg_stat_statements", rows=statements)

    @pytest.mark.asyncio
    async def test_cycle_collects_snapshots(self, poller, pool, history):
        self.script_catalog(pool)

        result = await poller.run_cycle()

        assert result is not None
        names = [s.index_name for s in result.snapshots]
        assert names == ['idx_tenant_users_tenant_id', 'idx_tenant_users_legacy', 'idx_user_roles_name']

        optimal, unused, low = result.snapshots
        assert optimal.recommendation == IndexRecommendation.OPTIMAL
        assert optimal.scan_ratio == pytest.approx(96.15)
        assert optimal.efficiency == 95.0
        assert unused.recommendation == IndexRecommendation.UNUSED
        assert low.recommendation == IndexRecommendation.LOW_EFFICIENCY

        assert history.index_snapshots == result.snapshots
        assert poller.latest_snapshots == result.snapshots
        assert poller.cycles_completed == 1
        assert pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_cycle_collects_slow_statements(self, poller, pool, history):
        self.script_catalog(pool)

        result = await poller.run_cycle()

        assert len(result.slow_queries) == 1
        sample = result.slow_queries[0]
        assert sample.calls == 40
        assert sample.mean_time_ms == 2500.0
        assert sample.affected_tables == ['tenant_users']
        assert 'Consider composite index on (tenant_id, status)' in sample.suggested_indexes
        assert sample.query_id in history.slow_queries

    @pytest.mark.asyncio
    async def test_long_statement_truncated(self, poller, pool):
        long_query = "SELECT * FROM tenants WHERE " + " OR ".join(f"name = 'n{i}'" for i in range(100))
        self.script_catalog(pool, statements=[{**STATEMENT_ROWS[0], 'query': long_query}])

        result = await poller.run_cycle()

        assert len(result.slow_queries[0].query) == 500

    @pytest.mark.asyncio
    async def test_missing_extension_yields_no_statements(self, poller, pool):
        self.script_catalog(pool, extension=False)

        result = await poller.run_cycle()

        assert result.slow_queries == []
        assert not pool.sql_containing("FROM pg_stat_statements")
        assert len(result.snapshots) == 3

    @pytest.mark.asyncio
    async def test_statement_query_failure_is_tolerated(self, poller, pool):
        pool.on("pg_stat_user_indexes", rows=INDEX_ROWS)
        pool.on("pg_extension", error=RuntimeError("permission denied"))

        result = await poller.run_cycle()

        assert result is not None
        assert result.slow_queries == []

    @pytest.mark.asyncio
    async def test_catalog_failure_logged_and_counted(self, poller, pool, metrics):
        pool.on("pg_stat_user_indexes", error=RuntimeError("connection reset"))

        result = await poller.run_cycle()

        assert result is None
        assert poller.cycles_failed == 1
        assert metrics.get_counter('db_monitor_cycle_failures_total').get_value() == 1
        assert pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_alerts_raised_stored_and_notified(self, pool, thresholds, history, alert_engine):
        notifier = AsyncMock()
        poller = IndexTelemetryPoller(
            pool, IndexMonitorSettings(), thresholds,
            history=history, alert_engine=alert_engine, notifier=notifier,
        )
        self.script_catalog(pool)

        result = await poller.run_cycle()

        types = sorted(a.alert_type for a in result.alerts)
        assert types == sorted([
            AlertType.UNUSED_INDEX, AlertType.LOW_EFFICIENCY_INDEX, AlertType.SLOW_QUERY,
        ])
        assert history.alerts == result.alerts
        notifier.notify.assert_awaited_once_with(result.alerts)

    @pytest.mark.asyncio
    async def test_repeated_cycles_do_not_duplicate_alerts(self, poller, pool, alert_engine):
        self.script_catalog(pool)

        await poller.run_cycle()
        second = await poller.run_cycle()

        assert second.alerts == []
        assert alert_engine.stats['alerts_suppressed'] == 3

    @pytest.mark.asyncio
    async def test_history_failure_does_not_fail_cycle(self, poller, pool, history):
        history.store_index_snapshots = AsyncMock(side_effect=RuntimeError("history down"))
        self.script_catalog(pool)

        result = await poller.run_cycle()

        assert result is not None
        assert len(result.snapshots) == 3

    @pytest.mark.asyncio
    async def test_in_process_patterns_merged(self, pool, thresholds):
        store = MetricsStore()
        for _ in range(3):
            store.append(make_event(2500, "SELECT * FROM tenants WHERE id = 7"))
        poller = IndexTelemetryPoller(
            pool, IndexMonitorSettings(), thresholds,
            statistics=StatisticsEngine(store, thresholds),
        )
        self.script_catalog(pool, extension=False)

        result = await poller.run_cycle()

        assert len(result.slow_queries) == 1
        sample = result.slow_queries[0]
        assert sample.source == "in_process"
        assert sample.calls == 3
        assert sample.affected_tables == ['tenants']

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self, poller, pool, ticker):
        self.script_catalog(pool)

        await poller.start()
        first_task = poller._task
        await poller.start()

        assert poller._task is first_task
        await wait_until(lambda: poller.cycles_completed == 1 and ticker.waits)
        assert ticker.waits == [30]

        ticker.advance()
        await wait_until(lambda: poller.cycles_completed == 2)

        await poller.stop()
        assert not poller.is_running
        assert first_task.cancelled() or first_task.done()
        await poller.stop()

        assert pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_stop_releases_connection_mid_cycle(self, poller, pool):
        gate = asyncio.Event()

        async def hang(sql, params):
            await gate.wait()

        original_acquire = pool.acquire

        async def acquire():
            connection = await original_acquire()
            connection.query = AsyncMock(side_effect=hang)
            return connection

        pool.acquire = acquire

        await poller.start()
        await wait_until(lambda: pool.acquired == 1)
        await poller.stop()

        assert pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_loop_continues_after_failed_cycle(self, poller, pool, ticker):
        pool.on("pg_stat_user_indexes", error=RuntimeError("boom"))

        await poller.start()
        await wait_until(lambda: poller.cycles_failed == 1 and len(ticker.waits) == 1)
        ticker.advance()
        await wait_until(lambda: poller.cycles_failed == 2)

        assert poller.is_running
        await poller.stop()
