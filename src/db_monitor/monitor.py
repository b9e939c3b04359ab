"""
Performance monitor composition root.

PerformanceMonitor owns every monitoring component and wires them to a
caller-supplied connection pool. Nothing here is global: build as many
monitors as needed, each with its own settings, store and metrics.
"""

import random
import time
from typing import Any, Callable, Dict, List, Optional

from ..shared.config import MonitorSettings, check_threshold_order, load_settings
from ..shared.logging_config import LoggingConfig, get_logger
from ..shared.metrics_collector import MetricsCollector
from .alerts import AlertEngine
from .executor import MonitoredQueryExecutor
from .history import HistoryStore, InMemoryHistoryStore
from .index_poller import CycleResult, IndexTelemetryPoller, Ticker
from .log_buffer import SlowQueryLogBuffer
from .metrics_store import MetricsStore
from .models import PerformanceAlert, PerformanceReport, QueryContext, QueryStatistics, Recommendation
from .notifications import AlertNotifier
from .pool import ConnectionPool, Params, QueryResult
from .recommendations import RecommendationEngine
from .statistics import StatisticsEngine

LOW_EFFICIENCY_REPORT_THRESHOLD = 70.0
REPORT_ALERT_LIMIT = 20

EXTENSION_AVAILABLE_SQL = "SELECT 1 AS available FROM pg_available_extensions WHERE name = 'pg_stat_statements'"
CREATE_EXTENSION_SQL = "CREATE EXTENSION IF NOT EXISTS pg_stat_statements"


class PerformanceMonitor:
    """Database performance monitor bound to one connection pool."""

    def __init__(
        self,
        pool: ConnectionPool,
        settings: Optional[MonitorSettings] = None,
        history: Optional[HistoryStore] = None,
        metrics: Optional[MetricsCollector] = None,
        notifier: Optional[AlertNotifier] = None,
        ticker: Optional[Ticker] = None,
        recommendation_engine: Optional[RecommendationEngine] = None,
        clock: Callable[[], float] = time.perf_counter,
        sampler: Callable[[], float] = random.random,
        configure_logging: bool = False,
    ):
        self.settings = settings or load_settings()
        thresholds = self.settings.thresholds
        check_threshold_order(thresholds.warning, thresholds.critical, thresholds.timeout)

        self.pool = pool
        self.configure_logging = configure_logging
        self.logger = get_logger(__name__, 'performance_monitor')
        self.metrics = metrics or MetricsCollector()
        self.history = history if history is not None else InMemoryHistoryStore()

        self.store = MetricsStore(self.settings.monitoring.history_capacity)
        self.statistics = StatisticsEngine(self.store, thresholds)
        self.log_buffer = SlowQueryLogBuffer(
            self.settings.logging.log_file,
            batch_size=self.settings.monitoring.batch_size,
            flush_interval_seconds=self.settings.logging.flush_interval_seconds,
            max_file_size=self.settings.logging.max_file_size,
            rotate_files=self.settings.logging.rotate_files,
            metrics=self.metrics,
        )
        self.executor = MonitoredQueryExecutor(
            pool,
            self.store,
            thresholds,
            log_buffer=self.log_buffer,
            monitoring=self.settings.monitoring,
            logging_settings=self.settings.logging,
            metrics=self.metrics,
            clock=clock,
            sampler=sampler,
        )
        self.recommendation_engine = recommendation_engine or RecommendationEngine()
        self.alert_engine = AlertEngine(thresholds, self.settings.alerts)
        self.notifier = notifier or AlertNotifier(self.settings.alerts)
        self.poller = IndexTelemetryPoller(
            pool,
            self.settings.index_monitor,
            thresholds,
            history=self.history,
            alert_engine=self.alert_engine,
            statistics=self.statistics,
            notifier=self.notifier,
            metrics=self.metrics,
            ticker=ticker,
        )

        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Prepare storage and start background polling. Starting twice is a no-op."""
        if self._running:
            self.logger.warning("Performance monitor is already running", operation="start")
            return

        if self.configure_logging:
            LoggingConfig.setup_logging(
                level=self.settings.logging.level,
                format_type=self.settings.logging.format_type.value,
            )

        if self.settings.logging.enabled:
            self.log_buffer.setup()

        try:
            await self.history.setup()
        except Exception as e:
            self.logger.error(f"Failed to prepare monitoring history: {e}", operation="start")

        await self.ensure_pg_stat_statements()
        await self.notifier.start()
        await self.poller.start()

        self._running = True
        self.logger.info(
            "Performance monitor started",
            operation="start",
            warning_ms=self.settings.thresholds.warning,
            critical_ms=self.settings.thresholds.critical,
        )

    async def stop(self) -> None:
        """Stop polling, flush buffered slow query logs and close channels."""
        if not self._running:
            return

        self._running = False
        await self.poller.stop()
        await self.log_buffer.stop()
        await self.notifier.stop()
        self.logger.info("Performance monitor stopped", operation="stop")

    async def __aenter__(self) -> 'PerformanceMonitor':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def ensure_pg_stat_statements(self) -> bool:
        """Enable pg_stat_statements when the server offers it. Best effort."""
        connection = None
        try:
            connection = await self.pool.acquire()
            available = await connection.query(EXTENSION_AVAILABLE_SQL)
            if not available.rows:
                self.logger.info("pg_stat_statements is not available on this server",
                                 operation="setup_pg_stat_statements")
                return False
            await connection.query(CREATE_EXTENSION_SQL)
            self.logger.info("pg_stat_statements extension available", operation="setup_pg_stat_statements")
            return True
        except Exception as e:
            self.logger.warning(f"Could not enable pg_stat_statements: {e}",
                                operation="setup_pg_stat_statements")
            return False
        finally:
            if connection is not None:
                await self.pool.release(connection)

    async def execute_with_monitoring(
        self,
        query: str,
        params: Params = None,
        context: Optional[QueryContext] = None,
    ) -> QueryResult:
        return await self.executor.execute_with_monitoring(query, params, context)

    def get_stats(self, force_refresh: bool = False) -> QueryStatistics:
        return self.statistics.get_stats(force_refresh=force_refresh)

    def generate_recommendations(self) -> List[Recommendation]:
        patterns = self.statistics.get_stats().most_frequent_slow_queries
        return self.recommendation_engine.generate(patterns, self.poller.latest_snapshots)

    async def collect_metrics(self) -> Optional[CycleResult]:
        """Run one telemetry cycle now."""
        return await self.poller.run_cycle()

    async def flush_logs(self) -> int:
        return await self.log_buffer.flush()

    async def resolve_alert(self, alert_id: str, notes: Optional[str] = None) -> Optional[PerformanceAlert]:
        alert = self.alert_engine.resolve(alert_id, notes)
        if alert is None:
            return None

        try:
            await self.history.mark_resolved(alert)
        except Exception as e:
            self.logger.error(f"Failed to persist alert resolution: {e}", operation="resolve_alert",
                              alert_id=alert_id)
        return alert

    async def get_performance_report(self, refresh: bool = False) -> PerformanceReport:
        """
        Summarize the latest telemetry.

        With ``refresh`` a collection cycle runs first; otherwise the report
        reflects the most recent completed cycle.
        """
        if refresh:
            await self.collect_metrics()

        return PerformanceReport(
            index_summary=self._index_summary(),
            slow_queries_summary=self._slow_queries_summary(),
            alerts=[alert.to_dict() for alert in self.alert_engine.recent_alerts(limit=REPORT_ALERT_LIMIT)],
        )

    def _index_summary(self) -> Dict[str, Any]:
        snapshots = self.poller.latest_snapshots
        average = sum(s.efficiency for s in snapshots) / len(snapshots) if snapshots else 0.0
        return {
            'total_indexes': len(snapshots),
            'total_size_bytes': sum(s.size_bytes for s in snapshots),
            'average_efficiency': round(average, 2),
            'unused_count': sum(1 for s in snapshots if s.scan_count == 0),
            'low_efficiency_count': sum(1 for s in snapshots if s.efficiency < LOW_EFFICIENCY_REPORT_THRESHOLD),
        }

    def _slow_queries_summary(self) -> Dict[str, Any]:
        samples = self.poller.latest_slow_queries
        average = sum(s.mean_time_ms for s in samples) / len(samples) if samples else 0.0
        critical_limit = self.settings.thresholds.critical * 2
        return {
            'total_slow_queries': len(samples),
            'average_time': round(average, 3),
            'critical_queries': sum(1 for s in samples if s.mean_time_ms > critical_limit),
        }


def _merge_overrides(settings: MonitorSettings, overrides: Dict[str, Any]) -> MonitorSettings:
    data = settings.model_dump()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return MonitorSettings(**data)


def create_performance_monitor(
    pool: ConnectionPool,
    settings: Optional[MonitorSettings] = None,
    *,
    history: Optional[HistoryStore] = None,
    metrics: Optional[MetricsCollector] = None,
    ticker: Optional[Ticker] = None,
    configure_logging: bool = False,
    **overrides: Any,
) -> PerformanceMonitor:
    """
    Build a PerformanceMonitor.

    Keyword overrides are merged section by section over ``settings`` (or
    over settings loaded from the environment), e.g.
    ``create_performance_monitor(pool, thresholds={"warning": 50})``.
    """
    if settings is None:
        settings = load_settings()
    if overrides:
        settings = _merge_overrides(settings, overrides)

    return PerformanceMonitor(
        pool,
        settings,
        history=history,
        metrics=metrics,
        ticker=ticker,
        configure_logging=configure_logging,
    )
