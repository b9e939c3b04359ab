"""
Query execution wrapper.

Times every statement run through the pool, records slow or failed
executions, and hands the underlying result (or error) back unchanged.
"""

import random
import time
from typing import Callable, Optional

from ..shared.config import QueryMonitoringSettings, SlowQueryLogSettings, ThresholdSettings
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import MetricsCollector
from .log_buffer import SlowQueryLogBuffer
from .metrics_store import MetricsStore
from .models import QueryContext, QueryEvent, Severity
from .pool import ConnectionPool, Params, QueryResult


def classify_severity(elapsed_ms: float, thresholds: ThresholdSettings) -> Severity:
    """Severity of an execution at or above the warning threshold."""
    if elapsed_ms >= thresholds.timeout:
        return Severity.TIMEOUT
    if elapsed_ms >= thresholds.critical:
        return Severity.CRITICAL
    return Severity.WARNING


class MonitoredQueryExecutor:
    """Runs queries through a pool and records the slow ones."""

    def __init__(
        self,
        pool: ConnectionPool,
        store: MetricsStore,
        thresholds: ThresholdSettings,
        log_buffer: Optional[SlowQueryLogBuffer] = None,
        monitoring: Optional[QueryMonitoringSettings] = None,
        logging_settings: Optional[SlowQueryLogSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.perf_counter,
        sampler: Callable[[], float] = random.random,
    ):
        self.pool = pool
        self.store = store
        self.thresholds = thresholds
        self.log_buffer = log_buffer
        self.monitoring = monitoring or QueryMonitoringSettings()
        self.logging_settings = logging_settings or SlowQueryLogSettings()
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.sampler = sampler
        self.logger = get_logger(__name__, 'query_executor')

        self._queries = self.metrics.get_counter('db_queries_total', 'Queries executed through the monitor')
        self._slow = self.metrics.get_counter('db_slow_queries_total', 'Queries recorded as slow')
        self._duration = self.metrics.get_histogram('db_query_duration_ms', 'Query duration in milliseconds')

    async def execute_with_monitoring(
        self,
        query: str,
        params: Params = None,
        context: Optional[QueryContext] = None,
    ) -> QueryResult:
        """
        Execute ``query`` and return the pool's result unchanged.

        Errors from the pool propagate as-is after best-effort recording.
        The connection is released on every path.
        """
        if not self.monitoring.enabled:
            return await self._execute(query, params)

        start = self.clock()
        connection = None
        try:
            connection = await self.pool.acquire()
            result = await connection.query(query, params)
        except Exception as error:
            elapsed_ms = (self.clock() - start) * 1000
            self._record(query, params, context, elapsed_ms, rows=0, error=error)
            raise
        finally:
            if connection is not None:
                await self.pool.release(connection)

        elapsed_ms = (self.clock() - start) * 1000
        self._record(query, params, context, elapsed_ms, rows=_row_count(result))
        return result

    async def _execute(self, query: str, params: Params) -> QueryResult:
        connection = await self.pool.acquire()
        try:
            return await connection.query(query, params)
        finally:
            await self.pool.release(connection)

    def _record(self, query, params, context, elapsed_ms: float, rows: int,
                error: Optional[BaseException] = None) -> Optional[QueryEvent]:
        """Record monitoring data; never raises."""
        try:
            self._queries.increment(status='error' if error else 'success')
            self._duration.observe(elapsed_ms)

            if elapsed_ms < self.thresholds.warning:
                return None

            if error is None and not self._sampled():
                return None

            severity = Severity.CRITICAL if error is not None else classify_severity(elapsed_ms, self.thresholds)
            event = QueryEvent.create(
                query,
                elapsed_ms,
                severity,
                params=params,
                context=context,
                rows_returned=rows,
                error=error,
            )
            self._handle_slow_query(event)
            return event
        except Exception as e:
            self.logger.error(
                f"Failed to record query monitoring data: {e}",
                operation="record_query",
            )
            return None

    def _sampled(self) -> bool:
        rate = self.monitoring.sample_rate
        return rate >= 1.0 or self.sampler() < rate

    def _handle_slow_query(self, event: QueryEvent) -> None:
        self.store.append(event)
        self._slow.increment(severity=event.severity.value)

        if self.log_buffer is not None and self.logging_settings.enabled:
            if self.log_buffer.append(event):
                self.log_buffer.schedule_flush()

        message = (
            f"Slow query detected ({event.severity.value}): "
            f"{event.execution_time_ms:.0f}ms - {event.sanitized_text[:100]}"
        )
        if event.severity == Severity.WARNING:
            self.logger.warning(message, operation="slow_query", query_id=event.query_id,
                                tenant_id=event.tenant_id)
        else:
            self.logger.error(message, operation="critical_slow_query", query_id=event.query_id,
                              tenant_id=event.tenant_id, failed=event.failed)


def _row_count(result) -> int:
    rows = getattr(result, 'rows', None)
    if isinstance(rows, list):
        return len(rows)
    return getattr(result, 'row_count', 0) or 0
