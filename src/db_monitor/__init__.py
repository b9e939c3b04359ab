"""
Database performance monitor.

This package provides:
- Timed query execution with slow and failed query recording
- Rolling query statistics with percentiles and slow query grouping
- Batched, rotated slow query logs
- Periodic index and statement telemetry from PostgreSQL
- Optimization recommendations, performance alerts and notifications
"""

from .alerts import AlertEngine
from .exceptions import ConfigurationError, LogFlushError, MonitoringError, TelemetryCollectionError
from .executor import MonitoredQueryExecutor, classify_severity
from .history import HistoryStore, InMemoryHistoryStore, SQLHistoryStore
from .index_poller import (
    CycleResult,
    IndexTelemetryPoller,
    Ticker,
    classify_index,
    compute_efficiency,
    compute_scan_ratio,
)
from .log_buffer import LogFileAnalysis, SlowQueryLogBuffer, analyze_log_file
from .metrics_store import MetricsStore
from .models import (
    AlertSeverity,
    AlertType,
    IndexRecommendation,
    IndexSnapshot,
    PerformanceAlert,
    PerformanceReport,
    Priority,
    QueryContext,
    QueryEvent,
    QueryStatistics,
    Recommendation,
    Severity,
    SlowQueryPattern,
    SlowQuerySample,
)
from .monitor import PerformanceMonitor, create_performance_monitor
from .notifications import AlertNotifier
from .pool import Connection, ConnectionPool, QueryResult, SQLAlchemyConnectionPool
from .recommendations import (
    FullTableScanRule,
    MissingTenantIndexRule,
    NPlusOneRule,
    RecommendationEngine,
    RecommendationRule,
)
from .statistics import StatisticsEngine, percentile

__all__ = [
    # Data model
    'Severity',
    'IndexRecommendation',
    'AlertType',
    'AlertSeverity',
    'Priority',
    'QueryContext',
    'QueryEvent',
    'IndexSnapshot',
    'SlowQuerySample',
    'SlowQueryPattern',
    'QueryStatistics',
    'Recommendation',
    'PerformanceAlert',
    'PerformanceReport',

    # Errors
    'ConfigurationError',
    'MonitoringError',
    'LogFlushError',
    'TelemetryCollectionError',

    # Pool interface
    'Connection',
    'ConnectionPool',
    'QueryResult',
    'SQLAlchemyConnectionPool',

    # Components
    'MonitoredQueryExecutor',
    'classify_severity',
    'MetricsStore',
    'StatisticsEngine',
    'percentile',
    'SlowQueryLogBuffer',
    'LogFileAnalysis',
    'analyze_log_file',
    'IndexTelemetryPoller',
    'CycleResult',
    'Ticker',
    'classify_index',
    'compute_efficiency',
    'compute_scan_ratio',
    'HistoryStore',
    'InMemoryHistoryStore',
    'SQLHistoryStore',
    'RecommendationEngine',
    'RecommendationRule',
    'MissingTenantIndexRule',
    'NPlusOneRule',
    'FullTableScanRule',
    'AlertEngine',
    'AlertNotifier',

    # Composition root
    'PerformanceMonitor',
    'create_performance_monitor',
]
