"""
Error taxonomy for the database performance monitor.

Executor errors are never wrapped: the wrapped query's own exception reaches
the caller unchanged. Everything raised by the monitoring path derives from
MonitoringError and is handled at the monitoring boundary.
"""

from ..shared.config import ConfigurationError


class MonitoringError(Exception):
    """Base class for recoverable monitoring-internal failures."""


class LogFlushError(MonitoringError):
    """Buffered slow query records could not be written."""


class TelemetryCollectionError(MonitoringError):
    """A catalog or statement-statistics query failed during polling."""


__all__ = [
    'ConfigurationError',
    'MonitoringError',
    'LogFlushError',
    'TelemetryCollectionError',
]
