"""
Data model for the database performance monitor.

QueryEvent and IndexSnapshot are immutable observations; PerformanceAlert is
an append-only fact whose only mutation is the explicit resolve() action.
"""

import traceback
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .sql_text import fingerprint_query, sanitize_parameters, sanitize_query


class Severity(str, Enum):
    """Latency severity of a recorded query."""
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    TIMEOUT = "TIMEOUT"


class IndexRecommendation(str, Enum):
    """Index classification, in evaluation priority order."""
    UNUSED = "UNUSED"
    LOW_USAGE = "LOW_USAGE"
    LOW_EFFICIENCY = "LOW_EFFICIENCY"
    MODERATE_EFFICIENCY = "MODERATE_EFFICIENCY"
    OPTIMAL = "OPTIMAL"

    @property
    def advice(self) -> str:
        return _INDEX_ADVICE[self]


_INDEX_ADVICE = {
    IndexRecommendation.UNUSED: "Consider dropping this index",
    IndexRecommendation.LOW_USAGE: "Review necessity and consider dropping",
    IndexRecommendation.LOW_EFFICIENCY: "Index may need optimization or redesign",
    IndexRecommendation.MODERATE_EFFICIENCY: "Monitor and consider optimization",
    IndexRecommendation.OPTIMAL: "Index performing well",
}


class AlertType(str, Enum):
    UNUSED_INDEX = "UNUSED_INDEX"
    LOW_EFFICIENCY_INDEX = "LOW_EFFICIENCY_INDEX"
    SLOW_QUERY = "SLOW_QUERY"


class AlertSeverity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass(frozen=True)
class QueryContext:
    """Caller-supplied identifiers attached to recorded events."""
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class QueryEvent:
    """One recorded slow or failed query execution."""
    query_id: str
    sanitized_text: str
    execution_time_ms: float
    severity: Severity
    timestamp: datetime
    raw_text: str = field(repr=False)
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    parameters: Optional[List[Any]] = field(default=None, repr=False)
    rows_returned: int = 0
    stack_trace: Optional[str] = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        query: str,
        execution_time_ms: float,
        severity: Severity,
        params: Optional[Sequence[Any]] = None,
        context: Optional[QueryContext] = None,
        rows_returned: int = 0,
        error: Optional[BaseException] = None,
        timestamp: Optional[datetime] = None,
    ) -> 'QueryEvent':
        """Build an event from a finished execution."""
        context = context or QueryContext()
        stack_trace = None
        if error is not None:
            stack_trace = ''.join(traceback.format_exception(type(error), error, error.__traceback__))

        return cls(
            query_id=fingerprint_query(query),
            sanitized_text=sanitize_query(query),
            execution_time_ms=max(0.0, float(execution_time_ms)),
            severity=severity,
            timestamp=timestamp or datetime.utcnow(),
            raw_text=query,
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            parameters=sanitize_parameters(params),
            rows_returned=max(0, int(rows_returned or 0)),
            stack_trace=stack_trace,
        )

    @property
    def failed(self) -> bool:
        return self.stack_trace is not None

    def to_log_record(self) -> Dict[str, Any]:
        """Record written to the slow query log (sanitized text only)."""
        return {
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity.value,
            'executionTime': self.execution_time_ms,
            'query': self.sanitized_text,
            'queryId': self.query_id,
            'tenantId': self.tenant_id,
            'userId': self.user_id,
            'rowsReturned': self.rows_returned,
            'stackTrace': self.stack_trace,
        }


@dataclass(frozen=True)
class IndexSnapshot:
    """One periodic observation of one index (cumulative counters)."""
    index_name: str
    table_name: str
    size_bytes: int
    scan_count: int
    tuples_read: int
    tuples_returned: int
    scan_ratio: float
    efficiency: float
    recommendation: IndexRecommendation
    seq_scan_count: int = 0
    last_used: Optional[datetime] = None
    recorded_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def recommendation_text(self) -> str:
        return f"{self.recommendation.value} - {self.recommendation.advice}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['recommendation'] = self.recommendation.value
        data['recommendation_text'] = self.recommendation_text
        return data


@dataclass(frozen=True)
class SlowQuerySample:
    """Aggregated timing of one statement shape."""
    query_id: str
    query: str
    calls: int
    mean_time_ms: float
    max_time_ms: float
    total_time_ms: float = 0.0
    min_time_ms: float = 0.0
    stddev_time_ms: float = 0.0
    affected_tables: List[str] = field(default_factory=list)
    suggested_indexes: List[str] = field(default_factory=list)
    source: str = "pg_stat_statements"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SlowQueryPattern:
    """Slow query group from the in-process history."""
    query: str
    count: int
    avg_time: float
    max_time: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QueryStatistics:
    """Aggregate view over the metrics store."""
    total_queries: int = 0
    slow_queries: int = 0
    failed_queries: int = 0
    average_execution_time: float = 0.0
    median_execution_time: float = 0.0
    p95_execution_time: float = 0.0
    p99_execution_time: float = 0.0
    severity_distribution: Dict[str, int] = field(default_factory=dict)
    most_frequent_slow_queries: List[SlowQueryPattern] = field(default_factory=list)
    tenant_distribution: Dict[str, int] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def p50_execution_time(self) -> float:
        return self.median_execution_time

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['generated_at'] = self.generated_at.isoformat()
        return data


@dataclass(frozen=True)
class Recommendation:
    """An optimization suggestion for a slow query pattern."""
    query_pattern: str
    issue: str
    recommendation: str
    priority: Priority
    estimated_improvement: str
    implementation: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['priority'] = self.priority.value
        return data


@dataclass
class PerformanceAlert:
    """A raised performance alert."""
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    dedup_key: str
    details: Dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    def is_active(self) -> bool:
        return self.resolved_at is None

    def resolve(self, notes: Optional[str] = None, resolved_at: Optional[datetime] = None):
        """Mark the alert resolved. Resolving twice keeps the first resolution."""
        if self.resolved_at is not None:
            return
        self.resolved_at = resolved_at or datetime.utcnow()
        self.resolution_notes = notes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'alert_id': self.alert_id,
            'alert_type': self.alert_type.value,
            'severity': self.severity.value,
            'message': self.message,
            'details': self.details,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'resolution_notes': self.resolution_notes,
        }


@dataclass(frozen=True)
class PerformanceReport:
    """Read-only snapshot for an external reporting layer."""
    index_summary: Dict[str, Any]
    slow_queries_summary: Dict[str, Any]
    alerts: List[Dict[str, Any]]
    generated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'generated_at': self.generated_at.isoformat(),
            'index_summary': self.index_summary,
            'slow_queries_summary': self.slow_queries_summary,
            'alerts': self.alerts,
        }
