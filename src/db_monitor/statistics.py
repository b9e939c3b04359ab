"""
Statistics over the metrics store.

Results are cached and only recomputed when the store has changed since the
last computation (or on an explicit refresh). Appends never trigger
recomputation themselves.
"""

import math
import threading
from collections import Counter, OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..shared.config import ThresholdSettings
from .metrics_store import MetricsStore
from .models import QueryStatistics, SlowQueryPattern
from .sql_text import normalize_query

TOP_SLOW_QUERIES = 10


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """
    Linear-interpolation percentile of an ascending sequence.

    ``idx = pct/100 * (n-1)``; the result blends the neighbours at
    ``floor(idx)`` and ``ceil(idx)``. Empty input yields 0.
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0

    index = (pct / 100.0) * (n - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    weight = index - lower

    if upper >= n:
        return float(sorted_values[n - 1])

    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def group_slow_queries(events, limit: int = TOP_SLOW_QUERIES) -> List[SlowQueryPattern]:
    """Group events by normalized text; most frequent first, ties in first-seen order."""
    groups: "OrderedDict[str, Dict[str, float]]" = OrderedDict()
    for event in events:
        key = normalize_query(event.sanitized_text)
        group = groups.setdefault(key, {'count': 0, 'total': 0.0, 'max': 0.0})
        group['count'] += 1
        group['total'] += event.execution_time_ms
        group['max'] = max(group['max'], event.execution_time_ms)

    patterns = [
        SlowQueryPattern(
            query=query,
            count=int(data['count']),
            avg_time=data['total'] / data['count'],
            max_time=data['max'],
        )
        for query, data in groups.items()
    ]
    patterns.sort(key=lambda p: p.count, reverse=True)
    return patterns[:limit]


class StatisticsEngine:
    """Computes QueryStatistics from a MetricsStore."""

    def __init__(self, store: MetricsStore, thresholds: ThresholdSettings):
        self.store = store
        self.thresholds = thresholds
        self._cache: Optional[QueryStatistics] = None
        self._cache_version: Optional[int] = None
        self._lock = threading.Lock()
        self.computations = 0

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None
            self._cache_version = None

    def get_stats(self, force_refresh: bool = False) -> QueryStatistics:
        with self._lock:
            version = self.store.version
            if not force_refresh and self._cache is not None and self._cache_version == version:
                return self._cache

            events, version = self.store.snapshot_with_version()
            stats = self._compute(events)
            self._cache = stats
            self._cache_version = version
            self.computations += 1
            return stats

    def _compute(self, events) -> QueryStatistics:
        if not events:
            return QueryStatistics(generated_at=datetime.utcnow())

        warning = self.thresholds.warning
        slow_events = [e for e in events if e.execution_time_ms >= warning]
        times = sorted(e.execution_time_ms for e in events)

        tenant_distribution: Dict[str, int] = Counter(
            e.tenant_id for e in events if e.tenant_id
        )
        severity_distribution: Dict[str, int] = Counter(e.severity.value for e in events)

        return QueryStatistics(
            total_queries=len(events),
            slow_queries=len(slow_events),
            failed_queries=sum(1 for e in events if e.failed),
            average_execution_time=sum(times) / len(times),
            median_execution_time=percentile(times, 50),
            p95_execution_time=percentile(times, 95),
            p99_execution_time=percentile(times, 99),
            severity_distribution=dict(severity_distribution),
            most_frequent_slow_queries=group_slow_queries(slow_events),
            tenant_distribution=dict(tenant_distribution),
            generated_at=datetime.utcnow(),
        )
