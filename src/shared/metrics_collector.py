"""
Metrics collection for the database performance monitor.

Provides labelled counters, gauges and histograms with a JSON summary and
Prometheus text export. A collector is created by the owning service and
passed to the components that record into it.
"""

import json
import threading
from datetime import datetime
from typing import Dict, List, Any, Tuple, Union
from enum import Enum

from .logging_config import get_logger


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


def _format_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{name}="{value}"' for name, value in key) + "}"


class Counter:
    """Counter metric that only increases, tracked per label set."""

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self.unit = MetricUnit.COUNT
        self._values: Dict[LabelKey, Union[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        """Increment the counter."""
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def get_value(self, **labels) -> Union[int, float]:
        """Get the value for a label set, or the total when no labels are given."""
        with self._lock:
            if labels:
                return self._values.get(_label_key(labels), 0)
            return sum(self._values.values())

    def samples(self) -> Dict[LabelKey, Union[int, float]]:
        with self._lock:
            return dict(self._values)

    def reset(self):
        """Reset counter to zero."""
        with self._lock:
            self._values.clear()


class Gauge:
    """Gauge metric that can increase or decrease."""

    metric_type = MetricType.GAUGE

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        self.name = name
        self.description = description
        self.unit = unit
        self._values: Dict[LabelKey, Union[int, float]] = {}
        self._lock = threading.Lock()

    def set(self, value: Union[int, float], **labels):
        """Set the gauge value."""
        with self._lock:
            self._values[_label_key(labels)] = value

    def increment(self, amount: Union[int, float] = 1, **labels):
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def decrement(self, amount: Union[int, float] = 1, **labels):
        self.increment(-amount, **labels)

    def get_value(self, **labels) -> Union[int, float]:
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def samples(self) -> Dict[LabelKey, Union[int, float]]:
        with self._lock:
            return dict(self._values)


class Histogram:
    """Histogram metric for tracking distributions."""

    metric_type = MetricType.HISTOGRAM
    DEFAULT_BUCKETS = [10.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 5000.0, 30000.0, float('inf')]

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.MILLISECONDS,
                 buckets: List[float] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.buckets = sorted(buckets or self.DEFAULT_BUCKETS)
        if self.buckets[-1] != float('inf'):
            self.buckets.append(float('inf'))
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float]):
        """Observe a value."""
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_statistics(self) -> Dict[str, Any]:
        """Get histogram statistics."""
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy()
            }


class MetricsCollector:
    """Registry of the monitor's metrics."""

    def __init__(self, namespace: str = ""):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.namespace = namespace
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self._lock = threading.Lock()
        self.created_at = datetime.utcnow()

    def _qualified(self, name: str) -> str:
        return f"{self.namespace}_{name}" if self.namespace else name

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        name = self._qualified(name)
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, description)
            return self.counters[name]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        """Get or create a gauge."""
        name = self._qualified(name)
        with self._lock:
            if name not in self.gauges:
                self.gauges[name] = Gauge(name, description, unit)
            return self.gauges[name]

    def get_histogram(self, name: str, description: str = "",
                      unit: MetricUnit = MetricUnit.MILLISECONDS,
                      buckets: List[float] = None) -> Histogram:
        """Get or create a histogram."""
        name = self._qualified(name)
        with self._lock:
            if name not in self.histograms:
                self.histograms[name] = Histogram(name, description, unit, buckets)
            return self.histograms[name]

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics."""
        def render(samples):
            return {_format_labels(key) or 'total': value for key, value in samples.items()}

        return {
            'collector_started': self.created_at.isoformat(),
            'counters': {name: render(c.samples()) for name, c in self.counters.items()},
            'gauges': {name: render(g.samples()) for name, g in self.gauges.items()},
            'histograms': {name: h.get_statistics() for name, h in self.histograms.items()},
        }

    def export_metrics(self, format_type: str = 'json') -> str:
        """Export metrics as JSON or Prometheus text."""
        if format_type == 'prometheus':
            return self._export_prometheus_format()
        return json.dumps(self.get_metrics_summary(), default=str, indent=2)

    def _export_prometheus_format(self) -> str:
        lines = []

        for metric in list(self.counters.values()) + list(self.gauges.values()):
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type.value}")
            for key, value in metric.samples().items():
                lines.append(f"{metric.name}{_format_labels(key)} {value}")

        for histogram in self.histograms.values():
            if histogram.description:
                lines.append(f"# HELP {histogram.name} {histogram.description}")
            lines.append(f"# TYPE {histogram.name} histogram")
            stats = histogram.get_statistics()
            for bucket, count in stats['buckets'].items():
                le = '+Inf' if bucket == float('inf') else bucket
                lines.append(f'{histogram.name}_bucket{{le="{le}"}} {count}')
            lines.append(f"{histogram.name}_sum {stats['sum']}")
            lines.append(f"{histogram.name}_count {stats['count']}")

        return '\n'.join(lines) + '\n'
