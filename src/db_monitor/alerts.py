"""
Performance alert engine.

Raises alerts for unused indexes, low-efficiency indexes and consistently
slow statements. Alerts are facts: a condition that disappears does not
resolve its alert, and a condition that persists while its alert is still
open is suppressed instead of raised again.
"""

import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from ..shared.config import AlertSettings, ThresholdSettings
from ..shared.logging_config import get_logger
from .models import AlertSeverity, AlertType, IndexSnapshot, PerformanceAlert, SlowQuerySample

SLOW_QUERY_MIN_CALLS = 10


class AlertEngine:
    """Derives and deduplicates PerformanceAlerts."""

    def __init__(self, thresholds: ThresholdSettings, settings: Optional[AlertSettings] = None):
        self.thresholds = thresholds
        self.settings = settings or AlertSettings()
        self.logger = get_logger(__name__, 'alert_engine')

        self._alerts: List[PerformanceAlert] = []
        self._open_by_key: Dict[str, PerformanceAlert] = {}
        self._lock = threading.Lock()

        self.stats = {
            'alerts_created': 0,
            'alerts_suppressed': 0,
            'alerts_resolved': 0,
        }

    def evaluate(self, snapshots: Sequence[IndexSnapshot],
                 slow_queries: Sequence[SlowQuerySample] = ()) -> List[PerformanceAlert]:
        """Return the alerts newly raised for this observation."""
        if not self.settings.enabled:
            return []

        raised = []
        for candidate in self._candidates(snapshots, slow_queries):
            if self._register(candidate):
                raised.append(candidate)

        if raised:
            self.logger.warning(
                f"Raised {len(raised)} performance alerts",
                operation="evaluate_alerts",
                alert_types=sorted({a.alert_type.value for a in raised}),
            )
        return raised

    def _candidates(self, snapshots, slow_queries):
        for snapshot in snapshots:
            if snapshot.scan_count == 0:
                yield PerformanceAlert(
                    alert_type=AlertType.UNUSED_INDEX,
                    severity=AlertSeverity.WARNING,
                    message=f"Index {snapshot.index_name} has never been used",
                    dedup_key=f"{AlertType.UNUSED_INDEX.value}:{snapshot.index_name}",
                    details={'index': snapshot.to_dict()},
                )
            elif snapshot.efficiency < self.settings.alert_threshold:
                yield PerformanceAlert(
                    alert_type=AlertType.LOW_EFFICIENCY_INDEX,
                    severity=AlertSeverity.WARNING,
                    message=f"Index {snapshot.index_name} has low efficiency: {snapshot.efficiency}%",
                    dedup_key=f"{AlertType.LOW_EFFICIENCY_INDEX.value}:{snapshot.index_name}",
                    details={'index': snapshot.to_dict()},
                )

        limit = self.thresholds.critical * 2
        for sample in slow_queries:
            if sample.mean_time_ms > limit and sample.calls > SLOW_QUERY_MIN_CALLS:
                yield PerformanceAlert(
                    alert_type=AlertType.SLOW_QUERY,
                    severity=AlertSeverity.CRITICAL,
                    message=f"Query averaging {sample.mean_time_ms:.1f}ms needs optimization",
                    dedup_key=f"{AlertType.SLOW_QUERY.value}:{sample.query_id}",
                    details={'query': sample.to_dict()},
                )

    def _register(self, alert: PerformanceAlert) -> bool:
        with self._lock:
            if alert.dedup_key in self._open_by_key:
                self.stats['alerts_suppressed'] += 1
                return False
            self._alerts.append(alert)
            self._open_by_key[alert.dedup_key] = alert
            self.stats['alerts_created'] += 1
            return True

    def resolve(self, alert_id: str, notes: Optional[str] = None) -> Optional[PerformanceAlert]:
        """Resolve an alert explicitly. Returns None for unknown ids."""
        with self._lock:
            for alert in self._alerts:
                if alert.alert_id == alert_id:
                    if alert.is_active():
                        alert.resolve(notes)
                        self._open_by_key.pop(alert.dedup_key, None)
                        self.stats['alerts_resolved'] += 1
                    return alert
        return None

    def active_alerts(self) -> List[PerformanceAlert]:
        with self._lock:
            return [a for a in self._alerts if a.is_active()]

    def all_alerts(self) -> List[PerformanceAlert]:
        with self._lock:
            return list(self._alerts)

    def recent_alerts(self, since: Optional[datetime] = None, limit: int = 20) -> List[PerformanceAlert]:
        """Alerts created after ``since`` (default: last 24 hours), newest first."""
        since = since or datetime.utcnow() - timedelta(hours=24)
        with self._lock:
            recent = [a for a in self._alerts if a.created_at > since]
        recent.sort(key=lambda a: a.created_at, reverse=True)
        return recent[:limit]
