"""
Tests for the performance alert engine.
"""

from datetime import datetime, timedelta

import pytest

from src.db_monitor.alerts import AlertEngine
from src.db_monitor.index_poller import snapshot_from_row
from src.db_monitor.models import AlertSeverity, AlertType, SlowQuerySample
from src.shared.config import AlertSettings, ThresholdSettings


def snapshot(name, scans=10, read=100, returned=90, seq=0):
    return snapshot_from_row({
        'table_name': 'tenant_users',
        'index_name': name,
        'index_scans': scans,
        'tuples_read': read,
        'tuples_returned': returned,
        'seq_scans': seq,
    }, usage_threshold=10)


def sample(query_id="q1", mean=2500.0, calls=20):
    return SlowQuerySample(query_id=query_id, query="select 1", calls=calls, mean_time_ms=mean, max_time_ms=mean)


class TestAlertEngine:
    """Test alert conditions, dedup and resolution."""

    @pytest.fixture
    def engine(self):
        return AlertEngine(ThresholdSettings(), AlertSettings())

    def test_unused_index(self, engine):
        alerts = engine.evaluate([snapshot("idx_unused", scans=0)])

        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.UNUSED_INDEX
        assert alerts[0].severity == AlertSeverity.WARNING
        assert "idx_unused" in alerts[0].message

    def test_low_efficiency_index(self, engine):
        alerts = engine.evaluate([snapshot("idx_wasteful", read=100, returned=79)])

        assert [a.alert_type for a in alerts] == [AlertType.LOW_EFFICIENCY_INDEX]

    def test_efficient_index_no_alert(self, engine):
        assert engine.evaluate([snapshot("idx_good", read=100, returned=80)]) == []

    def test_slow_query_boundaries(self, engine):
        assert engine.evaluate([], [sample(mean=2000.0)]) == []
        assert engine.evaluate([], [sample(mean=2500.0, calls=10)]) == []

        alerts = engine.evaluate([], [sample(mean=2000.5, calls=11)])

        assert [a.alert_type for a in alerts] == [AlertType.SLOW_QUERY]
        assert alerts[0].severity == AlertSeverity.CRITICAL

    def test_repeat_suppressed_while_open(self, engine):
        first = engine.evaluate([snapshot("idx_unused", scans=0)])
        second = engine.evaluate([snapshot("idx_unused", scans=0)])

        assert len(first) == 1
        assert second == []
        assert engine.stats['alerts_suppressed'] == 1
        assert len(engine.all_alerts()) == 1

    def test_resolve_allows_new_alert(self, engine):
        alert = engine.evaluate([snapshot("idx_unused", scans=0)])[0]

        resolved = engine.resolve(alert.alert_id, "dropped index")

        assert resolved is alert
        assert alert.resolved_at is not None
        assert alert.resolution_notes == "dropped index"
        assert engine.active_alerts() == []

        again = engine.evaluate([snapshot("idx_unused", scans=0)])
        assert len(again) == 1
        assert again[0].alert_id != alert.alert_id

    def test_resolve_twice_keeps_first_resolution(self, engine):
        alert = engine.evaluate([snapshot("idx_unused", scans=0)])[0]

        engine.resolve(alert.alert_id, "first")
        first_resolved_at = alert.resolved_at
        engine.resolve(alert.alert_id, "second")

        assert alert.resolution_notes == "first"
        assert alert.resolved_at == first_resolved_at
        assert engine.stats['alerts_resolved'] == 1

    def test_resolve_unknown(self, engine):
        assert engine.resolve("missing") is None

    def test_condition_disappearing_does_not_resolve(self, engine):
        engine.evaluate([snapshot("idx_unused", scans=0)])

        engine.evaluate([snapshot("idx_unused", scans=5)])

        assert len(engine.active_alerts()) == 1

    def test_disabled(self):
        engine = AlertEngine(ThresholdSettings(), AlertSettings(enabled=False))

        assert engine.evaluate([snapshot("idx_unused", scans=0)], [sample()]) == []

    def test_custom_efficiency_threshold(self):
        engine = AlertEngine(ThresholdSettings(), AlertSettings(alert_threshold=95))

        alerts = engine.evaluate([snapshot("idx_ok", read=100, returned=90)])

        assert [a.alert_type for a in alerts] == [AlertType.LOW_EFFICIENCY_INDEX]

    def test_recent_alerts_newest_first(self, engine):
        alerts = engine.evaluate([snapshot(f"idx_{i}", scans=0) for i in range(3)])
        base = datetime.utcnow()
        for offset, alert in enumerate(alerts):
            alert.created_at = base - timedelta(minutes=10 - offset)
        alerts[0].created_at = base - timedelta(days=2)

        recent = engine.recent_alerts(limit=20)

        assert [a.alert_id for a in recent] == [alerts[2].alert_id, alerts[1].alert_id]
        assert len(engine.recent_alerts(limit=1)) == 1
