"""
Alert & Bundle Tracker - Unit Tests

Run with: pytest ed_agents/patient_flow/tests/test_alerts.py -v
"""

from datetime import timedelta

import pytest

from ed_agents.patient_flow import alerts
from ed_agents.patient_flow.errors import AlertNotFound, BundleItemNotFound, InvalidStateTransition, ValidationError
from ed_agents.patient_flow.models import (
    AlertSeverity,
    AlertType,
    ArrivalMode,
    BundleItemStatus,
    QsofaCriteria,
    SepsisScreening,
    SirsCriteria,
    Visit,
)
from ed_agents.patient_flow.protocols import build_sepsis_bundle


@pytest.fixture
def visit(clock):
    return Visit(
        patient_id="MRN-001",
        arrival_mode=ArrivalMode.WALK_IN,
        chief_complaint="fever",
        arrival_time=clock(),
    )


@pytest.fixture
def septic_visit(visit, clock):
    visit.sepsis_screening = SepsisScreening(
        visit_id=visit.visit_id,
        patient_id=visit.patient_id,
        screened_by="rn_jones",
        screened_at=clock(),
        sirs_criteria=SirsCriteria(temperature=True, heart_rate=True),
        qsofa_criteria=QsofaCriteria(),
        suspected_infection=True,
        sepsis_likely=True,
        bundle_items=build_sepsis_bundle(clock()),
    )
    return visit


class TestAlertLifecycle:
    """triggered -> acknowledged -> resolved."""

    def test_acknowledge_then_resolve(self, clock):
        alert = alerts.new_alert(AlertType.CRITICAL_RESULT, AlertSeverity.CRITICAL, "K+ 7.2", clock())
        assert alert.is_open

        alerts.acknowledge_alert(alert, "dr_house", clock.advance(minutes=2))
        assert not alert.is_open
        assert not alert.is_resolved

        alerts.resolve_alert(alert, "dr_house", clock.advance(minutes=5))
        assert alert.is_resolved
        assert not alert.auto_resolved
        assert alert.triggered_at <= alert.acknowledged_at <= alert.resolved_at

    def test_double_acknowledge_rejected(self, clock):
        alert = alerts.new_alert(AlertType.STEMI_ALERT, AlertSeverity.WARNING, "ECG", clock())
        alerts.acknowledge_alert(alert, "rn_jones", clock())
        with pytest.raises(InvalidStateTransition):
            alerts.acknowledge_alert(alert, "rn_jones", clock())

    def test_manual_resolve_requires_acknowledgement(self, clock):
        alert = alerts.new_alert(AlertType.STEMI_ALERT, AlertSeverity.WARNING, "ECG", clock())
        with pytest.raises(InvalidStateTransition):
            alerts.resolve_alert(alert, "rn_jones", clock())
        assert alert.resolved_at is None

    def test_auto_resolve_skips_acknowledgement(self, clock):
        alert = alerts.new_alert(AlertType.STEMI_ALERT, AlertSeverity.WARNING, "ECG", clock())
        alerts.resolve_alert(alert, "system", clock(), auto=True)
        assert alert.is_resolved
        assert alert.auto_resolved

    def test_double_resolve_rejected(self, clock):
        alert = alerts.new_alert(AlertType.STEMI_ALERT, AlertSeverity.WARNING, "ECG", clock())
        alerts.resolve_alert(alert, "system", clock(), auto=True)
        with pytest.raises(InvalidStateTransition):
            alerts.resolve_alert(alert, "system", clock(), auto=True)

    def test_acknowledge_before_trigger_rejected(self, clock):
        alert = alerts.new_alert(AlertType.STEMI_ALERT, AlertSeverity.WARNING, "ECG", clock())
        with pytest.raises(ValidationError):
            alerts.acknowledge_alert(alert, "rn_jones", clock() - timedelta(minutes=1))

    def test_auto_resolve_open_alerts(self, visit, clock):
        visit.alerts.append(alerts.new_alert(AlertType.STEMI_ALERT, AlertSeverity.WARNING, "ECG", clock()))
        acked = alerts.new_alert(AlertType.SEPSIS_ALERT, AlertSeverity.CRITICAL, "Sepsis", clock())
        alerts.acknowledge_alert(acked, "rn_jones", clock.advance(minutes=1))
        visit.alerts.append(acked)

        assert alerts.auto_resolve_open_alerts(visit, clock.advance(minutes=1), reason="test") == 2
        assert all(a.is_resolved and a.auto_resolved for a in visit.alerts)

    def test_unknown_alert(self, visit):
        with pytest.raises(AlertNotFound) as exc_info:
            alerts.get_alert(visit, "missing")
        assert exc_info.value.to_dict()["details"]["alert_id"] == "missing"


class TestAlertSla:
    """Overdue alerts are computed on read."""

    def test_critical_alert_overdue_after_sla(self, visit, clock):
        alert = alerts.new_alert(AlertType.CRITICAL_RESULT, AlertSeverity.CRITICAL, "K+ 7.2", clock())
        visit.alerts.append(alert)
        assert alerts.overdue_alerts(visit, clock() + timedelta(minutes=5)) == []
        assert alerts.overdue_alerts(visit, clock() + timedelta(minutes=6)) == [alert]

    def test_acknowledged_alert_is_never_overdue(self, visit, clock):
        alert = alerts.new_alert(AlertType.CRITICAL_RESULT, AlertSeverity.CRITICAL, "K+ 7.2", clock())
        alerts.acknowledge_alert(alert, "dr_house", clock())
        visit.alerts.append(alert)
        assert alerts.overdue_alerts(visit, clock() + timedelta(hours=2)) == []

    def test_sla_by_severity(self):
        assert alerts.ack_sla_minutes(AlertSeverity.CRITICAL) == 5
        assert alerts.ack_sla_minutes(AlertSeverity.WARNING) == 15
        assert alerts.ack_sla_minutes(AlertSeverity.INFO) == 60


class TestBundleTracking:
    """Sepsis bundle breach and completion."""

    def test_breach_is_pure_function_of_now(self, septic_visit, clock):
        screened = clock()
        assert alerts.breached_items(septic_visit, screened + timedelta(minutes=60)) == []
        assert len(alerts.breached_items(septic_visit, screened + timedelta(minutes=61))) == 3
        assert len(alerts.breached_items(septic_visit, screened + timedelta(minutes=181))) == 4

    def test_bundle_status_view(self, septic_visit, clock):
        views = alerts.bundle_status(septic_visit, clock() + timedelta(minutes=30))
        assert [v.index for v in views] == [0, 1, 2, 3]
        assert views[0].minutes_remaining == 30
        assert not any(v.breached for v in views)

    def test_completed_item_never_breaches(self, septic_visit, clock):
        alerts.complete_bundle_item(septic_visit, 0, BundleItemStatus.COMPLETED, "rn_jones", clock())
        later = clock() + timedelta(hours=5)
        breached = alerts.breached_items(septic_visit, later)
        assert septic_visit.sepsis_screening.bundle_items[0] not in breached
        assert len(breached) == 3

    def test_late_completion_is_recorded(self, septic_visit, clock):
        item = alerts.complete_bundle_item(
            septic_visit, 3, BundleItemStatus.NOT_APPLICABLE, "dr_house", clock() + timedelta(hours=4)
        )
        assert item.status == BundleItemStatus.NOT_APPLICABLE
        assert item.completed_by == "dr_house"

    def test_completing_twice_rejected(self, septic_visit, clock):
        alerts.complete_bundle_item(septic_visit, 1, BundleItemStatus.COMPLETED, "rn_jones", clock())
        with pytest.raises(InvalidStateTransition):
            alerts.complete_bundle_item(septic_visit, 1, BundleItemStatus.COMPLETED, "rn_jones", clock())

    def test_pending_is_not_a_target(self, septic_visit, clock):
        with pytest.raises(ValidationError):
            alerts.complete_bundle_item(septic_visit, 0, BundleItemStatus.PENDING, "rn_jones", clock())

    @pytest.mark.parametrize("index", [-1, 4])
    def test_index_out_of_range(self, septic_visit, clock, index):
        with pytest.raises(BundleItemNotFound):
            alerts.complete_bundle_item(septic_visit, index, BundleItemStatus.COMPLETED, "rn_jones", clock())

    def test_visit_without_screening(self, visit, clock):
        assert alerts.bundle_status(visit, clock()) == []
        with pytest.raises(BundleItemNotFound):
            alerts.complete_bundle_item(visit, 0, BundleItemStatus.COMPLETED, "rn_jones", clock())
