"""
ED Patient-Flow Agent - Alert & Bundle Tracker

Alert lifecycle and time-bounded bundle items.

    ┌───────────┐  acknowledge   ┌──────────────┐   resolve   ┌──────────┐
    │ TRIGGERED │ ─────────────► │ ACKNOWLEDGED │ ──────────► │ RESOLVED │
    └─────┬─────┘                └──────────────┘             └──────────┘
          │                 auto-resolve (auto_resolved=True)       ▲
          └─────────────────────────────────────────────────────────┘

Nothing in this module runs on a timer. Breach of a bundle item and SLA
overdue-ness of an alert are pure functions of (now, stored timestamps,
status) evaluated whenever somebody reads them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import Settings, settings as default_settings
from .errors import AlertNotFound, BundleItemNotFound, InvalidStateTransition, ValidationError
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    BundleItemStatus,
    SepsisBundleItem,
    Visit,
)

logger = logging.getLogger(__name__)


def new_alert(
    alert_type: AlertType,
    severity: AlertSeverity,
    message: str,
    triggered_at: datetime,
    triggered_by: Optional[str] = None,
) -> Alert:
    """Create a freshly triggered alert."""
    return Alert(
        type=alert_type,
        severity=severity,
        message=message,
        triggered_at=triggered_at,
        triggered_by=triggered_by,
    )


# =============================================================================
# ALERT LIFECYCLE
# =============================================================================

def get_alert(visit: Visit, alert_id: str) -> Alert:
    alert = visit.find_alert(alert_id)
    if alert is None:
        raise AlertNotFound(alert_id, details={"visit_id": visit.visit_id})
    return alert


def acknowledge_alert(alert: Alert, by: str, at: datetime) -> Alert:
    """Acknowledge an open alert."""
    if alert.is_resolved:
        raise InvalidStateTransition(
            f"Alert {alert.id} is already resolved",
            current="resolved",
            requested="acknowledged",
        )
    if alert.acknowledged_at is not None:
        raise InvalidStateTransition(
            f"Alert {alert.id} is already acknowledged",
            current="acknowledged",
            requested="acknowledged",
        )
    if at < alert.triggered_at:
        raise ValidationError(
            "Acknowledgement cannot precede the trigger time",
            field="acknowledged_at",
        )
    alert.acknowledged_at = at
    alert.acknowledged_by = by
    return alert


def resolve_alert(alert: Alert, by: Optional[str], at: datetime, auto: bool = False) -> Alert:
    """
    Resolve an alert.

    A manual resolution requires a prior acknowledgement; only automatic
    resolution may skip it and is then tagged auto_resolved.
    """
    if alert.is_resolved:
        raise InvalidStateTransition(
            f"Alert {alert.id} is already resolved",
            current="resolved",
            requested="resolved",
        )
    if alert.acknowledged_at is None and not auto:
        raise InvalidStateTransition(
            f"Alert {alert.id} must be acknowledged before it is resolved",
            current="triggered",
            requested="resolved",
        )
    floor = alert.acknowledged_at or alert.triggered_at
    if at < floor:
        raise ValidationError(
            "Resolution cannot precede acknowledgement or trigger time",
            field="resolved_at",
        )
    alert.resolved_at = at
    alert.resolved_by = by
    alert.auto_resolved = auto
    return alert


def auto_resolve_open_alerts(visit: Visit, at: datetime, reason: str) -> int:
    """Close every unresolved alert on a visit, e.g. when it reaches a terminal state."""
    count = 0
    for alert in visit.alerts:
        if alert.is_resolved:
            continue
        resolve_alert(alert, by="system", at=max(at, alert.acknowledged_at or alert.triggered_at), auto=True)
        count += 1
    if count:
        logger.info(
            f"Auto-resolved {count} alert(s) on visit {visit.visit_id}",
            extra={"visit_id": visit.visit_id, "reason": reason},
        )
    return count


def has_open_alert(visit: Visit, alert_type: AlertType) -> bool:
    return any(a.type == alert_type and not a.is_resolved for a in visit.alerts)


# =============================================================================
# ALERT SLA
# =============================================================================

def ack_sla_minutes(severity: AlertSeverity, config: Settings = default_settings) -> int:
    return {
        AlertSeverity.CRITICAL: config.alert_ack_sla_critical_minutes,
        AlertSeverity.WARNING: config.alert_ack_sla_warning_minutes,
        AlertSeverity.INFO: config.alert_ack_sla_info_minutes,
    }[severity]


def is_alert_overdue(alert: Alert, now: datetime, config: Settings = default_settings) -> bool:
    """An open alert past its acknowledgement SLA. A monitoring signal only."""
    if not alert.is_open:
        return False
    return now - alert.triggered_at > timedelta(minutes=ack_sla_minutes(alert.severity, config))


def overdue_alerts(visit: Visit, now: datetime, config: Settings = default_settings) -> List[Alert]:
    return [a for a in visit.alerts if is_alert_overdue(a, now, config)]


# =============================================================================
# BUNDLE TRACKING
# =============================================================================

@dataclass
class BundleItemView:
    """Read model of one bundle item with its derived breach flag."""
    index: int
    item: str
    due_time: datetime
    status: BundleItemStatus
    breached: bool
    minutes_remaining: int
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "item": self.item,
            "due_time": self.due_time.isoformat(),
            "status": self.status.value,
            "breached": self.breached,
            "minutes_remaining": self.minutes_remaining,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
        }


def bundle_status(visit: Visit, now: datetime) -> List[BundleItemView]:
    """Current view of the sepsis bundle, breach computed against now."""
    if visit.sepsis_screening is None:
        return []
    views = []
    for index, item in enumerate(visit.sepsis_screening.bundle_items):
        remaining = int((item.due_time - now).total_seconds() // 60)
        views.append(BundleItemView(
            index=index,
            item=item.item,
            due_time=item.due_time,
            status=item.status,
            breached=item.is_breached(now),
            minutes_remaining=remaining if item.status == BundleItemStatus.PENDING else 0,
            completed_at=item.completed_at,
            completed_by=item.completed_by,
        ))
    return views


def breached_items(visit: Visit, now: datetime) -> List[SepsisBundleItem]:
    if visit.sepsis_screening is None:
        return []
    return [i for i in visit.sepsis_screening.bundle_items if i.is_breached(now)]


def complete_bundle_item(
    visit: Visit,
    index: int,
    status: BundleItemStatus,
    by: str,
    at: datetime,
) -> SepsisBundleItem:
    """Move a pending bundle item to completed or not_applicable."""
    items = visit.sepsis_screening.bundle_items if visit.sepsis_screening else []
    if not 0 <= index < len(items):
        raise BundleItemNotFound(str(index), details={"visit_id": visit.visit_id})
    if status == BundleItemStatus.PENDING:
        raise ValidationError("Bundle items can only move to completed or not_applicable", field="status")

    item = items[index]
    if item.status != BundleItemStatus.PENDING:
        raise InvalidStateTransition(
            f"Bundle item '{item.item}' is already {item.status.value}",
            current=item.status.value,
            requested=status.value,
        )
    if item.is_breached(at):
        logger.warning(
            f"Bundle item completed after its deadline: {item.item}",
            extra={"visit_id": visit.visit_id, "due_time": item.due_time.isoformat()},
        )
    item.status = status
    item.completed_at = at
    item.completed_by = by
    return item
