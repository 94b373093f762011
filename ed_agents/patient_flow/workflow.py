"""
ED Patient-Flow Agent - Visit State Machine

================================================================================
VISIT LIFECYCLE
================================================================================

    arrived ──► waiting_triage ──► triaged ──┬──► waiting_bed ──┐
       │              │                      │                  ▼
       └──────────────┴── (triage) ──────────┴──────────► in_treatment ◄──┐
                                                            │   ▲   ▲     │
                                         awaiting_results ◄─┘   │   │     │
                                         awaiting_consult ◄─────┘   │     │
                                                                    │     │
                 ┌────────────── awaiting_admission ◄───────────────┤     │
                 ▼                                                  │     │
             admitted          awaiting_discharge ◄─────────────────┘     │
                                 │          │                             │
                                 ▼          ▼                             │
                            discharged  transferred                       │
                                                                          │
    any non-terminal ──► left_without_being_seen | left_against_medical_advice
                         | deceased

Terminal states (discharged, admitted, transferred, lwbs, ama, deceased)
accept no further mutation of any kind.

Operation-driven moves (triage, bed assignment, consultations, disposition,
discharge) are applied by the engine. ALLOWED_TRANSITIONS governs the
explicit moves requested through update_status.
================================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet

from .alerts import auto_resolve_open_alerts
from .errors import InvalidStateTransition
from .models import DispositionType, Visit, VisitStatus, minutes_between

logger = logging.getLogger(__name__)

_ALWAYS = frozenset({
    VisitStatus.LEFT_WITHOUT_BEING_SEEN,
    VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE,
    VisitStatus.DECEASED,
})

ALLOWED_TRANSITIONS: Dict[VisitStatus, FrozenSet[VisitStatus]] = {
    VisitStatus.ARRIVED: frozenset({VisitStatus.WAITING_TRIAGE}),
    VisitStatus.WAITING_TRIAGE: frozenset(),
    VisitStatus.TRIAGED: frozenset({VisitStatus.WAITING_BED, VisitStatus.IN_TREATMENT}),
    VisitStatus.WAITING_BED: frozenset({VisitStatus.IN_TREATMENT}),
    VisitStatus.IN_TREATMENT: frozenset({
        VisitStatus.AWAITING_RESULTS,
        VisitStatus.AWAITING_CONSULT,
        VisitStatus.AWAITING_ADMISSION,
        VisitStatus.AWAITING_DISCHARGE,
    }),
    VisitStatus.AWAITING_RESULTS: frozenset({VisitStatus.IN_TREATMENT, VisitStatus.AWAITING_CONSULT}),
    VisitStatus.AWAITING_CONSULT: frozenset({VisitStatus.IN_TREATMENT, VisitStatus.AWAITING_RESULTS}),
    VisitStatus.AWAITING_ADMISSION: frozenset({
        VisitStatus.ADMITTED,
        VisitStatus.TRANSFERRED,
        VisitStatus.IN_TREATMENT,
    }),
    VisitStatus.AWAITING_DISCHARGE: frozenset({
        VisitStatus.DISCHARGED,
        VisitStatus.TRANSFERRED,
        VisitStatus.IN_TREATMENT,
    }),
}

PRE_TRIAGE_STATUSES = frozenset({VisitStatus.ARRIVED, VisitStatus.WAITING_TRIAGE})

DISPOSITION_STATUS: Dict[DispositionType, VisitStatus] = {
    DispositionType.DISCHARGE_HOME: VisitStatus.AWAITING_DISCHARGE,
    DispositionType.DISCHARGE_WITH_SERVICES: VisitStatus.AWAITING_DISCHARGE,
    DispositionType.HOSPICE: VisitStatus.AWAITING_DISCHARGE,
    DispositionType.TRANSFER: VisitStatus.AWAITING_DISCHARGE,
    DispositionType.ADMIT_INPATIENT: VisitStatus.AWAITING_ADMISSION,
    DispositionType.ADMIT_OBSERVATION: VisitStatus.AWAITING_ADMISSION,
    DispositionType.ADMIT_ICU: VisitStatus.AWAITING_ADMISSION,
    DispositionType.AMA: VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE,
    DispositionType.LWBS: VisitStatus.LEFT_WITHOUT_BEING_SEEN,
    DispositionType.DECEASED: VisitStatus.DECEASED,
}


def ensure_mutable(visit: Visit, action: str) -> None:
    """Reject any mutation of a visit that has reached a terminal state."""
    if visit.is_terminal:
        raise InvalidStateTransition(
            f"Visit {visit.visit_id} is {visit.status.value}; cannot {action}",
            current=visit.status.value,
            requested=action,
            details={"visit_id": visit.visit_id},
        )


def can_transition(current: VisitStatus, target: VisitStatus) -> bool:
    if current.is_terminal:
        return False
    return target in _ALWAYS or target in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(visit: Visit, target: VisitStatus) -> None:
    ensure_mutable(visit, target.value)
    if not can_transition(visit.status, target):
        raise InvalidStateTransition(
            f"Illegal transition {visit.status.value} -> {target.value}",
            current=visit.status.value,
            requested=target.value,
            details={"visit_id": visit.visit_id},
        )


def status_for_disposition(disposition_type: DispositionType) -> VisitStatus:
    return DISPOSITION_STATUS[disposition_type]


def apply_status(visit: Visit, target: VisitStatus, at: datetime, reason: str = "") -> None:
    """
    Move a visit to `target` without checking the transition table.

    Callers validate first; entering a terminal state also records departure
    time and length of stay and closes every open alert.
    """
    previous = visit.status
    visit.status = target
    visit.updated_at = at

    if target.is_terminal:
        if visit.discharge_time is None:
            visit.discharge_time = at
            visit.length_of_stay = minutes_between(visit.arrival_time, at)
        auto_resolve_open_alerts(visit, at, reason=f"visit {target.value}")
        logger.warning(
            f"Visit {visit.visit_id} closed: {target.value}",
            extra={
                "visit_id": visit.visit_id,
                "from_status": previous.value,
                "length_of_stay": visit.length_of_stay,
                "reason": reason,
            },
        )
    else:
        logger.info(
            f"Visit {visit.visit_id}: {previous.value} -> {target.value}",
            extra={"visit_id": visit.visit_id, "reason": reason},
        )


def transition(visit: Visit, target: VisitStatus, at: datetime, reason: str = "") -> None:
    """Validated explicit status move."""
    validate_transition(visit, target)
    apply_status(visit, target, at, reason)
