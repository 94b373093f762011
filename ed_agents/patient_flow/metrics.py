"""
ED Patient-Flow Agent - Metrics Aggregator & Tracking Board

Read-only aggregation over a snapshot of visits. Nothing here takes a lock or
writes to a visit; every figure is a function of (snapshot, now).

================================================================================
STATUS BUCKETS
================================================================================

    waiting ........ arrived, waiting_triage, triaged, waiting_bed
    in treatment ... in_treatment, awaiting_results, awaiting_consult
    boarding ....... awaiting_admission

Wait time is (now - arrival) in whole minutes for visits still waiting.
Every average over an empty set is 0, never NaN.

Throughput figures (length of stay, door-to-provider, LWBS and admission
rates) are computed over visits that already reached a terminal state.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .alerts import breached_items
from .config import AcuityLevel
from .models import Visit, VisitStatus

logger = logging.getLogger(__name__)

WAITING_STATUSES = frozenset({
    VisitStatus.ARRIVED,
    VisitStatus.WAITING_TRIAGE,
    VisitStatus.TRIAGED,
    VisitStatus.WAITING_BED,
})
IN_TREATMENT_STATUSES = frozenset({
    VisitStatus.IN_TREATMENT,
    VisitStatus.AWAITING_RESULTS,
    VisitStatus.AWAITING_CONSULT,
})
BOARDING_STATUSES = frozenset({VisitStatus.AWAITING_ADMISSION})

WAITING_ZONE = "waiting"


def _mean(values: Sequence[float]) -> float:
    return round(float(np.mean(values)), 1) if len(values) else 0.0


def _percentile(values: Sequence[float], q: float) -> float:
    return round(float(np.percentile(values, q)), 1) if len(values) else 0.0


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


@dataclass
class EDMetrics:
    """Point-in-time department snapshot."""
    generated_at: datetime
    census: int = 0
    waiting: int = 0
    in_treatment: int = 0
    boarding: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    average_wait_minutes: float = 0.0
    p90_wait_minutes: float = 0.0
    longest_wait_minutes: int = 0
    triage_distribution: Dict[int, int] = field(default_factory=lambda: {lvl: 0 for lvl in AcuityLevel.ALL})
    critical_patients: int = 0
    acuity_by_zone: Dict[str, Dict[str, float]] = field(default_factory=dict)
    open_alerts: int = 0
    breached_bundle_items: int = 0

    # Throughput over completed visits
    completed_visits: int = 0
    average_length_of_stay_minutes: float = 0.0
    average_door_to_provider_minutes: float = 0.0
    lwbs_rate_percent: float = 0.0
    ama_count: int = 0
    admission_rate_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        data["triage_distribution"] = {str(k): v for k, v in self.triage_distribution.items()}
        return data


def _zone_of(visit: Visit) -> str:
    if visit.location is None or visit.location.is_waiting:
        return WAITING_ZONE
    return visit.location.zone


def acuity_by_zone(visits: Iterable[Visit]) -> Dict[str, Dict[str, float]]:
    """Patient count and mean triage level per zone."""
    frame = pd.DataFrame(
        [{"zone": _zone_of(v), "triage_level": v.triage_level} for v in visits],
        columns=["zone", "triage_level"],
    )
    if frame.empty:
        return {}
    grouped = frame.groupby("zone")["triage_level"].agg(["count", "mean"])
    return {
        zone: {"count": int(row["count"]), "mean_triage_level": round(float(row["mean"]), 2)}
        for zone, row in grouped.iterrows()
    }


def compute_ed_metrics(visits: Iterable[Visit], now: datetime) -> EDMetrics:
    """Aggregate department metrics from a snapshot of visits."""
    snapshot = list(visits)
    active = [v for v in snapshot if not v.is_terminal]
    completed = [v for v in snapshot if v.is_terminal]

    metrics = EDMetrics(generated_at=now, census=len(active))

    waits: List[int] = []
    for visit in active:
        metrics.by_status[visit.status.value] = metrics.by_status.get(visit.status.value, 0) + 1
        if visit.status in WAITING_STATUSES:
            metrics.waiting += 1
            waits.append(visit.wait_minutes(now))
        elif visit.status in IN_TREATMENT_STATUSES:
            metrics.in_treatment += 1
        elif visit.status in BOARDING_STATUSES:
            metrics.boarding += 1

        level = AcuityLevel.clamp(visit.triage_level)
        metrics.triage_distribution[level] += 1
        if level <= AcuityLevel.EMERGENT:
            metrics.critical_patients += 1
        metrics.open_alerts += len(visit.open_alerts)
        metrics.breached_bundle_items += len(breached_items(visit, now))

    metrics.average_wait_minutes = _mean(waits)
    metrics.p90_wait_minutes = _percentile(waits, 90)
    metrics.longest_wait_minutes = max(waits, default=0)
    metrics.acuity_by_zone = acuity_by_zone(active)

    metrics.completed_visits = len(completed)
    metrics.average_length_of_stay_minutes = _mean(
        [v.length_of_stay for v in completed if v.length_of_stay is not None]
    )
    metrics.average_door_to_provider_minutes = _mean(
        [v.door_to_provider for v in completed if v.door_to_provider is not None]
    )
    lwbs = sum(1 for v in completed if v.status == VisitStatus.LEFT_WITHOUT_BEING_SEEN)
    admitted = sum(1 for v in completed if v.status == VisitStatus.ADMITTED)
    metrics.ama_count = sum(1 for v in completed if v.status == VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE)
    metrics.lwbs_rate_percent = _rate(lwbs, len(completed))
    metrics.admission_rate_percent = _rate(admitted, len(completed))

    logger.debug(
        "ED metrics computed",
        extra={"census": metrics.census, "waiting": metrics.waiting, "critical": metrics.critical_patients},
    )
    return metrics


# =============================================================================
# TRACKING BOARD
# =============================================================================

@dataclass
class TrackingBoardRow:
    visit_id: str
    patient_id: str
    bed: Optional[str]
    triage_level: int
    status: str
    chief_complaint: str
    wait_minutes: int
    target_minutes: int
    over_target: bool
    physician_id: Optional[str]
    nurse_id: Optional[str]
    open_alerts: int
    flags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _flags(visit: Visit) -> List[str]:
    names = ("is_trauma", "is_stroke", "is_sepsis", "is_stemi", "is_pediatric", "is_geriatric", "is_psychiatric")
    return [name[3:] for name in names if getattr(visit, name)]


def build_tracking_board(visits: Iterable[Visit], now: datetime) -> Dict[str, List[TrackingBoardRow]]:
    """
    Active visits grouped by zone, most acute first.

    over_target is set while a visit has not yet been seen by a provider and
    its wait exceeds the time-to-physician target for its triage level.
    """
    board: Dict[str, List[TrackingBoardRow]] = {}
    for visit in visits:
        if visit.is_terminal:
            continue
        wait = visit.wait_minutes(now)
        target = AcuityLevel.get_target_time(visit.triage_level)
        zone = _zone_of(visit)
        board.setdefault(zone, []).append(TrackingBoardRow(
            visit_id=visit.visit_id,
            patient_id=visit.patient_id,
            bed=None if zone == WAITING_ZONE else visit.location.bed,
            triage_level=visit.triage_level,
            status=visit.status.value,
            chief_complaint=visit.chief_complaint,
            wait_minutes=wait,
            target_minutes=target,
            over_target=visit.first_provider_time is None and wait > target,
            physician_id=visit.assigned_physician_id,
            nurse_id=visit.assigned_nurse_id,
            open_alerts=len(visit.open_alerts),
            flags=_flags(visit),
        ))

    for rows in board.values():
        rows.sort(key=lambda r: (r.triage_level, -r.wait_minutes))
    return board
