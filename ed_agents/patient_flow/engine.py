"""
ED Patient-Flow Agent - Engine

The single entry point for every clinical operation on an ED visit.

================================================================================
OPERATION ANATOMY
================================================================================

    ┌──────────────────────────────────────────────────────────────────────┐
    │ 1. async with visits.transaction(visit_id) as visit:                 │
    │        validate (NotFound / InvalidStateTransition / Validation)     │
    │        mutate the private copy                                       │
    │    ── commit: version + 1 ──                                         │
    ├──────────────────────────────────────────────────────────────────────┤
    │ 2. resource bookkeeping: release beds, cascade activations           │
    ├──────────────────────────────────────────────────────────────────────┤
    │ 3. side effects (pages, order routing), each bounded by a timeout    │
    │    failures → DependencyFailure in EngineResult.warnings             │
    └──────────────────────────────────────────────────────────────────────┘

An exception out of step 1 means the clinical record was NOT updated.
A non-empty warnings list means the record WAS updated but something
downstream (a page, an order route, a bed) did not happen.
================================================================================
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from . import protocols
from .alerts import (
    BundleItemView,
    acknowledge_alert as ack_alert,
    bundle_status,
    complete_bundle_item as complete_item,
    get_alert,
    has_open_alert,
    new_alert,
    overdue_alerts,
    resolve_alert as close_alert,
)
from .allocation import LocationRecommendation, ResourceAllocator, recommend_location, waiting_location
from .collaborators import (
    BedInventory,
    InMemoryBedInventory,
    InMemoryOrderRouter,
    InMemoryPatientRegistry,
    InMemoryStaffDirectory,
    LoggingNotificationTransport,
    NotificationTransport,
    OrderRoutingGateway,
    PatientRegistry,
    StaffDirectory,
)
from .config import AcuityLevel, Settings, settings as default_settings
from .critical_results import critical_findings
from .errors import (
    ConsultationNotFound,
    DependencyFailure,
    InvalidStateTransition,
    NoteNotFound,
    OrderNotFound,
    PatientFlowError,
    ResourceUnavailable,
    ValidationError,
)
from .metrics import EDMetrics, TrackingBoardRow, build_tracking_board, compute_ed_metrics
from .models import (
    ActivationStatus,
    Alert,
    AlertSeverity,
    AlertType,
    ArrivalMode,
    Assessment,
    AssessmentType,
    BundleItemStatus,
    Consultation,
    ConsultationStatus,
    ConsultationUrgency,
    Disposition,
    DispositionType,
    Intervention,
    Location,
    LocationType,
    Note,
    NoteType,
    Order,
    OrderPriority,
    OrderStatus,
    OrderType,
    SepsisScreening,
    StrokeCode,
    TeamMember,
    TraumaActivation,
    TraumaLevel,
    TriageAssessment,
    Visit,
    VisitStatus,
    Vitals,
    minutes_between,
    to_jsonable,
    utcnow,
)
from .repository import (
    Activation,
    ActivationRepository,
    InMemoryActivationRepository,
    InMemoryVisitRepository,
    VisitRepository,
)
from .triage import TriageResult, score_triage, severe_vital_findings
from .workflow import PRE_TRIAGE_STATUSES, apply_status, ensure_mutable, status_for_disposition, transition

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class Page:
    """One outbound notification, sent after commit."""
    recipient: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EngineResult:
    """
    Outcome of a mutating engine operation.

    visit is the committed record. warnings holds non-fatal problems
    (DependencyFailure, ResourceUnavailable) that did not stop the commit.
    """
    visit: Visit
    warnings: List[PatientFlowError] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    triage: Optional[TriageResult] = None
    recommended_location: Optional[LocationRecommendation] = None
    sepsis_screening: Optional[SepsisScreening] = None
    order: Optional[Order] = None
    consultation: Optional[Consultation] = None
    trauma_activation: Optional[TraumaActivation] = None
    stroke_code: Optional[StrokeCode] = None

    @property
    def notification_failed(self) -> bool:
        return any(isinstance(w, DependencyFailure) for w in self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visit": self.visit.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "alerts": to_jsonable(self.alerts),
            "triage": self.triage.to_dict() if self.triage else None,
            "recommended_location": self.recommended_location.to_dict() if self.recommended_location else None,
            "sepsis_screening": self.sepsis_screening.to_dict() if self.sepsis_screening else None,
            "order": to_jsonable(self.order),
            "consultation": to_jsonable(self.consultation),
            "trauma_activation": to_jsonable(self.trauma_activation),
            "stroke_code": to_jsonable(self.stroke_code),
        }


_ACTIVATION_SEQUENCE = (
    ActivationStatus.PENDING,
    ActivationStatus.ARRIVED,
    ActivationStatus.IN_PROGRESS,
    ActivationStatus.COMPLETED,
)

_CONSULTATION_SEQUENCE = (
    ConsultationStatus.REQUESTED,
    ConsultationStatus.ACCEPTED,
    ConsultationStatus.IN_PROGRESS,
    ConsultationStatus.COMPLETED,
)


# =============================================================================
# ENGINE
# =============================================================================

class EmergencyDepartmentEngine:
    """
    Emergency Department patient-flow engine.

    All collaborators default to their in-memory implementations so the engine
    runs standalone; pass real adapters in production.
    """

    def __init__(
        self,
        visits: Optional[VisitRepository] = None,
        activations: Optional[ActivationRepository] = None,
        registry: Optional[PatientRegistry] = None,
        beds: Optional[BedInventory] = None,
        staff: Optional[StaffDirectory] = None,
        order_router: Optional[OrderRoutingGateway] = None,
        notifier: Optional[NotificationTransport] = None,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.visits = visits or InMemoryVisitRepository()
        self.activations = activations or InMemoryActivationRepository()
        self.registry = registry or InMemoryPatientRegistry()
        self.beds = beds or InMemoryBedInventory()
        self.staff = staff or InMemoryStaffDirectory()
        self.order_router = order_router or InMemoryOrderRouter()
        self.notifier = notifier or LoggingNotificationTransport()
        self.allocator = ResourceAllocator(self.beds)
        self.config = config
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock()

    # -------------------------------------------------------------------------
    # Collaborator calls
    # -------------------------------------------------------------------------

    async def _call(
        self,
        dependency: str,
        awaitable: Awaitable[Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, Optional[DependencyFailure]]:
        """Await a collaborator under the configured timeout; never raises."""
        context = context or {}
        timeout = self.config.notification_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout), None
        except asyncio.TimeoutError:
            failure = DependencyFailure(
                f"{dependency} did not respond within {timeout}s",
                dependency=dependency,
                details=context,
            )
        except Exception as exc:
            failure = DependencyFailure(
                f"{dependency} failed: {exc}",
                dependency=dependency,
                details=context,
            )
        logger.warning(f"DEPENDENCY FAILURE: {failure.message}", extra={"dependency": dependency, **context})
        return None, failure

    async def _deliver(self, pages: Sequence[Page]) -> List[PatientFlowError]:
        outcomes = await asyncio.gather(*(
            self._call(
                "notification",
                self.notifier.page(p.recipient, p.message, p.payload),
                {"recipient": p.recipient, "visit_id": p.payload.get("visit_id")},
            )
            for p in pages
        ))
        return [failure for _, failure in outcomes if failure is not None]

    async def _page_team(self, activation: Activation, message: str) -> List[PatientFlowError]:
        """Resolve each role to the on-call member, page them, record identities."""
        team = copy.deepcopy(activation.team_notified)
        payload = {
            "visit_id": activation.visit_id,
            "activation_id": activation.id,
            "message": message,
        }

        async def notify(member: TeamMember) -> List[PatientFlowError]:
            context = {"role": member.role, "visit_id": activation.visit_id}
            found, failure = await self._call("staff_directory", self.staff.resolve_role(member.role), context)
            warnings: List[PatientFlowError] = [failure] if failure else []
            if found:
                member.user_id = found.get("user_id")
                member.name = found.get("name")
            _, failure = await self._call(
                "notification",
                self.notifier.page(member.user_id or member.role, message, {**payload, "role": member.role}),
                context,
            )
            if failure:
                warnings.append(failure)
            return warnings

        results = await asyncio.gather(*(notify(m) for m in team))

        resolved = {m.role: m for m in team if m.user_id}
        if resolved:
            async with self.activations.transaction(activation.id) as stored:
                for member in stored.team_notified:
                    if member.role in resolved:
                        member.user_id = resolved[member.role].user_id
                        member.name = resolved[member.role].name
        return [w for warnings in results for w in warnings]

    async def _close_out(self, visit: Visit) -> None:
        """Free the bed and cancel open activations of a visit that just closed."""
        await self.allocator.release(visit.location)
        now = self._now()
        for activation in await self.activations.for_visit(visit.visit_id):
            if activation.status.is_final:
                continue
            async with self.activations.transaction(activation.id) as act:
                act.status = ActivationStatus.CANCELLED
                act.deactivated_at = now
                act.deactivated_by = "system"
                act.deactivation_reason = f"Visit {visit.status.value}"
            logger.warning(
                f"Activation {activation.id} cancelled: visit closed",
                extra={"visit_id": visit.visit_id, "visit_status": visit.status.value},
            )

    # =========================================================================
    # REGISTRATION & TRIAGE
    # =========================================================================

    async def register_patient(
        self,
        patient_id: str,
        chief_complaint: str,
        arrival_mode: ArrivalMode = ArrivalMode.WALK_IN,
        is_trauma: bool = False,
        trauma_level: Optional[TraumaLevel] = None,
        mechanism: Optional[str] = None,
        arrival_time: Optional[datetime] = None,
    ) -> EngineResult:
        """
        Create a visit in `arrived`.

        Age from the patient registry sets the pediatric / geriatric flags; a
        registry failure is reported as a warning and the flags stay false.
        A trauma arrival with a level activates the trauma team immediately.
        """
        if not patient_id or not patient_id.strip():
            raise ValidationError("patient_id is required", field="patient_id")
        if not chief_complaint or not chief_complaint.strip():
            raise ValidationError("chief_complaint is required", field="chief_complaint")

        now = self._now()
        warnings: List[PatientFlowError] = []
        patient, failure = await self._call(
            "patient_registry", self.registry.get_patient(patient_id), {"patient_id": patient_id}
        )
        if failure:
            warnings.append(failure)

        age = (patient or {}).get("age")
        visit = Visit(
            patient_id=patient_id,
            arrival_mode=arrival_mode,
            chief_complaint=chief_complaint.strip(),
            arrival_time=arrival_time or now,
            is_trauma=is_trauma,
            trauma_level=trauma_level if is_trauma else None,
            is_pediatric=age is not None and age < self.config.pediatric_age_limit,
            is_geriatric=age is not None and age >= self.config.geriatric_age_threshold,
            created_at=now,
            updated_at=now,
        )
        stored = await self.visits.add(visit)
        logger.info(
            f"Patient registered: {stored.visit_id}",
            extra={"visit_id": stored.visit_id, "arrival_mode": arrival_mode.value, "is_trauma": is_trauma},
        )

        if is_trauma and trauma_level is not None:
            activated = await self.activate_trauma_team(
                stored.visit_id, trauma_level, mechanism or "Unknown", activated_by="system"
            )
            activated.warnings[:0] = warnings
            return activated
        return EngineResult(visit=stored, warnings=warnings)

    async def perform_triage(self, visit_id: str, assessment: TriageAssessment) -> EngineResult:
        """
        Score an assessment and apply it to the visit: arrived|waiting_triage → triaged.

        Returns the triage result, the protocol alerts raised and a recommended
        location. The location is not assigned here.
        """
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "perform triage")
            if visit.status not in PRE_TRIAGE_STATUSES:
                raise InvalidStateTransition(
                    f"Visit {visit_id} has already been triaged",
                    current=visit.status.value,
                    requested=VisitStatus.TRIAGED.value,
                )
            if assessment.visit_id != visit_id:
                raise ValidationError("Assessment belongs to another visit", field="visit_id")

            result = score_triage(assessment)
            findings = protocols.detect_protocols(assessment, visit.patient_id, now, self.config)

            visit.triage_level = result.level
            visit.triage_score = result.score
            visit.triage_time = now
            visit.triage_nurse_id = assessment.assessed_by
            visit.vitals.append(assessment.vitals)
            visit.assessments.append(Assessment(
                type=AssessmentType.INITIAL,
                assessed_by=assessment.assessed_by,
                assessed_at=assessment.assessed_at,
                findings="; ".join(result.rationale),
                clinical_impression=assessment.triage_rationale or None,
            ))
            visit.is_stroke = visit.is_stroke or findings.is_stroke
            visit.is_sepsis = visit.is_sepsis or findings.is_sepsis
            visit.is_psychiatric = visit.is_psychiatric or findings.is_psychiatric
            visit.sepsis_screening = findings.sepsis_screening
            visit.alerts.extend(findings.alerts)
            apply_status(visit, VisitStatus.TRIAGED, now, reason=f"triage level {result.level}")
            recommendation = recommend_location(visit)

        if result.level <= AcuityLevel.EMERGENT:
            logger.warning(
                f"HIGH ACUITY TRIAGE: {visit_id}",
                extra={"visit_id": visit_id, "level": result.level, "rationale": list(result.rationale)},
            )
        return EngineResult(
            visit=visit,
            alerts=list(findings.alerts),
            triage=result,
            recommended_location=recommendation,
            sepsis_screening=findings.sepsis_screening,
        )

    async def screen_for_sepsis(
        self,
        visit_id: str,
        screened_by: str,
        vitals: Optional[Vitals] = None,
        wbc_abnormal: Optional[bool] = None,
    ) -> EngineResult:
        """
        Re-screen a visit for sepsis with new vitals or the latest recorded set.

        An already initiated bundle keeps its original deadlines. A positive
        screen raises a sepsis alert unless one is still unresolved.
        """
        now = self._now()
        raised: List[Alert] = []
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "screen for sepsis")
            if vitals is not None:
                visit.vitals.append(vitals)
            current = visit.latest_vitals
            if current is None:
                raise ValidationError("Sepsis screening requires vitals", field="vitals")

            assessment = TriageAssessment(
                visit_id=visit_id,
                assessed_by=screened_by,
                chief_complaint=visit.chief_complaint,
                vitals=current,
                assessed_at=now,
                wbc_abnormal=wbc_abnormal,
            )
            screening = protocols.screen_for_sepsis(assessment, visit.patient_id, now, self.config)
            previous = visit.sepsis_screening
            if previous is not None and previous.bundle_initiated:
                screening.bundle_items = previous.bundle_items

            if screening.sepsis_likely:
                visit.is_sepsis = True
                if not has_open_alert(visit, AlertType.SEPSIS_ALERT):
                    alert = protocols.sepsis_alert(now)
                    visit.alerts.append(alert)
                    raised.append(alert)
            visit.sepsis_screening = screening
            visit.updated_at = now

        return EngineResult(visit=visit, alerts=raised, sepsis_screening=screening)

    # =========================================================================
    # TEAM ACTIVATIONS
    # =========================================================================

    async def activate_stroke_code(
        self,
        visit_id: str,
        activated_by: str,
        last_known_well: datetime,
        symptoms: Optional[List[str]] = None,
        vitals: Optional[Vitals] = None,
    ) -> EngineResult:
        """
        Code stroke: level 1, in treatment, critical alert, stroke team paged.

        A visit entering treatment needs at least one vitals set. `vitals` is
        appended when given; otherwise one must already be on the visit.
        """
        now = self._now()
        if last_known_well > now:
            raise ValidationError("last_known_well cannot be in the future", field="last_known_well")

        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "activate stroke code")
            if visit.stroke_code_id is not None:
                existing = await self.activations.get(visit.stroke_code_id)
                if not existing.status.is_final:
                    raise InvalidStateTransition(
                        f"Stroke code {existing.id} is already active",
                        current=existing.status.value,
                        requested="activate",
                    )

            if vitals is not None:
                visit.vitals.append(vitals)
            if not visit.vitals:
                raise ValidationError("Code stroke requires a vitals set", field="vitals")

            code = StrokeCode(
                visit_id=visit_id,
                last_known_well=last_known_well,
                activated_at=now,
                activated_by=activated_by,
                symptoms=list(symptoms or []),
                team_notified=[TeamMember(role=r, notified_at=now) for r in protocols.STROKE_TEAM_ROLES],
            )
            alert = new_alert(AlertType.STROKE_ALERT, AlertSeverity.CRITICAL, "CODE STROKE ACTIVATED", now, activated_by)
            visit.is_stroke = True
            visit.stroke_code_id = code.id
            visit.triage_level = AcuityLevel.CRITICAL
            if visit.triage_time is None:
                visit.triage_time = now
            visit.alerts.append(alert)
            if visit.status != VisitStatus.IN_TREATMENT:
                apply_status(visit, VisitStatus.IN_TREATMENT, now, reason="code stroke")
            visit.updated_at = now

        await self.activations.add(code)
        logger.warning(
            f"CODE STROKE ACTIVATED: {visit_id}",
            extra={"visit_id": visit_id, "stroke_code_id": code.id, "last_known_well": last_known_well.isoformat()},
        )
        warnings = await self._page_team(code, f"CODE STROKE: visit {visit_id}, LKW {last_known_well.isoformat()}")
        return EngineResult(
            visit=visit,
            warnings=warnings,
            alerts=[alert],
            stroke_code=await self.activations.get(code.id),
        )

    async def activate_trauma_team(
        self,
        visit_id: str,
        level: TraumaLevel,
        mechanism: str,
        activated_by: str,
    ) -> EngineResult:
        """
        Trauma activation: claim a trauma bay, page the team for the level.

        With every bay occupied the activation still proceeds and a
        ResourceUnavailable warning is returned.
        """
        now = self._now()
        warnings: List[PatientFlowError] = []
        released: Optional[Location] = None

        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "activate trauma team")
            if visit.trauma_activation_id is not None:
                existing = await self.activations.get(visit.trauma_activation_id)
                if not existing.status.is_final:
                    raise InvalidStateTransition(
                        f"Trauma activation {existing.id} is already active",
                        current=existing.status.value,
                        requested="activate",
                    )

            activation = TraumaActivation(
                level=level,
                activated_at=now,
                activated_by=activated_by,
                mechanism=mechanism,
                trauma_bay="unassigned",
                visit_id=visit_id,
                patient_id=visit.patient_id,
                team_notified=[TeamMember(role=r, notified_at=now) for r in protocols.trauma_team_roles(level)],
            )
            alert = new_alert(
                AlertType.TRAUMA_ALERT,
                AlertSeverity.CRITICAL,
                f"TRAUMA {level.value.upper()} ACTIVATION: {mechanism}",
                now,
                activated_by,
            )
            visit.is_trauma = True
            visit.trauma_level = level
            visit.trauma_activation_id = activation.id
            visit.triage_level = protocols.trauma_triage_level(level)
            visit.alerts.append(alert)
            visit.updated_at = now

            bay = await self.beds.claim_bed("trauma", LocationType.TRAUMA_BAY, visit_id)
            if bay is None:
                warnings.append(ResourceUnavailable("No trauma bay available", zone="trauma"))
                logger.warning("No trauma bay available", extra={"visit_id": visit_id})
            else:
                activation.trauma_bay = bay
                if visit.location is not None and not visit.location.is_waiting:
                    released = visit.location
                visit.location = Location(zone="trauma", bed=bay, type=LocationType.TRAUMA_BAY, assigned_at=now)

        await self.activations.add(activation)
        await self.allocator.release(released)
        logger.warning(
            f"TRAUMA TEAM ACTIVATED: {visit_id}",
            extra={"visit_id": visit_id, "level": level.value, "trauma_bay": activation.trauma_bay},
        )
        warnings.extend(await self._page_team(
            activation, f"TRAUMA {level.value.upper()}: {mechanism} → {activation.trauma_bay}"
        ))
        return EngineResult(
            visit=visit,
            warnings=warnings,
            alerts=[alert],
            trauma_activation=await self.activations.get(activation.id),
        )

    async def update_activation_status(
        self,
        activation_id: str,
        status: ActivationStatus,
        updated_by: str,
        reason: Optional[str] = None,
    ) -> Activation:
        """pending → arrived → in_progress → completed, or any open state → cancelled."""
        now = self._now()
        async with self.activations.transaction(activation_id) as activation:
            current = activation.status
            if current.is_final:
                raise InvalidStateTransition(
                    f"Activation {activation_id} is already {current.value}",
                    current=current.value,
                    requested=status.value,
                )
            if status != ActivationStatus.CANCELLED:
                expected = _ACTIVATION_SEQUENCE[_ACTIVATION_SEQUENCE.index(current) + 1]
                if status != expected:
                    raise InvalidStateTransition(
                        f"Activation must move {current.value} -> {expected.value}",
                        current=current.value,
                        requested=status.value,
                    )
            activation.status = status
            if status == ActivationStatus.ARRIVED:
                for member in activation.team_notified:
                    member.arrived_at = member.arrived_at or now
            if status.is_final:
                activation.deactivated_at = now
                activation.deactivated_by = updated_by
                activation.deactivation_reason = reason

        logger.info(
            f"Activation {activation_id}: {current.value} -> {status.value}",
            extra={"visit_id": activation.visit_id},
        )
        return activation

    async def get_activation(self, activation_id: str) -> Activation:
        return await self.activations.get(activation_id)

    # =========================================================================
    # LOCATION & STAFF
    # =========================================================================

    async def assign_bed(self, visit_id: str, location: Optional[Location] = None) -> EngineResult:
        """
        Put a visit in a bed.

        With an explicit location the bed is occupied directly. Otherwise the
        recommended zone is searched; a full zone leaves the visit queued in
        waiting_bed and returns a ResourceUnavailable warning.
        """
        now = self._now()
        warnings: List[PatientFlowError] = []
        released: Optional[Location] = None
        recommendation = None

        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "assign bed")
            previous = visit.location

            if location is not None:
                if not await self.allocator.occupy(visit, location):
                    raise ResourceUnavailable(
                        f"Bed {location.bed} in {location.zone} is occupied",
                        zone=location.zone,
                        details={"bed": location.bed},
                    )
                claimed: Optional[Location] = location
            else:
                recommendation = recommend_location(visit)
                claimed = await self.allocator.claim(visit, recommendation, now)

            if claimed is None:
                warnings.append(ResourceUnavailable(
                    f"No {recommendation.type.value} available in {recommendation.zone}",
                    zone=recommendation.zone,
                ))
                if previous is None or previous.is_waiting:
                    visit.location = waiting_location(recommendation.zone, now)
                    if visit.status == VisitStatus.TRIAGED:
                        apply_status(visit, VisitStatus.WAITING_BED, now, reason="no bed available")
            else:
                if previous is not None and (previous.zone, previous.bed) != (claimed.zone, claimed.bed):
                    released = previous
                visit.location = claimed
                if visit.status == VisitStatus.WAITING_BED:
                    apply_status(visit, VisitStatus.IN_TREATMENT, now, reason=f"bed {claimed.bed}")
            visit.updated_at = now

        await self.allocator.release(released)
        return EngineResult(visit=visit, warnings=warnings, recommended_location=recommendation)

    async def assign_provider(
        self,
        visit_id: str,
        physician_id: Optional[str] = None,
        nurse_id: Optional[str] = None,
    ) -> EngineResult:
        """Assign physician and/or nurse; the first physician sets door-to-provider."""
        if not physician_id and not nurse_id:
            raise ValidationError("Provide a physician_id or a nurse_id", field="physician_id")

        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "assign provider")
            if physician_id:
                visit.assigned_physician_id = physician_id
                if visit.first_provider_time is None:
                    visit.first_provider_time = now
                    visit.door_to_provider = minutes_between(visit.arrival_time, now)
            if nurse_id:
                visit.assigned_nurse_id = nurse_id
            visit.updated_at = now
        return EngineResult(visit=visit)

    # =========================================================================
    # CLINICAL RECORD
    # =========================================================================

    async def update_status(self, visit_id: str, status: VisitStatus, updated_by: str, reason: str = "") -> EngineResult:
        """Explicit workflow move, checked against the transition table."""
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            transition(visit, status, now, reason=reason or f"requested by {updated_by}")
            if status == VisitStatus.DISCHARGED and visit.disposition is None:
                visit.disposition = Disposition(type=DispositionType.DISCHARGE_HOME, decided_by=updated_by, decided_at=now)

        if visit.is_terminal:
            await self._close_out(visit)
        return EngineResult(visit=visit)

    async def record_vitals(self, visit_id: str, vitals: Vitals) -> EngineResult:
        """Append a vitals set; a vital in its severe bracket raises an abnormal_vital alert."""
        now = self._now()
        raised: List[Alert] = []
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "record vitals")
            visit.vitals.append(vitals)
            findings = severe_vital_findings(vitals)
            if vitals.gcs_total is not None and vitals.gcs_total <= 8:
                findings.append(f"gcs={vitals.gcs_total}")
            if findings:
                alert = new_alert(
                    AlertType.ABNORMAL_VITAL,
                    AlertSeverity.CRITICAL,
                    f"Abnormal vitals: {', '.join(findings)}",
                    now,
                    vitals.recorded_by,
                )
                visit.alerts.append(alert)
                raised.append(alert)
            visit.updated_at = now

        if raised:
            logger.warning(f"ABNORMAL VITALS: {visit_id}", extra={"visit_id": visit_id, "findings": findings})
        return EngineResult(visit=visit, alerts=raised)

    async def add_note(
        self,
        visit_id: str,
        note_type: NoteType,
        author_id: str,
        author_name: str,
        author_role: str,
        content: str,
    ) -> EngineResult:
        if not content or not content.strip():
            raise ValidationError("Note content is required", field="content")
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "add note")
            visit.notes.append(Note(
                type=note_type,
                author_id=author_id,
                author_name=author_name,
                author_role=author_role,
                content=content,
                created_at=now,
            ))
            visit.updated_at = now
        return EngineResult(visit=visit)

    async def add_note_addendum(self, visit_id: str, note_id: str, addendum: str) -> EngineResult:
        """Notes are immutable; an addendum may be attached once."""
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "amend note")
            note = next((n for n in visit.notes if n.id == note_id), None)
            if note is None:
                raise NoteNotFound(note_id, details={"visit_id": visit_id})
            if note.addendum is not None:
                raise InvalidStateTransition(f"Note {note_id} already has an addendum", current="amended", requested="amend")
            note.addendum = addendum
            note.addendum_at = now
            visit.updated_at = now
        return EngineResult(visit=visit)

    async def add_intervention(
        self,
        visit_id: str,
        intervention_type: str,
        performed_by: str,
        description: str,
        outcome: Optional[str] = None,
        complications: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> EngineResult:
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "add intervention")
            visit.interventions.append(Intervention(
                type=intervention_type,
                performed_by=performed_by,
                performed_at=now,
                description=description,
                outcome=outcome,
                complications=complications,
                duration_minutes=duration_minutes,
            ))
            visit.updated_at = now
        return EngineResult(visit=visit)

    async def request_consultation(
        self,
        visit_id: str,
        specialty: str,
        requested_by: str,
        reason: str,
        urgency: ConsultationUrgency = ConsultationUrgency.ROUTINE,
    ) -> EngineResult:
        """Request a specialist; a visit in treatment moves to awaiting_consult."""
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "request consultation")
            consultation = Consultation(
                specialty=specialty,
                requested_by=requested_by,
                requested_at=now,
                reason=reason,
                urgency=urgency,
            )
            visit.consultations.append(consultation)
            if visit.status == VisitStatus.IN_TREATMENT:
                apply_status(visit, VisitStatus.AWAITING_CONSULT, now, reason=f"{specialty} consult")
            visit.updated_at = now

        pages = [Page(
            recipient=f"consult_{specialty}",
            message=f"{urgency.value.upper()} consult requested: {reason}",
            payload={"visit_id": visit_id, "consultation_id": consultation.id},
        )]
        warnings = await self._deliver(pages)
        return EngineResult(visit=visit, warnings=warnings, consultation=consultation)

    async def update_consultation(
        self,
        visit_id: str,
        consultation_id: str,
        status: ConsultationStatus,
        consultant_id: Optional[str] = None,
        consultant_name: Optional[str] = None,
        findings: Optional[str] = None,
        recommendations: Optional[str] = None,
    ) -> EngineResult:
        """
        Advance a consultation. When the last open consultation closes, a visit
        in awaiting_consult returns to in_treatment.
        """
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "update consultation")
            consultation = visit.find_consultation(consultation_id)
            if consultation is None:
                raise ConsultationNotFound(consultation_id, details={"visit_id": visit_id})
            current = consultation.status
            if not consultation.is_open:
                raise InvalidStateTransition(
                    f"Consultation {consultation_id} is already {current.value}",
                    current=current.value,
                    requested=status.value,
                )
            if status != ConsultationStatus.CANCELLED and (
                _CONSULTATION_SEQUENCE.index(status) <= _CONSULTATION_SEQUENCE.index(current)
            ):
                raise InvalidStateTransition(
                    f"Consultation cannot move {current.value} -> {status.value}",
                    current=current.value,
                    requested=status.value,
                )

            consultation.status = status
            if consultant_id:
                consultation.consultant_id = consultant_id
            if consultant_name:
                consultation.consultant_name = consultant_name
            if findings is not None:
                consultation.findings = findings
            if recommendations is not None:
                consultation.recommendations = recommendations
            if current == ConsultationStatus.REQUESTED and status != ConsultationStatus.CANCELLED:
                consultation.response_time_minutes = minutes_between(consultation.requested_at, now)
            if status == ConsultationStatus.COMPLETED:
                consultation.completed_at = now

            if visit.status == VisitStatus.AWAITING_CONSULT and not any(c.is_open for c in visit.consultations):
                apply_status(visit, VisitStatus.IN_TREATMENT, now, reason="consultations closed")
            visit.updated_at = now
        return EngineResult(visit=visit, consultation=consultation)

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def place_order(
        self,
        visit_id: str,
        order_type: OrderType,
        ordered_by: str,
        description: str,
        priority: OrderPriority = OrderPriority.ROUTINE,
        details: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """Record an order and hand it to the routing gateway."""
        if not description or not description.strip():
            raise ValidationError("Order description is required", field="description")

        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "place order")
            order = Order(
                type=order_type,
                ordered_by=ordered_by,
                ordered_at=now,
                description=description,
                priority=priority,
                details=dict(details or {}),
            )
            visit.orders.append(order)
            visit.updated_at = now

        _, failure = await self._call(
            "order_routing",
            self.order_router.route_order(visit_id, copy.deepcopy(order)),
            {"visit_id": visit_id, "order_id": order.id},
        )
        return EngineResult(visit=visit, warnings=[failure] if failure else [], order=order)

    async def update_order_result(
        self,
        visit_id: str,
        order_id: str,
        status: OrderStatus = OrderStatus.COMPLETED,
        result: Optional[str] = None,
        completed_by: Optional[str] = None,
    ) -> EngineResult:
        """
        Advance an order; a completed result is checked for critical values.

        A critical value raises a critical_result alert and pages the assigned
        physician (or the on-call ED physician when none is assigned).
        """
        now = self._now()
        raised: List[Alert] = []
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "update order")
            order = visit.find_order(order_id)
            if order is None:
                raise OrderNotFound(order_id, details={"visit_id": visit_id})
            if order.is_final:
                raise InvalidStateTransition(
                    f"Order {order_id} is already {order.status.value}",
                    current=order.status.value,
                    requested=status.value,
                )
            if status == OrderStatus.PENDING or status == order.status:
                raise InvalidStateTransition(
                    f"Order cannot move {order.status.value} -> {status.value}",
                    current=order.status.value,
                    requested=status.value,
                )
            if result is not None and status != OrderStatus.COMPLETED:
                raise ValidationError("A result can only be attached when completing an order", field="result")

            order.status = status
            if status == OrderStatus.COMPLETED:
                order.result = result
                order.completed_at = now
                order.completed_by = completed_by
                analytes = critical_findings(result or "", order.description)
                if analytes:
                    order.is_critical = True
                    alert = new_alert(
                        AlertType.CRITICAL_RESULT,
                        AlertSeverity.CRITICAL,
                        f"CRITICAL RESULT: {order.description}: {result}",
                        now,
                        completed_by,
                    )
                    visit.alerts.append(alert)
                    raised.append(alert)
            visit.updated_at = now

        warnings: List[PatientFlowError] = []
        if raised:
            logger.warning(
                f"CRITICAL RESULT: {visit_id}",
                extra={"visit_id": visit_id, "order_id": order_id, "analytes": analytes},
            )
            recipient = visit.assigned_physician_id or "emergency_physician"
            warnings = await self._deliver([Page(
                recipient=recipient,
                message=raised[0].message,
                payload={"visit_id": visit_id, "order_id": order_id, "alert_id": raised[0].id},
            )])
        return EngineResult(visit=visit, warnings=warnings, alerts=raised, order=order)

    # =========================================================================
    # ALERTS & BUNDLE
    # =========================================================================

    async def acknowledge_alert(self, visit_id: str, alert_id: str, acknowledged_by: str) -> EngineResult:
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "acknowledge alert")
            alert = ack_alert(get_alert(visit, alert_id), acknowledged_by, now)
            visit.updated_at = now
        return EngineResult(visit=visit, alerts=[alert])

    async def resolve_alert(self, visit_id: str, alert_id: str, resolved_by: str) -> EngineResult:
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "resolve alert")
            alert = close_alert(get_alert(visit, alert_id), resolved_by, now)
            visit.updated_at = now
        return EngineResult(visit=visit, alerts=[alert])

    async def complete_bundle_item(
        self,
        visit_id: str,
        item_index: int,
        status: BundleItemStatus,
        completed_by: str,
    ) -> EngineResult:
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "complete bundle item")
            complete_item(visit, item_index, status, completed_by, now)
            visit.updated_at = now
        return EngineResult(visit=visit, sepsis_screening=visit.sepsis_screening)

    async def get_bundle_status(self, visit_id: str, now: Optional[datetime] = None) -> List[BundleItemView]:
        visit = await self.visits.get(visit_id)
        return bundle_status(visit, now or self._now())

    async def get_overdue_alerts(self, now: Optional[datetime] = None) -> List[Tuple[str, Alert]]:
        """(visit_id, alert) for every open alert past its acknowledgement SLA."""
        now = now or self._now()
        return [
            (visit.visit_id, alert)
            for visit in await self.visits.list_active()
            for alert in overdue_alerts(visit, now, self.config)
        ]

    # =========================================================================
    # DISPOSITION & DISCHARGE
    # =========================================================================

    async def set_disposition(self, visit_id: str, disposition: Disposition) -> EngineResult:
        """
        Record the disposition decision and move to the matching status.

        Only LWBS, AMA and deceased may be recorded before triage.
        """
        now = self._now()
        target = status_for_disposition(disposition.type)
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "set disposition")
            if not target.is_terminal and (visit.status in PRE_TRIAGE_STATUSES or not visit.vitals):
                raise InvalidStateTransition(
                    f"Visit {visit_id} has not been triaged",
                    current=visit.status.value,
                    requested=target.value,
                    details={"visit_id": visit_id},
                )
            visit.disposition = copy.deepcopy(disposition)
            if visit.status != target:
                apply_status(visit, target, now, reason=f"disposition {disposition.type.value}")
            visit.updated_at = now

        if visit.is_terminal:
            await self._close_out(visit)

        pages: List[Page] = []
        payload = {"visit_id": visit_id, "disposition": disposition.type.value}
        if target == VisitStatus.AWAITING_ADMISSION:
            pages.append(Page(
                recipient="bed_management",
                message=f"Admission bed request: {disposition.admitting_service or 'unspecified service'}",
                payload={**payload, "bed_request": disposition.bed_request},
            ))
        elif disposition.type == DispositionType.TRANSFER:
            pages.append(Page(
                recipient="transfer_center",
                message=f"Transfer to {disposition.transfer_to or 'unspecified facility'}",
                payload={**payload, "reason": disposition.transfer_reason},
            ))
        warnings = await self._deliver(pages) if pages else []
        return EngineResult(visit=visit, warnings=warnings)

    async def discharge_patient(
        self,
        visit_id: str,
        discharged_by: str,
        discharge_instructions: Optional[str] = None,
    ) -> EngineResult:
        """
        Close the visit as discharged from any non-terminal state.

        length_of_stay is the whole minutes from arrival to discharge. A
        discharge_home disposition is recorded when none was set.
        """
        now = self._now()
        async with self.visits.transaction(visit_id) as visit:
            ensure_mutable(visit, "discharge")
            if visit.disposition is None:
                visit.disposition = Disposition(
                    type=DispositionType.DISCHARGE_HOME,
                    decided_by=discharged_by,
                    decided_at=now,
                    discharge_instructions=discharge_instructions,
                )
            elif discharge_instructions:
                visit.disposition.discharge_instructions = discharge_instructions
            visit.discharge_time = now
            visit.length_of_stay = minutes_between(visit.arrival_time, now)
            apply_status(visit, VisitStatus.DISCHARGED, now, reason=f"discharged by {discharged_by}")

        await self._close_out(visit)
        return EngineResult(visit=visit)

    # =========================================================================
    # READ MODELS
    # =========================================================================

    async def get_visit(self, visit_id: str) -> Visit:
        return await self.visits.get(visit_id)

    async def get_ed_metrics(self, now: Optional[datetime] = None) -> EDMetrics:
        return compute_ed_metrics(await self.visits.list_visits(), now or self._now())

    async def get_patient_tracking_board(self, now: Optional[datetime] = None) -> Dict[str, List[TrackingBoardRow]]:
        return build_tracking_board(await self.visits.list_active(), now or self._now())

    async def get_available_beds(self) -> Dict[str, List[str]]:
        return await self.beds.get_available_beds()
