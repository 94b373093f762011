"""
ED Patient-Flow Agent - Domain Model

Data classes for a single Emergency Department visit and everything the visit
owns: vitals, assessments, orders, consultations, alerts, notes, the sepsis
bundle and the disposition decision.

================================================================================
OWNERSHIP & MUTABILITY
================================================================================

    Visit ─┬─ vitals ............ append-only, each entry frozen
           ├─ assessments ....... append-only
           ├─ orders ............ pending → in_progress → completed | cancelled
           ├─ consultations ..... requested → accepted → in_progress → completed | cancelled
           ├─ alerts ............ triggered → (acknowledged) → resolved
           ├─ notes ............. append-only, addendum allowed
           ├─ sepsis_screening .. bundle items pending → completed | not_applicable
           └─ disposition ....... set once the clinical decision is made

Trauma activations and stroke codes are separate records linked by visit_id
and live in their own repository.

The engine never mutates a stored Visit in place: it works on a private copy
inside a repository transaction and commits the copy atomically.
================================================================================
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock of the engine."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, never negative."""
    return max(0, int((end - start).total_seconds() // 60))


# =============================================================================
# ENUMERATIONS
# =============================================================================

class ArrivalMode(str, Enum):
    AMBULATORY = "ambulatory"
    AMBULANCE = "ambulance"
    HELICOPTER = "helicopter"
    POLICE = "police"
    PRIVATE_VEHICLE = "private_vehicle"
    TRANSFER = "transfer"
    WALK_IN = "walk_in"


class VisitStatus(str, Enum):
    """
    Lifecycle of an ED visit.

    The last six members are terminal: once reached, the visit is frozen.
    """
    ARRIVED = "arrived"
    WAITING_TRIAGE = "waiting_triage"
    TRIAGED = "triaged"
    WAITING_BED = "waiting_bed"
    IN_TREATMENT = "in_treatment"
    AWAITING_RESULTS = "awaiting_results"
    AWAITING_CONSULT = "awaiting_consult"
    AWAITING_ADMISSION = "awaiting_admission"
    AWAITING_DISCHARGE = "awaiting_discharge"
    DISCHARGED = "discharged"
    ADMITTED = "admitted"
    TRANSFERRED = "transferred"
    LEFT_WITHOUT_BEING_SEEN = "left_without_being_seen"
    LEFT_AGAINST_MEDICAL_ADVICE = "left_against_medical_advice"
    DECEASED = "deceased"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    VisitStatus.DISCHARGED,
    VisitStatus.ADMITTED,
    VisitStatus.TRANSFERRED,
    VisitStatus.LEFT_WITHOUT_BEING_SEEN,
    VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE,
    VisitStatus.DECEASED,
})


class TraumaLevel(str, Enum):
    ALPHA = "alpha"
    BRAVO = "bravo"
    CHARLIE = "charlie"
    MINOR = "minor"


class LocationType(str, Enum):
    BED = "bed"
    CHAIR = "chair"
    HALLWAY = "hallway"
    TRAUMA_BAY = "trauma_bay"
    RESUSCITATION = "resuscitation"
    ISOLATION = "isolation"


class AssessmentType(str, Enum):
    INITIAL = "initial"
    NURSING = "nursing"
    PHYSICIAN = "physician"
    REASSESSMENT = "reassessment"
    PAIN = "pain"
    FALL_RISK = "fall_risk"
    SUICIDE_RISK = "suicide_risk"
    DISCHARGE = "discharge"


class OrderType(str, Enum):
    LAB = "lab"
    IMAGING = "imaging"
    MEDICATION = "medication"
    PROCEDURE = "procedure"
    IV_FLUIDS = "iv_fluids"
    DIET = "diet"
    ACTIVITY = "activity"
    NURSING = "nursing"
    CONSULT = "consult"
    DISCHARGE = "discharge"


class OrderPriority(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"
    ASAP = "asap"


class OrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationStatus(str, Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationUrgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENT = "emergent"


class NoteType(str, Enum):
    PROGRESS = "progress"
    NURSING = "nursing"
    PHYSICIAN = "physician"
    PROCEDURE = "procedure"
    COMMUNICATION = "communication"


class AlertType(str, Enum):
    ABNORMAL_VITAL = "abnormal_vital"
    CRITICAL_RESULT = "critical_result"
    WAIT_TIME = "wait_time"
    BED_ASSIGNMENT = "bed_assignment"
    STROKE_ALERT = "stroke_alert"
    STEMI_ALERT = "stemi_alert"
    TRAUMA_ALERT = "trauma_alert"
    SEPSIS_ALERT = "sepsis_alert"
    CODE_BLUE = "code_blue"
    RAPID_RESPONSE = "rapid_response"
    FALL_RISK = "fall_risk"
    ELOPEMENT_RISK = "elopement_risk"
    MEDICATION_DUE = "medication_due"
    REASSESSMENT_DUE = "reassessment_due"
    BOARDING_TIME = "boarding_time"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DispositionType(str, Enum):
    DISCHARGE_HOME = "discharge_home"
    DISCHARGE_WITH_SERVICES = "discharge_with_services"
    ADMIT_INPATIENT = "admit_inpatient"
    ADMIT_OBSERVATION = "admit_observation"
    ADMIT_ICU = "admit_icu"
    TRANSFER = "transfer"
    AMA = "ama"
    LWBS = "lwbs"
    DECEASED = "deceased"
    HOSPICE = "hospice"


class BundleItemStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NOT_APPLICABLE = "not_applicable"


class ActivationStatus(str, Enum):
    PENDING = "pending"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (ActivationStatus.COMPLETED, ActivationStatus.CANCELLED)


class StrokeType(str, Enum):
    ISCHEMIC = "ischemic"
    HEMORRHAGIC = "hemorrhagic"
    TIA = "tia"
    UNKNOWN = "unknown"


class FactorImpact(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    NEUTRAL = "neutral"


# =============================================================================
# SERIALISATION
# =============================================================================

def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses, enums and datetimes to JSON types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return value


# =============================================================================
# OBSERVATIONS
# =============================================================================

@dataclass(frozen=True)
class GlasgowComaScale:
    """Glasgow Coma Scale; total ranges 3 (deep coma) to 15 (fully alert)."""
    total: int
    eye: Optional[int] = None
    verbal: Optional[int] = None
    motor: Optional[int] = None


@dataclass(frozen=True)
class Vitals:
    """
    Immutable vital-sign snapshot.

    Temperature is stored in Celsius. A value of None means "not measured",
    which is different from a measured zero (pulseless / apneic).
    """
    recorded_by: str
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)
    temperature: Optional[float] = None
    heart_rate: Optional[float] = None
    systolic_bp: Optional[float] = None
    diastolic_bp: Optional[float] = None
    respiratory_rate: Optional[float] = None
    oxygen_saturation: Optional[float] = None
    supplemental_oxygen: Optional[str] = None
    pain_score: Optional[int] = None
    gcs: Optional[GlasgowComaScale] = None
    blood_glucose: Optional[float] = None
    alerts: Tuple[str, ...] = ()

    @property
    def gcs_total(self) -> Optional[int]:
        return self.gcs.total if self.gcs is not None else None


@dataclass
class AcuityChange:
    from_level: int
    to_level: int
    reason: str


@dataclass
class Assessment:
    type: AssessmentType
    assessed_by: str
    assessed_at: datetime
    findings: str
    id: str = field(default_factory=new_id)
    clinical_impression: Optional[str] = None
    differential_diagnosis: List[str] = field(default_factory=list)
    working_diagnosis: Optional[str] = None
    icd_codes: List[str] = field(default_factory=list)
    acuity_change: Optional[AcuityChange] = None


@dataclass(frozen=True)
class AcuityFactor:
    """A clinician-weighted modifier applied at the end of triage scoring."""
    factor: str
    impact: FactorImpact
    points: int
    rationale: str = ""


@dataclass(frozen=True)
class PainAssessment:
    intensity: int
    location: Tuple[str, ...] = ()
    quality: Tuple[str, ...] = ()
    onset: str = ""
    duration: str = ""
    radiation: str = ""


@dataclass(frozen=True)
class TriageAssessment:
    """
    Everything the triage nurse captured for one visit.

    Frozen so the scoring function can be called repeatedly on the same input
    without any chance of it being altered in between.
    """
    visit_id: str
    assessed_by: str
    chief_complaint: str
    vitals: Optional[Vitals]
    assessed_at: datetime = field(default_factory=utcnow)
    history_of_present_illness: str = ""
    allergies: Tuple[str, ...] = ()
    medications: Tuple[str, ...] = ()
    past_medical_history: Tuple[str, ...] = ()
    immunocompromised: bool = False
    pregnant: bool = False
    pregnancy_weeks: Optional[int] = None
    pain_assessment: Optional[PainAssessment] = None
    acuity_factors: Tuple[AcuityFactor, ...] = ()
    triage_rationale: str = ""
    isolation_required: bool = False
    isolation_type: Optional[str] = None
    wbc_abnormal: Optional[bool] = None

    @property
    def pain_score(self) -> Optional[int]:
        if self.vitals is not None and self.vitals.pain_score is not None:
            return self.vitals.pain_score
        if self.pain_assessment is not None:
            return self.pain_assessment.intensity
        return None


# =============================================================================
# LOCATION
# =============================================================================

@dataclass
class Location:
    zone: str
    bed: str
    type: LocationType
    assigned_at: datetime
    room: Optional[str] = None

    @property
    def is_waiting(self) -> bool:
        return self.bed == "waiting"


# =============================================================================
# ORDERS, INTERVENTIONS, CONSULTATIONS, NOTES
# =============================================================================

@dataclass
class Order:
    """A lab / imaging / medication / procedure request."""
    type: OrderType
    ordered_by: str
    ordered_at: datetime
    description: str
    priority: OrderPriority = OrderPriority.ROUTINE
    status: OrderStatus = OrderStatus.PENDING
    id: str = field(default_factory=new_id)
    details: Dict[str, Any] = field(default_factory=dict)
    result: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    is_critical: bool = False

    @property
    def is_final(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


@dataclass
class Intervention:
    type: str
    performed_by: str
    performed_at: datetime
    description: str
    id: str = field(default_factory=new_id)
    outcome: Optional[str] = None
    complications: Optional[str] = None
    duration_minutes: Optional[int] = None


@dataclass
class Consultation:
    specialty: str
    requested_by: str
    requested_at: datetime
    reason: str
    urgency: ConsultationUrgency = ConsultationUrgency.ROUTINE
    status: ConsultationStatus = ConsultationStatus.REQUESTED
    id: str = field(default_factory=new_id)
    consultant_id: Optional[str] = None
    consultant_name: Optional[str] = None
    response_time_minutes: Optional[int] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in (ConsultationStatus.COMPLETED, ConsultationStatus.CANCELLED)


@dataclass
class Note:
    type: NoteType
    author_id: str
    author_name: str
    author_role: str
    content: str
    created_at: datetime
    id: str = field(default_factory=new_id)
    addendum: Optional[str] = None
    addendum_at: Optional[datetime] = None


# =============================================================================
# ALERTS
# =============================================================================

@dataclass
class Alert:
    """
    One triggered clinical condition.

    Lifecycle: triggered -> (acknowledged) -> resolved. Resolution without a
    prior acknowledgement is only legal for auto-resolved alerts.
    """
    type: AlertType
    severity: AlertSeverity
    message: str
    triggered_at: datetime
    id: str = field(default_factory=new_id)
    triggered_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    auto_resolved: bool = False

    @property
    def is_open(self) -> bool:
        return self.acknowledged_at is None and self.resolved_at is None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


# =============================================================================
# SEPSIS
# =============================================================================

@dataclass
class SepsisBundleItem:
    item: str
    due_time: datetime
    status: BundleItemStatus = BundleItemStatus.PENDING
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    def is_breached(self, now: datetime) -> bool:
        """Derived on read; never stored."""
        return self.status == BundleItemStatus.PENDING and now > self.due_time


@dataclass
class SirsCriteria:
    temperature: bool = False       # > 38 or < 36 °C
    heart_rate: bool = False        # > 90
    respiratory_rate: bool = False  # > 20
    wbc: bool = False               # > 12000 or < 4000 or > 10% bands

    @property
    def count(self) -> int:
        return sum((self.temperature, self.heart_rate, self.respiratory_rate, self.wbc))


@dataclass
class QsofaCriteria:
    respiratory_rate: bool = False   # >= 22
    altered_mentation: bool = False  # GCS < 15
    systolic_bp: bool = False        # <= 100

    @property
    def score(self) -> int:
        return sum((self.respiratory_rate, self.altered_mentation, self.systolic_bp))


@dataclass
class SepsisScreening:
    visit_id: str
    patient_id: str
    screened_by: str
    screened_at: datetime
    sirs_criteria: SirsCriteria
    qsofa_criteria: QsofaCriteria
    suspected_infection: bool
    sepsis_likely: bool
    septic_shock: bool = False
    infection_source: Optional[str] = None
    bundle_items: List[SepsisBundleItem] = field(default_factory=list)

    @property
    def sirs_count(self) -> int:
        return self.sirs_criteria.count

    @property
    def sirs_positive(self) -> bool:
        return self.sirs_criteria.count >= 2

    @property
    def qsofa_score(self) -> int:
        return self.qsofa_criteria.score

    @property
    def bundle_initiated(self) -> bool:
        return bool(self.bundle_items)

    def to_dict(self) -> Dict[str, Any]:
        data = to_jsonable(self)
        data.update({
            "sirs_count": self.sirs_count,
            "sirs_positive": self.sirs_positive,
            "qsofa_score": self.qsofa_score,
            "bundle_initiated": self.bundle_initiated,
        })
        return data


# =============================================================================
# DISPOSITION
# =============================================================================

@dataclass
class FollowUpInstruction:
    provider: str
    timeframe: str
    reason: str
    specialty: Optional[str] = None
    scheduled: bool = False
    appointment_id: Optional[str] = None


@dataclass
class Disposition:
    type: DispositionType
    decided_by: str
    decided_at: datetime
    destination: Optional[str] = None
    admitting_service: Optional[str] = None
    admitting_physician: Optional[str] = None
    bed_request: Optional[str] = None
    transfer_to: Optional[str] = None
    transfer_reason: Optional[str] = None
    discharge_instructions: Optional[str] = None
    follow_up: List[FollowUpInstruction] = field(default_factory=list)
    prescriptions: List[str] = field(default_factory=list)
    return_precautions: List[str] = field(default_factory=list)


# =============================================================================
# TEAM ACTIVATIONS
# =============================================================================

@dataclass
class TeamMember:
    role: str
    notified_at: datetime
    user_id: Optional[str] = None
    name: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None


@dataclass
class TraumaActivation:
    level: TraumaLevel
    activated_at: datetime
    activated_by: str
    mechanism: str
    trauma_bay: str
    visit_id: str
    patient_id: str
    id: str = field(default_factory=new_id)
    team_notified: List[TeamMember] = field(default_factory=list)
    status: ActivationStatus = ActivationStatus.PENDING
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    deactivation_reason: Optional[str] = None


@dataclass
class StrokeCode:
    visit_id: str
    last_known_well: datetime
    activated_at: datetime
    activated_by: str
    id: str = field(default_factory=new_id)
    type: StrokeType = StrokeType.UNKNOWN
    symptoms: List[str] = field(default_factory=list)
    nihss_score: Optional[int] = None
    ct_completed: bool = False
    tpa_eligible: bool = False
    tpa_administered: bool = False
    thrombectomy_candidate: bool = False
    team_notified: List[TeamMember] = field(default_factory=list)
    status: ActivationStatus = ActivationStatus.PENDING
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    deactivation_reason: Optional[str] = None


# =============================================================================
# VISIT
# =============================================================================

@dataclass
class Visit:
    """
    One Emergency Department encounter (EDPatient).

    triage_level defaults to 3 until triage is performed; triage_score stays 0.
    """
    patient_id: str
    arrival_mode: ArrivalMode
    chief_complaint: str
    arrival_time: datetime
    visit_id: str = field(default_factory=new_id)
    triage_level: int = 3
    triage_score: int = 0
    triage_time: Optional[datetime] = None
    triage_nurse_id: Optional[str] = None
    status: VisitStatus = VisitStatus.ARRIVED
    location: Optional[Location] = None
    assigned_physician_id: Optional[str] = None
    assigned_nurse_id: Optional[str] = None

    # Protocol & population flags
    is_trauma: bool = False
    trauma_level: Optional[TraumaLevel] = None
    is_stroke: bool = False
    is_sepsis: bool = False
    is_stemi: bool = False
    is_pediatric: bool = False
    is_geriatric: bool = False
    is_psychiatric: bool = False
    trauma_activation_id: Optional[str] = None
    stroke_code_id: Optional[str] = None

    # Owned collections
    vitals: List[Vitals] = field(default_factory=list)
    assessments: List[Assessment] = field(default_factory=list)
    orders: List[Order] = field(default_factory=list)
    interventions: List[Intervention] = field(default_factory=list)
    consultations: List[Consultation] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    sepsis_screening: Optional[SepsisScreening] = None
    disposition: Optional[Disposition] = None

    # Timing
    first_provider_time: Optional[datetime] = None
    door_to_provider: Optional[int] = None
    discharge_time: Optional[datetime] = None
    length_of_stay: Optional[int] = None

    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def open_alerts(self) -> List[Alert]:
        return [a for a in self.alerts if a.is_open]

    @property
    def latest_vitals(self) -> Optional[Vitals]:
        return self.vitals[-1] if self.vitals else None

    def find_order(self, order_id: str) -> Optional[Order]:
        return next((o for o in self.orders if o.id == order_id), None)

    def find_alert(self, alert_id: str) -> Optional[Alert]:
        return next((a for a in self.alerts if a.id == alert_id), None)

    def find_consultation(self, consultation_id: str) -> Optional[Consultation]:
        return next((c for c in self.consultations if c.id == consultation_id), None)

    def wait_minutes(self, now: datetime) -> int:
        return minutes_between(self.arrival_time, now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = to_jsonable(self)
        if self.sepsis_screening is not None:
            data["sepsis_screening"] = self.sepsis_screening.to_dict()
        data["is_terminal"] = self.is_terminal
        data["open_alert_count"] = len(self.open_alerts)
        return data
