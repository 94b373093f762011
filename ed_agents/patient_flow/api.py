"""
ED Patient-Flow Agent - FastAPI Application

REST surface over the EmergencyDepartmentEngine. Every clinical operation is
one endpoint; every endpoint returns the updated visit together with any
non-blocking warnings.

================================================================================
RESPONSE CONTRACT
================================================================================

    2xx + "warnings": []            the record was updated, all side effects ok
    2xx + "warnings": [...]         the record was updated, but a page, order
                                    route or bed search did not succeed
    4xx                             the record was NOT updated

    ┌─────────────────────────┬────────┐
    │ ERROR                   │ STATUS │
    ├─────────────────────────┼────────┤
    │ NotFound (any entity)   │  404   │
    │ InvalidStateTransition  │  409   │
    │ ResourceUnavailable     │  409   │
    │ ConcurrentModification  │  409   │
    │ ValidationError         │  422   │
    │ anything else           │  500   │
    └─────────────────────────┴────────┘

================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .collaborators import (
    InMemoryBedInventory,
    InMemoryOrderRouter,
    InMemoryPatientRegistry,
    InMemoryStaffDirectory,
    LoggingNotificationTransport,
    OrchestratorPagingTransport,
)
from .config import AcuityLevel, settings
from .engine import EmergencyDepartmentEngine
from .errors import (
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    PatientFlowError,
    ResourceUnavailable,
    ValidationError,
)
from .models import (
    AcuityFactor,
    ActivationStatus,
    ArrivalMode,
    BundleItemStatus,
    ConsultationStatus,
    ConsultationUrgency,
    Disposition,
    DispositionType,
    FactorImpact,
    FollowUpInstruction,
    GlasgowComaScale,
    Location,
    LocationType,
    NoteType,
    OrderPriority,
    OrderStatus,
    OrderType,
    PainAssessment,
    TraumaLevel,
    TriageAssessment,
    VisitStatus,
    Vitals,
    to_jsonable,
    utcnow,
)


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class VitalsInput(BaseModel):
    """Vital signs as captured at the bedside."""

    recorded_by: str = Field(..., min_length=1, description="ID of the clinician recording vitals")
    heart_rate: Optional[float] = Field(
        default=None,
        ge=0,
        le=300,
        description="Heart rate in beats per minute (0 = pulseless)",
    )
    systolic_bp: Optional[float] = Field(
        default=None,
        ge=0,
        le=300,
        description="Systolic blood pressure in mmHg",
    )
    diastolic_bp: Optional[float] = Field(
        default=None,
        ge=0,
        le=200,
        description="Diastolic blood pressure in mmHg",
    )
    respiratory_rate: Optional[float] = Field(
        default=None,
        ge=0,
        le=80,
        description="Respiratory rate in breaths per minute (0 = apneic)",
    )
    oxygen_saturation: Optional[float] = Field(
        default=None,
        ge=0,
        le=100,
        description="Oxygen saturation (SpO2) percentage",
    )
    supplemental_oxygen: Optional[str] = Field(
        default=None,
        description="Oxygen delivery, e.g. '2L nasal cannula'",
    )
    temperature: Optional[float] = Field(
        default=None,
        ge=25,
        le=45,
        description="Body temperature in Celsius",
    )
    pain_score: Optional[int] = Field(
        default=None,
        ge=0,
        le=10,
        description="Self-reported pain score (0-10)",
    )
    gcs: Optional[int] = Field(
        default=None,
        ge=3,
        le=15,
        description="Glasgow Coma Scale total (3-15)",
    )
    gcs_eye: Optional[int] = Field(default=None, ge=1, le=4)
    gcs_verbal: Optional[int] = Field(default=None, ge=1, le=5)
    gcs_motor: Optional[int] = Field(default=None, ge=1, le=6)
    blood_glucose: Optional[float] = Field(
        default=None,
        ge=0,
        description="Capillary glucose in mg/dL",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "recorded_by": "rn_jones",
                "heart_rate": 105,
                "systolic_bp": 118,
                "diastolic_bp": 72,
                "respiratory_rate": 24,
                "oxygen_saturation": 96,
                "temperature": 39.0,
                "gcs": 15,
            }
        }

    def to_domain(self) -> Vitals:
        gcs = None
        if self.gcs is not None:
            gcs = GlasgowComaScale(total=self.gcs, eye=self.gcs_eye, verbal=self.gcs_verbal, motor=self.gcs_motor)
        return Vitals(
            recorded_by=self.recorded_by,
            timestamp=utcnow(),
            temperature=self.temperature,
            heart_rate=self.heart_rate,
            systolic_bp=self.systolic_bp,
            diastolic_bp=self.diastolic_bp,
            respiratory_rate=self.respiratory_rate,
            oxygen_saturation=self.oxygen_saturation,
            supplemental_oxygen=self.supplemental_oxygen,
            pain_score=self.pain_score,
            gcs=gcs,
            blood_glucose=self.blood_glucose,
        )


class RegisterRequest(BaseModel):
    """Request schema for patient registration."""

    patient_id: str = Field(..., min_length=1, description="Registry identifier of the patient")
    chief_complaint: str = Field(..., min_length=1, max_length=2000)
    arrival_mode: ArrivalMode = Field(default=ArrivalMode.WALK_IN)
    is_trauma: bool = Field(default=False, description="Trauma arrival (pre-hospital notification)")
    trauma_level: Optional[TraumaLevel] = Field(default=None)
    mechanism: Optional[str] = Field(default=None, description="Mechanism of injury")

    class Config:
        json_schema_extra = {
            "example": {
                "patient_id": "MRN-004521",
                "chief_complaint": "fever and UTI symptoms",
                "arrival_mode": "walk_in",
            }
        }


class AcuityFactorInput(BaseModel):
    factor: str
    impact: FactorImpact
    points: int = Field(..., ge=0, le=100)
    rationale: str = ""


class TriageRequest(BaseModel):
    """Triage nurse assessment."""

    assessed_by: str = Field(..., min_length=1, description="ID of the triage nurse")
    chief_complaint: str = Field(..., min_length=1, max_length=2000)
    vitals: VitalsInput
    history_of_present_illness: str = ""
    allergies: List[str] = Field(default_factory=list)
    medications: List[str] = Field(default_factory=list)
    past_medical_history: List[str] = Field(default_factory=list)
    immunocompromised: bool = False
    pregnant: bool = False
    pregnancy_weeks: Optional[int] = Field(default=None, ge=0, le=45)
    pain_intensity: Optional[int] = Field(default=None, ge=0, le=10)
    acuity_factors: List[AcuityFactorInput] = Field(default_factory=list)
    triage_rationale: str = ""
    isolation_required: bool = False
    isolation_type: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "assessed_by": "rn_jones",
                "chief_complaint": "fever and UTI symptoms",
                "vitals": {
                    "recorded_by": "rn_jones",
                    "heart_rate": 105,
                    "respiratory_rate": 24,
                    "temperature": 39.0,
                    "oxygen_saturation": 97,
                    "systolic_bp": 122,
                },
            }
        }

    def to_domain(self, visit_id: str) -> TriageAssessment:
        return TriageAssessment(
            visit_id=visit_id,
            assessed_by=self.assessed_by,
            chief_complaint=self.chief_complaint,
            vitals=self.vitals.to_domain(),
            assessed_at=utcnow(),
            history_of_present_illness=self.history_of_present_illness,
            allergies=tuple(self.allergies),
            medications=tuple(self.medications),
            past_medical_history=tuple(self.past_medical_history),
            immunocompromised=self.immunocompromised,
            pregnant=self.pregnant,
            pregnancy_weeks=self.pregnancy_weeks,
            pain_assessment=PainAssessment(intensity=self.pain_intensity) if self.pain_intensity is not None else None,
            acuity_factors=tuple(
                AcuityFactor(factor=f.factor, impact=f.impact, points=f.points, rationale=f.rationale)
                for f in self.acuity_factors
            ),
            triage_rationale=self.triage_rationale,
            isolation_required=self.isolation_required,
            isolation_type=self.isolation_type,
        )


class SepsisScreenRequest(BaseModel):
    screened_by: str = Field(..., min_length=1)
    vitals: Optional[VitalsInput] = None
    wbc_abnormal: Optional[bool] = Field(default=None, description="WBC > 12k, < 4k or > 10% bands")


class StrokeCodeRequest(BaseModel):
    activated_by: str = Field(..., min_length=1)
    last_known_well: datetime
    symptoms: List[str] = Field(default_factory=list)
    vitals: Optional[VitalsInput] = Field(default=None, description="Required unless vitals are already recorded")


class TraumaActivationRequest(BaseModel):
    activated_by: str = Field(..., min_length=1)
    level: TraumaLevel
    mechanism: str = Field(default="Unknown")


class ActivationStatusRequest(BaseModel):
    status: ActivationStatus
    updated_by: str = Field(..., min_length=1)
    reason: Optional[str] = None


class BedRequest(BaseModel):
    """Omit zone/bed to let the allocator pick from the recommended zone."""

    zone: Optional[str] = None
    bed: Optional[str] = None
    type: LocationType = LocationType.BED
    room: Optional[str] = None


class ProviderRequest(BaseModel):
    physician_id: Optional[str] = None
    nurse_id: Optional[str] = None


class StatusRequest(BaseModel):
    status: VisitStatus
    updated_by: str = Field(..., min_length=1)
    reason: str = ""


class NoteRequest(BaseModel):
    type: NoteType = NoteType.PROGRESS
    author_id: str = Field(..., min_length=1)
    author_name: str = Field(..., min_length=1)
    author_role: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class AddendumRequest(BaseModel):
    addendum: str = Field(..., min_length=1)


class InterventionRequest(BaseModel):
    type: str = Field(..., min_length=1)
    performed_by: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    outcome: Optional[str] = None
    complications: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)


class ConsultationRequest(BaseModel):
    specialty: str = Field(..., min_length=1)
    requested_by: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    urgency: ConsultationUrgency = ConsultationUrgency.ROUTINE


class ConsultationUpdateRequest(BaseModel):
    status: ConsultationStatus
    consultant_id: Optional[str] = None
    consultant_name: Optional[str] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None


class OrderRequest(BaseModel):
    type: OrderType
    ordered_by: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    priority: OrderPriority = OrderPriority.ROUTINE
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "type": "lab",
                "ordered_by": "dr_smith",
                "description": "Basic metabolic panel - potassium",
                "priority": "stat",
            }
        }


class OrderResultRequest(BaseModel):
    status: OrderStatus = OrderStatus.COMPLETED
    result: Optional[str] = None
    completed_by: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {"status": "completed", "result": "7.2 mmol/L", "completed_by": "lab_tech_7"}
        }


class AlertActionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class BundleItemRequest(BaseModel):
    status: BundleItemStatus = BundleItemStatus.COMPLETED
    completed_by: str = Field(..., min_length=1)


class FollowUpInput(BaseModel):
    provider: str
    timeframe: str
    reason: str
    specialty: Optional[str] = None


class DispositionRequest(BaseModel):
    type: DispositionType
    decided_by: str = Field(..., min_length=1)
    destination: Optional[str] = None
    admitting_service: Optional[str] = None
    admitting_physician: Optional[str] = None
    bed_request: Optional[str] = None
    transfer_to: Optional[str] = None
    transfer_reason: Optional[str] = None
    discharge_instructions: Optional[str] = None
    follow_up: List[FollowUpInput] = Field(default_factory=list)
    prescriptions: List[str] = Field(default_factory=list)
    return_precautions: List[str] = Field(default_factory=list)

    def to_domain(self) -> Disposition:
        return Disposition(
            type=self.type,
            decided_by=self.decided_by,
            decided_at=utcnow(),
            destination=self.destination,
            admitting_service=self.admitting_service,
            admitting_physician=self.admitting_physician,
            bed_request=self.bed_request,
            transfer_to=self.transfer_to,
            transfer_reason=self.transfer_reason,
            discharge_instructions=self.discharge_instructions,
            follow_up=[FollowUpInstruction(**f.model_dump()) for f in self.follow_up],
            prescriptions=list(self.prescriptions),
            return_precautions=list(self.return_precautions),
        )


class DischargeRequest(BaseModel):
    discharged_by: str = Field(..., min_length=1)
    discharge_instructions: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the engine and its in-memory collaborators.
    """

    def __init__(self):
        self.engine: EmergencyDepartmentEngine = self._build_engine()
        self.is_ready: bool = False
        self.started_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @staticmethod
    def _build_engine() -> EmergencyDepartmentEngine:
        if settings.orchestrator_paging_enabled:
            notifier = OrchestratorPagingTransport()
        else:
            notifier = LoggingNotificationTransport()
        return EmergencyDepartmentEngine(
            registry=InMemoryPatientRegistry(),
            beds=InMemoryBedInventory(),
            staff=InMemoryStaffDirectory(),
            order_router=InMemoryOrderRouter(),
            notifier=notifier,
        )

    async def initialize(self) -> None:
        async with self._lock:
            self.started_at = utcnow()
            self.is_ready = True
            logger.info(
                "Application state initialized",
                extra={"paging": type(self.engine.notifier).__name__},
            )


# Global state
app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    await app_state.initialize()

    yield

    # Shutdown
    logger.info("Shutting down patient-flow agent")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="ED Patient-Flow Agent",
    description="""
    Emergency Department patient-flow and triage engine.

    ## Features
    - **Triage**: Rule-based ESI scoring (levels 1-5, score 0-100)
    - **Protocols**: Stroke, STEMI, sepsis detection; trauma and stroke team activation
    - **Bed Allocation**: Zone recommendation and bed assignment
    - **Workflow**: Visit state machine from arrival to disposition
    - **Alerts**: Critical results, abnormal vitals, sepsis bundle tracking
    - **Metrics**: Live census, waits, acuity mix and tracking board
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS - OPERATIONS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """Health check endpoint for Kubernetes probes."""
    engine = app_state.engine
    active = await engine.visits.list_active()
    beds = await engine.get_available_beds()

    checks = {
        "engine": {"status": "ok" if app_state.is_ready else "starting"},
        "census": {"status": "ok", "active_visits": len(active)},
        "beds": {"status": "ok", "available": sum(len(b) for b in beds.values())},
        "paging": {"status": "ok", "transport": type(engine.notifier).__name__},
    }
    return HealthResponse(
        status="healthy",
        service=settings.service_name,
        version=settings.service_version,
        timestamp=utcnow(),
        checks=checks,
    )


@app.get("/metrics", tags=["Operations"])
async def get_metrics() -> Dict[str, Any]:
    """Live department metrics: census, waits, acuity mix, throughput."""
    metrics = await app_state.engine.get_ed_metrics()
    return metrics.to_dict()


@app.get("/tracking-board", tags=["Operations"])
async def get_tracking_board() -> Dict[str, Any]:
    """Active visits grouped by zone, most acute first."""
    board = await app_state.engine.get_patient_tracking_board()
    return {
        "generated_at": utcnow().isoformat(),
        "target_times": AcuityLevel.TARGET_TIMES,
        "zones": {zone: [row.to_dict() for row in rows] for zone, rows in board.items()},
    }


@app.get("/beds", tags=["Operations"])
async def get_available_beds() -> Dict[str, Any]:
    return {"available": await app_state.engine.get_available_beds()}


@app.get("/alerts/overdue", tags=["Alerts"])
async def get_overdue_alerts() -> Dict[str, Any]:
    """Open alerts past their acknowledgement SLA."""
    overdue = await app_state.engine.get_overdue_alerts()
    return {
        "count": len(overdue),
        "alerts": [{"visit_id": visit_id, **to_jsonable(alert)} for visit_id, alert in overdue],
    }


# =============================================================================
# ENDPOINTS - VISITS
# =============================================================================

@app.post("/visits", status_code=status.HTTP_201_CREATED, tags=["Visits"])
async def register_patient(request: RegisterRequest) -> Dict[str, Any]:
    """Register an arriving patient; trauma arrivals with a level activate the trauma team."""
    result = await app_state.engine.register_patient(
        patient_id=request.patient_id,
        chief_complaint=request.chief_complaint,
        arrival_mode=request.arrival_mode,
        is_trauma=request.is_trauma,
        trauma_level=request.trauma_level,
        mechanism=request.mechanism,
    )
    return result.to_dict()


@app.get("/visits/{visit_id}", tags=["Visits"])
async def get_visit(visit_id: str) -> Dict[str, Any]:
    visit = await app_state.engine.get_visit(visit_id)
    return visit.to_dict()


@app.post("/visits/{visit_id}/triage", tags=["Triage"])
async def perform_triage(visit_id: str, request: TriageRequest) -> Dict[str, Any]:
    """
    Score the triage assessment and run protocol detection.

    The response carries the triage level and score, protocol alerts and a
    recommended location. The bed is assigned separately.
    """
    result = await app_state.engine.perform_triage(visit_id, request.to_domain(visit_id))
    logger.info(
        f"Triage complete: {visit_id}",
        extra={"visit_id": visit_id, "level": result.triage.level, "score": result.triage.score},
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/sepsis-screening", tags=["Protocols"])
async def screen_for_sepsis(visit_id: str, request: SepsisScreenRequest) -> Dict[str, Any]:
    result = await app_state.engine.screen_for_sepsis(
        visit_id,
        screened_by=request.screened_by,
        vitals=request.vitals.to_domain() if request.vitals else None,
        wbc_abnormal=request.wbc_abnormal,
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/stroke-code", tags=["Protocols"])
async def activate_stroke_code(visit_id: str, request: StrokeCodeRequest) -> Dict[str, Any]:
    result = await app_state.engine.activate_stroke_code(
        visit_id,
        activated_by=request.activated_by,
        last_known_well=request.last_known_well,
        symptoms=request.symptoms,
        vitals=request.vitals.to_domain() if request.vitals else None,
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/trauma-activation", tags=["Protocols"])
async def activate_trauma_team(visit_id: str, request: TraumaActivationRequest) -> Dict[str, Any]:
    result = await app_state.engine.activate_trauma_team(
        visit_id,
        level=request.level,
        mechanism=request.mechanism,
        activated_by=request.activated_by,
    )
    return result.to_dict()


@app.patch("/activations/{activation_id}", tags=["Protocols"])
async def update_activation_status(activation_id: str, request: ActivationStatusRequest) -> Dict[str, Any]:
    activation = await app_state.engine.update_activation_status(
        activation_id, request.status, request.updated_by, request.reason
    )
    return to_jsonable(activation)


@app.post("/visits/{visit_id}/bed", tags=["Flow"])
async def assign_bed(visit_id: str, request: Optional[BedRequest] = None) -> Dict[str, Any]:
    """Assign a named bed, or let the allocator pick one in the recommended zone."""
    location = None
    if request is not None and request.zone and request.bed:
        location = Location(
            zone=request.zone,
            bed=request.bed,
            type=request.type,
            assigned_at=utcnow(),
            room=request.room,
        )
    result = await app_state.engine.assign_bed(visit_id, location)
    return result.to_dict()


@app.post("/visits/{visit_id}/providers", tags=["Flow"])
async def assign_provider(visit_id: str, request: ProviderRequest) -> Dict[str, Any]:
    result = await app_state.engine.assign_provider(visit_id, request.physician_id, request.nurse_id)
    return result.to_dict()


@app.post("/visits/{visit_id}/status", tags=["Flow"])
async def update_status(visit_id: str, request: StatusRequest) -> Dict[str, Any]:
    result = await app_state.engine.update_status(visit_id, request.status, request.updated_by, request.reason)
    return result.to_dict()


@app.post("/visits/{visit_id}/vitals", tags=["Clinical"])
async def record_vitals(visit_id: str, request: VitalsInput) -> Dict[str, Any]:
    result = await app_state.engine.record_vitals(visit_id, request.to_domain())
    return result.to_dict()


@app.post("/visits/{visit_id}/notes", tags=["Clinical"])
async def add_note(visit_id: str, request: NoteRequest) -> Dict[str, Any]:
    result = await app_state.engine.add_note(
        visit_id, request.type, request.author_id, request.author_name, request.author_role, request.content
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/notes/{note_id}/addendum", tags=["Clinical"])
async def add_note_addendum(visit_id: str, note_id: str, request: AddendumRequest) -> Dict[str, Any]:
    result = await app_state.engine.add_note_addendum(visit_id, note_id, request.addendum)
    return result.to_dict()


@app.post("/visits/{visit_id}/interventions", tags=["Clinical"])
async def add_intervention(visit_id: str, request: InterventionRequest) -> Dict[str, Any]:
    result = await app_state.engine.add_intervention(
        visit_id,
        request.type,
        request.performed_by,
        request.description,
        outcome=request.outcome,
        complications=request.complications,
        duration_minutes=request.duration_minutes,
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/consultations", tags=["Clinical"])
async def request_consultation(visit_id: str, request: ConsultationRequest) -> Dict[str, Any]:
    result = await app_state.engine.request_consultation(
        visit_id, request.specialty, request.requested_by, request.reason, request.urgency
    )
    return result.to_dict()


@app.patch("/visits/{visit_id}/consultations/{consultation_id}", tags=["Clinical"])
async def update_consultation(
    visit_id: str, consultation_id: str, request: ConsultationUpdateRequest
) -> Dict[str, Any]:
    result = await app_state.engine.update_consultation(
        visit_id,
        consultation_id,
        request.status,
        consultant_id=request.consultant_id,
        consultant_name=request.consultant_name,
        findings=request.findings,
        recommendations=request.recommendations,
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/orders", status_code=status.HTTP_201_CREATED, tags=["Orders"])
async def place_order(visit_id: str, request: OrderRequest) -> Dict[str, Any]:
    result = await app_state.engine.place_order(
        visit_id, request.type, request.ordered_by, request.description, request.priority, request.details
    )
    return result.to_dict()


@app.patch("/visits/{visit_id}/orders/{order_id}", tags=["Orders"])
async def update_order_result(visit_id: str, order_id: str, request: OrderResultRequest) -> Dict[str, Any]:
    """Advance an order; completed results are checked against critical values."""
    result = await app_state.engine.update_order_result(
        visit_id, order_id, request.status, request.result, request.completed_by
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/alerts/{alert_id}/acknowledge", tags=["Alerts"])
async def acknowledge_alert(visit_id: str, alert_id: str, request: AlertActionRequest) -> Dict[str, Any]:
    result = await app_state.engine.acknowledge_alert(visit_id, alert_id, request.user_id)
    return result.to_dict()


@app.post("/visits/{visit_id}/alerts/{alert_id}/resolve", tags=["Alerts"])
async def resolve_alert(visit_id: str, alert_id: str, request: AlertActionRequest) -> Dict[str, Any]:
    result = await app_state.engine.resolve_alert(visit_id, alert_id, request.user_id)
    return result.to_dict()


@app.get("/visits/{visit_id}/bundle", tags=["Protocols"])
async def get_bundle_status(visit_id: str) -> Dict[str, Any]:
    """Sepsis bundle items with breach computed against the current time."""
    items = await app_state.engine.get_bundle_status(visit_id)
    return {
        "visit_id": visit_id,
        "items": [item.to_dict() for item in items],
        "breached": sum(1 for item in items if item.breached),
    }


@app.patch("/visits/{visit_id}/bundle/{item_index}", tags=["Protocols"])
async def complete_bundle_item(
    visit_id: str,
    request: BundleItemRequest,
    item_index: int,
) -> Dict[str, Any]:
    result = await app_state.engine.complete_bundle_item(
        visit_id, item_index, request.status, request.completed_by
    )
    return result.to_dict()


@app.post("/visits/{visit_id}/disposition", tags=["Disposition"])
async def set_disposition(visit_id: str, request: DispositionRequest) -> Dict[str, Any]:
    result = await app_state.engine.set_disposition(visit_id, request.to_domain())
    return result.to_dict()


@app.post("/visits/{visit_id}/discharge", tags=["Disposition"])
async def discharge_patient(visit_id: str, request: DischargeRequest) -> Dict[str, Any]:
    result = await app_state.engine.discharge_patient(
        visit_id, request.discharged_by, request.discharge_instructions
    )
    return result.to_dict()


@app.get("/visits", tags=["Visits"])
async def list_visits(active_only: bool = Query(default=True)) -> Dict[str, Any]:
    engine = app_state.engine
    visits = await (engine.visits.list_active() if active_only else engine.visits.list_visits())
    return {"count": len(visits), "visits": [v.to_dict() for v in visits]}


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

def _status_for(exc: PatientFlowError) -> int:
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvalidStateTransition, ResourceUnavailable, ConcurrentModification)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(PatientFlowError)
async def patient_flow_exception_handler(request, exc: PatientFlowError):
    """Typed engine errors: the clinical record was not updated."""
    code = _status_for(exc)
    log = logger.error if code >= 500 else logger.info
    log(f"{exc.code}: {exc.message}", extra={"path": request.url.path})
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "details": {"detail": str(exc)} if settings.debug else {},
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ed_agents.patient_flow.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
