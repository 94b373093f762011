"""
Shared fixtures for the patient-flow test suite.

The engine runs against in-memory collaborators and a controllable clock so
time-dependent behaviour (waits, bundle breach, alert SLA) is deterministic.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ed_agents.patient_flow.collaborators import (
    InMemoryBedInventory,
    InMemoryOrderRouter,
    InMemoryPatientRegistry,
    InMemoryStaffDirectory,
    LoggingNotificationTransport,
)
from ed_agents.patient_flow.engine import EmergencyDepartmentEngine
from ed_agents.patient_flow.models import TriageAssessment, Vitals

START = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

NORMAL_VITALS = {
    "heart_rate": 80,
    "systolic_bp": 120,
    "diastolic_bp": 78,
    "respiratory_rate": 16,
    "oxygen_saturation": 98,
    "temperature": 37.0,
}


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    registry = InMemoryPatientRegistry()
    registry.add_patient("MRN-001", age=42)
    registry.add_patient("MRN-KID", age=7)
    registry.add_patient("MRN-OLD", age=81)
    return registry


@pytest.fixture
def beds():
    return InMemoryBedInventory()


@pytest.fixture
def staff():
    staff = InMemoryStaffDirectory()
    staff.set_on_call("emergency_physician", "dr_house", "Dr. House")
    staff.set_on_call("stroke_neurologist", "dr_strange", "Dr. Strange")
    return staff


@pytest.fixture
def order_router():
    return InMemoryOrderRouter()


@pytest.fixture
def notifier():
    return LoggingNotificationTransport()


@pytest.fixture
def engine(registry, beds, staff, order_router, notifier, clock):
    return EmergencyDepartmentEngine(
        registry=registry,
        beds=beds,
        staff=staff,
        order_router=order_router,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def make_vitals(clock):
    """Vitals factory: normal adult values unless overridden."""
    def make(**overrides) -> Vitals:
        values = {**NORMAL_VITALS, **overrides}
        return Vitals(recorded_by="rn_jones", timestamp=clock(), **values)
    return make


@pytest.fixture
def make_assessment(make_vitals, clock):
    def make(visit_id: str = "visit-1", chief_complaint: str = "sore throat", vitals=None, **kwargs):
        return TriageAssessment(
            visit_id=visit_id,
            assessed_by="rn_jones",
            chief_complaint=chief_complaint,
            vitals=vitals if vitals is not None else make_vitals(),
            assessed_at=clock(),
            **kwargs,
        )
    return make


@pytest.fixture
def register(engine):
    """Register a patient and return the committed visit."""
    async def _register(chief_complaint: str = "sore throat", patient_id: str = "MRN-001", **kwargs):
        result = await engine.register_patient(patient_id, chief_complaint, **kwargs)
        return result.visit
    return _register


@pytest.fixture
def triaged(engine, register, make_assessment):
    """Register and triage a patient; returns the EngineResult of triage."""
    async def _triaged(chief_complaint: str = "sore throat", vitals=None, patient_id: str = "MRN-001", **kwargs):
        visit = await register(chief_complaint, patient_id=patient_id)
        assessment = make_assessment(visit.visit_id, chief_complaint, vitals, **kwargs)
        return await engine.perform_triage(visit.visit_id, assessment)
    return _triaged
