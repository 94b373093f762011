"""
Emergency Department Engine - Integration Tests

Every operation runs against the in-memory collaborators from conftest and a
fake clock.
Run with: pytest ed_agents/patient_flow/tests/test_engine.py -v
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ed_agents.patient_flow.collaborators import InMemoryBedInventory
from ed_agents.patient_flow.config import Settings
from ed_agents.patient_flow.engine import EmergencyDepartmentEngine
from ed_agents.patient_flow.errors import (
    DependencyFailure,
    InvalidStateTransition,
    NoteNotFound,
    OrderNotFound,
    ResourceUnavailable,
    ValidationError,
    VisitNotFound,
)
from ed_agents.patient_flow.models import (
    ActivationStatus,
    AlertType,
    ArrivalMode,
    BundleItemStatus,
    ConsultationStatus,
    Disposition,
    DispositionType,
    Location,
    LocationType,
    NoteType,
    OrderStatus,
    OrderType,
    TraumaLevel,
    VisitStatus,
)


class FailingTransport:
    async def page(self, recipient, message, payload):
        raise RuntimeError("pager network down")


class SlowTransport:
    async def page(self, recipient, message, payload):
        await asyncio.sleep(2)


class FailingOrderRouter:
    async def route_order(self, visit_id, order):
        raise ConnectionError("LIS unreachable")


async def _in_treatment(engine, triaged, complaint="abdominal pain"):
    result = await triaged(complaint)
    visit_id = result.visit.visit_id
    await engine.update_status(visit_id, VisitStatus.IN_TREATMENT, "dr_house")
    return visit_id


@pytest.mark.asyncio
class TestRegistration:
    """register_patient"""

    async def test_new_visit_is_arrived(self, engine, clock):
        result = await engine.register_patient("MRN-001", "  abdominal pain ")
        visit = result.visit

        assert visit.status == VisitStatus.ARRIVED
        assert visit.chief_complaint == "abdominal pain"
        assert visit.arrival_time == clock()
        assert result.warnings == []
        assert (await engine.get_visit(visit.visit_id)).visit_id == visit.visit_id

    @pytest.mark.parametrize("patient_id,pediatric,geriatric", [
        ("MRN-KID", True, False),
        ("MRN-OLD", False, True),
        ("MRN-001", False, False),
        ("MRN-UNKNOWN", False, False),
    ])
    async def test_age_flags_from_registry(self, register, patient_id, pediatric, geriatric):
        visit = await register(patient_id=patient_id)
        assert (visit.is_pediatric, visit.is_geriatric) == (pediatric, geriatric)

    async def test_registry_failure_is_a_warning(self, clock):
        registry = MagicMock()
        registry.get_patient = AsyncMock(side_effect=RuntimeError("registry down"))
        engine = EmergencyDepartmentEngine(registry=registry, clock=clock)

        result = await engine.register_patient("MRN-001", "headache")

        assert result.visit.status == VisitStatus.ARRIVED
        assert not result.visit.is_geriatric
        assert result.notification_failed
        assert result.warnings[0].dependency == "patient_registry"

    @pytest.mark.parametrize("patient_id,complaint", [("", "headache"), ("MRN-001", "   ")])
    async def test_required_fields(self, engine, patient_id, complaint):
        with pytest.raises(ValidationError):
            await engine.register_patient(patient_id, complaint)
        assert await engine.visits.list_visits() == []

    async def test_trauma_arrival_activates_team(self, engine, notifier, beds):
        result = await engine.register_patient(
            "MRN-001",
            "rollover MVC",
            arrival_mode=ArrivalMode.AMBULANCE,
            is_trauma=True,
            trauma_level=TraumaLevel.ALPHA,
            mechanism="MVC rollover",
        )
        visit = result.visit
        activation = result.trauma_activation

        assert visit.triage_level == 1
        assert visit.status == VisitStatus.ARRIVED
        assert (visit.location.zone, visit.location.bed) == ("trauma", "TB1")
        assert beds.occupant("trauma", "TB1") == visit.visit_id
        assert activation.trauma_bay == "TB1"
        assert result.alerts[0].message == "TRAUMA ALPHA ACTIVATION: MVC rollover"
        assert len(notifier.sent) == 8
        resolved = {m.role: m.user_id for m in activation.team_notified}
        assert resolved["emergency_physician"] == "dr_house"
        assert resolved["neurosurgeon"] is None


@pytest.mark.asyncio
class TestPerformTriage:
    """perform_triage"""

    async def test_cardiac_arrest(self, triaged, clock):
        result = await triaged("cardiac arrest")
        visit = result.visit

        assert (result.triage.level, result.triage.score) == (1, 100)
        assert visit.status == VisitStatus.TRIAGED
        assert visit.triage_time == clock()
        assert visit.triage_nurse_id == "rn_jones"
        assert len(visit.vitals) == 1
        assert visit.assessments[0].type.value == "initial"
        assert result.recommended_location.zone == "resuscitation"
        assert visit.location is None

    async def test_uti_raises_sepsis_alert_and_bundle(self, triaged, make_vitals, clock):
        result = await triaged(
            "fever and UTI symptoms",
            vitals=make_vitals(temperature=39.0, heart_rate=105, respiratory_rate=24),
        )
        visit = result.visit

        assert visit.is_sepsis
        assert [a.type for a in result.alerts] == [AlertType.SEPSIS_ALERT]
        due = [item.due_time for item in visit.sepsis_screening.bundle_items]
        assert due == [clock() + timedelta(hours=h) for h in (1, 1, 1, 3)]

    async def test_psychiatric_complaint_goes_to_behavioral(self, triaged):
        result = await triaged("suicidal ideation")
        assert result.visit.is_psychiatric
        assert result.recommended_location.zone == "behavioral"

    async def test_triage_twice_rejected(self, engine, triaged, make_assessment):
        result = await triaged("sore throat")
        visit_id = result.visit.visit_id
        with pytest.raises(InvalidStateTransition):
            await engine.perform_triage(visit_id, make_assessment(visit_id))

    async def test_assessment_for_other_visit(self, engine, register, make_assessment):
        visit = await register()
        with pytest.raises(ValidationError):
            await engine.perform_triage(visit.visit_id, make_assessment("someone-else"))

    async def test_failed_triage_leaves_visit_unchanged(self, engine, register, make_assessment):
        visit = await register()
        assessment = make_assessment(visit.visit_id)
        object.__setattr__(assessment, "vitals", None)

        with pytest.raises(ValidationError):
            await engine.perform_triage(visit.visit_id, assessment)

        stored = await engine.get_visit(visit.visit_id)
        assert stored.status == VisitStatus.ARRIVED
        assert stored.version == visit.version
        assert stored.vitals == []

    async def test_unknown_visit(self, engine, make_assessment):
        with pytest.raises(VisitNotFound):
            await engine.perform_triage("missing", make_assessment("missing"))
        with pytest.raises(VisitNotFound):
            await engine.get_visit("missing")


@pytest.mark.asyncio
class TestSepsisRescreen:
    """screen_for_sepsis on an existing visit"""

    async def test_rescreen_keeps_bundle_deadlines(self, engine, triaged, make_vitals, clock):
        first = await triaged(
            "fever and UTI symptoms",
            vitals=make_vitals(temperature=39.0, heart_rate=105),
        )
        visit_id = first.visit.visit_id
        original_due = [item.due_time for item in first.visit.sepsis_screening.bundle_items]

        clock.advance(minutes=30)
        result = await engine.screen_for_sepsis(
            visit_id, "rn_jones", vitals=make_vitals(temperature=39.4, heart_rate=118)
        )

        assert [item.due_time for item in result.sepsis_screening.bundle_items] == original_due
        assert result.alerts == []
        sepsis_alerts = [a for a in result.visit.alerts if a.type == AlertType.SEPSIS_ALERT]
        assert len(sepsis_alerts) == 1
        assert len(result.visit.vitals) == 2

    async def test_positive_rescreen_raises_alert(self, engine, triaged, make_vitals):
        first = await triaged("pneumonia")
        assert not first.visit.is_sepsis

        result = await engine.screen_for_sepsis(
            first.visit.visit_id, "rn_jones", vitals=make_vitals(temperature=38.9, heart_rate=112)
        )
        assert result.visit.is_sepsis
        assert [a.type for a in result.alerts] == [AlertType.SEPSIS_ALERT]

    async def test_screening_requires_vitals(self, engine, register):
        visit = await register("fever")
        with pytest.raises(ValidationError):
            await engine.screen_for_sepsis(visit.visit_id, "rn_jones")


@pytest.mark.asyncio
class TestStrokeCode:
    """activate_stroke_code"""

    async def test_activation(self, engine, register, make_vitals, notifier, clock):
        visit = await register("sudden left sided weakness")
        result = await engine.activate_stroke_code(
            visit.visit_id,
            "dr_house",
            clock() - timedelta(minutes=50),
            symptoms=["left arm weakness"],
            vitals=make_vitals(systolic_bp=178),
        )

        assert result.visit.triage_level == 1
        assert result.visit.status == VisitStatus.IN_TREATMENT
        assert result.visit.is_stroke
        assert result.alerts[0].message == "CODE STROKE ACTIVATED"
        assert {p["recipient"] for p in notifier.sent} == {
            "dr_strange", "dr_house", "stroke_nurse", "ct_technologist",
        }
        assert [v.systolic_bp for v in result.visit.vitals] == [178]
        team = {m.role: m.user_id for m in result.stroke_code.team_notified}
        assert team["stroke_neurologist"] == "dr_strange"
        assert team["ct_technologist"] is None

    async def test_activation_without_vitals_rejected(self, engine, register, clock):
        visit = await register("sudden left sided weakness")
        with pytest.raises(ValidationError) as excinfo:
            await engine.activate_stroke_code(visit.visit_id, "dr_house", clock() - timedelta(minutes=30))

        assert excinfo.value.details["field"] == "vitals"
        stored = await engine.get_visit(visit.visit_id)
        assert stored.status == VisitStatus.ARRIVED
        assert stored.triage_level is None
        assert stored.triage_time is None
        assert stored.stroke_code_id is None
        assert stored.alerts == []

    async def test_activation_uses_recorded_vitals(self, engine, register, make_vitals, clock):
        visit = await register("facial droop")
        await engine.record_vitals(visit.visit_id, make_vitals())

        result = await engine.activate_stroke_code(visit.visit_id, "dr_house", clock())

        assert result.visit.status == VisitStatus.IN_TREATMENT
        assert len(result.visit.vitals) == 1

    async def test_future_last_known_well_rejected(self, engine, register, clock):
        visit = await register("slurred speech")
        with pytest.raises(ValidationError):
            await engine.activate_stroke_code(visit.visit_id, "dr_house", clock() + timedelta(minutes=5))

    async def test_second_activation_rejected(self, engine, register, make_vitals, clock):
        visit = await register("slurred speech")
        await engine.activate_stroke_code(visit.visit_id, "dr_house", clock(), vitals=make_vitals())
        with pytest.raises(InvalidStateTransition):
            await engine.activate_stroke_code(visit.visit_id, "dr_house", clock())

    async def test_closing_visit_cancels_code(self, engine, register, make_vitals, clock):
        visit = await register("slurred speech")
        result = await engine.activate_stroke_code(visit.visit_id, "dr_house", clock(), vitals=make_vitals())

        await engine.update_status(visit.visit_id, VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE, "rn_jones")

        code = await engine.get_activation(result.stroke_code.id)
        assert code.status == ActivationStatus.CANCELLED
        assert code.deactivation_reason == f"Visit {VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE.value}"


@pytest.mark.asyncio
class TestTraumaActivation:
    """activate_trauma_team and activation lifecycle"""

    async def test_bays_claimed_until_exhausted(self, engine, register):
        results = []
        for _ in range(3):
            visit = await register("fall from height")
            results.append(await engine.activate_trauma_team(
                visit.visit_id, TraumaLevel.BRAVO, "Fall from 4m", "dr_house"
            ))

        assert [r.trauma_activation.trauma_bay for r in results] == ["TB1", "TB2", "unassigned"]
        assert results[2].visit.location is None
        assert any(isinstance(w, ResourceUnavailable) for w in results[2].warnings)
        assert results[2].visit.triage_level == 2

    async def test_status_sequence(self, engine, register, clock):
        visit = await register("stab wound")
        result = await engine.activate_trauma_team(visit.visit_id, TraumaLevel.CHARLIE, "Stab wound", "dr_house")
        activation_id = result.trauma_activation.id

        with pytest.raises(InvalidStateTransition):
            await engine.update_activation_status(activation_id, ActivationStatus.IN_PROGRESS, "dr_house")

        arrived = await engine.update_activation_status(
            activation_id, ActivationStatus.ARRIVED, "dr_house"
        )
        assert all(m.arrived_at == clock() for m in arrived.team_notified)

        cancelled = await engine.update_activation_status(
            activation_id, ActivationStatus.CANCELLED, "dr_house", reason="Downgraded"
        )
        assert cancelled.deactivation_reason == "Downgraded"
        assert cancelled.deactivated_by == "dr_house"

        with pytest.raises(InvalidStateTransition):
            await engine.update_activation_status(activation_id, ActivationStatus.ARRIVED, "dr_house")

    async def test_discharge_releases_bay_and_cancels(self, engine, beds):
        registered = await engine.register_patient(
            "MRN-001", "MVC", is_trauma=True, trauma_level=TraumaLevel.MINOR, mechanism="Low speed MVC"
        )
        visit_id = registered.visit.visit_id

        await engine.discharge_patient(visit_id, "dr_house")

        assert beds.occupant("trauma", "TB1") is None
        activation = await engine.get_activation(registered.trauma_activation.id)
        assert activation.status == ActivationStatus.CANCELLED
        assert activation.deactivated_by == "system"


@pytest.mark.asyncio
class TestAssignBed:
    """assign_bed with the default layout"""

    async def test_recommended_zone(self, engine, triaged, beds):
        visit_id = (await triaged("abdominal pain")).visit.visit_id
        result = await engine.assign_bed(visit_id)

        assert (result.visit.location.zone, result.visit.location.bed) == ("main", "M1")
        assert result.visit.status == VisitStatus.TRIAGED
        assert beds.occupant("main", "M1") == visit_id
        assert "M1" not in (await engine.get_available_beds())["main"]

    async def test_explicit_bed_and_move(self, engine, triaged, beds, clock):
        visit_id = (await triaged("abdominal pain")).visit.visit_id
        await engine.assign_bed(visit_id, Location("main", "M5", LocationType.BED, clock()))
        result = await engine.assign_bed(visit_id, Location("main", "M6", LocationType.BED, clock()))

        assert result.visit.location.bed == "M6"
        assert beds.occupant("main", "M5") is None
        assert beds.occupant("main", "M6") == visit_id

    async def test_occupied_bed_raises(self, engine, triaged, clock):
        first = (await triaged("abdominal pain")).visit.visit_id
        second = (await triaged("abdominal pain")).visit.visit_id
        await engine.assign_bed(first, Location("main", "M5", LocationType.BED, clock()))

        with pytest.raises(ResourceUnavailable):
            await engine.assign_bed(second, Location("main", "M5", LocationType.BED, clock()))
        assert (await engine.get_visit(second)).location is None


@pytest.mark.asyncio
class TestFullZone:
    """A main zone with a single bed."""

    @pytest.fixture
    def beds(self):
        return InMemoryBedInventory({"main": {"M1": LocationType.BED}})

    async def test_waits_then_gets_bed(self, engine, triaged):
        first = (await triaged("abdominal pain")).visit.visit_id
        second = (await triaged("abdominal pain")).visit.visit_id
        await engine.assign_bed(first)

        queued = await engine.assign_bed(second)
        assert queued.visit.status == VisitStatus.WAITING_BED
        assert queued.visit.location.is_waiting
        assert isinstance(queued.warnings[0], ResourceUnavailable)

        await engine.discharge_patient(first, "dr_house")
        placed = await engine.assign_bed(second)
        assert placed.visit.location.bed == "M1"
        assert placed.visit.status == VisitStatus.IN_TREATMENT
        assert placed.warnings == []

    async def test_racing_for_last_bed(self, engine, triaged):
        first = (await triaged("abdominal pain")).visit.visit_id
        second = (await triaged("abdominal pain")).visit.visit_id

        results = await asyncio.gather(engine.assign_bed(first), engine.assign_bed(second))

        beds = sorted(r.visit.location.bed for r in results)
        assert beds == ["M1", "waiting"]
        assert sum(1 for r in results if r.warnings) == 1


@pytest.mark.asyncio
class TestProviders:

    async def test_door_to_provider_set_once(self, engine, register, clock):
        visit = await register()
        clock.advance(minutes=17)
        result = await engine.assign_provider(visit.visit_id, physician_id="dr_house")
        assert result.visit.door_to_provider == 17

        clock.advance(minutes=30)
        result = await engine.assign_provider(visit.visit_id, physician_id="dr_wilson", nurse_id="rn_jones")
        assert result.visit.assigned_physician_id == "dr_wilson"
        assert result.visit.assigned_nurse_id == "rn_jones"
        assert result.visit.door_to_provider == 17

    async def test_requires_an_identity(self, engine, register):
        visit = await register()
        with pytest.raises(ValidationError):
            await engine.assign_provider(visit.visit_id)


@pytest.mark.asyncio
class TestStatusAndDischarge:
    """update_status, discharge_patient and terminal immutability"""

    async def test_length_of_stay_in_whole_minutes(self, engine, register, clock):
        visit = await register()
        clock.advance(minutes=125, seconds=30)
        result = await engine.discharge_patient(visit.visit_id, "dr_house", "Rest and fluids")

        assert result.visit.status == VisitStatus.DISCHARGED
        assert result.visit.length_of_stay == 125
        assert result.visit.discharge_time == clock()
        assert result.visit.disposition.type == DispositionType.DISCHARGE_HOME
        assert result.visit.disposition.discharge_instructions == "Rest and fluids"

    async def test_double_discharge_rejected(self, engine, register):
        visit = await register()
        first = await engine.discharge_patient(visit.visit_id, "dr_house")
        with pytest.raises(InvalidStateTransition):
            await engine.discharge_patient(visit.visit_id, "dr_house")
        assert (await engine.get_visit(visit.visit_id)).version == first.visit.version

    async def test_terminal_visit_is_immutable(self, engine, triaged, make_vitals, clock):
        visit_id = (await triaged("abdominal pain")).visit.visit_id
        await engine.discharge_patient(visit_id, "dr_house")
        before = (await engine.get_visit(visit_id)).to_dict()

        attempts = [
            engine.record_vitals(visit_id, make_vitals()),
            engine.place_order(visit_id, OrderType.LAB, "dr_house", "CBC"),
            engine.add_note(visit_id, NoteType.PROGRESS, "dr_house", "Dr. House", "physician", "late note"),
            engine.assign_bed(visit_id),
            engine.assign_provider(visit_id, physician_id="dr_house"),
            engine.update_status(visit_id, VisitStatus.IN_TREATMENT, "dr_house"),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidStateTransition):
                await attempt

        assert (await engine.get_visit(visit_id)).to_dict() == before

    async def test_illegal_status_move(self, engine, register):
        visit = await register()
        with pytest.raises(InvalidStateTransition):
            await engine.update_status(visit.visit_id, VisitStatus.IN_TREATMENT, "rn_jones")

    async def test_lwbs_closes_visit(self, engine, triaged, clock):
        result = await triaged("chest pain")
        clock.advance(minutes=90)
        closed = await engine.update_status(result.visit.visit_id, VisitStatus.LEFT_WITHOUT_BEING_SEEN, "rn_jones")

        assert closed.visit.length_of_stay == 90
        assert all(a.is_resolved for a in closed.visit.alerts)
        assert await engine.get_overdue_alerts(clock() + timedelta(hours=2)) == []

    async def test_discharge_frees_bed(self, engine, triaged, beds):
        visit_id = (await triaged("abdominal pain")).visit.visit_id
        await engine.assign_bed(visit_id)
        await engine.discharge_patient(visit_id, "dr_house")
        assert beds.occupant("main", "M1") is None


@pytest.mark.asyncio
class TestClinicalRecord:
    """Vitals, notes and interventions."""

    async def test_severe_vitals_raise_alert(self, engine, triaged, make_vitals):
        visit_id = (await triaged("abdominal pain")).visit.visit_id
        result = await engine.record_vitals(visit_id, make_vitals(systolic_bp=75))

        assert [a.type for a in result.alerts] == [AlertType.ABNORMAL_VITAL]
        assert "systolic_bp=75" in result.alerts[0].message
        assert len(result.visit.vitals) == 2

    async def test_normal_vitals_no_alert(self, engine, triaged, make_vitals):
        visit_id = (await triaged("abdominal pain")).visit.visit_id
        result = await engine.record_vitals(visit_id, make_vitals(heart_rate=125))
        assert result.alerts == []

    async def test_note_addendum_once(self, engine, register):
        visit = await register()
        result = await engine.add_note(
            visit.visit_id, NoteType.PHYSICIAN, "dr_house", "Dr. House", "physician", "Exam unremarkable"
        )
        note_id = result.visit.notes[0].id

        amended = await engine.add_note_addendum(visit.visit_id, note_id, "Repeat exam benign")
        assert amended.visit.notes[0].addendum == "Repeat exam benign"
        assert amended.visit.notes[0].content == "Exam unremarkable"

        with pytest.raises(InvalidStateTransition):
            await engine.add_note_addendum(visit.visit_id, note_id, "Again")
        with pytest.raises(NoteNotFound):
            await engine.add_note_addendum(visit.visit_id, "missing", "text")

    async def test_empty_note_rejected(self, engine, register):
        visit = await register()
        with pytest.raises(ValidationError):
            await engine.add_note(visit.visit_id, NoteType.NURSING, "rn_jones", "RN Jones", "nurse", " ")

    async def test_intervention_recorded(self, engine, register, clock):
        visit = await register()
        result = await engine.add_intervention(
            visit.visit_id, "laceration_repair", "dr_house", "4 sutures to forearm", duration_minutes=20
        )
        intervention = result.visit.interventions[0]
        assert intervention.performed_at == clock()
        assert intervention.duration_minutes == 20


@pytest.mark.asyncio
class TestConsultations:

    async def test_consult_lifecycle(self, engine, triaged, notifier, clock):
        visit_id = await _in_treatment(engine, triaged, "chest pain")
        requested = await engine.request_consultation(visit_id, "cardiology", "dr_house", "Troponin rise")
        consult_id = requested.consultation.id

        assert requested.visit.status == VisitStatus.AWAITING_CONSULT
        assert notifier.sent[-1]["recipient"] == "consult_cardiology"

        clock.advance(minutes=12)
        accepted = await engine.update_consultation(
            visit_id, consult_id, ConsultationStatus.ACCEPTED, consultant_id="dr_cuddy"
        )
        assert accepted.consultation.response_time_minutes == 12
        assert accepted.visit.status == VisitStatus.AWAITING_CONSULT

        with pytest.raises(InvalidStateTransition):
            await engine.update_consultation(visit_id, consult_id, ConsultationStatus.REQUESTED)

        done = await engine.update_consultation(
            visit_id, consult_id, ConsultationStatus.COMPLETED, recommendations="Cath lab in the morning"
        )
        assert done.consultation.completed_at == clock()
        assert done.visit.status == VisitStatus.IN_TREATMENT

        with pytest.raises(InvalidStateTransition):
            await engine.update_consultation(visit_id, consult_id, ConsultationStatus.CANCELLED)


@pytest.mark.asyncio
class TestOrders:
    """place_order and update_order_result"""

    async def test_order_is_routed(self, engine, register, order_router):
        visit = await register()
        result = await engine.place_order(visit.visit_id, OrderType.LAB, "dr_house", "CBC")

        assert result.order.status == OrderStatus.PENDING
        assert order_router.routed[0][0] == visit.visit_id
        assert order_router.routed[0][1].id == result.order.id

    async def test_critical_potassium_pages_physician(self, engine, register, notifier):
        visit = await register()
        await engine.assign_provider(visit.visit_id, physician_id="dr_house")
        order = (await engine.place_order(visit.visit_id, OrderType.LAB, "dr_house", "Potassium")).order

        result = await engine.update_order_result(
            visit.visit_id, order.id, result="7.2 mmol/L", completed_by="lab_tech"
        )

        assert result.order.is_critical
        assert result.alerts[0].message == "CRITICAL RESULT: Potassium: 7.2 mmol/L"
        assert notifier.sent[-1]["recipient"] == "dr_house"
        assert notifier.sent[-1]["payload"]["order_id"] == order.id

    async def test_critical_result_without_physician(self, engine, register, notifier):
        visit = await register()
        order = (await engine.place_order(visit.visit_id, OrderType.LAB, "dr_house", "Troponin")).order
        await engine.update_order_result(visit.visit_id, order.id, result="Troponin I: POSITIVE")
        assert notifier.sent[-1]["recipient"] == "emergency_physician"

    async def test_normal_potassium(self, engine, register, notifier):
        visit = await register()
        order = (await engine.place_order(visit.visit_id, OrderType.LAB, "dr_house", "Potassium")).order
        result = await engine.update_order_result(visit.visit_id, order.id, result="4.0 mmol/L")

        assert not result.order.is_critical
        assert result.alerts == []
        assert notifier.sent == []

    async def test_order_transitions(self, engine, register):
        visit = await register()
        order = (await engine.place_order(visit.visit_id, OrderType.IMAGING, "dr_house", "CXR")).order

        with pytest.raises(ValidationError):
            await engine.update_order_result(visit.visit_id, order.id, OrderStatus.IN_PROGRESS, result="early")
        await engine.update_order_result(visit.visit_id, order.id, OrderStatus.IN_PROGRESS)
        await engine.update_order_result(visit.visit_id, order.id, result="No acute findings")
        with pytest.raises(InvalidStateTransition):
            await engine.update_order_result(visit.visit_id, order.id, result="again")
        with pytest.raises(OrderNotFound):
            await engine.update_order_result(visit.visit_id, "missing")

    async def test_routing_failure_keeps_order(self, registry, clock):
        engine = EmergencyDepartmentEngine(registry=registry, order_router=FailingOrderRouter(), clock=clock)
        visit = (await engine.register_patient("MRN-001", "cough")).visit

        result = await engine.place_order(visit.visit_id, OrderType.LAB, "dr_house", "CBC")

        assert result.warnings[0].dependency == "order_routing"
        assert len((await engine.get_visit(visit.visit_id)).orders) == 1


@pytest.mark.asyncio
class TestAlertsAndBundle:

    async def test_overdue_until_acknowledged(self, engine, triaged, clock):
        result = await triaged("chest pain")
        visit_id = result.visit.visit_id
        alert = result.alerts[0]
        assert alert.type == AlertType.STEMI_ALERT

        assert await engine.get_overdue_alerts(clock() + timedelta(minutes=15)) == []
        overdue = await engine.get_overdue_alerts(clock() + timedelta(minutes=16))
        assert [(v, a.id) for v, a in overdue] == [(visit_id, alert.id)]

        clock.advance(minutes=3)
        await engine.acknowledge_alert(visit_id, alert.id, "dr_house")
        assert await engine.get_overdue_alerts(clock() + timedelta(hours=1)) == []

        resolved = await engine.resolve_alert(visit_id, alert.id, "dr_house")
        assert resolved.alerts[0].is_resolved

    async def test_bundle_completion(self, engine, triaged, make_vitals, clock):
        result = await triaged("fever", vitals=make_vitals(temperature=39.0, heart_rate=110))
        visit_id = result.visit.visit_id

        await engine.complete_bundle_item(visit_id, 0, BundleItemStatus.COMPLETED, "rn_jones")
        views = await engine.get_bundle_status(visit_id, clock() + timedelta(minutes=61))

        assert not views[0].breached
        assert [v.breached for v in views[1:]] == [True, True, False]


@pytest.mark.asyncio
class TestDisposition:

    async def test_admission_pages_bed_management(self, engine, triaged, notifier, clock):
        visit_id = await _in_treatment(engine, triaged)
        disposition = Disposition(
            type=DispositionType.ADMIT_INPATIENT,
            decided_by="dr_house",
            decided_at=clock(),
            admitting_service="general surgery",
        )
        result = await engine.set_disposition(visit_id, disposition)

        assert result.visit.status == VisitStatus.AWAITING_ADMISSION
        assert notifier.sent[-1]["recipient"] == "bed_management"
        assert "general surgery" in notifier.sent[-1]["message"]

        admitted = await engine.update_status(visit_id, VisitStatus.ADMITTED, "bed_management")
        assert admitted.visit.is_terminal
        assert admitted.visit.length_of_stay is not None

    async def test_transfer_pages_transfer_center(self, engine, triaged, notifier, clock):
        visit_id = await _in_treatment(engine, triaged)
        disposition = Disposition(
            type=DispositionType.TRANSFER,
            decided_by="dr_house",
            decided_at=clock(),
            transfer_to="St. Mary's Burn Unit",
        )
        result = await engine.set_disposition(visit_id, disposition)

        assert result.visit.status == VisitStatus.AWAITING_DISCHARGE
        assert notifier.sent[-1]["recipient"] == "transfer_center"

    async def test_ama_is_terminal(self, engine, triaged, beds, clock):
        visit_id = await _in_treatment(engine, triaged)
        await engine.assign_bed(visit_id)

        result = await engine.set_disposition(
            visit_id, Disposition(type=DispositionType.AMA, decided_by="dr_house", decided_at=clock())
        )

        assert result.visit.status == VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE
        assert beds.occupant("main", "M1") is None

    async def test_admission_before_triage_rejected(self, engine, register, notifier, clock):
        visit = await register("abdominal pain")
        disposition = Disposition(
            type=DispositionType.ADMIT_INPATIENT,
            decided_by="dr_house",
            decided_at=clock(),
            admitting_service="medicine",
        )
        with pytest.raises(InvalidStateTransition) as excinfo:
            await engine.set_disposition(visit.visit_id, disposition)

        assert excinfo.value.current == VisitStatus.ARRIVED.value
        assert excinfo.value.requested == VisitStatus.AWAITING_ADMISSION.value
        stored = await engine.get_visit(visit.visit_id)
        assert stored.status == VisitStatus.ARRIVED
        assert stored.disposition is None
        assert notifier.sent == []

    @pytest.mark.parametrize("disposition_type", [
        DispositionType.DISCHARGE_HOME,
        DispositionType.TRANSFER,
        DispositionType.ADMIT_ICU,
    ])
    async def test_non_terminal_disposition_needs_triage(self, engine, register, clock, disposition_type):
        visit = await register()
        with pytest.raises(InvalidStateTransition):
            await engine.set_disposition(
                visit.visit_id, Disposition(type=disposition_type, decided_by="dr_house", decided_at=clock())
            )

    async def test_lwbs_before_triage_allowed(self, engine, register, clock):
        visit = await register()
        result = await engine.set_disposition(
            visit.visit_id, Disposition(type=DispositionType.LWBS, decided_by="rn_jones", decided_at=clock())
        )
        assert result.visit.status == VisitStatus.LEFT_WITHOUT_BEING_SEEN
        assert result.visit.is_terminal


@pytest.mark.asyncio
class TestConcurrency:
    """Per-visit serialization."""

    async def test_concurrent_notes_are_not_lost(self, engine, register):
        visit = await register()
        await asyncio.gather(*(
            engine.add_note(visit.visit_id, NoteType.NURSING, "rn_jones", "RN Jones", "nurse", f"check {i}")
            for i in range(10)
        ))
        stored = await engine.get_visit(visit.visit_id)
        assert len(stored.notes) == 10
        assert stored.version == visit.version + 10

    async def test_concurrent_discharge_succeeds_once(self, engine, register):
        visit = await register()
        outcomes = await asyncio.gather(
            engine.discharge_patient(visit.visit_id, "dr_house"),
            engine.discharge_patient(visit.visit_id, "dr_wilson"),
            return_exceptions=True,
        )
        assert sum(isinstance(o, InvalidStateTransition) for o in outcomes) == 1
        assert (await engine.get_visit(visit.visit_id)).status == VisitStatus.DISCHARGED


@pytest.mark.asyncio
class TestNotificationFailure:
    """Pages fail after commit; the record stands."""

    async def test_failed_page_on_critical_result(self, registry, clock):
        engine = EmergencyDepartmentEngine(registry=registry, notifier=FailingTransport(), clock=clock)
        visit = (await engine.register_patient("MRN-001", "weakness")).visit
        order = (await engine.place_order(visit.visit_id, OrderType.LAB, "dr_house", "Potassium")).order

        result = await engine.update_order_result(visit.visit_id, order.id, result="7.2 mmol/L")

        assert result.notification_failed
        assert isinstance(result.warnings[0], DependencyFailure)
        stored = await engine.get_visit(visit.visit_id)
        assert stored.find_order(order.id).is_critical
        assert stored.alerts[0].type == AlertType.CRITICAL_RESULT

    async def test_slow_page_times_out(self, registry, clock):
        engine = EmergencyDepartmentEngine(
            registry=registry,
            notifier=SlowTransport(),
            config=Settings(notification_timeout_seconds=0.1),
            clock=clock,
        )
        visit = (await engine.register_patient("MRN-001", "chest pain")).visit

        result = await engine.request_consultation(visit.visit_id, "cardiology", "dr_house", "ECG changes")

        assert result.notification_failed
        assert "did not respond" in result.warnings[0].message
        assert len((await engine.get_visit(visit.visit_id)).consultations) == 1

    async def test_stroke_team_page_failures(self, registry, make_vitals, clock):
        engine = EmergencyDepartmentEngine(registry=registry, notifier=FailingTransport(), clock=clock)
        visit = (await engine.register_patient("MRN-001", "aphasia")).visit

        result = await engine.activate_stroke_code(visit.visit_id, "dr_house", clock(), vitals=make_vitals())

        assert len(result.warnings) == 4
        assert result.visit.status == VisitStatus.IN_TREATMENT


@pytest.mark.asyncio
class TestReadModels:

    async def test_metrics_and_board(self, engine, register, triaged, clock):
        await register()
        await triaged("abdominal pain")
        clock.advance(minutes=20)

        metrics = await engine.get_ed_metrics()
        assert metrics.census == 2
        assert metrics.waiting == 2
        assert metrics.average_wait_minutes == 20.0

        board = await engine.get_patient_tracking_board()
        assert len(board["waiting"]) == 2
