"""
Visit State Machine & Resource Allocator - Unit Tests

Run with: pytest ed_agents/patient_flow/tests/test_workflow.py -v
"""

from datetime import timedelta

import pytest

from ed_agents.patient_flow import workflow
from ed_agents.patient_flow.alerts import new_alert
from ed_agents.patient_flow.allocation import ResourceAllocator, recommend_location, waiting_location
from ed_agents.patient_flow.collaborators import InMemoryBedInventory
from ed_agents.patient_flow.errors import InvalidStateTransition
from ed_agents.patient_flow.models import (
    AlertSeverity,
    AlertType,
    ArrivalMode,
    DispositionType,
    LocationType,
    TERMINAL_STATUSES,
    Visit,
    VisitStatus,
)


@pytest.fixture
def visit(clock):
    return Visit(
        patient_id="MRN-001",
        arrival_mode=ArrivalMode.AMBULANCE,
        chief_complaint="abdominal pain",
        arrival_time=clock(),
    )


class TestTransitionTable:
    """ALLOWED_TRANSITIONS and the always-available exits."""

    @pytest.mark.parametrize("current,target", [
        (VisitStatus.ARRIVED, VisitStatus.WAITING_TRIAGE),
        (VisitStatus.TRIAGED, VisitStatus.WAITING_BED),
        (VisitStatus.TRIAGED, VisitStatus.IN_TREATMENT),
        (VisitStatus.IN_TREATMENT, VisitStatus.AWAITING_RESULTS),
        (VisitStatus.AWAITING_RESULTS, VisitStatus.IN_TREATMENT),
        (VisitStatus.AWAITING_CONSULT, VisitStatus.IN_TREATMENT),
        (VisitStatus.AWAITING_ADMISSION, VisitStatus.ADMITTED),
        (VisitStatus.AWAITING_DISCHARGE, VisitStatus.DISCHARGED),
        (VisitStatus.AWAITING_DISCHARGE, VisitStatus.TRANSFERRED),
    ])
    def test_legal_moves(self, current, target):
        assert workflow.can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (VisitStatus.ARRIVED, VisitStatus.IN_TREATMENT),
        (VisitStatus.WAITING_TRIAGE, VisitStatus.TRIAGED),
        (VisitStatus.IN_TREATMENT, VisitStatus.DISCHARGED),
        (VisitStatus.AWAITING_RESULTS, VisitStatus.ADMITTED),
    ])
    def test_illegal_moves(self, current, target):
        assert not workflow.can_transition(current, target)

    @pytest.mark.parametrize("current", [s for s in VisitStatus if not s.is_terminal])
    def test_lwbs_ama_deceased_from_any_active_state(self, current):
        for target in (
            VisitStatus.LEFT_WITHOUT_BEING_SEEN,
            VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE,
            VisitStatus.DECEASED,
        ):
            assert workflow.can_transition(current, target)

    @pytest.mark.parametrize("current", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, current):
        assert not any(workflow.can_transition(current, target) for target in VisitStatus)

    @pytest.mark.parametrize("disposition,status", [
        (DispositionType.DISCHARGE_HOME, VisitStatus.AWAITING_DISCHARGE),
        (DispositionType.HOSPICE, VisitStatus.AWAITING_DISCHARGE),
        (DispositionType.TRANSFER, VisitStatus.AWAITING_DISCHARGE),
        (DispositionType.ADMIT_ICU, VisitStatus.AWAITING_ADMISSION),
        (DispositionType.AMA, VisitStatus.LEFT_AGAINST_MEDICAL_ADVICE),
        (DispositionType.LWBS, VisitStatus.LEFT_WITHOUT_BEING_SEEN),
        (DispositionType.DECEASED, VisitStatus.DECEASED),
    ])
    def test_disposition_mapping(self, disposition, status):
        assert workflow.status_for_disposition(disposition) == status


class TestApplyStatus:
    """Side effects of entering a status."""

    def test_terminal_status_records_departure(self, visit, clock):
        visit.alerts.append(new_alert(AlertType.WAIT_TIME, AlertSeverity.INFO, "Long wait", clock()))
        later = clock() + timedelta(minutes=95, seconds=40)

        workflow.apply_status(visit, VisitStatus.LEFT_WITHOUT_BEING_SEEN, later)

        assert visit.discharge_time == later
        assert visit.length_of_stay == 95
        assert visit.alerts[0].auto_resolved

    def test_transition_rejects_terminal_visit(self, visit, clock):
        workflow.apply_status(visit, VisitStatus.DECEASED, clock())
        with pytest.raises(InvalidStateTransition) as exc_info:
            workflow.transition(visit, VisitStatus.IN_TREATMENT, clock())
        assert exc_info.value.current == "deceased"
        assert visit.status == VisitStatus.DECEASED

    def test_transition_rejects_illegal_jump(self, visit, clock):
        with pytest.raises(InvalidStateTransition):
            workflow.transition(visit, VisitStatus.DISCHARGED, clock())
        assert visit.status == VisitStatus.ARRIVED


class TestRecommendLocation:
    """First matching rule wins."""

    def test_level_1_beats_trauma(self, visit):
        visit.triage_level = 1
        visit.is_trauma = True
        assert recommend_location(visit).zone == "resuscitation"

    def test_trauma_beats_level_2(self, visit):
        visit.triage_level = 2
        visit.is_trauma = True
        rec = recommend_location(visit)
        assert (rec.zone, rec.type) == ("trauma", LocationType.TRAUMA_BAY)

    def test_level_2_beats_psychiatric(self, visit):
        visit.triage_level = 2
        visit.is_psychiatric = True
        assert recommend_location(visit).zone == "acute"

    def test_psychiatric_beats_fast_track(self, visit):
        visit.triage_level = 4
        visit.is_psychiatric = True
        assert recommend_location(visit).zone == "behavioral"

    @pytest.mark.parametrize("level,zone,kind", [
        (3, "main", LocationType.BED),
        (4, "fast_track", LocationType.CHAIR),
        (5, "fast_track", LocationType.CHAIR),
    ])
    def test_by_level(self, visit, level, zone, kind):
        visit.triage_level = level
        rec = recommend_location(visit)
        assert (rec.zone, rec.type) == (zone, kind)


class TestResourceAllocator:
    """Claiming and releasing beds."""

    @pytest.mark.asyncio
    async def test_claim_until_zone_full(self, visit, clock):
        beds = InMemoryBedInventory({"behavioral": {"B1": LocationType.BED}})
        allocator = ResourceAllocator(beds)
        visit.is_psychiatric = True
        rec = recommend_location(visit)

        first = await allocator.claim(visit, rec, clock())
        assert first.bed == "B1"
        assert await allocator.claim(visit, rec, clock()) is None

        await allocator.release(first)
        assert beds.occupant("behavioral", "B1") is None

    @pytest.mark.asyncio
    async def test_release_ignores_waiting_location(self, clock):
        beds = InMemoryBedInventory({"main": {"M1": LocationType.BED}})
        await ResourceAllocator(beds).release(waiting_location("main", clock()))
        await ResourceAllocator(beds).release(None)
        assert await beds.get_available_beds() == {"main": ["M1"]}
