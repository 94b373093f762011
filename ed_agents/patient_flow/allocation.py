"""
ED Patient-Flow Agent - Resource Allocator

Recommends a zone and location type for a visit and claims a matching bed
from the bed inventory.

RECOMMENDATION PRECEDENCE (first match wins):
─────────────────────────────────────────────
    1. triage level 1 ........ resuscitation / resuscitation
    2. trauma ................ trauma / trauma_bay
    3. triage level 2 ........ acute / bed
    4. psychiatric ........... behavioral / bed
    5. triage level >= 4 ..... fast_track / chair
    6. otherwise ............. main / bed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .collaborators import BedInventory
from .config import AcuityLevel
from .models import Location, LocationType, Visit

logger = logging.getLogger(__name__)

WAITING_BED = "waiting"


@dataclass(frozen=True)
class LocationRecommendation:
    zone: str
    type: LocationType
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"zone": self.zone, "type": self.type.value, "reason": self.reason}


def recommend_location(visit: Visit) -> LocationRecommendation:
    """Pure zone recommendation for a visit's current acuity and flags."""
    level = visit.triage_level
    if level == AcuityLevel.CRITICAL:
        return LocationRecommendation("resuscitation", LocationType.RESUSCITATION, "Level 1: resuscitation")
    if visit.is_trauma:
        return LocationRecommendation("trauma", LocationType.TRAUMA_BAY, "Trauma patient")
    if level == AcuityLevel.EMERGENT:
        return LocationRecommendation("acute", LocationType.BED, "Level 2: acute care")
    if visit.is_psychiatric:
        return LocationRecommendation("behavioral", LocationType.BED, "Behavioral health presentation")
    if level >= AcuityLevel.LESS_URGENT:
        return LocationRecommendation("fast_track", LocationType.CHAIR, f"Level {level}: fast track")
    return LocationRecommendation("main", LocationType.BED, f"Level {level}: main department")


def waiting_location(zone: str, at: datetime) -> Location:
    """Placeholder location for a visit queued for a bed in `zone`."""
    return Location(zone=zone, bed=WAITING_BED, type=LocationType.HALLWAY, assigned_at=at)


class ResourceAllocator:
    """Turns recommendations into claimed beds."""

    def __init__(self, beds: BedInventory):
        self.beds = beds

    async def claim(self, visit: Visit, recommendation: LocationRecommendation, at: datetime) -> Optional[Location]:
        """Claim a bed for the recommendation; None when the zone is full."""
        bed = await self.beds.claim_bed(recommendation.zone, recommendation.type, visit.visit_id)
        if bed is None:
            logger.info(
                f"No {recommendation.type.value} available in {recommendation.zone}",
                extra={"visit_id": visit.visit_id, "zone": recommendation.zone},
            )
            return None
        return Location(zone=recommendation.zone, bed=bed, type=recommendation.type, assigned_at=at)

    async def occupy(self, visit: Visit, location: Location) -> bool:
        return await self.beds.occupy_bed(location.zone, location.bed, visit.visit_id)

    async def release(self, location: Optional[Location]) -> None:
        if location is None or location.is_waiting:
            return
        await self.beds.release_bed(location.zone, location.bed)
