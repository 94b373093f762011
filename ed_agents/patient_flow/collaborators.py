"""
ED Patient-Flow Agent - External Collaborators

The engine depends on five services it does not own. Each is described by a
typing.Protocol so production adapters and test doubles are interchangeable.

┌──────────────────────┬──────────────────────────────┬────────────────────────┐
│ COLLABORATOR         │ USED FOR                     │ IN-MEMORY DEFAULT      │
├──────────────────────┼──────────────────────────────┼────────────────────────┤
│ PatientRegistry      │ age → pediatric / geriatric  │ InMemoryPatientRegistry│
│ BedInventory         │ bed search, claim, release   │ InMemoryBedInventory   │
│ StaffDirectory       │ role → on-call staff member  │ InMemoryStaffDirectory │
│ OrderRoutingGateway  │ send orders to lab / imaging │ InMemoryOrderRouter    │
│ NotificationTransport│ team pages, critical results │ Logging / Orchestrator │
└──────────────────────┴──────────────────────────────┴────────────────────────┘

Every collaborator call is async. The engine treats paging and order routing
as fire-and-forget side effects; bed claims are part of the clinical
operation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from .config import Settings, settings as default_settings
from .models import LocationType, Order, to_jsonable

logger = logging.getLogger(__name__)


# =============================================================================
# INTERFACES
# =============================================================================

class PatientRegistry(Protocol):
    async def get_patient(self, patient_id: str) -> Optional[Dict[str, Any]]:
        """Demographics for a patient, at least {"age": int}, or None."""
        ...


class BedInventory(Protocol):
    async def find_available_bed(self, zone: str, location_type: LocationType) -> Optional[str]:
        ...

    async def get_available_beds(self) -> Dict[str, List[str]]:
        ...

    async def claim_bed(self, zone: str, location_type: LocationType, visit_id: str) -> Optional[str]:
        """Find and occupy a free bed in one step; None when the zone is full."""
        ...

    async def occupy_bed(self, zone: str, bed: str, visit_id: str) -> bool:
        """Occupy a named bed; False when another visit holds it."""
        ...

    async def release_bed(self, zone: str, bed: str) -> None:
        ...


class StaffDirectory(Protocol):
    async def resolve_role(self, role: str) -> Optional[Dict[str, str]]:
        """On-call staff member for a role as {"user_id", "name"}, or None."""
        ...


class OrderRoutingGateway(Protocol):
    async def route_order(self, visit_id: str, order: Order) -> None:
        ...


class NotificationTransport(Protocol):
    async def page(self, recipient: str, message: str, payload: Dict[str, Any]) -> None:
        ...


# =============================================================================
# PATIENT REGISTRY
# =============================================================================

class InMemoryPatientRegistry:
    def __init__(self, patients: Optional[Dict[str, Dict[str, Any]]] = None):
        self._patients: Dict[str, Dict[str, Any]] = dict(patients or {})

    def add_patient(self, patient_id: str, **demographics: Any) -> None:
        self._patients[patient_id] = demographics

    async def get_patient(self, patient_id: str) -> Optional[Dict[str, Any]]:
        return self._patients.get(patient_id)


# =============================================================================
# BED INVENTORY
# =============================================================================

def default_bed_layout(config: Settings = default_settings) -> Dict[str, Dict[str, LocationType]]:
    """
    Zone → bed → location type for a mid-sized department.

    Trauma bays come from configuration; the other zones are fixed.
    """
    layout: Dict[str, Dict[str, LocationType]] = {
        "resuscitation": {f"R{i}": LocationType.RESUSCITATION for i in range(1, 3)},
        "trauma": {bay: LocationType.TRAUMA_BAY for bay in config.trauma_bays},
        "acute": {f"A{i}": LocationType.BED for i in range(1, 7)},
        "main": {f"M{i}": LocationType.BED for i in range(1, 11)},
        "behavioral": {f"B{i}": LocationType.BED for i in range(1, 4)},
        "fast_track": {f"FT{i}": LocationType.CHAIR for i in range(1, 7)},
    }
    return layout


class InMemoryBedInventory:
    """
    Bed occupancy held in a dict.

    claim_bed never awaits between the search and the write, so two
    coroutines racing for the last bed in a zone cannot both win.
    """

    def __init__(self, layout: Optional[Dict[str, Dict[str, LocationType]]] = None):
        self._layout = layout if layout is not None else default_bed_layout()
        self._occupied: Dict[Tuple[str, str], str] = {}

    def _free_beds(self, zone: str, location_type: Optional[LocationType] = None) -> List[str]:
        beds = self._layout.get(zone, {})
        return [
            bed for bed, kind in beds.items()
            if (zone, bed) not in self._occupied and (location_type is None or kind == location_type)
        ]

    def occupant(self, zone: str, bed: str) -> Optional[str]:
        return self._occupied.get((zone, bed))

    async def find_available_bed(self, zone: str, location_type: LocationType) -> Optional[str]:
        free = self._free_beds(zone, location_type)
        return free[0] if free else None

    async def get_available_beds(self) -> Dict[str, List[str]]:
        return {zone: self._free_beds(zone) for zone in self._layout}

    async def claim_bed(self, zone: str, location_type: LocationType, visit_id: str) -> Optional[str]:
        free = self._free_beds(zone, location_type)
        if not free:
            return None
        self._occupied[(zone, free[0])] = visit_id
        logger.debug("Bed claimed", extra={"zone": zone, "bed": free[0], "visit_id": visit_id})
        return free[0]

    async def occupy_bed(self, zone: str, bed: str, visit_id: str) -> bool:
        holder = self._occupied.get((zone, bed))
        if holder is not None and holder != visit_id:
            return False
        self._occupied[(zone, bed)] = visit_id
        return True

    async def release_bed(self, zone: str, bed: str) -> None:
        if self._occupied.pop((zone, bed), None) is not None:
            logger.debug("Bed released", extra={"zone": zone, "bed": bed})


# =============================================================================
# STAFF DIRECTORY
# =============================================================================

class InMemoryStaffDirectory:
    def __init__(self, on_call: Optional[Dict[str, Dict[str, str]]] = None):
        self._on_call: Dict[str, Dict[str, str]] = dict(on_call or {})

    def set_on_call(self, role: str, user_id: str, name: str) -> None:
        self._on_call[role] = {"user_id": user_id, "name": name}

    async def resolve_role(self, role: str) -> Optional[Dict[str, str]]:
        return self._on_call.get(role)


# =============================================================================
# ORDER ROUTING
# =============================================================================

class InMemoryOrderRouter:
    """Collects routed orders; results come back through update_order_result."""

    def __init__(self):
        self.routed: List[Tuple[str, Order]] = []

    async def route_order(self, visit_id: str, order: Order) -> None:
        self.routed.append((visit_id, order))
        logger.info(
            f"Order routed: {order.type.value}",
            extra={"visit_id": visit_id, "order_id": order.id, "priority": order.priority.value},
        )


# =============================================================================
# NOTIFICATION TRANSPORTS
# =============================================================================

class LoggingNotificationTransport:
    """Writes pages to the log and keeps them for inspection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def page(self, recipient: str, message: str, payload: Dict[str, Any]) -> None:
        self.sent.append({"recipient": recipient, "message": message, "payload": payload})
        logger.info(f"PAGE → {recipient}: {message}", extra={"recipient": recipient})


class OrchestratorPagingTransport:
    """
    Relays pages through the central orchestrator over HTTP.

    POST {orchestrator_url}/api/v1/pages with the recipient, message and
    payload. Any transport error or non-2xx status propagates to the caller,
    which records it as a DependencyFailure.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Settings = default_settings,
    ):
        self.base_url = (base_url or config.orchestrator_url).rstrip("/")
        self.source = config.service_name
        self.timeout = config.notification_timeout_seconds
        self._client = client

    async def page(self, recipient: str, message: str, payload: Dict[str, Any]) -> None:
        body = {
            "source": self.source,
            "recipient": recipient,
            "message": message,
            "payload": to_jsonable(payload),
        }
        if self._client is not None:
            response = await self._client.post(f"{self.base_url}/api/v1/pages", json=body, timeout=self.timeout)
            response.raise_for_status()
            return

        async with httpx.AsyncClient() as client:
            response = await client.post(f"{self.base_url}/api/v1/pages", json=body, timeout=self.timeout)
            response.raise_for_status()
