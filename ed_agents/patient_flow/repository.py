"""
ED Patient-Flow Agent - Repositories

Storage for visits and team activations with per-record serialization.

WRITE PATH:
───────────
    async with repo.transaction(visit_id) as visit:   # per-visit lock taken
        visit.alerts.append(...)                      # private deep copy
    # commit: version checked, version + 1, stored object replaced

If the block raises, nothing is committed and the stored visit is untouched.
Two writers on the same visit serialize on its lock, and the second one reads
the state committed by the first, so neither status changes nor appends are
lost.

READ PATH:
──────────
Reads return committed objects. Because commits replace objects instead of
mutating them, list_visits() is a consistent snapshot without any global lock.
Callers must treat returned objects as read-only.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Generic, List, TypeVar, Union

from .errors import ActivationNotFound, ConcurrentModification, NotFound, VisitNotFound
from .models import StrokeCode, TraumaActivation, Visit

logger = logging.getLogger(__name__)

Activation = Union[TraumaActivation, StrokeCode]
T = TypeVar("T")


class _LockedStore(Generic[T]):
    """Dict of records plus one lazily created asyncio.Lock per record id."""

    not_found = NotFound

    def __init__(self):
        self._records: Dict[str, T] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        return lock

    def _get(self, record_id: str) -> T:
        record = self._records.get(record_id)
        if record is None:
            raise self.not_found(record_id)
        return record


# =============================================================================
# VISITS
# =============================================================================

class VisitRepository(ABC):
    """Persistence interface for ED visits."""

    @abstractmethod
    async def add(self, visit: Visit) -> Visit:
        ...

    @abstractmethod
    async def get(self, visit_id: str) -> Visit:
        """Committed visit; raises VisitNotFound."""
        ...

    @abstractmethod
    async def list_visits(self) -> List[Visit]:
        ...

    @abstractmethod
    def transaction(self, visit_id: str):
        """Async context manager yielding a private, mutable copy of the visit."""
        ...

    async def list_active(self) -> List[Visit]:
        return [v for v in await self.list_visits() if not v.is_terminal]


class InMemoryVisitRepository(_LockedStore[Visit], VisitRepository):

    not_found = VisitNotFound

    async def add(self, visit: Visit) -> Visit:
        async with self._lock_for(visit.visit_id):
            if visit.visit_id in self._records:
                raise ValueError(f"Visit {visit.visit_id} already exists")
            stored = copy.deepcopy(visit)
            self._records[visit.visit_id] = stored
        return stored

    async def get(self, visit_id: str) -> Visit:
        return self._get(visit_id)

    async def list_visits(self) -> List[Visit]:
        return list(self._records.values())

    @asynccontextmanager
    async def transaction(self, visit_id: str) -> AsyncIterator[Visit]:
        self._get(visit_id)
        async with self._lock_for(visit_id):
            committed = self._get(visit_id)
            working = copy.deepcopy(committed)
            yield working

            current = self._records[visit_id]
            if current.version != committed.version:
                raise ConcurrentModification(visit_id, committed.version, current.version)
            working.version = committed.version + 1
            self._records[visit_id] = working
            logger.debug("Visit committed", extra={"visit_id": visit_id, "version": working.version})


# =============================================================================
# TEAM ACTIVATIONS
# =============================================================================

class ActivationRepository(ABC):
    """Trauma activations and stroke codes, linked to visits by visit_id."""

    @abstractmethod
    async def add(self, activation: Activation) -> Activation:
        ...

    @abstractmethod
    async def get(self, activation_id: str) -> Activation:
        ...

    @abstractmethod
    async def for_visit(self, visit_id: str) -> List[Activation]:
        ...

    @abstractmethod
    def transaction(self, activation_id: str):
        ...


class InMemoryActivationRepository(_LockedStore[Activation], ActivationRepository):

    not_found = ActivationNotFound

    async def add(self, activation: Activation) -> Activation:
        stored = copy.deepcopy(activation)
        self._records[activation.id] = stored
        return stored

    async def get(self, activation_id: str) -> Activation:
        return self._get(activation_id)

    async def for_visit(self, visit_id: str) -> List[Activation]:
        return [a for a in self._records.values() if a.visit_id == visit_id]

    @asynccontextmanager
    async def transaction(self, activation_id: str) -> AsyncIterator[Activation]:
        self._get(activation_id)
        async with self._lock_for(activation_id):
            working = copy.deepcopy(self._get(activation_id))
            yield working
            self._records[activation_id] = working
