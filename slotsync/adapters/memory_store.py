"""
In-memory persistence adapters.

These implement the same protocols as the SQL adapters without a database,
for tests and for embedding the engine in short-lived processes.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from typing import Collection, Dict, Iterator, List, Sequence, Tuple

import pendulum
from pendulum import DateTime

from ..domain.exceptions import OwnerNotFound, RehearsalNotFound
from ..domain.models import (
    AvailabilitySlot,
    MembershipStatus,
    ProjectMembership,
    Rehearsal,
    SlotSource,
)


class InMemorySlotStore:
    """
    Slot store backed by a dict.

    A single lock guards every operation, so each scoped replace is atomic.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, AvailabilitySlot] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _insert(self, slot: AvailabilitySlot) -> AvailabilitySlot:
        stored = slot.copy(
            id=str(next(self._ids)),
            created_at=slot.created_at or pendulum.now("UTC"),
        )
        self._slots[stored.id] = stored
        return stored.copy()

    def _delete_where(self, predicate) -> int:
        doomed = [slot_id for slot_id, slot in self._slots.items() if predicate(slot)]
        for slot_id in doomed:
            del self._slots[slot_id]
        return len(doomed)

    def add(self, slot: AvailabilitySlot) -> AvailabilitySlot:
        with self._lock:
            return self._insert(slot)

    def replace_scope(
        self,
        owner_id: str,
        source: SlotSource,
        window_start: DateTime,
        window_end: DateTime,
        slots: Sequence[AvailabilitySlot],
    ) -> List[AvailabilitySlot]:
        with self._lock:
            self._delete_where(_in_scope(owner_id, source, window_start, window_end))
            return [self._insert(slot) for slot in slots]

    def delete_scope(
        self,
        owner_id: str,
        source: SlotSource,
        window_start: DateTime,
        window_end: DateTime,
    ) -> int:
        with self._lock:
            return self._delete_where(_in_scope(owner_id, source, window_start, window_end))

    def delete_by_ref(self, source: SlotSource, external_ref: str) -> int:
        with self._lock:
            return self._delete_where(
                lambda slot: slot.source == source and slot.external_ref == str(external_ref)
            )

    def delete_owner(self, owner_id: str) -> int:
        """Drop every slot of an owner, whatever its source."""
        with self._lock:
            return self._delete_where(lambda slot: slot.owner_id == owner_id)

    def find_by_ref(self, source: SlotSource, external_ref: str) -> List[AvailabilitySlot]:
        with self._lock:
            found = [
                slot.copy()
                for slot in self._slots.values()
                if slot.source == source and slot.external_ref == str(external_ref)
            ]
        return _ordered(found)

    def find_overlapping(
        self,
        owner_id: str,
        window_start: DateTime,
        window_end: DateTime,
        sources: Collection[SlotSource] | None = None,
    ) -> List[AvailabilitySlot]:
        with self._lock:
            found = [
                slot.copy()
                for slot in self._slots.values()
                if slot.owner_id == owner_id
                and slot.overlaps(window_start, window_end)
                and (sources is None or slot.source in sources)
            ]
        return _ordered(found)

    def all(self) -> List[AvailabilitySlot]:
        with self._lock:
            return _ordered([slot.copy() for slot in self._slots.values()])


def _in_scope(owner_id: str, source: SlotSource, window_start: DateTime, window_end: DateTime):
    def predicate(slot: AvailabilitySlot) -> bool:
        return (
            slot.owner_id == owner_id
            and slot.source == source
            and window_start <= slot.starts_at < window_end
        )
    return predicate


def _ordered(slots: List[AvailabilitySlot]) -> List[AvailabilitySlot]:
    return sorted(slots, key=lambda s: (s.starts_at, int(s.id or 0)))


class InMemoryDirectory:
    """
    Members and project memberships.

    Removing a member cascades into the slot store when one is attached,
    the way the SQL schema cascades on delete.
    """

    def __init__(
        self,
        default_timezone: str = "UTC",
        slot_store: InMemorySlotStore | None = None,
    ) -> None:
        self.default_timezone = default_timezone
        self._slot_store = slot_store
        self._members: Dict[str, str | None] = {}
        self._memberships: Dict[Tuple[str, str], ProjectMembership] = {}

    def add_member(self, user_id: str, timezone: str | None = None) -> None:
        self._members[str(user_id)] = timezone

    def remove_member(self, user_id: str) -> None:
        user_id = str(user_id)
        if user_id not in self._members:
            raise OwnerNotFound(user_id)

        del self._members[user_id]
        for key in [key for key in self._memberships if key[1] == user_id]:
            del self._memberships[key]
        if self._slot_store is not None:
            self._slot_store.delete_owner(user_id)

    def timezone(self, user_id: str) -> str:
        user_id = str(user_id)
        if user_id not in self._members:
            raise OwnerNotFound(user_id)
        return self._members[user_id] or self.default_timezone

    def set_membership(
        self,
        project_id: str,
        user_id: str,
        status: MembershipStatus | str = MembershipStatus.ACTIVE,
    ) -> ProjectMembership:
        if str(user_id) not in self._members:
            raise OwnerNotFound(str(user_id))
        membership = ProjectMembership(
            project_id=str(project_id),
            user_id=str(user_id),
            status=MembershipStatus(status),
        )
        self._memberships[(membership.project_id, membership.user_id)] = membership
        return membership

    def active_members(self, project_id: str) -> List[str]:
        return [
            membership.user_id
            for (project, _), membership in self._memberships.items()
            if project == str(project_id) and membership.is_active
        ]


class InMemoryRehearsalStore:
    """Rehearsal rows and their RSVP responses."""

    def __init__(self) -> None:
        self._rehearsals: Dict[str, Rehearsal] = {}
        self._responses: Dict[str, Dict[str, str]] = {}

    def save(self, rehearsal: Rehearsal) -> Rehearsal:
        self._rehearsals[rehearsal.id] = rehearsal
        return rehearsal

    def get(self, rehearsal_id: str) -> Rehearsal:
        try:
            return self._rehearsals[str(rehearsal_id)]
        except KeyError:
            raise RehearsalNotFound(str(rehearsal_id)) from None

    def delete(self, rehearsal_id: str) -> None:
        self._rehearsals.pop(str(rehearsal_id), None)

    @contextmanager
    def locked(self, rehearsal_id: str) -> Iterator[None]:
        # Nothing outside this process can reach the dicts
        yield

    def respond(self, rehearsal_id: str, user_id: str, response: str = "yes") -> None:
        self.get(rehearsal_id)
        self._responses.setdefault(str(rehearsal_id), {})[str(user_id)] = response

    def responses_for(self, rehearsal_id: str) -> Dict[str, str]:
        return dict(self._responses.get(str(rehearsal_id), {}))

    def delete_for_rehearsal(self, rehearsal_id: str) -> int:
        return len(self._responses.pop(str(rehearsal_id), {}))
