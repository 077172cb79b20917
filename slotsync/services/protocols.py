"""
Protocols describing the collaborators the ledger and synchronizer need.

Both the SQL adapters and the in-memory adapters implement them.
"""

from __future__ import annotations

from typing import Collection, ContextManager, List, Protocol, Sequence

from pendulum import DateTime

from ..domain.models import AvailabilitySlot, Rehearsal, SlotSource


class SlotStoreProtocol(Protocol):
    """Persistence operations over availability slots."""

    def add(self, slot: AvailabilitySlot) -> AvailabilitySlot:
        """Insert one slot and return it with its id assigned."""

    def replace_scope(
        self,
        owner_id: str,
        source: SlotSource,
        window_start: DateTime,
        window_end: DateTime,
        slots: Sequence[AvailabilitySlot],
    ) -> List[AvailabilitySlot]:
        """
        Atomically delete the owner's slots of ``source`` starting inside
        ``[window_start, window_end)`` and insert ``slots``.
        """

    def delete_scope(
        self,
        owner_id: str,
        source: SlotSource,
        window_start: DateTime,
        window_end: DateTime,
    ) -> int:
        """Delete the owner's slots of ``source`` starting inside the window."""

    def delete_by_ref(self, source: SlotSource, external_ref: str) -> int:
        """Delete every slot of ``source`` carrying ``external_ref``."""

    def find_by_ref(self, source: SlotSource, external_ref: str) -> List[AvailabilitySlot]:
        """Return every slot of ``source`` carrying ``external_ref``."""

    def find_overlapping(
        self,
        owner_id: str,
        window_start: DateTime,
        window_end: DateTime,
        sources: Collection[SlotSource] | None = None,
    ) -> List[AvailabilitySlot]:
        """Return the owner's slots overlapping the window, ordered by start."""


class MembershipProvider(Protocol):
    def active_members(self, project_id: str) -> List[str]:
        """Return user ids of the project's active members."""


class ProfileProvider(Protocol):
    def timezone(self, user_id: str) -> str:
        """
        Return the member's IANA timezone, defaults already applied.

        Raises OwnerNotFound for unknown members.
        """


class RehearsalStore(Protocol):
    def get(self, rehearsal_id: str) -> Rehearsal:
        """Return the rehearsal or raise RehearsalNotFound."""

    def delete(self, rehearsal_id: str) -> None:
        """Delete the rehearsal row."""

    def locked(self, rehearsal_id: str) -> ContextManager[None]:
        """
        Hold the store's own lock on the rehearsal for the duration of a block.

        Guards against writers in other processes, which never see the
        in-process ``KeyedLock``.
        """


class ResponseStore(Protocol):
    def delete_for_rehearsal(self, rehearsal_id: str) -> int:
        """Delete every RSVP response referencing the rehearsal."""
