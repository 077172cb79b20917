"""
Rehearsal slot synchronizer.

Keeps the ``source=rehearsal`` slots of every active project member in
lock-step with a rehearsal's lifecycle:

1. Create: book one busy slot per active member
2. Update: delete every slot of the rehearsal, then book again against the
   current roster and window
3. Delete: delete the slots, then the RSVP responses, then the rehearsal row

Every step holds two locks on the rehearsal: the process-wide ``KeyedLock``
and the rehearsal store's own lock (a row lock for the SQL store). Two
mutations of the same rehearsal therefore never interleave their
delete-then-book sequences, whether they come from one process or several.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List

from ..domain.exceptions import PartialSyncFailure
from ..domain.models import AvailabilitySlot, Rehearsal, SlotKind, SlotSource, SyncReport
from .locks import REHEARSAL_LOCKS, KeyedLock
from .protocols import MembershipProvider, RehearsalStore, ResponseStore, SlotStoreProtocol

logger = logging.getLogger(__name__)

DEFAULT_SLOT_TITLE = "Rehearsal"


class RehearsalSlotSynchronizer:
    """
    Orchestrates membership lookup and ledger writes for rehearsals.

    Each entry point is meant to be called exactly once per rehearsal
    mutation, after the mutation itself has been validated. All of them are
    safe to repeat after a ``PartialSyncFailure``.
    """

    def __init__(
        self,
        store: SlotStoreProtocol,
        memberships: MembershipProvider,
        rehearsals: RehearsalStore,
        responses: ResponseStore,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._memberships = memberships
        self._rehearsals = rehearsals
        self._responses = responses
        self._locks = locks if locks is not None else REHEARSAL_LOCKS

    @contextmanager
    def _exclusive(self, ref: str) -> Iterator[None]:
        with self._locks.hold(ref), self._rehearsals.locked(ref):
            yield

    def on_create(self, rehearsal: Rehearsal) -> SyncReport:
        """Book the rehearsal's window on every active member's ledger."""
        with self._exclusive(rehearsal.external_ref):
            logger.info(
                "Booking slots for rehearsal %s (%s - %s)",
                rehearsal.id,
                rehearsal.starts_at,
                rehearsal.ends_at,
            )
            report = self._book(rehearsal)

        logger.info("Booked %d slot(s) for rehearsal %s", len(report.booked), rehearsal.id)
        return report

    def on_update(self, rehearsal: Rehearsal) -> SyncReport:
        """Drop every slot of the rehearsal and book the current roster again."""
        with self._exclusive(rehearsal.external_ref):
            report = self._rebook(rehearsal)

        logger.info(
            "Rebooked rehearsal %s: removed %d, booked %d",
            rehearsal.id,
            report.removed,
            len(report.booked),
        )
        return report

    def resync(self, rehearsal_id: str) -> SyncReport:
        """
        Reload a rehearsal and rebook it.

        Used to repair a rehearsal after a failed or interrupted sync.

        Raises:
            RehearsalNotFound: If the rehearsal no longer exists
        """
        ref = str(rehearsal_id)
        with self._exclusive(ref):
            rehearsal = self._rehearsals.get(ref)
            report = self._rebook(rehearsal)

        logger.info("Resynced rehearsal %s: booked %d", ref, len(report.booked))
        return report

    def on_delete(self, rehearsal_id: str) -> SyncReport:
        """
        Remove a rehearsal together with everything that references it.

        Slots and responses go first: both point at the rehearsal by id and
        nothing would clean them up once the row is gone.

        Raises:
            RehearsalNotFound: If the rehearsal does not exist
        """
        ref = str(rehearsal_id)
        with self._exclusive(ref):
            self._rehearsals.get(ref)

            removed = self._store.delete_by_ref(SlotSource.REHEARSAL, ref)
            responses = self._responses.delete_for_rehearsal(ref)
            self._rehearsals.delete(ref)

        logger.info(
            "Deleted rehearsal %s with %d slot(s) and %d response(s)", ref, removed, responses
        )
        return SyncReport(rehearsal_id=ref, removed=removed)

    def _rebook(self, rehearsal: Rehearsal) -> SyncReport:
        removed = self._store.delete_by_ref(SlotSource.REHEARSAL, rehearsal.external_ref)
        report = self._book(rehearsal)
        report.removed = removed
        return report

    def _book(self, rehearsal: Rehearsal) -> SyncReport:
        """
        Insert one busy slot per active member that does not hold one yet.

        Members already booked under this rehearsal are skipped, so repeating
        the call after a partial failure only fills in the gaps. Any failure,
        including one while loading the roster, surfaces as
        ``PartialSyncFailure``.
        """
        ref = rehearsal.external_ref
        try:
            members = _unique(self._memberships.active_members(rehearsal.project_id))
            already_booked = {
                slot.owner_id for slot in self._store.find_by_ref(SlotSource.REHEARSAL, ref)
            }
        except Exception as exc:
            logger.error("Loading the roster of rehearsal %s failed: %s", ref, exc)
            raise PartialSyncFailure(ref, [], []) from exc

        pending = [member for member in members if member not in already_booked]

        booked: List[str] = []
        for index, member in enumerate(pending):
            slot = AvailabilitySlot(
                owner_id=member,
                starts_at=rehearsal.starts_at,
                ends_at=rehearsal.ends_at,
                kind=SlotKind.BUSY,
                source=SlotSource.REHEARSAL,
                external_ref=ref,
                title=rehearsal.title or DEFAULT_SLOT_TITLE,
            )
            try:
                self._store.add(slot)
            except Exception as exc:
                logger.error(
                    "Booking rehearsal %s for member %s failed: %s", ref, member, exc
                )
                raise PartialSyncFailure(ref, booked, pending[index:]) from exc

            logger.debug("Booked rehearsal %s for member %s", ref, member)
            booked.append(member)

        return SyncReport(rehearsal_id=ref, booked=booked)


def _unique(values: List[str]) -> List[str]:
    """Preserve order while removing duplicates."""
    seen: set[str] = set()
    deduped: List[str] = []
    for value in values:
        key = str(value)
        if key not in seen:
            deduped.append(key)
            seen.add(key)
    return deduped
