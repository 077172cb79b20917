"""
Tests for the RehearsalSlotSynchronizer orchestration layer.
"""

import threading
import time
from datetime import date
from typing import Set

import pendulum
import pytest

from slotsync.adapters.memory_store import (
    InMemoryDirectory,
    InMemoryRehearsalStore,
    InMemorySlotStore,
)
from slotsync.domain.exceptions import PartialSyncFailure, RehearsalNotFound
from slotsync.domain.models import (
    MembershipStatus,
    Rehearsal,
    SlotKind,
    SlotSource,
    TimeRange,
)
from slotsync.services.ledger import AvailabilityLedger
from slotsync.services.locks import KeyedLock
from slotsync.services.synchronizer import RehearsalSlotSynchronizer

DAY = date(2025, 7, 20)


class FlakySlotStore(InMemorySlotStore):
    """In-memory store whose inserts fail for selected owners."""

    def __init__(self, failing_owners: Set[str]):
        super().__init__()
        self.failing_owners = set(failing_owners)

    def add(self, slot):
        if slot.owner_id in self.failing_owners:
            raise ConnectionError("slot store unavailable")
        return super().add(slot)


class SlowSlotStore(InMemorySlotStore):
    """In-memory store whose inserts take a while, widening race windows."""

    def add(self, slot):
        time.sleep(0.05)
        return super().add(slot)


class FlakyMembers:
    """Membership provider that can be switched to fail."""

    def __init__(self, directory):
        self._directory = directory
        self.fail = False

    def active_members(self, project_id):
        if self.fail:
            raise ConnectionError("directory unavailable")
        return self._directory.active_members(project_id)


def _rehearsal(start="2025-07-20 10:00", end="2025-07-20 12:00", **kwargs) -> Rehearsal:
    return Rehearsal(
        id=kwargs.pop("id", "r1"),
        project_id=kwargs.pop("project_id", "p1"),
        starts_at=pendulum.parse(start, tz="UTC"),
        ends_at=pendulum.parse(end, tz="UTC"),
        **kwargs,
    )


def _build(store=None):
    """Project p1 with alice (Berlin) and bob active, carol inactive."""
    store = store if store is not None else InMemorySlotStore()
    directory = InMemoryDirectory(slot_store=store)
    directory.add_member("alice", "Europe/Berlin")
    directory.add_member("bob")
    directory.add_member("carol")
    directory.set_membership("p1", "alice")
    directory.set_membership("p1", "bob")
    directory.set_membership("p1", "carol", MembershipStatus.INACTIVE)

    rehearsals = InMemoryRehearsalStore()
    synchronizer = RehearsalSlotSynchronizer(store, directory, rehearsals, rehearsals)
    ledger = AvailabilityLedger(store, directory)
    return synchronizer, ledger, store, directory, rehearsals


class TestOnCreate:
    """Tests for booking a new rehearsal."""

    def test_books_one_busy_slot_per_active_member(self):
        synchronizer, _, store, _, rehearsals = _build()
        rehearsal = rehearsals.save(_rehearsal())

        report = synchronizer.on_create(rehearsal)

        slots = store.find_by_ref(SlotSource.REHEARSAL, "r1")
        assert report.booked == ["alice", "bob"]
        assert sorted(slot.owner_id for slot in slots) == ["alice", "bob"]
        for slot in slots:
            assert slot.kind == SlotKind.BUSY
            assert slot.title == "Rehearsal"
            assert slot.starts_at == rehearsal.starts_at
            assert slot.ends_at == rehearsal.ends_at

    def test_members_see_slot_in_local_time(self):
        synchronizer, ledger, _, _, rehearsals = _build()
        synchronizer.on_create(rehearsals.save(_rehearsal()))

        assert ledger.get_range("bob", DAY, DAY) == {DAY: [TimeRange.parse("10:00", "12:00")]}
        assert ledger.get_range("alice", DAY, DAY) == {DAY: [TimeRange.parse("12:00", "14:00")]}

    def test_rehearsal_title_is_used(self):
        synchronizer, _, store, _, rehearsals = _build()

        synchronizer.on_create(rehearsals.save(_rehearsal(title="Act II run-through")))

        assert {slot.title for slot in store.all()} == {"Act II run-through"}

    def test_repeated_create_does_not_duplicate(self):
        synchronizer, _, store, _, rehearsals = _build()
        rehearsal = rehearsals.save(_rehearsal())

        synchronizer.on_create(rehearsal)
        second = synchronizer.on_create(rehearsal)

        assert second.booked == []
        assert len(store.find_by_ref(SlotSource.REHEARSAL, "r1")) == 2

    def test_project_without_members_books_nothing(self):
        synchronizer, _, store, _, rehearsals = _build()

        report = synchronizer.on_create(rehearsals.save(_rehearsal(id="r2", project_id="empty")))

        assert report.booked == []
        assert store.all() == []

    def test_manual_slots_are_untouched(self):
        synchronizer, ledger, store, _, rehearsals = _build()
        ledger.set_manual("bob", DAY, ["10:30-11:00"])

        synchronizer.on_create(rehearsals.save(_rehearsal()))

        manual = [slot for slot in store.all() if slot.source == SlotSource.MANUAL]
        assert len(manual) == 1
        assert ledger.get_range("bob", DAY, DAY) == {DAY: [TimeRange.parse("10:00", "12:00")]}


class TestOnUpdate:
    """Tests for rebooking a changed rehearsal."""

    def test_moves_slots_and_follows_roster(self):
        synchronizer, _, store, directory, rehearsals = _build()
        synchronizer.on_create(rehearsals.save(_rehearsal()))

        directory.set_membership("p1", "bob", MembershipStatus.INACTIVE)
        directory.set_membership("p1", "carol", MembershipStatus.ACTIVE)
        moved = rehearsals.save(_rehearsal("2025-07-21 18:00", "2025-07-21 20:00"))

        report = synchronizer.on_update(moved)

        slots = store.find_by_ref(SlotSource.REHEARSAL, "r1")
        assert report.removed == 2
        assert sorted(report.booked) == ["alice", "carol"]
        assert sorted(slot.owner_id for slot in slots) == ["alice", "carol"]
        assert {slot.starts_at for slot in slots} == {moved.starts_at}

    def test_update_leaves_other_rehearsals_alone(self):
        synchronizer, _, store, _, rehearsals = _build()
        synchronizer.on_create(rehearsals.save(_rehearsal()))
        synchronizer.on_create(rehearsals.save(_rehearsal("2025-07-22 10:00", "2025-07-22 12:00", id="r2")))

        synchronizer.on_update(_rehearsal("2025-07-20 14:00", "2025-07-20 16:00"))

        assert len(store.find_by_ref(SlotSource.REHEARSAL, "r2")) == 2

    def test_resync_reloads_rehearsal(self):
        synchronizer, _, store, _, rehearsals = _build()
        rehearsals.save(_rehearsal())

        report = synchronizer.resync("r1")

        assert report.booked == ["alice", "bob"]
        assert len(store.find_by_ref(SlotSource.REHEARSAL, "r1")) == 2

    def test_resync_unknown_rehearsal(self):
        synchronizer, _, _, _, _ = _build()

        with pytest.raises(RehearsalNotFound):
            synchronizer.resync("missing")

    def test_concurrent_updates_do_not_duplicate(self):
        synchronizer, _, store, _, rehearsals = _build()
        rehearsal = rehearsals.save(_rehearsal())
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            synchronizer.on_update(rehearsal)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(slot.owner_id for slot in store.find_by_ref(SlotSource.REHEARSAL, "r1")) == [
            "alice",
            "bob",
        ]

    def test_two_synchronizers_share_the_rehearsal_lock(self):
        store = SlowSlotStore()
        _, _, _, directory, rehearsals = _build(store)
        first = RehearsalSlotSynchronizer(store, directory, rehearsals, rehearsals)
        second = RehearsalSlotSynchronizer(store, directory, rehearsals, rehearsals)
        rehearsal = rehearsals.save(_rehearsal())
        barrier = threading.Barrier(2)

        def worker(synchronizer):
            barrier.wait()
            synchronizer.on_update(rehearsal)

        threads = [threading.Thread(target=worker, args=(s,)) for s in (first, second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(slot.owner_id for slot in store.find_by_ref(SlotSource.REHEARSAL, "r1")) == [
            "alice",
            "bob",
        ]

    def test_explicit_lock_is_used(self):
        store = InMemorySlotStore()
        _, _, _, directory, rehearsals = _build(store)
        locks = KeyedLock()
        synchronizer = RehearsalSlotSynchronizer(store, directory, rehearsals, rehearsals, locks=locks)
        rehearsal = rehearsals.save(_rehearsal())

        with locks.hold("r1"):
            thread = threading.Thread(target=synchronizer.on_update, args=(rehearsal,))
            thread.start()
            thread.join(timeout=0.2)
            assert thread.is_alive()
            assert store.all() == []

        thread.join(timeout=5)
        assert len(store.find_by_ref(SlotSource.REHEARSAL, "r1")) == 2


class TestOnDelete:
    """Tests for removing a rehearsal."""

    def test_removes_slots_responses_and_row(self):
        synchronizer, _, store, _, rehearsals = _build()
        synchronizer.on_create(rehearsals.save(_rehearsal()))
        rehearsals.respond("r1", "alice", "yes")
        rehearsals.respond("r1", "bob", "no")

        report = synchronizer.on_delete("r1")

        assert report.removed == 2
        assert store.find_by_ref(SlotSource.REHEARSAL, "r1") == []
        assert rehearsals.responses_for("r1") == {}
        with pytest.raises(RehearsalNotFound):
            rehearsals.get("r1")

    def test_unknown_rehearsal(self):
        synchronizer, _, _, _, _ = _build()

        with pytest.raises(RehearsalNotFound):
            synchronizer.on_delete("missing")

    def test_keeps_manual_slots(self):
        synchronizer, ledger, store, _, rehearsals = _build()
        ledger.set_manual("bob", DAY, ["08:00-09:00"])
        synchronizer.on_create(rehearsals.save(_rehearsal()))

        synchronizer.on_delete("r1")

        assert [slot.source for slot in store.all()] == [SlotSource.MANUAL]


class TestPartialFailure:
    """Tests for a fan-out that stops partway."""

    def test_failure_reports_booked_and_pending(self):
        store = FlakySlotStore({"bob"})
        synchronizer, _, _, _, rehearsals = _build(store)
        rehearsal = rehearsals.save(_rehearsal())

        with pytest.raises(PartialSyncFailure) as excinfo:
            synchronizer.on_create(rehearsal)

        error = excinfo.value
        assert error.retryable
        assert error.rehearsal_id == "r1"
        assert error.booked == ["alice"]
        assert error.pending == ["bob"]
        assert isinstance(error.__cause__, ConnectionError)

    def test_retry_completes_the_booking(self):
        store = FlakySlotStore({"bob"})
        synchronizer, _, _, _, rehearsals = _build(store)
        rehearsal = rehearsals.save(_rehearsal())

        with pytest.raises(PartialSyncFailure):
            synchronizer.on_create(rehearsal)
        store.failing_owners.clear()
        report = synchronizer.on_create(rehearsal)

        assert report.booked == ["bob"]
        assert sorted(slot.owner_id for slot in store.find_by_ref(SlotSource.REHEARSAL, "r1")) == [
            "alice",
            "bob",
        ]

    def test_lock_is_released_after_failure(self):
        store = FlakySlotStore({"alice"})
        synchronizer, _, _, _, rehearsals = _build(store)

        with pytest.raises(PartialSyncFailure):
            synchronizer.on_create(rehearsals.save(_rehearsal()))

        # A held lock would block here forever
        assert synchronizer.on_delete("r1").removed == 0

    def test_roster_failure_after_delete_is_a_partial_failure(self):
        store = InMemorySlotStore()
        _, _, _, directory, rehearsals = _build(store)
        members = FlakyMembers(directory)
        synchronizer = RehearsalSlotSynchronizer(store, members, rehearsals, rehearsals)
        rehearsal = rehearsals.save(_rehearsal())
        synchronizer.on_create(rehearsal)

        members.fail = True
        with pytest.raises(PartialSyncFailure) as excinfo:
            synchronizer.on_update(rehearsal)

        error = excinfo.value
        assert error.retryable
        assert error.booked == []
        assert isinstance(error.__cause__, ConnectionError)

        members.fail = False
        report = synchronizer.resync("r1")

        assert report.booked == ["alice", "bob"]
        assert len(store.find_by_ref(SlotSource.REHEARSAL, "r1")) == 2


def test_slot_store_failure_preserves_other_rehearsal_slots():
    """A failed update only loses the slots of the rehearsal being rebooked."""
    store = FlakySlotStore(set())
    synchronizer, _, _, _, rehearsals = _build(store)
    synchronizer.on_create(rehearsals.save(_rehearsal(id="r2")))
    synchronizer.on_create(rehearsals.save(_rehearsal()))

    store.failing_owners.add("bob")
    with pytest.raises(PartialSyncFailure):
        synchronizer.on_update(_rehearsal("2025-07-20 14:00", "2025-07-20 16:00"))

    assert len(store.find_by_ref(SlotSource.REHEARSAL, "r2")) == 2
    assert [s.owner_id for s in store.find_by_ref(SlotSource.REHEARSAL, "r1")] == ["alice"]
