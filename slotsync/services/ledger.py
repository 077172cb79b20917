"""
Availability ledger: per-member slots with source-scoped replace-on-write.

Members write and read wall-clock ranges on their own local dates; the ledger
stores UTC instants through a ``SlotStoreProtocol`` and uses the interval
algebra to answer "is this person busy" questions.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Collection, Dict, Iterable, List, Mapping, Sequence, Tuple

from pendulum import DateTime

from ..domain import intervals
from ..domain.models import (
    DAY_END,
    DAY_START,
    AvailabilitySlot,
    DayStatus,
    LocalSlot,
    SlotKind,
    SlotSource,
    TimeRange,
    UtcSlot,
)
from ..domain.timezones import (
    day_bounds,
    ensure_timezone,
    is_all_day_entry,
    iter_dates,
    local_ranges_to_utc,
    localize_by_date,
    parse_date,
    range_bounds,
    utc_slots_to_local,
)
from .protocols import ProfileProvider, SlotStoreProtocol

logger = logging.getLogger(__name__)

# Kinds that make a member unavailable.
BLOCKING_KINDS = frozenset({SlotKind.BUSY, SlotKind.TENTATIVE})

ALL_SOURCES = (SlotSource.MANUAL, SlotSource.REHEARSAL, SlotSource.IMPORTED)


class AvailabilityLedger:
    """
    Reads and writes a member's availability.

    Manual writes replace the whole day for ``source=manual`` only; rehearsal
    and imported slots on the same day are never touched.
    """

    def __init__(
        self,
        store: SlotStoreProtocol,
        profiles: ProfileProvider,
        *,
        day_window: Tuple[Any, Any] = (DAY_START, DAY_END),
        workday: Tuple[Any, Any] = ("09:00", "23:00"),
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._day_window = day_window
        self._workday = workday

    def owner_timezone(self, owner_id: str, timezone: str | None = None) -> str:
        """
        Resolve the zone to read or write an owner's day in.

        The owner is always looked up so an unknown owner fails loudly, even
        when an explicit zone overrides the profile's.
        """
        profile_zone = self._profiles.timezone(owner_id)
        zone = timezone if timezone is not None else profile_zone
        ensure_timezone(zone)
        return zone

    # -- writes -----------------------------------------------------------

    def set_manual(
        self,
        owner_id: str,
        day: Any,
        ranges: Iterable[Any] | None,
        *,
        kind: SlotKind | str = SlotKind.BUSY,
        title: str | None = None,
        notes: str | None = None,
        timezone: str | None = None,
    ) -> List[AvailabilitySlot]:
        """
        Replace the owner's manual ranges for one local day.

        Args:
            owner_id: Member whose ledger is written
            day: Local calendar date
            ranges: Wall-clock ranges on that date; empty clears the day.
                Mappings may carry their own ``kind``, ``title``, ``notes``
                and ``is_all_day``; ranges merge only with ranges that share
                kind, title and notes.
            kind: Default kind for entries without one
            title: Default display title
            notes: Default display notes
            timezone: Zone the ranges are expressed in; defaults to the owner's

        Returns:
            The slots now stored for that day

        Raises:
            InvalidRange: If any range is malformed
            OwnerNotFound: If the owner does not exist
            BadTimezone: If the zone is unknown
        """
        zone = self.owner_timezone(owner_id, timezone)
        d = parse_date(day)
        merged = _merge_manual_entries(ranges, kind, title, notes)

        converted = local_ranges_to_utc(d, merged, zone, kind=kind, title=title, notes=notes)
        return self._replace_manual_day(owner_id, d, zone, converted)

    def set_manual_all_day(
        self,
        owner_id: str,
        day: Any,
        *,
        kind: SlotKind | str = SlotKind.BUSY,
        title: str | None = None,
        notes: str | None = None,
        timezone: str | None = None,
    ) -> List[AvailabilitySlot]:
        """Replace the owner's manual ranges for a day with one all-day slot."""
        zone = self.owner_timezone(owner_id, timezone)
        d = parse_date(day)

        converted = local_ranges_to_utc(
            d,
            [{"start": DAY_START, "end": DAY_END, "is_all_day": True}],
            zone,
            kind=kind,
            title=title,
            notes=notes,
        )
        return self._replace_manual_day(owner_id, d, zone, converted)

    def bulk_set_manual(
        self,
        owner_id: str,
        entries: Iterable[Mapping[str, Any]],
        *,
        timezone: str | None = None,
    ) -> Dict[date, List[AvailabilitySlot]]:
        """
        Apply several day replacements for one owner.

        Each entry needs a ``date`` and may carry ``ranges``, ``kind``,
        ``title``, ``notes`` and ``all_day``.
        """
        results: Dict[date, List[AvailabilitySlot]] = {}

        for entry in entries:
            if "date" not in entry:
                raise ValueError(f"Availability entry without a date: {dict(entry)!r}")

            options = {
                "kind": entry.get("kind") or SlotKind.BUSY,
                "title": entry.get("title"),
                "notes": entry.get("notes"),
                "timezone": timezone,
            }
            d = parse_date(entry["date"])
            if entry.get("all_day"):
                results[d] = self.set_manual_all_day(owner_id, d, **options)
            else:
                results[d] = self.set_manual(owner_id, d, entry.get("ranges") or [], **options)

        return results

    def delete_manual(self, owner_id: str, day: Any, *, timezone: str | None = None) -> int:
        """Delete only the owner's manual slots for one local day."""
        zone = self.owner_timezone(owner_id, timezone)
        window_start, window_end = day_bounds(day, zone)

        deleted = self._store.delete_scope(owner_id, SlotSource.MANUAL, window_start, window_end)
        logger.info("Deleted %d manual slot(s) for %s on %s", deleted, owner_id, parse_date(day))
        return deleted

    def _replace_manual_day(
        self,
        owner_id: str,
        day: date,
        zone: str,
        converted: Sequence[UtcSlot],
    ) -> List[AvailabilitySlot]:
        window_start, window_end = day_bounds(day, zone)
        slots = [
            AvailabilitySlot(
                owner_id=owner_id,
                starts_at=item.starts_at,
                ends_at=item.ends_at,
                kind=item.kind,
                source=SlotSource.MANUAL,
                title=item.title,
                notes=item.notes,
                is_all_day=item.is_all_day,
            )
            for item in converted
        ]

        stored = self._store.replace_scope(
            owner_id, SlotSource.MANUAL, window_start, window_end, slots
        )
        logger.info("Stored %d manual slot(s) for %s on %s", len(stored), owner_id, day)
        return stored

    # -- reads ------------------------------------------------------------

    def get_slots(
        self,
        owner_id: str,
        start_date: Any,
        end_date: Any,
        *,
        timezone: str | None = None,
        sources: Collection[SlotSource] | None = None,
        kinds: Collection[SlotKind] | None = None,
    ) -> Dict[date, List[LocalSlot]]:
        """Localized, unmerged slots per local date, with their metadata."""
        zone = self.owner_timezone(owner_id, timezone)
        window_start, window_end = range_bounds(start_date, end_date, zone)

        slots = self._store.find_overlapping(
            owner_id, window_start, window_end, sources=tuple(sources or ALL_SOURCES)
        )
        if kinds is not None:
            slots = [slot for slot in slots if slot.kind in kinds]

        return localize_by_date(start_date, end_date, slots, zone)

    def get_range(
        self,
        owner_id: str,
        start_date: Any,
        end_date: Any,
        *,
        timezone: str | None = None,
        include_imported: bool = True,
        kinds: Collection[SlotKind] | None = None,
    ) -> Dict[date, List[TimeRange]]:
        """
        Merged wall-clock ranges per local date for every source.

        This is the canonical "is this person busy" answer. Dates without any
        range are left out; keys are in ascending order.
        """
        sources = ALL_SOURCES if include_imported else (SlotSource.MANUAL, SlotSource.REHEARSAL)
        by_date = self.get_slots(
            owner_id, start_date, end_date, timezone=timezone, sources=sources, kinds=kinds
        )
        return {
            d: intervals.merge(slot.time_range for slot in day_slots)
            for d, day_slots in by_date.items()
        }

    def day_statuses(
        self,
        owner_id: str,
        start_date: Any,
        end_date: Any,
        *,
        timezone: str | None = None,
    ) -> Dict[date, DayStatus]:
        """Free/partial/busy classification for every date in the range."""
        busy = self.get_range(
            owner_id, start_date, end_date, timezone=timezone, kinds=BLOCKING_KINDS
        )
        day_start, day_end = self._day_window
        return {
            d: intervals.classify(busy.get(d, []), day_start, day_end)
            for d in iter_dates(start_date, end_date)
        }

    def common_free_time(
        self,
        owner_ids: Sequence[str],
        day: Any,
        *,
        timezone: str,
        window: Tuple[Any, Any] | None = None,
    ) -> List[TimeRange]:
        """
        Wall-clock ranges on ``day`` in ``timezone`` when every owner is free.

        Free time is looked for inside ``window`` (the configured workday by
        default).
        """
        if not owner_ids:
            return []

        window_start, window_end = window or self._workday
        d = parse_date(day)
        zone = ensure_timezone(timezone)
        bounds = day_bounds(d, zone)

        free_lists: List[List[TimeRange]] = []
        for owner_id in owner_ids:
            self._profiles.timezone(owner_id)
            slots = [
                slot
                for slot in self._store.find_overlapping(owner_id, *bounds, sources=ALL_SOURCES)
                if slot.kind in BLOCKING_KINDS
            ]
            busy = [local.time_range for local in utc_slots_to_local(d, slots, zone)]
            free_lists.append(intervals.complement_within_window(busy, window_start, window_end))

        return intervals.intersect_all(free_lists)

    def find_conflicts(
        self,
        owner_ids: Iterable[str],
        starts_at: DateTime,
        ends_at: DateTime,
        *,
        ignore_ref: str | None = None,
    ) -> Dict[str, List[AvailabilitySlot]]:
        """
        Blocking slots that overlap a proposed UTC window, per owner.

        Slots of the rehearsal identified by ``ignore_ref`` are skipped so a
        rehearsal never conflicts with itself. Owners without conflicts are
        left out of the result.
        """
        conflicts: Dict[str, List[AvailabilitySlot]] = {}

        for owner_id in owner_ids:
            self._profiles.timezone(owner_id)
            blocking = [
                slot
                for slot in self._store.find_overlapping(
                    owner_id, starts_at, ends_at, sources=ALL_SOURCES
                )
                if slot.kind in BLOCKING_KINDS
                and not (
                    ignore_ref is not None
                    and slot.source == SlotSource.REHEARSAL
                    and slot.external_ref == str(ignore_ref)
                )
            ]
            if blocking:
                conflicts[owner_id] = blocking

        if conflicts:
            logger.info("Found conflicts for %d member(s)", len(conflicts))
        return conflicts


def _merge_manual_entries(
    ranges: Iterable[Any] | None,
    kind: SlotKind | str,
    title: str | None,
    notes: str | None,
) -> List[Dict[str, Any]]:
    """
    Merge raw manual entries, keeping each entry's own kind, title and notes.

    Only entries that share all three are merged with each other. Plain
    ranges take the keyword defaults. All-day entries are kept whole.
    """
    groups: Dict[Tuple[SlotKind, str | None, str | None], List[TimeRange]] = {}
    entries: List[Dict[str, Any]] = []

    for raw in ranges or []:
        meta = raw if isinstance(raw, Mapping) else {}
        key = (
            SlotKind(meta.get("kind") or kind),
            meta.get("title", title),
            meta.get("notes", notes),
        )
        if is_all_day_entry(raw):
            entries.append(
                {
                    "start": DAY_START,
                    "end": DAY_END,
                    "is_all_day": True,
                    "kind": key[0],
                    "title": key[1],
                    "notes": key[2],
                }
            )
        else:
            groups.setdefault(key, []).append(TimeRange.coerce(raw))

    for (slot_kind, slot_title, slot_notes), group in groups.items():
        for time_range in intervals.merge(group):
            entries.append(
                {
                    "start": time_range.start,
                    "end": time_range.end,
                    "kind": slot_kind,
                    "title": slot_title,
                    "notes": slot_notes,
                }
            )

    entries.sort(key=lambda entry: (entry["start"], entry["end"]))
    return entries
