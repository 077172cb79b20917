"""
Timezone conversion between member-local wall-clock time and UTC.

Slots are stored as UTC instants; members enter and read them as wall-clock
ranges on a local calendar date. Everything here goes through pendulum so
date rollover across midnight and DST-length days are handled by the
timezone database rather than by offset arithmetic.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping, NamedTuple, Tuple

import pendulum
from pendulum import DateTime
from pendulum.tz.timezone import FixedTimezone, Timezone

from .exceptions import BadTimezone, InvalidRange
from .models import (
    DAY_END,
    MINUTES_PER_HOUR,
    AvailabilitySlot,
    LocalSlot,
    SlotKind,
    TimeRange,
    UtcSlot,
    format_time,
    parse_time,
)

UTC = "UTC"


class WallClock(NamedTuple):
    """A calendar date plus an ``HH:MM`` time of day."""
    date: date
    time: str


def ensure_timezone(zone: Any) -> Timezone | FixedTimezone:
    """
    Resolve an IANA timezone identifier.

    Raises:
        BadTimezone: If the identifier is empty or unknown. No default is
            substituted here; that happens at the API boundary.
    """
    if isinstance(zone, (Timezone, FixedTimezone)):
        return zone
    if not isinstance(zone, str) or not zone.strip():
        raise BadTimezone(zone)

    try:
        return pendulum.timezone(zone.strip())
    except (ValueError, KeyError) as exc:  # InvalidTimezone / ZoneInfoNotFoundError
        raise BadTimezone(zone) from exc


def parse_date(value: Any) -> date:
    """Read a ``YYYY-MM-DD`` string, date or datetime as a calendar date."""
    if isinstance(value, datetime):
        return pendulum.instance(value).date()
    if isinstance(value, date):
        return pendulum.date(value.year, value.month, value.day)
    if isinstance(value, str):
        return pendulum.from_format(value.strip(), "YYYY-MM-DD").date()
    raise TypeError(f"Not a date value: {value!r}")


def iter_dates(start_date: Any, end_date: Any) -> Iterator[date]:
    """Yield every calendar date from start to end inclusive."""
    current = parse_date(start_date)
    last = parse_date(end_date)
    while current <= last:
        yield current
        current = current.add(days=1)


def _minute_of(dt: DateTime) -> int:
    return dt.hour * MINUTES_PER_HOUR + dt.minute


def local_instant(day: Any, time: Any, zone: Any) -> DateTime:
    """Interpret a local date and time in ``zone`` and return the UTC instant."""
    tz = ensure_timezone(zone)
    d = parse_date(day)
    hour, minute = divmod(parse_time(time), MINUTES_PER_HOUR)

    local = pendulum.datetime(d.year, d.month, d.day, hour, minute, tz=tz)
    return local.in_timezone(UTC)


def day_bounds(day: Any, zone: Any) -> Tuple[DateTime, DateTime]:
    """
    Return the half-open UTC window ``[start, end)`` of one local calendar day.

    The window is 23 or 25 hours long on DST transition days.
    """
    tz = ensure_timezone(zone)
    d = parse_date(day)

    start = pendulum.datetime(d.year, d.month, d.day, tz=tz)
    end = start.add(days=1)
    return start.in_timezone(UTC), end.in_timezone(UTC)


def range_bounds(start_date: Any, end_date: Any, zone: Any) -> Tuple[DateTime, DateTime]:
    """UTC window covering every local day from start to end inclusive."""
    window_start, _ = day_bounds(start_date, zone)
    _, window_end = day_bounds(end_date, zone)
    return window_start, window_end


def local_to_utc(day: Any, time: Any, zone: Any) -> WallClock:
    """
    Convert a local wall-clock date and time to the UTC date and time.

    The date rolls forward or backward when the offset crosses midnight,
    e.g. 2025-07-20 01:00 in Asia/Jerusalem is 2025-07-19 22:00 UTC.
    """
    instant = local_instant(day, time, zone)
    return WallClock(instant.date(), instant.format("HH:mm"))


def utc_to_local(day: Any, time: Any, zone: Any) -> WallClock:
    """Convert a UTC date and time to wall-clock date and time in ``zone``."""
    tz = ensure_timezone(zone)
    d = parse_date(day)
    hour, minute = divmod(parse_time(time), MINUTES_PER_HOUR)

    local = pendulum.datetime(d.year, d.month, d.day, hour, minute, tz=UTC).in_timezone(tz)
    return WallClock(local.date(), local.format("HH:mm"))


def is_all_day_entry(raw: Any) -> bool:
    """True for a mapping flagged with ``is_all_day`` (or ``isAllDay``)."""
    if isinstance(raw, Mapping):
        return bool(raw.get("is_all_day") or raw.get("isAllDay"))
    return False


def local_ranges_to_utc(
    day: Any,
    ranges: Iterable[Any],
    zone: Any,
    *,
    kind: SlotKind | str = SlotKind.BUSY,
    title: str | None = None,
    notes: str | None = None,
    strict: bool = True,
) -> List[UtcSlot]:
    """
    Convert wall-clock ranges on a local date into UTC instant windows.

    Each entry may be anything ``TimeRange.coerce`` accepts; mappings may also
    carry ``kind``, ``title``, ``notes`` and ``is_all_day``, which override the
    keyword defaults. All-day entries cover 00:00-23:59 of the local day.

    Raises:
        InvalidRange: In strict mode, for a malformed range
        BadTimezone: If ``zone`` is unknown
    """
    tz = ensure_timezone(zone)
    d = parse_date(day)
    default_kind = SlotKind(kind)

    converted: List[UtcSlot] = []
    for raw in ranges:
        meta = raw if isinstance(raw, Mapping) else {}

        if is_all_day_entry(raw):
            time_range = TimeRange(start=0, end=DAY_END)
        else:
            try:
                time_range = TimeRange.coerce(raw)
            except InvalidRange:
                if strict:
                    raise
                continue

        starts_at = local_instant(d, time_range.start, tz)
        ends_at = local_instant(d, time_range.end, tz)
        if starts_at >= ends_at:
            # Both ends fell into the same DST gap
            continue

        converted.append(
            UtcSlot(
                starts_at=starts_at,
                ends_at=ends_at,
                kind=SlotKind(meta.get("kind") or default_kind),
                title=meta.get("title", title),
                notes=meta.get("notes", notes),
                is_all_day=is_all_day_entry(raw),
            )
        )

    return converted


def utc_slots_to_local(
    day: Any,
    slots: Iterable[AvailabilitySlot],
    zone: Any,
) -> List[LocalSlot]:
    """
    Localize stored UTC slots onto one local calendar date.

    Only the part of each slot that falls on ``day`` in ``zone`` is returned,
    clipped to 00:00-23:59. A slot running past local midnight ends at 23:59
    here and continues from 00:00 on the next date. All-day slots render as
    the whole day.
    """
    tz = ensure_timezone(zone)
    d = parse_date(day)
    day_start, day_end = day_bounds(d, tz)

    localized: List[LocalSlot] = []
    for slot in slots:
        if not slot.overlaps(day_start, day_end):
            continue

        if slot.is_all_day:
            time_range = TimeRange(start=0, end=DAY_END)
        else:
            clip_start = max(slot.starts_at, day_start)
            clip_end = min(slot.ends_at, day_end)

            start_local = clip_start.in_timezone(tz)
            start_minute = _minute_of(start_local)
            if clip_end >= day_end:
                end_minute = DAY_END
            else:
                end_local = clip_end.in_timezone(tz)
                end_minute = _minute_of(end_local)
                if end_local.utcoffset() < start_local.utcoffset():
                    # Clocks went back inside the slot: read the end on the start's offset
                    elapsed = int((clip_end - clip_start).total_seconds() // 60)
                    end_minute = min(start_minute + elapsed, DAY_END)

            if start_minute >= end_minute:
                continue
            time_range = TimeRange(start=start_minute, end=end_minute)

        localized.append(
            LocalSlot(
                date=d,
                time_range=time_range,
                kind=slot.kind,
                source=slot.source,
                title=slot.title,
                notes=slot.notes,
                is_all_day=slot.is_all_day,
                external_ref=slot.external_ref,
                slot_id=slot.id,
            )
        )

    localized.sort(key=lambda s: (s.time_range.start, s.time_range.end))
    return localized


def localize_by_date(
    start_date: Any,
    end_date: Any,
    slots: Iterable[AvailabilitySlot],
    zone: Any,
) -> Dict[date, List[LocalSlot]]:
    """
    Spread UTC slots across every local date from start to end inclusive.

    Dates without any slot are omitted.
    """
    tz = ensure_timezone(zone)
    slot_list = list(slots)

    by_date: Dict[date, List[LocalSlot]] = {}
    for d in iter_dates(start_date, end_date):
        day_slots = utc_slots_to_local(d, slot_list, tz)
        if day_slots:
            by_date[d] = day_slots
    return by_date


def describe_window(starts_at: DateTime, ends_at: DateTime, zone: Any) -> str:
    """Human-readable local rendering of a UTC window."""
    tz = ensure_timezone(zone)
    start = starts_at.in_timezone(tz)
    end = ends_at.in_timezone(tz)
    if start.date() == end.date():
        return f"{start.format('YYYY-MM-DD HH:mm')} - {end.format('HH:mm')} ({tz.name})"
    return f"{start.format('YYYY-MM-DD HH:mm')} - {end.format('YYYY-MM-DD HH:mm')} ({tz.name})"


__all__ = [
    "UTC",
    "WallClock",
    "day_bounds",
    "describe_window",
    "ensure_timezone",
    "format_time",
    "iter_dates",
    "local_instant",
    "local_ranges_to_utc",
    "local_to_utc",
    "localize_by_date",
    "parse_date",
    "range_bounds",
    "utc_slots_to_local",
    "utc_to_local",
]
