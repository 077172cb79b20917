"""
Interval algebra over wall-clock ranges.

Pure domain logic without any external dependencies (no database, no I/O).
All functions accept loosely-typed ranges (see ``TimeRange.coerce``) and
return sorted lists of ``TimeRange``.
"""

from __future__ import annotations

from typing import Any, Iterable, List

from .exceptions import InvalidRange
from .models import DAY_END, DAY_START, DayStatus, TimeRange, parse_time

# A gap of this many minutes or fewer between two ranges is coalesced.
ADJACENCY_TOLERANCE = 1


def coerce_ranges(ranges: Iterable[Any] | None, strict: bool = False) -> List[TimeRange]:
    """
    Convert raw range input to ``TimeRange`` objects.

    Args:
        ranges: Iterable of ranges in any form ``TimeRange.coerce`` understands
        strict: Raise on the first malformed entry instead of dropping it

    Raises:
        InvalidRange: In strict mode, for an unparsable or degenerate entry
    """
    result: List[TimeRange] = []
    for raw in ranges or []:
        try:
            result.append(TimeRange.coerce(raw))
        except InvalidRange:
            if strict:
                raise
    return result


def merge(ranges: Iterable[Any] | None) -> List[TimeRange]:
    """
    Merge overlapping or adjacent time ranges.

    Malformed entries are dropped. Ranges separated by at most
    ``ADJACENCY_TOLERANCE`` minutes are coalesced.

    Example: [10:00-12:00, 11:00-13:00] -> [10:00-13:00]
    """
    cleaned = coerce_ranges(ranges)
    if not cleaned:
        return []

    sorted_ranges = sorted(cleaned, key=lambda r: (r.start, r.end))
    merged: List[TimeRange] = [sorted_ranges[0]]

    for current in sorted_ranges[1:]:
        last = merged[-1]

        if current.start <= last.end + ADJACENCY_TOLERANCE:
            if current.end > last.end:
                merged[-1] = TimeRange(start=last.start, end=current.end)
        else:
            merged.append(current)

    return merged


def subtract(ranges: Iterable[Any] | None, cut: Any) -> List[TimeRange]:
    """
    Remove a single interval from a list of ranges.

    Ranges straddling the cut are split into up to two remainders, ranges
    entirely inside it vanish and disjoint ranges pass through unchanged.

    Example:
    Ranges: [09:00-17:00]
    Cut: 12:00-13:00
    Result: [09:00-12:00, 13:00-17:00]
    """
    cleaned = coerce_ranges(ranges)
    if cut is None:
        return cleaned
    cut_range = TimeRange.coerce(cut)

    result: List[TimeRange] = []
    for current in cleaned:
        if not current.overlaps(cut_range):
            result.append(current)
            continue

        if cut_range.start > current.start:
            result.append(TimeRange(start=current.start, end=cut_range.start))
        if cut_range.end < current.end:
            result.append(TimeRange(start=cut_range.end, end=current.end))

    return result


def clamp(time_range: Any, window_start: Any, window_end: Any) -> TimeRange | None:
    """
    Clip a range to fit within a window.
    Returns None if the range is completely outside the window.
    """
    current = TimeRange.coerce(time_range)
    lower, upper = parse_time(window_start), parse_time(window_end)

    start = max(current.start, lower)
    end = min(current.end, upper)
    if start >= end:
        return None
    return TimeRange(start=start, end=end)


def complement_within_window(
    ranges: Iterable[Any] | None,
    window_start: Any,
    window_end: Any,
) -> List[TimeRange]:
    """
    Return the gaps inside a window that no range covers.

    Given busy ranges this yields free time:
    - Start with the window (the "universe" of possible time)
    - Subtract every clamped, merged range
    - What remains is free time

    Example:
    Window: 00:00 - 23:59
    Busy: [10:00-12:00]
    Result: [00:00-10:00, 12:00-23:59]
    """
    lower, upper = parse_time(window_start), parse_time(window_end)
    if lower >= upper:
        return []

    clamped = []
    for current in coerce_ranges(ranges):
        clipped = clamp(current, lower, upper)
        if clipped:
            clamped.append(clipped)

    gaps: List[TimeRange] = []
    cursor = lower

    for busy in merge(clamped):
        if cursor < busy.start:
            gaps.append(TimeRange(start=cursor, end=busy.start))
        cursor = max(cursor, busy.end)

    if cursor < upper:
        gaps.append(TimeRange(start=cursor, end=upper))

    return gaps


def classify(
    ranges: Iterable[Any] | None,
    day_start: Any = DAY_START,
    day_end: Any = DAY_END,
) -> DayStatus:
    """
    Classify a day by its busy ranges.

    ``free`` with no ranges, ``busy`` when a single merged range covers the
    whole day window, ``partial`` otherwise.
    """
    merged = merge(ranges)
    if not merged:
        return DayStatus.FREE

    lower, upper = parse_time(day_start), parse_time(day_end)
    for current in merged:
        if current.start <= lower and current.end >= upper:
            return DayStatus.BUSY
    return DayStatus.PARTIAL


def intersect(first: Iterable[Any] | None, second: Iterable[Any] | None) -> List[TimeRange]:
    """
    Calculate intersection of two lists of time ranges.

    Returns all overlapping periods between any ranges in both lists, merged.
    """
    intersections: List[TimeRange] = []

    for range1 in coerce_ranges(first):
        for range2 in coerce_ranges(second):
            overlap = range1.intersect(range2)
            if overlap:
                intersections.append(overlap)

    return merge(intersections)


def intersect_all(range_lists: Iterable[Iterable[Any]]) -> List[TimeRange]:
    """
    Intersection across any number of range lists.

    Only times covered by every list are returned; an empty input yields [].
    """
    lists = list(range_lists)
    if not lists:
        return []

    result = merge(lists[0])
    for other in lists[1:]:
        result = intersect(result, other)

        # Early exit if nothing is shared
        if not result:
            return []

    return result


def free_gaps(
    busy: Iterable[Any] | None,
    workday_start: Any = "09:00",
    workday_end: Any = "23:00",
) -> List[TimeRange]:
    """Free time inside the working part of the day."""
    return complement_within_window(busy, workday_start, workday_end)


def total_minutes(ranges: Iterable[Any] | None) -> int:
    """Total covered minutes after overlaps are resolved."""
    return sum(r.duration_minutes() for r in merge(ranges))
