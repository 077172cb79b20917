"""
Domain models for wall-clock ranges, availability slots and rehearsals.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, time
from enum import Enum
from typing import Any, List, Mapping

from pendulum import DateTime

from .exceptions import InvalidRange

MINUTES_PER_HOUR = 60
DAY_START = 0
DAY_END = 23 * MINUTES_PER_HOUR + 59  # 23:59, last representable minute


class SlotKind(str, Enum):
    """What a slot says about its owner."""
    AVAILABLE = "available"
    BUSY = "busy"
    TENTATIVE = "tentative"


class SlotSource(str, Enum):
    """Provenance of a slot; decides who may replace it."""
    MANUAL = "manual"
    REHEARSAL = "rehearsal"
    IMPORTED = "imported"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DayStatus(str, Enum):
    FREE = "free"
    PARTIAL = "partial"
    BUSY = "busy"


def parse_time(value: Any) -> int:
    """
    Parse a wall-clock value into a minute-of-day offset.

    Accepts ``"HH:MM"`` (or ``"HH:MM:SS"``) strings, ``datetime.time`` objects
    and plain minute integers.

    Raises:
        InvalidRange: If the value cannot be read as a time between 00:00 and 23:59
    """
    if isinstance(value, bool):
        raise InvalidRange(f"Not a time value: {value!r}")

    if isinstance(value, int):
        minute = value
    elif isinstance(value, time):
        minute = value.hour * MINUTES_PER_HOUR + value.minute
    elif isinstance(value, str):
        parts = value.strip().split(":")
        if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
            raise InvalidRange(f"Unparsable time: {value!r}")
        hours, minutes = int(parts[0]), int(parts[1])
        if hours > 23 or minutes > 59:
            raise InvalidRange(f"Time out of range: {value!r}")
        minute = hours * MINUTES_PER_HOUR + minutes
    else:
        raise InvalidRange(f"Not a time value: {value!r}")

    if not DAY_START <= minute <= DAY_END:
        raise InvalidRange(f"Minute of day out of range: {minute}")
    return minute


def format_time(minute: int) -> str:
    """Format a minute-of-day offset as ``HH:MM``."""
    hours, minutes = divmod(minute, MINUTES_PER_HOUR)
    return f"{hours:02d}:{minutes:02d}"


@dataclass(frozen=True, order=True)
class TimeRange:
    """
    Represents an immutable wall-clock range within a single day.

    Values are minute-of-day offsets. Invariant: start must be before end.
    """
    start: int
    end: int

    def __post_init__(self):
        for value in (self.start, self.end):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidRange(f"Range bounds must be minute offsets, got {value!r}")
            if not DAY_START <= value <= DAY_END:
                raise InvalidRange(f"Minute of day out of range: {value}")
        if self.start >= self.end:
            raise InvalidRange(
                f"Start time {format_time(self.start)} must be before end time {format_time(self.end)}"
            )

    @classmethod
    def parse(cls, start: Any, end: Any) -> "TimeRange":
        """Build a range from two wall-clock values (see ``parse_time``)."""
        return cls(start=parse_time(start), end=parse_time(end))

    @classmethod
    def coerce(cls, value: Any) -> "TimeRange":
        """
        Coerce a loosely-typed range into a ``TimeRange``.

        Accepts an existing ``TimeRange``, a ``(start, end)`` pair, a mapping
        with ``start``/``end`` keys, or a ``"HH:MM-HH:MM"`` string.
        """
        if isinstance(value, TimeRange):
            return value
        if isinstance(value, Mapping):
            if "start" not in value or "end" not in value:
                raise InvalidRange(f"Range mapping needs start and end: {value!r}")
            return cls.parse(value["start"], value["end"])
        if isinstance(value, str):
            start, sep, end = value.partition("-")
            if not sep:
                raise InvalidRange(f"Unparsable range: {value!r}")
            return cls.parse(start, end)
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls.parse(value[0], value[1])
        raise InvalidRange(f"Unparsable range: {value!r}")

    @property
    def start_time(self) -> str:
        return format_time(self.start)

    @property
    def end_time(self) -> str:
        return format_time(self.end)

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return self.end - self.start

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another."""
        return self.start < other.end and self.end > other.start

    def intersect(self, other: "TimeRange") -> "TimeRange | None":
        """
        Calculate the intersection of two time ranges.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None

        return TimeRange(start=max(self.start, other.start), end=min(self.end, other.end))

    def to_dict(self) -> dict:
        return {"start": self.start_time, "end": self.end_time}

    def __str__(self) -> str:
        return f"{self.start_time}-{self.end_time}"


@dataclass
class AvailabilitySlot:
    """
    One interval in a member's availability ledger, stored as UTC instants.

    ``source`` and ``external_ref`` decide ownership: manual slots belong to
    the member, rehearsal slots to the synchronizer, imported slots to an
    external calendar import.
    """
    owner_id: str
    starts_at: DateTime
    ends_at: DateTime
    kind: SlotKind = SlotKind.BUSY
    source: SlotSource = SlotSource.MANUAL
    external_ref: str | None = None
    title: str | None = None
    notes: str | None = None
    is_all_day: bool = False
    id: str | None = None
    created_at: DateTime | None = None

    def __post_init__(self):
        self.kind = SlotKind(self.kind)
        self.source = SlotSource(self.source)
        if self.starts_at >= self.ends_at:
            raise InvalidRange(
                f"Slot start {self.starts_at} must be before end {self.ends_at}"
            )

    @property
    def date(self) -> date:
        """The UTC calendar date the slot starts on."""
        return self.starts_at.in_timezone("UTC").date()

    def overlaps(self, starts_at: DateTime, ends_at: DateTime) -> bool:
        return self.starts_at < ends_at and self.ends_at > starts_at

    def copy(self, **changes: Any) -> "AvailabilitySlot":
        return replace(self, **changes)


@dataclass(frozen=True)
class UtcSlot:
    """A UTC instant window produced from local input, not yet owned by anyone."""
    starts_at: DateTime
    ends_at: DateTime
    kind: SlotKind = SlotKind.BUSY
    title: str | None = None
    notes: str | None = None
    is_all_day: bool = False


@dataclass(frozen=True)
class LocalSlot:
    """
    A slot as one member sees it on one local calendar date.
    """
    date: date
    time_range: TimeRange
    kind: SlotKind = SlotKind.BUSY
    source: SlotSource = SlotSource.MANUAL
    title: str | None = None
    notes: str | None = None
    is_all_day: bool = False
    external_ref: str | None = None
    slot_id: str | None = None

    def format_display(self) -> str:
        label = self.title or self.kind.value
        return f"{self.date.isoformat()} {self.time_range} {label} ({self.source.value})"


@dataclass
class Rehearsal:
    """Group event whose window is mirrored onto every active member's ledger."""
    id: str
    project_id: str
    starts_at: DateTime
    ends_at: DateTime
    title: str | None = None
    location: str | None = None

    def __post_init__(self):
        self.id = str(self.id)
        self.project_id = str(self.project_id)
        if self.starts_at >= self.ends_at:
            raise InvalidRange(
                f"Rehearsal start {self.starts_at} must be before end {self.ends_at}"
            )

    @property
    def external_ref(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class ProjectMembership:
    project_id: str
    user_id: str
    status: MembershipStatus = MembershipStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE


@dataclass
class SyncReport:
    """Outcome of one synchronizer lifecycle step."""
    rehearsal_id: str
    booked: List[str] = field(default_factory=list)
    removed: int = 0
