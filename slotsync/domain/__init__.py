"""
Domain layer - Pure business logic without external dependencies.
"""

from .exceptions import (
    BadTimezone,
    InvalidRange,
    OwnerNotFound,
    PartialSyncFailure,
    ProjectNotFound,
    RehearsalNotFound,
    SlotSyncError,
)
from .models import (
    AvailabilitySlot,
    DayStatus,
    LocalSlot,
    MembershipStatus,
    ProjectMembership,
    Rehearsal,
    SlotKind,
    SlotSource,
    SyncReport,
    TimeRange,
)

__all__ = [
    "AvailabilitySlot",
    "BadTimezone",
    "DayStatus",
    "InvalidRange",
    "LocalSlot",
    "MembershipStatus",
    "OwnerNotFound",
    "PartialSyncFailure",
    "ProjectMembership",
    "ProjectNotFound",
    "Rehearsal",
    "RehearsalNotFound",
    "SlotKind",
    "SlotSource",
    "SlotSyncError",
    "SyncReport",
    "TimeRange",
]
