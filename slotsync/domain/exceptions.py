"""
Domain-specific exception hierarchy for the slot synchronizer.
"""

from __future__ import annotations

from typing import Sequence


class SlotSyncError(Exception):
    """Base class for all application-level errors."""


class InvalidRange(SlotSyncError, ValueError):
    """Raised when a time range is unparsable or does not start before it ends."""


class BadTimezone(SlotSyncError, ValueError):
    """Raised when an IANA timezone identifier cannot be resolved."""

    def __init__(self, zone: object):
        self.zone = zone
        super().__init__(f"Unknown timezone: {zone!r}")


class OwnerNotFound(SlotSyncError, LookupError):
    """Raised when a slot owner (member) does not exist."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(f"Owner not found: {owner_id}")


class ProjectNotFound(SlotSyncError, LookupError):
    """Raised when a project does not exist."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class RehearsalNotFound(SlotSyncError, LookupError):
    """Raised when a rehearsal does not exist."""

    def __init__(self, rehearsal_id: str):
        self.rehearsal_id = rehearsal_id
        super().__init__(f"Rehearsal not found: {rehearsal_id}")


class PartialSyncFailure(SlotSyncError):
    """
    Raised when the synchronizer's member fan-out stops partway.

    Re-running the same lifecycle step is safe: bookings are full-replace
    operations keyed by the rehearsal's external reference.
    """

    retryable = True

    def __init__(
        self,
        rehearsal_id: str,
        booked: Sequence[str],
        pending: Sequence[str],
    ):
        self.rehearsal_id = rehearsal_id
        self.booked = list(booked)
        self.pending = list(pending)
        super().__init__(
            f"Slot sync for rehearsal {rehearsal_id} stopped after booking "
            f"{len(self.booked)} member(s); {len(self.pending)} still pending"
        )
