"""
Service layer helpers that orchestrate adapters and domain logic.
"""

from .ledger import AvailabilityLedger
from .locks import KeyedLock
from .synchronizer import RehearsalSlotSynchronizer

__all__ = ["AvailabilityLedger", "KeyedLock", "RehearsalSlotSynchronizer"]
