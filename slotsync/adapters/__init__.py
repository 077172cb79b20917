"""
Adapters layer - persistence for slots, members and rehearsals.
"""

from .memory_store import InMemoryDirectory, InMemoryRehearsalStore, InMemorySlotStore
from .sql_store import (
    SqlDirectory,
    SqlRehearsalStore,
    SqlSlotStore,
    create_db_engine,
    create_schema,
    create_session_factory,
)

__all__ = [
    "InMemoryDirectory",
    "InMemoryRehearsalStore",
    "InMemorySlotStore",
    "SqlDirectory",
    "SqlRehearsalStore",
    "SqlSlotStore",
    "create_db_engine",
    "create_schema",
    "create_session_factory",
]
