"""Local entry storage.

Provides:
- The entry/tag store with its full-text index
- The one-time migration from integer to UUID entry ids
- Administrative repair and reset helpers
"""

from .entries import Entry, EntryStore, SearchFilter
from .maintenance import RepairResult, repair_database, reset_database
from .migration import migrate_to_uuid, needs_uuid_migration

__all__ = [
    "Entry",
    "EntryStore",
    "SearchFilter",
    "RepairResult",
    "repair_database",
    "reset_database",
    "migrate_to_uuid",
    "needs_uuid_migration",
]
