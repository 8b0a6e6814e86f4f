"""
carddav_sync.storage - Persistence module

SQLite-backed storage for connections, mappings, locks, staged imports and
local contacts.
"""

from carddav_sync.storage.db import StoreError, SyncDatabase
from carddav_sync.storage.people import PeopleStore
from carddav_sync.storage.staging import PendingImport, StagedEntry, StagingStore

__all__ = [
    "StoreError",
    "SyncDatabase",
    "PeopleStore",
    "PendingImport",
    "StagedEntry",
    "StagingStore",
]
