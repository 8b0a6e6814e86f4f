"""
CardDAV API access.

Provides the HTTP client for address book collections and the error types
its calls raise.
"""

from carddav_sync.api.carddav import CardDAVClient, ChangeSet, RemoteCard
from carddav_sync.api.errors import (
    ErrorCategory,
    MalformedResponseError,
    RemoteCallError,
    SyncTokenExpiredError,
    categorize_error,
    user_message,
)

__all__ = [
    "CardDAVClient",
    "ChangeSet",
    "RemoteCard",
    "ErrorCategory",
    "MalformedResponseError",
    "RemoteCallError",
    "SyncTokenExpiredError",
    "categorize_error",
    "user_message",
]
