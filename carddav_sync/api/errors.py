"""
Errors raised by remote CardDAV calls and their user-facing categories.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RemoteCallError(Exception):
    """
    A CardDAV request failed.

    Attributes:
        status_code: HTTP status, or None for network failures and timeouts
        retryable: Whether repeating the call may succeed
        retry_after: Seconds the server asked us to wait, if any
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after

    @classmethod
    def from_status(
        cls, message: str, status_code: int, retry_after: Optional[float] = None
    ) -> RemoteCallError:
        """Build an error for an HTTP status; 5xx and 429 are retryable."""
        retryable = status_code >= 500 or status_code == 429
        return cls(message, status_code=status_code, retryable=retryable, retry_after=retry_after)


class SyncTokenExpiredError(RemoteCallError):
    """The server rejected our sync token; a full listing is required."""

    pass


class MalformedResponseError(RemoteCallError):
    """The server answered with a body we could not parse."""

    pass


class PreconditionFailedError(RemoteCallError):
    """The card changed on the server since the etag we sent (HTTP 412)."""

    pass


class ErrorCategory(str, Enum):
    AUTH = "auth"
    NETWORK = "network"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorCategory.AUTH: "Authentication failed. Check the username and password.",
    ErrorCategory.NETWORK: "Could not reach the server. Check the URL and your connection.",
    ErrorCategory.SERVER: "The server reported an error. Try again later.",
    ErrorCategory.RATE_LIMIT: "The server is rate limiting requests. Try again later.",
    ErrorCategory.MALFORMED: "The server returned data that could not be read.",
    ErrorCategory.NOT_FOUND: "The address book was not found. Check the address book URL.",
    ErrorCategory.CONFLICT: "The contact changed on the server. Sync again before pushing.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred while syncing.",
}


def categorize_error(error: Exception) -> ErrorCategory:
    """
    Map a failure to a coarse category.

    Args:
        error: Exception raised during a sync

    Returns:
        The ErrorCategory
    """
    if isinstance(error, PreconditionFailedError):
        return ErrorCategory.CONFLICT
    if isinstance(error, MalformedResponseError):
        return ErrorCategory.MALFORMED
    if isinstance(error, RemoteCallError):
        status = error.status_code
        if status is None:
            return ErrorCategory.NETWORK
        if status in (401, 403):
            return ErrorCategory.AUTH
        if status == 404:
            return ErrorCategory.NOT_FOUND
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status >= 500:
            return ErrorCategory.SERVER
        if status in (400, 422):
            return ErrorCategory.MALFORMED
        return ErrorCategory.UNKNOWN
    if isinstance(error, ValueError):
        return ErrorCategory.MALFORMED
    return ErrorCategory.UNKNOWN


def user_message(error: Exception) -> str:
    """Short message suitable for storing on the connection and showing users."""
    return USER_MESSAGES[categorize_error(error)]
