"""
Concurrency guard for reconciliation runs and remote calls.

Provides:
- SyncLockManager: one exclusive, expiring lock row per connection, with
  scoped acquisition that always releases
- RemoteCallGuard: batching, minimum spacing between calls, per-call
  timeouts and exponential backoff for outbound CardDAV requests
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Generator, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from carddav_sync.api.errors import RemoteCallError
from carddav_sync.config.settings import DEFAULT_LOCK_TIMEOUT, GuardSettings
from carddav_sync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockContentionError(Exception):
    """Raised when another run already holds a connection's sync lock."""

    def __init__(self, connection_id: str, expires_at: Optional[float] = None):
        message = f"A sync is already running for connection '{connection_id}'"
        if expires_at is not None:
            message += f" (lock expires at {time.ctime(expires_at)})"
        super().__init__(message)
        self.connection_id = connection_id
        self.expires_at = expires_at


@dataclass(frozen=True)
class SyncLock:
    """A held sync lock."""

    connection_id: str
    owner: str
    acquired_at: float
    expires_at: float


def _owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


class SyncLockManager:
    """
    Exclusive per-connection locks stored in the sync_locks table.

    A lock whose expiry has passed is treated as free, so a crashed holder
    never wedges a connection for longer than the timeout.

    Usage:
        locks = SyncLockManager(db, timeout=300)
        with locks.hold("home") as lock:
            ...  # reconcile
    """

    def __init__(
        self,
        database: SyncDatabase,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the lock manager.

        Args:
            database: Database holding the lock rows
            timeout: Seconds until an unreleased lock may be reclaimed
            clock: Wall-clock source (seconds since the epoch)
        """
        self.database = database
        self.timeout = timeout
        self._clock = clock

    def acquire(self, connection_id: str) -> SyncLock:
        """
        Take the lock for a connection.

        Raises:
            LockContentionError: If a non-expired lock is held
        """
        now = self._clock()
        lock = SyncLock(
            connection_id=connection_id,
            owner=_owner_token(),
            acquired_at=now,
            expires_at=now + self.timeout,
        )
        if not self.database.try_acquire_lock(
            connection_id, lock.owner, lock.acquired_at, lock.expires_at
        ):
            existing = self.database.get_lock(connection_id)
            raise LockContentionError(
                connection_id, existing["expires_at"] if existing else None
            )
        logger.debug(f"Acquired sync lock for {connection_id} ({lock.owner})")
        return lock

    def release(self, lock: SyncLock) -> bool:
        """
        Release a lock if we still own it.

        Returns:
            False if the lock had already been reclaimed by another run
        """
        released = self.database.release_lock(lock.connection_id, lock.owner)
        if released:
            logger.debug(f"Released sync lock for {lock.connection_id}")
        else:
            logger.warning(
                f"Sync lock for {lock.connection_id} was no longer held by this run"
            )
        return released

    def refresh(self, lock: SyncLock) -> SyncLock:
        """
        Extend a held lock by another timeout period.

        Raises:
            LockContentionError: If the lock was lost in the meantime
        """
        expires_at = self._clock() + self.timeout
        if not self.database.extend_lock(lock.connection_id, lock.owner, expires_at):
            raise LockContentionError(lock.connection_id)
        return SyncLock(lock.connection_id, lock.owner, lock.acquired_at, expires_at)

    @contextmanager
    def hold(self, connection_id: str) -> Generator[SyncLock, None, None]:
        """Acquire the lock for the duration of the block; always release it."""
        lock = self.acquire(connection_id)
        try:
            yield lock
        finally:
            self.release(lock)

    def is_locked(self, connection_id: str) -> bool:
        existing = self.database.get_lock(connection_id)
        return existing is not None and existing["expires_at"] > self._clock()


class RemoteCallGuard:
    """
    Wraps outbound remote calls with batching, spacing, timeouts and retries.

    Operations receive the per-call timeout as their only argument. Retryable
    RemoteCallErrors (network failures, timeouts, 5xx, 429) are retried with
    exponential backoff; the last error is re-raised once attempts run out.

    Usage:
        guard = RemoteCallGuard.from_settings(settings.guard)
        for hrefs in guard.batches(all_hrefs):
            cards = guard.call(lambda t: client.fetch_many(hrefs, timeout=t), "multiget")
    """

    def __init__(
        self,
        batch_size: int = 50,
        min_interval: float = 0.2,
        timeout: float = 30.0,
        max_retries: int = 3,
        initial_retry_delay: float = 1.0,
        max_retry_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        self.batch_size = batch_size
        self.min_interval = min_interval
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep
        self._clock = clock
        self._last_call: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: GuardSettings) -> RemoteCallGuard:
        return cls(
            batch_size=settings.batch_size,
            min_interval=settings.rate_limit_interval,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            initial_retry_delay=settings.initial_retry_delay,
            max_retry_delay=settings.max_retry_delay,
        )

    def batches(self, items: Sequence[T]) -> Iterator[list[T]]:
        """Yield items in lists of at most batch_size."""
        for start in range(0, len(items), self.batch_size):
            yield list(items[start : start + self.batch_size])

    def _wait_for_slot(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last_call is not None:
                wait = self._last_call + self.min_interval - now
                if wait > 0:
                    self._sleep(wait)
                    now += wait
            self._last_call = now

    def call(self, operation: Callable[[float], T], name: str) -> T:
        """
        Run one remote operation under the guard.

        Args:
            operation: Callable receiving the per-call timeout in seconds
            name: Operation name for logging

        Returns:
            The operation's result

        Raises:
            RemoteCallError: When the error is not retryable or retries are
                exhausted
        """
        delay = self.initial_retry_delay
        for attempt in range(1, self.max_retries + 1):
            self._wait_for_slot()
            try:
                return operation(self.timeout)
            except RemoteCallError as e:
                if not e.retryable or attempt == self.max_retries:
                    if e.retryable:
                        logger.error(f"{name} failed after {attempt} attempts: {e}")
                    raise
                wait = delay
                if e.retry_after is not None:
                    wait = max(wait, e.retry_after)
                wait = min(wait, self.max_retry_delay)
                logger.warning(
                    f"{name} failed ({e}), retrying in {wait:.1f}s "
                    f"(attempt {attempt}/{self.max_retries})"
                )
                self._sleep(wait)
                delay = min(delay * 2, self.max_retry_delay)

        # Loop always returns or raises
        raise RemoteCallError(f"{name} failed after {self.max_retries} attempts")
