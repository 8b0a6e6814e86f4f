"""
Periodic sync of every connection that is due.

One cycle walks the registered connections, syncs each enabled connection
whose auto-sync interval has elapsed since its last successful sync, and
spaces the connections out by a short delay. Locked connections are skipped
for this cycle; failures are recorded on the connection and never stop the
remaining connections.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from carddav_sync.config.loader import ConfigError
from carddav_sync.storage.db import StoreError, parse_timestamp
from carddav_sync.sync.engine import ReconciliationEngine, RunResult, UnknownConnectionError
from carddav_sync.sync.guard import LockContentionError

logger = logging.getLogger(__name__)


@dataclass
class SyncCycleReport:
    """What happened to each connection during one cycle."""

    synced: dict[str, RunResult] = field(default_factory=dict)
    not_due: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)
    locked: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def should_sync_now(connection: dict[str, Any], now: datetime) -> bool:
    """
    Check whether a connection row is due for an automatic sync.

    Args:
        connection: Row from SyncDatabase.get_connection()
        now: Current time (timezone-aware)

    Returns:
        True if sync is enabled and the interval has elapsed (or the
        connection never synced)
    """
    if not connection["sync_enabled"]:
        return False
    last_sync = parse_timestamp(connection["last_sync_at"])
    if last_sync is None:
        return True
    interval = timedelta(seconds=int(connection["auto_sync_interval"]))
    return now - last_sync >= interval


def run_due_syncs(
    engine: ReconciliationEngine,
    now: datetime | None = None,
    connection_delay: float = 0.2,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncCycleReport:
    """
    Sync every connection that is due.

    Args:
        engine: Engine used for each connection
        now: Reference time (default: current UTC time)
        connection_delay: Pause between two synced connections, in seconds
        cancel_event: Stops the cycle between connections and is passed to
            each sync as its cancel signal
        sleep: Sleep function (replaced in tests)

    Returns:
        SyncCycleReport
    """
    now = now or datetime.now(timezone.utc)
    report = SyncCycleReport()
    database = engine.database

    for connection in database.list_connections():
        connection_id = connection["id"]
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Sync cycle cancelled")
            break
        if not connection["sync_enabled"]:
            report.disabled.append(connection_id)
            continue
        if not should_sync_now(connection, now):
            report.not_due.append(connection_id)
            continue

        if report.synced or report.failed or report.locked:
            sleep(connection_delay)

        logger.info(f"Auto-syncing connection {connection_id}")
        try:
            result = engine.sync(connection_id, cancel_event=cancel_event)
        except LockContentionError as e:
            logger.info(f"Skipping {connection_id}: {e}")
            report.locked.append(connection_id)
            continue
        except (ConfigError, UnknownConnectionError, StoreError) as e:
            logger.error(f"Sync of {connection_id} failed: {e}")
            report.failed[connection_id] = str(e)
            try:
                database.record_sync_error(connection_id, str(e))
            except StoreError as store_error:
                logger.error(f"Could not record error for {connection_id}: {store_error}")
            continue

        report.synced[connection_id] = result
        if result.aborted:
            report.failed[connection_id] = result.fatal_error or "Sync aborted"
        else:
            logger.info(
                f"{connection_id}: {result.imported} imported, {result.updated} "
                f"updated, {result.restored} restored, {result.skipped} skipped, "
                f"{result.errored} errors"
            )

    return report
