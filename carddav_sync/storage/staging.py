"""
Staging store for discovered but unconfirmed contact records.

Pending imports are scoped to exactly one CardDAV connection or one
uploading user. Within a scope, staging a uid again replaces the earlier
pending entry; entries staged together in one batch are all kept, in
arrival order, so reconciliation can detect in-batch duplicates.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from carddav_sync.storage.db import SyncDatabase, parse_timestamp, utc_now
from carddav_sync.sync.scope import ConnectionScope, Scope, UploadScope

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound parameter limit
_CHUNK_SIZE = 500


@dataclass(frozen=True)
class StagedEntry:
    """A record about to be staged."""

    uid: str
    href: str
    vcard_data: str
    display_name: str
    etag: Optional[str] = None


@dataclass(frozen=True)
class PendingImport:
    """A staged record as stored."""

    id: int
    scope: Scope
    uid: str
    href: str
    etag: Optional[str]
    vcard_data: str
    display_name: str
    discovered_at: str
    notified_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "PendingImport":
        scope: Scope
        if row["connection_id"] is not None:
            scope = ConnectionScope(row["connection_id"])
        else:
            scope = UploadScope(row["upload_user_id"])
        return cls(
            id=row["id"],
            scope=scope,
            uid=row["uid"],
            href=row["href"],
            etag=row["etag"],
            vcard_data=row["vcard_data"],
            display_name=row["display_name"],
            discovered_at=row["discovered_at"],
            notified_at=row["notified_at"],
        )

    @property
    def discovered(self) -> Optional[datetime]:
        return parse_timestamp(self.discovered_at)


def _scope_filter(scope: Scope) -> tuple[str, str]:
    if isinstance(scope, ConnectionScope):
        return "connection_id = ?", scope.connection_id
    if isinstance(scope, UploadScope):
        return "upload_user_id = ?", scope.user_id
    raise TypeError(f"Unsupported scope: {scope!r}")


def _chunks(values: Sequence[Any]) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), _CHUNK_SIZE):
        yield values[start : start + _CHUNK_SIZE]


class StagingStore:
    """
    Storage for pending imports.

    Usage:
        staging = StagingStore(db)
        ids = staging.stage_batch(UploadScope("alice"), entries)
        pending = staging.list_for(UploadScope("alice"))
        staging.remove([p.id for p in pending])
    """

    def __init__(self, database: SyncDatabase):
        self.database = database

    def stage(self, scope: Scope, entry: StagedEntry) -> int:
        """
        Upsert one entry by (scope, uid).

        Returns:
            Id of the new pending import
        """
        return self.stage_batch(scope, [entry])[0]

    def stage_batch(self, scope: Scope, entries: Sequence[StagedEntry]) -> list[int]:
        """
        Stage several entries at once.

        Pending entries from earlier staging calls that share a uid with the
        batch are replaced. Duplicate uids inside the batch are all kept, in
        order.

        Args:
            scope: Owning connection or uploading user
            entries: Entries in arrival order

        Returns:
            Pending import ids in the same order as entries
        """
        if not entries:
            return []

        column_filter, scope_value = _scope_filter(scope)
        connection_id = scope.connection_id if isinstance(scope, ConnectionScope) else None
        upload_user_id = scope.user_id if isinstance(scope, UploadScope) else None
        uids = sorted({entry.uid for entry in entries})
        now = utc_now()

        ids: list[int] = []
        with self.database.connection() as conn:
            replaced = 0
            for chunk in _chunks(uids):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"DELETE FROM pending_imports WHERE {column_filter} "  # nosec B608
                    f"AND uid IN ({placeholders})",
                    (scope_value, *chunk),
                )
                replaced += cursor.rowcount

            for entry in entries:
                cursor = conn.execute(
                    """
                    INSERT INTO pending_imports (
                        connection_id, upload_user_id, uid, href, etag,
                        vcard_data, display_name, discovered_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        connection_id,
                        upload_user_id,
                        entry.uid,
                        entry.href,
                        entry.etag,
                        entry.vcard_data,
                        entry.display_name,
                        now,
                    ),
                )
                ids.append(int(cursor.lastrowid))  # type: ignore[arg-type]

        if replaced:
            logger.debug(f"Replaced {replaced} pending import(s) in {scope}")
        logger.debug(f"Staged {len(ids)} pending import(s) in {scope}")
        return ids

    def list_for(
        self, scope: Scope, ids: Optional[Sequence[int]] = None
    ) -> list[PendingImport]:
        """
        List pending imports of a scope in arrival order.

        Args:
            scope: Scope to read
            ids: Restrict to these ids; ids outside the scope are ignored

        Returns:
            Pending imports ordered by id
        """
        column_filter, scope_value = _scope_filter(scope)
        with self.database.connection() as conn:
            if ids is None:
                cursor = conn.execute(
                    f"SELECT * FROM pending_imports WHERE {column_filter} "  # nosec B608
                    "ORDER BY id",
                    (scope_value,),
                )
                return [PendingImport.from_row(row) for row in cursor.fetchall()]

            pending: list[PendingImport] = []
            for chunk in _chunks(list(ids)):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"SELECT * FROM pending_imports WHERE {column_filter} "  # nosec B608
                    f"AND id IN ({placeholders})",
                    (scope_value, *chunk),
                )
                pending.extend(PendingImport.from_row(row) for row in cursor.fetchall())
            return sorted(pending, key=lambda p: p.id)

    def get_many(self, ids: Sequence[int]) -> list[PendingImport]:
        """Fetch pending imports by id regardless of scope, ordered by id."""
        pending: list[PendingImport] = []
        with self.database.connection() as conn:
            for chunk in _chunks(list(ids)):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"SELECT * FROM pending_imports WHERE id IN ({placeholders})",  # nosec B608
                    tuple(chunk),
                )
                pending.extend(PendingImport.from_row(row) for row in cursor.fetchall())
        return sorted(pending, key=lambda p: p.id)

    def remove(self, ids: Sequence[int]) -> int:
        """
        Bulk delete pending imports.

        Returns:
            Number of rows deleted
        """
        deleted = 0
        with self.database.connection() as conn:
            for chunk in _chunks(list(ids)):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"DELETE FROM pending_imports WHERE id IN ({placeholders})",  # nosec B608
                    tuple(chunk),
                )
                deleted += cursor.rowcount
        return deleted

    def clear_scope(self, scope: Scope) -> int:
        """Delete every pending import of a scope; used before a fresh discovery."""
        column_filter, scope_value = _scope_filter(scope)
        with self.database.connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM pending_imports WHERE {column_filter}",  # nosec B608
                (scope_value,),
            )
            return cursor.rowcount

    def count_for(self, scope: Scope) -> int:
        column_filter, scope_value = _scope_filter(scope)
        with self.database.connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM pending_imports WHERE {column_filter}",  # nosec B608
                (scope_value,),
            ).fetchone()
            return int(row[0])

    def list_unnotified(self, scope: Scope) -> list[PendingImport]:
        """Pending imports the user has not been told about yet."""
        return [p for p in self.list_for(scope) if p.notified_at is None]

    def mark_notified(self, ids: Sequence[int]) -> int:
        """
        Stamp notified_at on pending imports.

        Returns:
            Number of rows updated
        """
        now = utc_now()
        updated = 0
        with self.database.connection() as conn:
            for chunk in _chunks(list(ids)):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"UPDATE pending_imports SET notified_at = ? "  # nosec B608
                    f"WHERE id IN ({placeholders}) AND notified_at IS NULL",
                    (now, *chunk),
                )
                updated += cursor.rowcount
        return updated
