"""
SQLite database module for sync state management.

Provides persistent storage for CardDAV connections, contact mappings,
sync conflicts, sync locks, staged imports and local contacts. Staging and
local contact operations live in storage.staging and storage.people; this
module owns the schema, connection handling and the connection, mapping,
conflict and lock tables.
"""

import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS connections (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    server_url TEXT NOT NULL,
    address_book_url TEXT NOT NULL,
    username TEXT NOT NULL,
    sync_token TEXT,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    auto_sync_interval INTEGER NOT NULL DEFAULT 43200,
    last_sync_at TEXT,
    last_error TEXT,
    last_error_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS people (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    uid TEXT NOT NULL,
    display_name TEXT NOT NULL,
    prefix TEXT,
    given_name TEXT,
    middle_name TEXT,
    family_name TEXT,
    second_family_name TEXT,
    suffix TEXT,
    nickname TEXT,
    organization TEXT,
    title TEXT,
    notes TEXT,
    photo TEXT,
    photo_path TEXT,
    content_hash TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_people_active_uid
    ON people(owner_id, uid) WHERE deleted_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_people_uid ON people(owner_id, uid);

CREATE TABLE IF NOT EXISTS person_fields (
    id INTEGER PRIMARY KEY,
    person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    position INTEGER NOT NULL,
    label TEXT,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_person_fields_person ON person_fields(person_id);

CREATE TABLE IF NOT EXISTS person_dates (
    id INTEGER PRIMARY KEY,
    person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    title TEXT NOT NULL,
    date TEXT NOT NULL,
    year_known INTEGER NOT NULL DEFAULT 1,
    reminder_kind TEXT,
    reminder_interval INTEGER,
    reminder_unit TEXT
);

CREATE INDEX IF NOT EXISTS idx_person_dates_person ON person_dates(person_id);

CREATE TABLE IF NOT EXISTS person_groups (
    person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    group_name TEXT NOT NULL,
    PRIMARY KEY (person_id, group_name)
);

CREATE TABLE IF NOT EXISTS contact_mappings (
    id INTEGER PRIMARY KEY,
    connection_id TEXT NOT NULL REFERENCES connections(id) ON DELETE CASCADE,
    uid TEXT NOT NULL,
    person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    href TEXT,
    etag TEXT,
    last_synced_hash TEXT,
    last_synced_at TEXT,
    local_changed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(connection_id, uid),
    UNIQUE(connection_id, person_id)
);

CREATE INDEX IF NOT EXISTS idx_contact_mappings_person
    ON contact_mappings(person_id);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    connection_id TEXT NOT NULL REFERENCES connections(id) ON DELETE CASCADE,
    uid TEXT NOT NULL,
    person_id INTEGER NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    href TEXT,
    etag TEXT,
    vcard_data TEXT NOT NULL,
    display_name TEXT NOT NULL,
    detected_at TEXT NOT NULL,
    UNIQUE(connection_id, uid)
);

CREATE INDEX IF NOT EXISTS idx_contact_mappings_connection
    ON contact_mappings(connection_id);

CREATE TABLE IF NOT EXISTS pending_imports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    connection_id TEXT REFERENCES connections(id) ON DELETE CASCADE,
    upload_user_id TEXT,
    uid TEXT NOT NULL,
    href TEXT NOT NULL,
    etag TEXT,
    vcard_data TEXT NOT NULL,
    display_name TEXT NOT NULL,
    discovered_at TEXT NOT NULL,
    notified_at TEXT,
    CHECK ((connection_id IS NULL) <> (upload_user_id IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_pending_connection_uid
    ON pending_imports(connection_id, uid);
CREATE INDEX IF NOT EXISTS idx_pending_upload_uid
    ON pending_imports(upload_user_id, uid);

CREATE TABLE IF NOT EXISTS sync_locks (
    connection_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
"""


class StoreError(Exception):
    """Raised when the local database fails; fatal to a reconciliation run."""

    pass


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string, the format stored in the database."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncDatabase:
    """
    SQLite database manager for CardDAV sync state.

    Provides methods for:
    - Registering connections and tracking their sync tokens and errors
    - Tracking the (connection, uid) <-> local contact mappings
    - Reading and writing sync lock rows
    - Grouping several writes into one transaction

    Usage:
        db = SyncDatabase('/path/to/carddav_sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._local = threading.local()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists
        across operations. File databases get a new connection each time.
        """
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
                self._shared_connection.execute("PRAGMA foreign_keys = ON")
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        The outermost block on a thread owns the connection and commits on
        success or rolls back on error. Blocks nested inside it reuse the
        same connection, so their writes commit or roll back together.
        SQLite errors are raised as StoreError.

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM connections")
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            try:
                yield active
            except sqlite3.Error as e:
                raise StoreError(f"Database error: {e}") from e
            return

        conn = self._get_connection()
        self._local.conn = conn
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            if not self.is_memory:
                conn.close()

    def transaction(self) -> Any:
        """
        Group several store operations into one atomic unit.

        Every SyncDatabase, StagingStore and PeopleStore call made inside the
        block joins the same transaction.

        Usage:
            with db.transaction():
                people.update_from_contact_record(person_id, record)
                staging.remove([pending_id])
        """
        return self.connection()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Connection Operations
    # =========================================================================

    def upsert_connection(
        self,
        connection_id: str,
        user_id: str,
        server_url: str,
        address_book_url: str,
        username: str,
        auto_sync_interval: int = 43200,
        sync_enabled: bool = True,
    ) -> None:
        """
        Register a connection or refresh its configured attributes.

        Sync state (token, timestamps, errors) is left untouched on update.
        """
        now = utc_now()
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO connections (
                    id, user_id, server_url, address_book_url, username,
                    auto_sync_interval, sync_enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    server_url = excluded.server_url,
                    address_book_url = excluded.address_book_url,
                    username = excluded.username,
                    auto_sync_interval = excluded.auto_sync_interval,
                    sync_enabled = excluded.sync_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    connection_id,
                    user_id,
                    server_url,
                    address_book_url,
                    username,
                    auto_sync_interval,
                    int(sync_enabled),
                    now,
                    now,
                ),
            )

    def get_connection(self, connection_id: str) -> Optional[dict[str, Any]]:
        """
        Get a connection row.

        Returns:
            Dictionary of the connection's columns, or None if not found
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_connections(self) -> list[dict[str, Any]]:
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM connections ORDER BY id")
            return [dict(row) for row in cursor.fetchall()]

    def update_sync_token(self, connection_id: str, sync_token: Optional[str]) -> None:
        """Store the server's sync token for the next incremental listing."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE connections SET sync_token = ?, updated_at = ? WHERE id = ?",
                (sync_token, utc_now(), connection_id),
            )

    def clear_sync_token(self, connection_id: str) -> None:
        """Clear the sync token for a connection (forces a full listing)."""
        self.update_sync_token(connection_id, None)

    def record_sync_success(self, connection_id: str) -> None:
        """Stamp last_sync_at and clear any recorded error."""
        now = utc_now()
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE connections
                SET last_sync_at = ?, last_error = NULL, last_error_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (now, now, connection_id),
            )

    def record_sync_error(self, connection_id: str, message: str) -> None:
        now = utc_now()
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE connections
                SET last_error = ?, last_error_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (message, now, now, connection_id),
            )

    def delete_connection(self, connection_id: str) -> bool:
        """
        Permanently delete a connection.

        Its mappings and staged imports are removed with it; local contacts
        are kept.

        Returns:
            True if a connection was deleted, False if not found
        """
        with self.connection() as conn:
            conn.execute("DELETE FROM sync_locks WHERE connection_id = ?", (connection_id,))
            cursor = conn.execute("DELETE FROM connections WHERE id = ?", (connection_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # Contact Mapping Operations
    # =========================================================================

    MAPPING_COLUMNS = """
        connection_id, uid, person_id, href, etag, last_synced_hash,
        last_synced_at, local_changed_at, created_at, updated_at
    """

    def get_mappings_for_connection(self, connection_id: str) -> list[dict[str, Any]]:
        """
        Get all contact mappings of a connection.

        Returns:
            List of mapping dictionaries ordered by uid
        """
        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT {self.MAPPING_COLUMNS} FROM contact_mappings "  # nosec B608
                "WHERE connection_id = ? ORDER BY uid",
                (connection_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_contact_mapping(
        self, connection_id: str, uid: str
    ) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {self.MAPPING_COLUMNS} FROM contact_mappings "  # nosec B608
                "WHERE connection_id = ? AND uid = ?",
                (connection_id, uid),
            ).fetchone()
            return dict(row) if row else None

    def upsert_contact_mapping(
        self,
        connection_id: str,
        uid: str,
        person_id: int,
        href: Optional[str] = None,
        etag: Optional[str] = None,
        last_synced_hash: Optional[str] = None,
        clear_local_change: bool = True,
    ) -> None:
        """
        Insert or update the mapping for (connection_id, uid).

        A stale mapping that points another uid of the same connection at
        person_id is removed first, keeping (connection_id, person_id) unique.

        Args:
            connection_id: Connection the remote card belongs to
            uid: The card's UID
            person_id: Local contact id
            href: Remote location of the card
            etag: Remote version tag
            last_synced_hash: Content hash of the last applied version
            clear_local_change: Whether local and remote now agree; False
                keeps a pending local change for the next push
        """
        now = utc_now()
        with self.connection() as conn:
            conn.execute(
                """
                DELETE FROM contact_mappings
                WHERE connection_id = ? AND person_id = ? AND uid <> ?
                """,
                (connection_id, person_id, uid),
            )
            conn.execute(
                """
                INSERT INTO contact_mappings (
                    connection_id, uid, person_id, href, etag,
                    last_synced_hash, last_synced_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(connection_id, uid) DO UPDATE SET
                    person_id = excluded.person_id,
                    href = COALESCE(excluded.href, contact_mappings.href),
                    etag = COALESCE(excluded.etag, contact_mappings.etag),
                    last_synced_hash = COALESCE(
                        excluded.last_synced_hash, contact_mappings.last_synced_hash
                    ),
                    last_synced_at = excluded.last_synced_at,
                    local_changed_at = CASE WHEN ? THEN NULL
                        ELSE contact_mappings.local_changed_at END,
                    updated_at = excluded.updated_at
                """,
                (
                    connection_id,
                    uid,
                    person_id,
                    href,
                    etag,
                    last_synced_hash,
                    now,
                    now,
                    now,
                    int(clear_local_change),
                ),
            )

    def mark_local_change(
        self, person_id: int, except_connection: Optional[str] = None
    ) -> int:
        """
        Flag a contact's mappings as changed locally since their last sync.

        Args:
            person_id: Local contact that was modified
            except_connection: Connection whose own sync made the change

        Returns:
            Number of mappings flagged
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE contact_mappings SET local_changed_at = ?
                WHERE person_id = ? AND connection_id IS NOT ?
                """,
                (utc_now(), person_id, except_connection),
            )
            return cursor.rowcount

    def list_local_changes(self, connection_id: str) -> list[dict[str, Any]]:
        """
        Mappings of active contacts with local changes to push.

        Contacts with an open conflict are left out until it is resolved.
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT m.connection_id, m.uid, m.person_id, m.href, m.etag,
                       m.last_synced_hash, m.local_changed_at
                FROM contact_mappings m
                JOIN people p ON p.id = m.person_id
                WHERE m.connection_id = ?
                  AND m.local_changed_at IS NOT NULL
                  AND p.deleted_at IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM sync_conflicts c
                      WHERE c.connection_id = m.connection_id AND c.uid = m.uid
                  )
                ORDER BY m.uid
                """,
                (connection_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def count_mappings(self, connection_id: str) -> int:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM contact_mappings WHERE connection_id = ?",
                (connection_id,),
            ).fetchone()
            return int(row[0])

    # =========================================================================
    # Conflict Operations
    # =========================================================================

    def upsert_conflict(
        self,
        connection_id: str,
        uid: str,
        person_id: int,
        vcard_data: str,
        display_name: str,
        href: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> int:
        """
        Record (or refresh) an open conflict with the latest remote version.

        Returns:
            The conflict id
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_conflicts (
                    connection_id, uid, person_id, href, etag,
                    vcard_data, display_name, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(connection_id, uid) DO UPDATE SET
                    person_id = excluded.person_id,
                    href = excluded.href,
                    etag = excluded.etag,
                    vcard_data = excluded.vcard_data,
                    display_name = excluded.display_name,
                    detected_at = excluded.detected_at
                """,
                (
                    connection_id,
                    uid,
                    person_id,
                    href,
                    etag,
                    vcard_data,
                    display_name,
                    utc_now(),
                ),
            )
            row = conn.execute(
                "SELECT id FROM sync_conflicts WHERE connection_id = ? AND uid = ?",
                (connection_id, uid),
            ).fetchone()
            return int(row["id"])

    def list_conflicts(self, connection_id: Optional[str] = None) -> list[dict[str, Any]]:
        with self.connection() as conn:
            if connection_id is None:
                cursor = conn.execute("SELECT * FROM sync_conflicts ORDER BY id")
            else:
                cursor = conn.execute(
                    "SELECT * FROM sync_conflicts WHERE connection_id = ? ORDER BY id",
                    (connection_id,),
                )
            return [dict(row) for row in cursor.fetchall()]

    def get_conflict(self, conflict_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)
            ).fetchone()
            return dict(row) if row else None

    def delete_conflict(self, conflict_id: int) -> bool:
        with self.connection() as conn:
            cursor = conn.execute("DELETE FROM sync_conflicts WHERE id = ?", (conflict_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # Sync Lock Operations
    # =========================================================================

    def try_acquire_lock(
        self, connection_id: str, owner: str, now: float, expires_at: float
    ) -> bool:
        """
        Atomically take the lock row for a connection.

        Succeeds when no row exists or the existing row has expired.

        Returns:
            True if the lock was taken, False if a live lock is held
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_locks (connection_id, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(connection_id) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                WHERE sync_locks.expires_at <= ?
                """,
                (connection_id, owner, now, expires_at, now),
            )
            return cursor.rowcount > 0

    def release_lock(self, connection_id: str, owner: str) -> bool:
        """
        Delete the lock row if it is still held by owner.

        Returns:
            True if the row was deleted
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_locks WHERE connection_id = ? AND owner = ?",
                (connection_id, owner),
            )
            return cursor.rowcount > 0

    def extend_lock(self, connection_id: str, owner: str, expires_at: float) -> bool:
        """
        Push back the expiry of a lock still held by owner.

        Returns:
            False if the lock was lost (reclaimed or released)
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_locks SET expires_at = ?
                WHERE connection_id = ? AND owner = ?
                """,
                (expires_at, connection_id, owner),
            )
            return cursor.rowcount > 0

    def get_lock(self, connection_id: str) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_locks WHERE connection_id = ?", (connection_id,)
            ).fetchone()
            return dict(row) if row else None

    def force_release_lock(self, connection_id: str) -> bool:
        """Delete a connection's lock regardless of owner (operator override)."""
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_locks WHERE connection_id = ?", (connection_id,)
            )
            return cursor.rowcount > 0
