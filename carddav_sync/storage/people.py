"""
Local contact store backed by SQLite.

Holds the user's contacts that reconciliation creates, updates and
restores. A contact's uid is its cross-system identity; deleted_at marks
a soft delete. Group memberships hang off the contact id and survive a
soft delete followed by a restore.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import asdict
from datetime import date
from typing import Any, Optional

from carddav_sync.storage.db import StoreError, SyncDatabase, utc_now
from carddav_sync.sync.contact import (
    ContactRecord,
    CustomField,
    ImHandle,
    ImportantDate,
    PostalAddress,
    Reminder,
    TypedValue,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 500

# Scalar ContactRecord fields stored as people columns
SCALAR_FIELDS = (
    "prefix",
    "given_name",
    "middle_name",
    "family_name",
    "second_family_name",
    "suffix",
    "nickname",
    "organization",
    "title",
    "notes",
    "photo",
)

# person_fields.kind -> (ContactRecord attribute, entry type)
FIELD_KINDS: dict[str, tuple[str, type[Any]]] = {
    "phone": ("phones", TypedValue),
    "email": ("emails", TypedValue),
    "url": ("urls", TypedValue),
    "address": ("addresses", PostalAddress),
    "im": ("im_handles", ImHandle),
    "custom": ("custom_fields", CustomField),
}


class PeopleStore:
    """
    Local contact storage.

    Usage:
        people = PeopleStore(db)
        person_id = people.create_from_contact_record("alice", record)
        people.soft_delete(person_id)
        people.restore_from_contact_record(person_id, record)
    """

    def __init__(self, database: SyncDatabase):
        self.database = database

    # =========================================================================
    # Lookups
    # =========================================================================

    def _find_by_uid(
        self, owner_id: str, uids: Optional[Iterable[str]], deleted: bool
    ) -> dict[str, int]:
        condition = "deleted_at IS NOT NULL" if deleted else "deleted_at IS NULL"
        # Oldest first so the most recently deleted row wins for a repeated uid
        order = "ORDER BY deleted_at, id"
        found: dict[str, int] = {}
        with self.database.connection() as conn:
            if uids is None:
                cursor = conn.execute(
                    f"SELECT id, uid FROM people WHERE owner_id = ? "  # nosec B608
                    f"AND {condition} {order}",
                    (owner_id,),
                )
                found.update({row["uid"]: row["id"] for row in cursor.fetchall()})
                return found

            uid_list = sorted(set(uids))
            for start in range(0, len(uid_list), _CHUNK_SIZE):
                chunk = uid_list[start : start + _CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"SELECT id, uid FROM people WHERE owner_id = ? "  # nosec B608
                    f"AND {condition} AND uid IN ({placeholders}) {order}",
                    (owner_id, *chunk),
                )
                found.update({row["uid"]: row["id"] for row in cursor.fetchall()})
        return found

    def find_active_by_uid(
        self, owner_id: str, uids: Optional[Iterable[str]] = None
    ) -> dict[str, int]:
        """
        Map uids to ids of active contacts.

        Args:
            owner_id: Owning user
            uids: Uids to look up, or None for all of the user's contacts

        Returns:
            Dictionary of uid -> contact id
        """
        return self._find_by_uid(owner_id, uids, deleted=False)

    def find_soft_deleted_by_uid(
        self, owner_id: str, uids: Optional[Iterable[str]] = None
    ) -> dict[str, int]:
        """Map uids to ids of soft-deleted contacts (most recent per uid)."""
        return self._find_by_uid(owner_id, uids, deleted=True)

    def get(self, person_id: int) -> Optional[dict[str, Any]]:
        """
        Get a contact row.

        Returns:
            Dictionary of the contact's columns, or None if not found
        """
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM people WHERE id = ?", (person_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_active(self, owner_id: str) -> list[dict[str, Any]]:
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM people
                WHERE owner_id = ? AND deleted_at IS NULL
                ORDER BY display_name COLLATE NOCASE, id
                """,
                (owner_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def count_active(self, owner_id: str) -> int:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM people WHERE owner_id = ? AND deleted_at IS NULL",
                (owner_id,),
            ).fetchone()
            return int(row[0])

    def get_contact_record(self, person_id: int) -> ContactRecord:
        """
        Rebuild a ContactRecord from the stored contact.

        Raises:
            StoreError: If the contact does not exist
        """
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM people WHERE id = ?", (person_id,)
            ).fetchone()
            if row is None:
                raise StoreError(f"Contact {person_id} not found")

            record = ContactRecord(
                uid=row["uid"], **{name: row[name] for name in SCALAR_FIELDS}
            )

            cursor = conn.execute(
                "SELECT kind, data FROM person_fields WHERE person_id = ? "
                "ORDER BY kind, position",
                (person_id,),
            )
            for field_row in cursor.fetchall():
                attribute, entry_type = FIELD_KINDS[field_row["kind"]]
                getattr(record, attribute).append(
                    entry_type(**json.loads(field_row["data"]))
                )

            cursor = conn.execute(
                "SELECT * FROM person_dates WHERE person_id = ? ORDER BY position",
                (person_id,),
            )
            for date_row in cursor.fetchall():
                reminder = None
                if date_row["reminder_kind"]:
                    reminder = Reminder(
                        kind=date_row["reminder_kind"],
                        interval=date_row["reminder_interval"],
                        unit=date_row["reminder_unit"],
                    )
                record.important_dates.append(
                    ImportantDate(
                        title=date_row["title"],
                        date=date.fromisoformat(date_row["date"]),
                        year_known=bool(date_row["year_known"]),
                        reminder=reminder,
                    )
                )
        return record

    # =========================================================================
    # Mutations
    # =========================================================================

    def _write_children(
        self, conn: sqlite3.Connection, person_id: int, record: ContactRecord
    ) -> None:
        conn.execute("DELETE FROM person_fields WHERE person_id = ?", (person_id,))
        conn.execute("DELETE FROM person_dates WHERE person_id = ?", (person_id,))

        for kind, (attribute, _) in FIELD_KINDS.items():
            for position, entry in enumerate(getattr(record, attribute)):
                label = getattr(entry, "label", None) or getattr(entry, "protocol", None)
                conn.execute(
                    """
                    INSERT INTO person_fields (person_id, kind, position, label, data)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        person_id,
                        kind,
                        position,
                        label,
                        json.dumps(asdict(entry), ensure_ascii=False, sort_keys=True),
                    ),
                )

        for position, important_date in enumerate(record.important_dates):
            reminder = important_date.reminder
            conn.execute(
                """
                INSERT INTO person_dates (
                    person_id, position, title, date, year_known,
                    reminder_kind, reminder_interval, reminder_unit
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    person_id,
                    position,
                    important_date.title,
                    important_date.date.isoformat(),
                    int(important_date.year_known),
                    reminder.kind if reminder else None,
                    reminder.interval if reminder else None,
                    reminder.unit if reminder else None,
                ),
            )

    def _scalar_values(self, record: ContactRecord) -> list[Any]:
        return [getattr(record, name) for name in SCALAR_FIELDS]

    def create_from_contact_record(self, owner_id: str, record: ContactRecord) -> int:
        """
        Create an active contact.

        Args:
            owner_id: Owning user
            record: Decoded record; its uid must be set

        Returns:
            The new contact id

        Raises:
            StoreError: If the record has no uid or the uid is already active
        """
        if not record.uid:
            raise StoreError("Cannot create a contact without a uid")

        now = utc_now()
        columns = ", ".join(SCALAR_FIELDS)
        placeholders = ", ".join("?" for _ in SCALAR_FIELDS)
        with self.database.connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO people (owner_id, uid, display_name, {columns}, "  # nosec B608
                f"content_hash, created_at, updated_at) "
                f"VALUES (?, ?, ?, {placeholders}, ?, ?, ?)",
                (
                    owner_id,
                    record.uid,
                    record.display_name,
                    *self._scalar_values(record),
                    record.content_hash(),
                    now,
                    now,
                ),
            )
            person_id = int(cursor.lastrowid)  # type: ignore[arg-type]
            self._write_children(conn, person_id, record)

        logger.debug(f"Created contact {person_id} ({record.display_name})")
        return person_id

    def _apply(self, person_id: int, record: ContactRecord, restore: bool) -> None:
        assignments = ", ".join(f"{name} = ?" for name in SCALAR_FIELDS)
        restore_clause = ", deleted_at = NULL" if restore else ""
        condition = "deleted_at IS NOT NULL" if restore else "deleted_at IS NULL"
        with self.database.connection() as conn:
            cursor = conn.execute(
                f"UPDATE people SET display_name = ?, {assignments}, "  # nosec B608
                f"content_hash = ?, updated_at = ?{restore_clause} "
                f"WHERE id = ? AND {condition}",
                (
                    record.display_name,
                    *self._scalar_values(record),
                    record.content_hash(),
                    utc_now(),
                    person_id,
                ),
            )
            if cursor.rowcount == 0:
                state = "soft-deleted" if restore else "active"
                raise StoreError(f"No {state} contact with id {person_id}")
            self._write_children(conn, person_id, record)

    def update_from_contact_record(self, person_id: int, record: ContactRecord) -> None:
        """
        Replace an active contact's fields with the record's.

        Raises:
            StoreError: If no active contact has this id
        """
        self._apply(person_id, record, restore=False)
        logger.debug(f"Updated contact {person_id} ({record.display_name})")

    def restore_from_contact_record(self, person_id: int, record: ContactRecord) -> None:
        """
        Clear a soft delete and apply the record's fields, keeping the same id.

        Raises:
            StoreError: If no soft-deleted contact has this id
        """
        self._apply(person_id, record, restore=True)
        logger.debug(f"Restored contact {person_id} ({record.display_name})")

    def soft_delete(self, person_id: int) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute(
                "UPDATE people SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (utc_now(), person_id),
            )
            return cursor.rowcount > 0

    def purge(self, person_id: int) -> bool:
        """
        Permanently delete a contact with its fields, groups and mappings.

        Returns:
            True if the contact existed
        """
        with self.database.connection() as conn:
            cursor = conn.execute("DELETE FROM people WHERE id = ?", (person_id,))
            return cursor.rowcount > 0

    def set_photo_path(self, person_id: int, path: Optional[str]) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "UPDATE people SET photo_path = ? WHERE id = ?", (path, person_id)
            )

    # =========================================================================
    # Groups
    # =========================================================================

    def add_to_group(self, person_id: int, group_name: str) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO person_groups (person_id, group_name) VALUES (?, ?)",
                (person_id, group_name),
            )

    def get_groups(self, person_id: int) -> list[str]:
        with self.database.connection() as conn:
            cursor = conn.execute(
                "SELECT group_name FROM person_groups WHERE person_id = ? "
                "ORDER BY group_name",
                (person_id,),
            )
            return [row["group_name"] for row in cursor.fetchall()]

    def export_records(
        self, owner_id: str, ids: Optional[Sequence[int]] = None
    ) -> list[ContactRecord]:
        """Rebuild ContactRecords for a user's active contacts, or for ids."""
        if ids is None:
            ids = [row["id"] for row in self.list_active(owner_id)]
        return [self.get_contact_record(person_id) for person_id in ids]
