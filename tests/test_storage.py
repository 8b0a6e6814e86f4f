"""
Unit tests for the storage module.

Tests the SyncDatabase class for connections, contact mappings, conflicts,
lock rows and transaction handling.
"""

import sqlite3

import pytest

from carddav_sync.storage.db import StoreError, SyncDatabase, parse_timestamp


class TestSyncDatabaseInitialization:
    """Tests for database initialization."""

    def test_create_in_memory_database(self):
        """Test creating an in-memory database."""
        db = SyncDatabase(":memory:")
        assert db.db_path == ":memory:"
        assert db.is_memory

    def test_initialize_creates_tables(self, db):
        """Test that initialize creates the required tables."""
        with db.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert {
            "connections",
            "people",
            "person_fields",
            "person_dates",
            "person_groups",
            "contact_mappings",
            "pending_imports",
            "sync_locks",
            "sync_conflicts",
        } <= names

    def test_initialize_is_idempotent(self, db):
        """Test that initialize can be called multiple times safely."""
        db.initialize()

    def test_file_database_persists(self, tmp_path):
        """Test that a file database keeps data across instances."""
        path = str(tmp_path / "sync.db")
        first = SyncDatabase(path)
        first.initialize()
        first.upsert_connection("home", "alice", "https://a", "https://a/ab/", "alice")

        second = SyncDatabase(path)
        assert second.get_connection("home")["user_id"] == "alice"


class TestTransactions:
    """Tests for connection() and transaction()."""

    def test_error_rolls_back(self, db, connection_id):
        """Test that an exception inside the block undoes its writes."""
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.update_sync_token(connection_id, "token-1")
                raise RuntimeError("boom")

        assert db.get_connection(connection_id)["sync_token"] is None

    def test_nested_blocks_share_the_transaction(self, db, connection_id):
        """Test that a nested failure rolls back the outer writes too."""
        with pytest.raises(StoreError):
            with db.transaction():
                db.update_sync_token(connection_id, "token-1")
                with db.connection() as conn:
                    conn.execute("INSERT INTO no_such_table VALUES (1)")

        assert db.get_connection(connection_id)["sync_token"] is None

    def test_sqlite_errors_become_store_errors(self, db):
        with pytest.raises(StoreError, match="Database error"):
            with db.connection() as conn:
                conn.execute("SELECT * FROM missing_table")

    def test_store_error_keeps_cause(self, db):
        with pytest.raises(StoreError) as exc_info:
            with db.connection() as conn:
                conn.execute("SELECT * FROM missing_table")
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)


class TestConnections:
    """Tests for connection rows."""

    def test_upsert_and_get(self, db, connection_id):
        row = db.get_connection(connection_id)
        assert row["user_id"] == "alice"
        assert row["sync_enabled"] == 1
        assert row["auto_sync_interval"] == 43200
        assert row["sync_token"] is None

    def test_get_unknown_returns_none(self, db):
        assert db.get_connection("missing") is None

    def test_upsert_keeps_sync_state(self, db, connection_id):
        """Test that refreshing configuration keeps token and timestamps."""
        db.update_sync_token(connection_id, "token-1")
        db.record_sync_success(connection_id)

        db.upsert_connection(
            connection_id, "bob", "https://b", "https://b/ab/", "bob", sync_enabled=False
        )

        row = db.get_connection(connection_id)
        assert row["user_id"] == "bob"
        assert row["sync_enabled"] == 0
        assert row["sync_token"] == "token-1"
        assert row["last_sync_at"] is not None

    def test_list_connections_sorted(self, db):
        db.upsert_connection("b", "u", "https://b", "https://b", "u")
        db.upsert_connection("a", "u", "https://a", "https://a", "u")
        assert [row["id"] for row in db.list_connections()] == ["a", "b"]

    def test_clear_sync_token(self, db, connection_id):
        db.update_sync_token(connection_id, "token-1")
        db.clear_sync_token(connection_id)
        assert db.get_connection(connection_id)["sync_token"] is None

    def test_record_error_then_success(self, db, connection_id):
        """Test that a successful sync clears the recorded error."""
        db.record_sync_error(connection_id, "Authentication failed.")
        row = db.get_connection(connection_id)
        assert row["last_error"] == "Authentication failed."
        assert parse_timestamp(row["last_error_at"]) is not None

        db.record_sync_success(connection_id)
        row = db.get_connection(connection_id)
        assert row["last_error"] is None
        assert row["last_error_at"] is None

    def test_delete_connection_cascades(self, db, connection_id, people):
        """Test that mappings go with the connection but contacts stay."""
        from carddav_sync.sync.contact import ContactRecord

        person_id = people.create_from_contact_record(
            "alice", ContactRecord(uid="u1", given_name="A")
        )
        db.upsert_contact_mapping(connection_id, "u1", person_id)

        assert db.delete_connection(connection_id)
        assert db.count_mappings(connection_id) == 0
        assert people.get(person_id) is not None
        assert not db.delete_connection(connection_id)


class TestContactMappings:
    """Tests for contact mapping operations."""

    @pytest.fixture
    def person_ids(self, people):
        from carddav_sync.sync.contact import ContactRecord

        return [
            people.create_from_contact_record("alice", ContactRecord(uid=f"u{n}", given_name="A"))
            for n in range(2)
        ]

    def test_insert_and_get(self, db, connection_id, person_ids):
        db.upsert_contact_mapping(
            connection_id, "u0", person_ids[0], href="/ab/0.vcf", etag='"e1"', last_synced_hash="h1"
        )
        mapping = db.get_contact_mapping(connection_id, "u0")
        assert mapping["person_id"] == person_ids[0]
        assert mapping["href"] == "/ab/0.vcf"
        assert mapping["etag"] == '"e1"'
        assert mapping["last_synced_hash"] == "h1"
        assert mapping["last_synced_at"] is not None

    def test_update_keeps_unspecified_values(self, db, connection_id, person_ids):
        """Test that None values do not overwrite stored href/etag/hash."""
        db.upsert_contact_mapping(
            connection_id, "u0", person_ids[0], href="/ab/0.vcf", etag='"e1"', last_synced_hash="h1"
        )
        db.upsert_contact_mapping(connection_id, "u0", person_ids[0], etag='"e2"')

        mapping = db.get_contact_mapping(connection_id, "u0")
        assert mapping["href"] == "/ab/0.vcf"
        assert mapping["etag"] == '"e2"'
        assert mapping["last_synced_hash"] == "h1"

    def test_stale_mapping_for_person_is_replaced(self, db, connection_id, person_ids):
        """Test that one person maps to at most one uid per connection."""
        db.upsert_contact_mapping(connection_id, "old-uid", person_ids[0])
        db.upsert_contact_mapping(connection_id, "new-uid", person_ids[0])

        assert db.get_contact_mapping(connection_id, "old-uid") is None
        assert db.get_contact_mapping(connection_id, "new-uid")["person_id"] == person_ids[0]
        assert db.count_mappings(connection_id) == 1

    def test_list_is_ordered_by_uid(self, db, connection_id, person_ids):
        db.upsert_contact_mapping(connection_id, "u1", person_ids[1])
        db.upsert_contact_mapping(connection_id, "u0", person_ids[0])

        assert [m["uid"] for m in db.get_mappings_for_connection(connection_id)] == ["u0", "u1"]
        assert db.count_mappings(connection_id) == 2

    def test_mark_local_change_skips_the_syncing_connection(
        self, db, connection_id, person_ids
    ):
        db.upsert_connection(
            "work", "alice", "https://dav.example.org", "https://dav.example.org/ab/", "alice"
        )
        db.upsert_contact_mapping(connection_id, "u0", person_ids[0])
        db.upsert_contact_mapping("work", "u0", person_ids[0])

        assert db.mark_local_change(person_ids[0], except_connection=connection_id) == 1

        assert db.get_contact_mapping(connection_id, "u0")["local_changed_at"] is None
        assert db.get_contact_mapping("work", "u0")["local_changed_at"] is not None
        assert [m["uid"] for m in db.list_local_changes("work")] == ["u0"]
        assert db.list_local_changes(connection_id) == []

    def test_upsert_can_keep_local_change(self, db, connection_id, person_ids):
        db.upsert_contact_mapping(connection_id, "u0", person_ids[0])
        db.mark_local_change(person_ids[0])

        db.upsert_contact_mapping(connection_id, "u0", person_ids[0], clear_local_change=False)
        assert db.get_contact_mapping(connection_id, "u0")["local_changed_at"] is not None

        db.upsert_contact_mapping(connection_id, "u0", person_ids[0])
        assert db.get_contact_mapping(connection_id, "u0")["local_changed_at"] is None

    def test_local_changes_leave_out_deleted_and_conflicting(
        self, db, people, connection_id, person_ids
    ):
        for n, person_id in enumerate(person_ids):
            db.upsert_contact_mapping(connection_id, f"u{n}", person_id)
            db.mark_local_change(person_id)
        people.soft_delete(person_ids[0])
        assert [m["uid"] for m in db.list_local_changes(connection_id)] == ["u1"]

        db.upsert_conflict(connection_id, "u1", person_ids[1], "BEGIN:VCARD", "A")
        assert db.list_local_changes(connection_id) == []


class TestConflicts:
    """Tests for conflict rows."""

    @pytest.fixture
    def person_id(self, people):
        from carddav_sync.sync.contact import ContactRecord

        return people.create_from_contact_record("alice", ContactRecord(uid="u0", given_name="A"))

    def test_upsert_refreshes_the_open_conflict(self, db, connection_id, person_id):
        first = db.upsert_conflict(
            connection_id, "u0", person_id, "v1", "Alice", href="/ab/0.vcf", etag='"e1"'
        )
        second = db.upsert_conflict(
            connection_id, "u0", person_id, "v2", "Alice", href="/ab/0.vcf", etag='"e2"'
        )

        assert first == second
        conflict = db.get_conflict(first)
        assert conflict["vcard_data"] == "v2"
        assert conflict["etag"] == '"e2"'
        assert [c["id"] for c in db.list_conflicts()] == [first]
        assert db.list_conflicts("other") == []

    def test_delete(self, db, connection_id, person_id):
        conflict_id = db.upsert_conflict(connection_id, "u0", person_id, "v1", "Alice")
        assert db.delete_conflict(conflict_id)
        assert not db.delete_conflict(conflict_id)
        assert db.get_conflict(conflict_id) is None

    def test_purging_the_contact_drops_its_conflicts(self, db, people, connection_id, person_id):
        db.upsert_conflict(connection_id, "u0", person_id, "v1", "Alice")
        assert people.purge(person_id)
        assert db.list_conflicts() == []


class TestLockRows:
    """Tests for the raw lock row operations."""

    def test_acquire_free_lock(self, db):
        assert db.try_acquire_lock("home", "owner-a", now=100.0, expires_at=400.0)
        assert db.get_lock("home")["owner"] == "owner-a"

    def test_live_lock_blocks(self, db):
        db.try_acquire_lock("home", "owner-a", now=100.0, expires_at=400.0)
        assert not db.try_acquire_lock("home", "owner-b", now=200.0, expires_at=500.0)
        assert db.get_lock("home")["owner"] == "owner-a"

    def test_expired_lock_is_reclaimed(self, db):
        db.try_acquire_lock("home", "owner-a", now=100.0, expires_at=400.0)
        assert db.try_acquire_lock("home", "owner-b", now=400.0, expires_at=700.0)
        assert db.get_lock("home")["owner"] == "owner-b"

    def test_release_only_by_owner(self, db):
        db.try_acquire_lock("home", "owner-a", now=100.0, expires_at=400.0)
        assert not db.release_lock("home", "owner-b")
        assert db.release_lock("home", "owner-a")
        assert db.get_lock("home") is None

    def test_extend_only_by_owner(self, db):
        db.try_acquire_lock("home", "owner-a", now=100.0, expires_at=400.0)
        assert not db.extend_lock("home", "owner-b", 900.0)
        assert db.extend_lock("home", "owner-a", 900.0)
        assert db.get_lock("home")["expires_at"] == 900.0

    def test_force_release(self, db):
        db.try_acquire_lock("home", "owner-a", now=100.0, expires_at=400.0)
        assert db.force_release_lock("home")
        assert not db.force_release_lock("home")


class TestParseTimestamp:
    """Tests for timestamp parsing."""

    def test_none_and_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_naive_is_utc(self):
        parsed = parse_timestamp("2024-01-02T03:04:05")
        assert parsed.utcoffset().total_seconds() == 0
