"""
Tests for the reconciliation engine.

Covers upload and connection scopes, identity outcomes, cancellation,
store failures, server discovery with a mocked CardDAV client, conflicts,
pushing local changes, and photo import.
"""

import base64
import io
import threading
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from carddav_sync.api.carddav import ChangeSet, RemoteCard
from carddav_sync.api.errors import (
    USER_MESSAGES,
    ErrorCategory,
    PreconditionFailedError,
    RemoteCallError,
    SyncTokenExpiredError,
)
from carddav_sync.storage.db import StoreError
from carddav_sync.sync.contact import ContactRecord
from carddav_sync.sync.engine import (
    CONFLICT_REASON,
    DUPLICATE_REASON,
    UNCHANGED_REASON,
    ReconciliationEngine,
    UnknownConnectionError,
    href_uid,
    synthetic_uid,
)
from carddav_sync.sync.guard import LockContentionError, RemoteCallGuard
from carddav_sync.sync.progress import OutcomeKind
from carddav_sync.sync.scope import ConnectionScope, UploadScope

ALICE = UploadScope("alice")


def no_wait_guard(**kwargs):
    return RemoteCallGuard(min_interval=0, sleep=lambda seconds: None, **kwargs)


@pytest.fixture
def engine(db, people, staging):
    return ReconciliationEngine(db, people=people, staging=staging, guard=no_wait_guard())


class RecordingReporter:
    def __init__(self, on_item=None):
        self.items = []
        self.completed = None
        self._on_item = on_item

    def on_item(self, outcome, totals):
        self.items.append((outcome, totals))
        if self._on_item:
            self._on_item(outcome, totals)

    def on_complete(self, totals):
        self.completed = totals


# =============================================================================
# Uploads
# =============================================================================


class TestUploadReconcile:
    """Tests for reconciling uploaded vCards."""

    def test_new_contact_is_imported(self, engine, people, staging, make_vcard):
        engine.stage(ALICE, [make_vcard("u1")])

        result = engine.reconcile(ALICE)

        assert result.imported == 1
        assert result.processed == 1
        active = people.find_active_by_uid("alice")
        assert list(active) == ["u1"]
        assert people.get_contact_record(active["u1"]).family_name == "Smith"
        assert staging.count_for(ALICE) == 0

    def test_existing_contact_is_updated(self, engine, people, make_vcard):
        engine.stage(ALICE, [make_vcard("u1")])
        engine.reconcile(ALICE)
        person_id = people.find_active_by_uid("alice")["u1"]

        engine.stage(ALICE, [make_vcard("u1", family="Jones")])
        result = engine.reconcile(ALICE)

        assert result.updated == 1
        assert people.find_active_by_uid("alice") == {"u1": person_id}
        assert people.get_contact_record(person_id).family_name == "Jones"

    def test_deleted_contact_is_restored_in_place(self, engine, people, make_vcard):
        """Test that a soft-deleted contact comes back with its id and groups."""
        engine.stage(ALICE, [make_vcard("u1")])
        engine.reconcile(ALICE)
        person_id = people.find_active_by_uid("alice")["u1"]
        people.add_to_group(person_id, "Friends")
        people.soft_delete(person_id)

        engine.stage(ALICE, [make_vcard("u1", given="Alicia")])
        result = engine.reconcile(ALICE)

        assert result.restored == 1
        assert people.find_active_by_uid("alice") == {"u1": person_id}
        assert people.get_groups(person_id) == ["Friends"]
        assert people.get_contact_record(person_id).given_name == "Alicia"

    def test_last_duplicate_in_batch_wins(self, engine, people, make_vcard):
        """Test that repeated uids in one upload collapse onto one contact."""
        document = (
            make_vcard("u1", given="First")
            + make_vcard("u2", given="Other")
            + make_vcard("u1", given="Last")
        )
        engine.stage(ALICE, [document])

        reporter = RecordingReporter()
        result = engine.reconcile(ALICE, reporter=reporter)

        assert result.imported == 2
        assert result.skipped == 1
        active = people.find_active_by_uid("alice")
        assert people.count_active("alice") == 2
        assert people.get_contact_record(active["u1"]).given_name == "Last"

        skipped = [o for o, _ in reporter.items if o.kind is OutcomeKind.SKIPPED]
        assert skipped[0].display_name == "First Smith"
        assert skipped[0].reason == DUPLICATE_REASON

    def test_reupload_is_idempotent(self, engine, people, make_vcard):
        """Test that uploading the same file twice does not duplicate contacts."""
        document = make_vcard("u1") + make_vcard(None, given="Nouid")
        engine.stage(ALICE, [document])
        engine.reconcile(ALICE)
        first = people.find_active_by_uid("alice")

        engine.stage(ALICE, [document])
        result = engine.reconcile(ALICE)

        assert result.updated == 2
        assert people.find_active_by_uid("alice") == first

    def test_card_without_uid_gets_synthetic_uid(self, engine, people, make_vcard):
        card = make_vcard(None, given="Nouid")
        engine.stage(ALICE, [card])
        engine.reconcile(ALICE)

        uid = next(iter(people.find_active_by_uid("alice")))
        assert uid.startswith("urn:sha256:")
        assert uid == synthetic_uid(card.strip())

    def test_malformed_card_is_an_item_error(self, engine, people, staging, make_vcard):
        """Test that a bad card fails alone and leaves the pending set."""
        document = "BEGIN:VCARD\r\nVERSION:3.0\r\nEND:VCARD\r\n" + make_vcard("u1")
        engine.stage(ALICE, [document])

        result = engine.reconcile(ALICE)

        assert result.imported == 1
        assert result.errored == 1
        assert result.errors[0].display_name == "Unknown Contact"
        assert result.errors[0].reason.startswith("Invalid vCard")
        assert staging.count_for(ALICE) == 0
        assert people.count_active("alice") == 1

    def test_uploads_are_scoped_per_user(self, engine, people, make_vcard):
        engine.stage(ALICE, [make_vcard("u1")])
        engine.stage(UploadScope("bob"), [make_vcard("u1")])

        engine.reconcile(ALICE)

        assert people.count_active("alice") == 1
        assert people.count_active("bob") == 0

    def test_reconcile_selected_ids(self, engine, people, staging, make_vcard):
        ids = engine.stage(ALICE, [make_vcard("u1") + make_vcard("u2", given="Bob")])

        result = engine.reconcile(ALICE, ids=[ids[1]])

        assert result.imported == 1
        assert list(people.find_active_by_uid("alice")) == ["u2"]
        assert staging.count_for(ALICE) == 1

    def test_new_upload_replaces_unreconciled_one(self, engine, people, staging, make_vcard):
        engine.stage(ALICE, [make_vcard("u1")])
        engine.stage(UploadScope("bob"), [make_vcard("u1")])

        engine.stage(ALICE, [make_vcard("u2", given="Bob")])

        assert [p.uid for p in staging.list_for(ALICE)] == ["u2"]
        assert staging.count_for(UploadScope("bob")) == 1
        assert engine.reconcile(ALICE).imported == 1
        assert list(people.find_active_by_uid("alice")) == ["u2"]

    def test_reporter_receives_totals(self, engine, make_vcard):
        engine.stage(ALICE, [make_vcard("u1") + make_vcard("u2", given="Bob")])
        reporter = RecordingReporter()

        engine.reconcile(ALICE, reporter=reporter)

        assert [totals.processed for _, totals in reporter.items] == [1, 2]
        assert reporter.completed.total == 2
        assert reporter.completed.imported == 2

    def test_summary(self, engine, make_vcard):
        engine.stage(ALICE, [make_vcard("u1")])
        summary = engine.reconcile(ALICE).summary()
        assert "Imported: 1" in summary
        assert "Errors: 0" in summary


class TestCancellationAndFailure:
    """Tests for cancelled and aborted runs."""

    def test_cancel_before_start(self, engine, staging, make_vcard):
        engine.stage(ALICE, [make_vcard("u1")])
        cancel = threading.Event()
        cancel.set()

        result = engine.reconcile(ALICE, cancel_event=cancel)

        assert result.cancelled
        assert result.processed == 0
        assert staging.count_for(ALICE) == 1

    def test_cancel_mid_run_keeps_remaining_items(self, engine, people, staging, make_vcard):
        """Test that committed items stay and the rest remain pending."""
        engine.stage(ALICE, [make_vcard("u1") + make_vcard("u2") + make_vcard("u3")])
        cancel = threading.Event()
        reporter = RecordingReporter(on_item=lambda outcome, totals: cancel.set())

        result = engine.reconcile(ALICE, cancel_event=cancel, reporter=reporter)

        assert result.cancelled
        assert result.imported == 1
        assert people.count_active("alice") == 1
        assert [p.uid for p in staging.list_for(ALICE)] == ["u2", "u3"]

    def test_store_error_aborts_with_partial_counts(self, engine, staging, make_vcard):
        """Test that a store failure stops the run and rolls back the item."""
        engine.stage(ALICE, [make_vcard("u1"), make_vcard("u2")])
        original = engine.people.create_from_contact_record
        calls = []

        def failing_create(owner_id, record):
            calls.append(record.uid)
            if record.uid == "u2":
                raise StoreError("disk full")
            return original(owner_id, record)

        with patch.object(engine.people, "create_from_contact_record", side_effect=failing_create):
            result = engine.reconcile(ALICE)

        assert result.aborted
        assert result.fatal_error == "disk full"
        assert result.imported == 1
        assert "Run aborted: disk full" in result.summary()
        assert [p.uid for p in staging.list_for(ALICE)] == ["u2"]


# =============================================================================
# Connection scope
# =============================================================================


class TestConnectionReconcile:
    """Tests for reconciling a connection's staged cards."""

    def test_unknown_connection(self, engine):
        with pytest.raises(UnknownConnectionError):
            engine.reconcile(ConnectionScope("missing"))

    def test_mapping_is_written(self, engine, db, people, connection_id, make_vcard):
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])

        result = engine.reconcile(scope)

        assert result.imported == 1
        person_id = people.find_active_by_uid("alice")["u1"]
        mapping = db.get_contact_mapping(connection_id, "u1")
        assert mapping["person_id"] == person_id
        assert mapping["last_synced_hash"] is not None

    def test_unchanged_record_is_skipped(self, engine, connection_id, make_vcard):
        """Test that a record matching the last synced hash is not rewritten."""
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])
        engine.reconcile(scope)

        engine.stage(scope, [make_vcard("u1")])
        reporter = RecordingReporter()
        result = engine.reconcile(scope, reporter=reporter)

        assert result.skipped == 1
        assert reporter.items[0][0].reason == UNCHANGED_REASON

    def test_restore_writes_mapping(self, engine, db, people, connection_id, make_vcard):
        """Test that a restored contact is mapped like an imported one."""
        person_id = people.create_from_contact_record(
            "alice", ContactRecord(uid="u1", given_name="Old")
        )
        people.soft_delete(person_id)
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])

        result = engine.reconcile(scope)

        assert result.restored == 1
        mapping = db.get_contact_mapping(connection_id, "u1")
        assert mapping["person_id"] == person_id
        assert mapping["last_synced_hash"] is not None
        assert mapping["local_changed_at"] is None

        engine.stage(scope, [make_vcard("u1")])
        assert engine.reconcile(scope).skipped == 1

    def test_changed_record_is_updated(self, engine, connection_id, make_vcard):
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])
        engine.reconcile(scope)

        engine.stage(scope, [make_vcard("u1", family="Jones")])
        assert engine.reconcile(scope).updated == 1

    def test_lock_contention(self, engine, connection_id, make_vcard):
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])
        engine.lock_manager.acquire(connection_id)

        with pytest.raises(LockContentionError):
            engine.reconcile(scope)

    def test_lock_released_after_run(self, engine, connection_id, make_vcard):
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])
        engine.reconcile(scope)
        assert not engine.lock_manager.is_locked(connection_id)

    def test_lock_released_after_failure(self, engine, connection_id, make_vcard):
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [make_vcard("u1")])
        with patch.object(engine.staging, "list_for", side_effect=StoreError("broken")):
            with pytest.raises(StoreError):
                engine.reconcile(scope)
        assert not engine.lock_manager.is_locked(connection_id)


# =============================================================================
# Server pull
# =============================================================================


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def sync_engine(db, people, staging, connection_id, client):
    return ReconciliationEngine(
        db,
        people=people,
        staging=staging,
        guard=no_wait_guard(max_retries=2),
        client_factory=lambda cid: client,
    )


def serve(client, make_vcard, cards, token="token-1"):
    """Make the mocked client serve the given {href: (uid, etag[, given])} cards."""
    texts = {href: make_vcard(uid, *rest) for href, (uid, _, *rest) in cards.items()}
    client.list_changed.return_value = ChangeSet(
        cards=[RemoteCard(href=href, etag=entry[1]) for href, entry in cards.items()],
        sync_token=token,
        full=True,
    )
    client.fetch_many.side_effect = lambda hrefs, timeout=None: [
        RemoteCard(href=href, etag=cards[href][1], text=texts[href]) for href in hrefs
    ]


class TestSync:
    """Tests for discover() and sync() with a mocked CardDAV client."""

    def test_first_sync_imports_everything(self, sync_engine, db, people, client, make_vcard, connection_id):
        serve(client, make_vcard, {"/ab/1.vcf": ("u1", '"e1"'), "/ab/2.vcf": ("u2", '"e2"')})

        result = sync_engine.sync(connection_id)

        assert result.imported == 2
        assert result.discovery.listed == 2
        assert result.discovery.full_listing
        assert people.count_active("alice") == 2
        row = db.get_connection(connection_id)
        assert row["sync_token"] == "token-1"
        assert row["last_sync_at"] is not None
        assert db.get_contact_mapping(connection_id, "u1")["etag"] == '"e1"'
        client.list_changed.assert_called_once_with(None, timeout=sync_engine.guard.timeout)
        client.close.assert_called_once()
        assert not sync_engine.lock_manager.is_locked(connection_id)

    def test_second_sync_skips_known_etags(self, sync_engine, client, make_vcard, connection_id):
        """Test that cards with unchanged etags are not fetched again."""
        serve(client, make_vcard, {"/ab/1.vcf": ("u1", '"e1"'), "/ab/2.vcf": ("u2", '"e2"')})
        sync_engine.sync(connection_id)

        serve(
            client,
            make_vcard,
            {"/ab/1.vcf": ("u1", '"e1"'), "/ab/2.vcf": ("u2", '"e2-changed"')},
            token="token-2",
        )
        result = sync_engine.sync(connection_id)

        assert result.discovery.unchanged == 1
        assert result.discovery.staged == 1
        client.list_changed.assert_called_with("token-1", timeout=sync_engine.guard.timeout)
        assert client.fetch_many.call_args.args[0] == ["/ab/2.vcf"]

    def test_expired_token_falls_back_to_full_listing(
        self, sync_engine, db, client, make_vcard, connection_id
    ):
        db.update_sync_token(connection_id, "stale")
        serve(client, make_vcard, {"/ab/1.vcf": ("u1", '"e1"')}, token="token-9")
        listing = client.list_changed.return_value
        client.list_changed.side_effect = [SyncTokenExpiredError("gone", status_code=410), listing]

        result = sync_engine.sync(connection_id)

        assert result.imported == 1
        assert client.list_changed.call_args_list[1].args == (None,)
        assert db.get_connection(connection_id)["sync_token"] == "token-9"

    def test_remote_failure_aborts_and_records_error(self, sync_engine, db, client, connection_id):
        client.list_changed.side_effect = RemoteCallError("unauthorized", status_code=401)

        result = sync_engine.sync(connection_id)

        assert result.aborted
        assert "Authentication failed" in result.fatal_error
        assert db.get_connection(connection_id)["last_error"] == result.fatal_error
        assert client.list_changed.call_count == 1
        client.close.assert_called_once()
        assert not sync_engine.lock_manager.is_locked(connection_id)

    def test_discover_raises_remote_errors(self, sync_engine, db, client, connection_id):
        client.list_changed.side_effect = RemoteCallError("down", retryable=True)

        with pytest.raises(RemoteCallError):
            sync_engine.discover(connection_id)
        assert client.list_changed.call_count == 2
        assert db.get_connection(connection_id)["last_error"] is not None

    def test_discover_only_stages(self, sync_engine, staging, people, client, make_vcard, connection_id):
        serve(client, make_vcard, {"/ab/1.vcf": ("u1", '"e1"')})

        discovery = sync_engine.discover(connection_id)

        assert discovery.staged == 1
        pending = staging.list_for(ConnectionScope(connection_id))
        assert [p.id for p in pending] == discovery.pending_ids
        assert pending[0].etag == '"e1"'
        assert people.count_active("alice") == 0

    def test_card_without_uid_uses_href(self, sync_engine, people, client, connection_id):
        client.list_changed.return_value = ChangeSet(
            cards=[RemoteCard(href="/ab/x.vcf", etag='"e"')], sync_token="t"
        )
        client.fetch_many.return_value = [
            RemoteCard(href="/ab/x.vcf", text="BEGIN:VCARD\r\nVERSION:3.0\r\nFN:Nouid\r\nEND:VCARD\r\n")
        ]

        sync_engine.sync(connection_id)

        assert list(people.find_active_by_uid("alice")) == [href_uid("/ab/x.vcf")]

    def test_deletions_are_counted_not_applied(self, sync_engine, people, client, make_vcard, connection_id):
        serve(client, make_vcard, {"/ab/1.vcf": ("u1", '"e1"')})
        sync_engine.sync(connection_id)

        client.list_changed.return_value = ChangeSet(
            deleted_hrefs=["/ab/1.vcf"], sync_token="token-2"
        )
        result = sync_engine.sync(connection_id)

        assert result.discovery.deleted_on_server == 1
        assert people.count_active("alice") == 1

    def test_sync_lock_contention(self, sync_engine, client, connection_id):
        sync_engine.lock_manager.acquire(connection_id)
        with pytest.raises(LockContentionError):
            sync_engine.sync(connection_id)
        client.list_changed.assert_not_called()

    def test_no_client_factory(self, engine, connection_id):
        with pytest.raises(UnknownConnectionError):
            engine.sync(connection_id)

    def test_failed_batch_does_not_stop_the_others(
        self, db, people, staging, client, make_vcard, connection_id
    ):
        """Test that one failed multiget becomes item errors for its cards only."""
        engine = ReconciliationEngine(
            db,
            people=people,
            staging=staging,
            guard=no_wait_guard(batch_size=2, max_retries=2),
            client_factory=lambda cid: client,
        )
        cards = {f"/ab/{n}.vcf": (f"u{n}", f'"e{n}"') for n in range(4)}
        serve(client, make_vcard, cards)
        served = client.fetch_many.side_effect

        def fetch(hrefs, timeout=None):
            if "/ab/2.vcf" in hrefs:
                raise RemoteCallError("unavailable", status_code=503, retryable=True)
            return served(hrefs, timeout)

        client.fetch_many.side_effect = fetch

        result = engine.sync(connection_id)

        assert not result.aborted
        assert result.imported == 2
        assert sorted(people.find_active_by_uid("alice")) == ["u0", "u1"]
        assert [error.href for error in result.errors] == ["/ab/2.vcf", "/ab/3.vcf"]
        assert [error.pending_id for error in result.errors] == [None, None]
        assert result.errors[0].uid == href_uid("/ab/2.vcf")
        assert result.errors[0].reason == USER_MESSAGES[ErrorCategory.SERVER]
        assert len(result.discovery.fetch_errors) == 2
        row = db.get_connection(connection_id)
        assert row["sync_token"] is None
        assert row["last_error"].startswith("2 contact(s) could not be fetched")

        # The server recovers; only the missing cards are fetched again
        client.fetch_many.side_effect = served
        result = engine.sync(connection_id)

        assert result.imported == 2
        assert result.discovery.unchanged == 2
        assert result.errors == []
        row = db.get_connection(connection_id)
        assert row["sync_token"] == "token-1"
        assert row["last_error"] is None

    def test_auth_failure_in_a_batch_aborts(
        self, sync_engine, db, people, client, make_vcard, connection_id
    ):
        serve(client, make_vcard, {"/ab/1.vcf": ("u1", '"e1"')})
        client.fetch_many.side_effect = RemoteCallError("unauthorized", status_code=401)

        result = sync_engine.sync(connection_id)

        assert result.aborted
        assert "Authentication failed" in result.fatal_error
        assert people.count_active("alice") == 0
        assert db.get_connection(connection_id)["sync_token"] is None



class TestConflictsAndPush:
    """Tests for conflict detection, resolution and pushing local changes."""

    HREF = "/ab/1.vcf"

    @pytest.fixture
    def synced(self, sync_engine, people, client, make_vcard, connection_id):
        """u1 pulled from the server at etag e1; returns its contact id."""
        serve(client, make_vcard, {self.HREF: ("u1", '"e1"')})
        sync_engine.sync(connection_id)
        return people.find_active_by_uid("alice")["u1"]

    def edit_locally(self, engine, make_vcard, given="Local"):
        engine.stage(ALICE, [make_vcard("u1", given=given)])
        engine.reconcile(ALICE)

    def test_local_edit_flags_the_mapping(self, sync_engine, db, make_vcard, connection_id, synced):
        assert db.get_contact_mapping(connection_id, "u1")["local_changed_at"] is None

        self.edit_locally(sync_engine, make_vcard)

        assert db.get_contact_mapping(connection_id, "u1")["local_changed_at"] is not None

    def test_change_on_both_sides_is_a_conflict(
        self, sync_engine, db, people, staging, client, make_vcard, connection_id, synced
    ):
        self.edit_locally(sync_engine, make_vcard)
        serve(client, make_vcard, {self.HREF: ("u1", '"e2"', "Remote")}, token="token-2")
        reporter = RecordingReporter()

        result = sync_engine.sync(connection_id, reporter=reporter)

        assert result.conflicted == 1
        assert result.updated == 0
        assert reporter.items[0][0].kind is OutcomeKind.CONFLICTED
        assert reporter.items[0][0].reason == CONFLICT_REASON
        assert people.get_contact_record(synced).given_name == "Local"
        conflict = db.list_conflicts(connection_id)[0]
        assert conflict["person_id"] == synced
        assert conflict["etag"] == '"e2"'
        assert "Remote" in conflict["vcard_data"]
        mapping = db.get_contact_mapping(connection_id, "u1")
        assert mapping["etag"] == '"e1"'
        assert mapping["local_changed_at"] is not None
        assert staging.count_for(ConnectionScope(connection_id)) == 0
        assert "Conflicts: 1" in result.summary()

    def test_unchanged_remote_keeps_the_local_change(
        self, sync_engine, db, client, make_vcard, connection_id, synced
    ):
        """Test that a new etag with the same content skips and keeps the flag."""
        self.edit_locally(sync_engine, make_vcard)
        serve(client, make_vcard, {self.HREF: ("u1", '"e2"')}, token="token-2")

        result = sync_engine.sync(connection_id)

        assert result.skipped == 1
        assert result.conflicted == 0
        mapping = db.get_contact_mapping(connection_id, "u1")
        assert mapping["etag"] == '"e2"'
        assert mapping["local_changed_at"] is not None

    def test_remote_change_without_local_edit_updates(
        self, sync_engine, db, people, client, make_vcard, connection_id, synced
    ):
        serve(client, make_vcard, {self.HREF: ("u1", '"e2"', "Remote")}, token="token-2")

        result = sync_engine.sync(connection_id)

        assert result.updated == 1
        assert people.get_contact_record(synced).given_name == "Remote"
        assert db.list_conflicts() == []

    def test_resolve_keeping_remote(
        self, sync_engine, db, people, client, make_vcard, connection_id, synced
    ):
        self.edit_locally(sync_engine, make_vcard)
        serve(client, make_vcard, {self.HREF: ("u1", '"e2"', "Remote")}, token="token-2")
        sync_engine.sync(connection_id)
        conflict_id = db.list_conflicts()[0]["id"]

        sync_engine.resolve_conflict(conflict_id, keep="remote")

        assert people.get_contact_record(synced).given_name == "Remote"
        mapping = db.get_contact_mapping(connection_id, "u1")
        assert mapping["etag"] == '"e2"'
        assert mapping["local_changed_at"] is None
        assert db.list_conflicts() == []
        assert not sync_engine.lock_manager.is_locked(connection_id)

    def test_resolve_keeping_local_then_push(
        self, sync_engine, db, people, client, make_vcard, connection_id, synced
    ):
        self.edit_locally(sync_engine, make_vcard)
        serve(client, make_vcard, {self.HREF: ("u1", '"e2"', "Remote")}, token="token-2")
        sync_engine.sync(connection_id)
        conflict_id = db.list_conflicts()[0]["id"]

        sync_engine.resolve_conflict(conflict_id, keep="local")

        assert people.get_contact_record(synced).given_name == "Local"
        assert db.get_contact_mapping(connection_id, "u1")["etag"] == '"e2"'
        assert [m["uid"] for m in db.list_local_changes(connection_id)] == ["u1"]

        client.put_card.return_value = '"e3"'
        pushed = sync_engine.push(connection_id)

        assert pushed.pushed == 1
        call = client.put_card.call_args
        assert call.args[0] == self.HREF
        assert call.kwargs["etag"] == '"e2"'
        assert "UID:u1" in call.args[1]
        assert "Local" in call.args[1]
        mapping = db.get_contact_mapping(connection_id, "u1")
        assert mapping["etag"] == '"e3"'
        assert mapping["local_changed_at"] is None

    def test_resolve_rejects_bad_input(self, sync_engine):
        with pytest.raises(ValueError):
            sync_engine.resolve_conflict(1, keep="both")
        with pytest.raises(ValueError, match="not found"):
            sync_engine.resolve_conflict(99, keep="local")

    def test_push_skips_cards_changed_on_server(
        self, sync_engine, db, client, make_vcard, connection_id, synced
    ):
        self.edit_locally(sync_engine, make_vcard)
        client.put_card.side_effect = PreconditionFailedError("changed", status_code=412)

        pushed = sync_engine.push(connection_id)

        assert pushed.stale == 1
        assert pushed.pushed == 0
        assert pushed.errors == []
        assert db.get_contact_mapping(connection_id, "u1")["local_changed_at"] is not None

    def test_push_rejection_is_an_item_error(
        self, sync_engine, db, client, make_vcard, connection_id, synced
    ):
        self.edit_locally(sync_engine, make_vcard)
        client.put_card.side_effect = RemoteCallError("bad card", status_code=400)

        pushed = sync_engine.push(connection_id)

        assert [error.href for error in pushed.errors] == [self.HREF]
        assert pushed.errors[0].pending_id is None
        assert pushed.errors[0].reason == USER_MESSAGES[ErrorCategory.MALFORMED]

    def test_push_auth_failure_raises(
        self, sync_engine, db, client, make_vcard, connection_id, synced
    ):
        self.edit_locally(sync_engine, make_vcard)
        client.put_card.side_effect = RemoteCallError("unauthorized", status_code=401)

        with pytest.raises(RemoteCallError):
            sync_engine.push(connection_id)

        assert "Authentication failed" in db.get_connection(connection_id)["last_error"]
        assert not sync_engine.lock_manager.is_locked(connection_id)

    def test_push_new_contacts(self, sync_engine, db, people, client, make_vcard, connection_id, synced):
        sync_engine.stage(ALICE, [make_vcard("u9", given="Nina")])
        sync_engine.reconcile(ALICE)
        client.href_for.side_effect = lambda uid: f"/ab/{uid}.vcf"
        client.put_card.return_value = '"n1"'

        pushed = sync_engine.push(connection_id, include_new=True)

        assert pushed.created == 1
        assert pushed.pushed == 0
        call = client.put_card.call_args
        assert call.args[0] == "/ab/u9.vcf"
        assert call.kwargs["etag"] is None
        mapping = db.get_contact_mapping(connection_id, "u9")
        assert mapping["person_id"] == people.find_active_by_uid("alice")["u9"]
        assert mapping["etag"] == '"n1"'

    def test_sync_with_push(self, sync_engine, db, client, make_vcard, connection_id, synced):
        self.edit_locally(sync_engine, make_vcard)
        client.put_card.return_value = '"e2"'

        result = sync_engine.sync(connection_id, push=True)

        assert result.push.pushed == 1
        assert "Pushed: 1 updated" in result.summary()
        assert db.list_local_changes(connection_id) == []
        assert db.get_connection(connection_id)["last_error"] is None


# =============================================================================
# Photos
# =============================================================================


def png_base64():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class TestPhotoImport:
    """Tests for importing contact photos."""

    @pytest.fixture
    def photo_engine(self, db, people, staging, tmp_path):
        return ReconciliationEngine(
            db,
            people=people,
            staging=staging,
            guard=no_wait_guard(),
            photo_dir=tmp_path / "photos",
            import_photos=True,
        )

    def test_embedded_photo_is_saved(self, photo_engine, people, tmp_path, make_vcard):
        card = make_vcard("u1", extra=[f"PHOTO;ENCODING=b;TYPE=PNG:{png_base64()}"])
        photo_engine.stage(ALICE, [card])

        result = photo_engine.reconcile(ALICE)

        assert result.photos_saved == 1
        person_id = people.find_active_by_uid("alice")["u1"]
        path = tmp_path / "photos" / f"{person_id}.jpg"
        assert path.exists()
        assert people.get(person_id)["photo_path"] == str(path)

    def test_photo_failure_does_not_fail_the_item(self, photo_engine, make_vcard):
        card = make_vcard("u1", extra=["PHOTO;ENCODING=b;TYPE=PNG:bm90IGFuIGltYWdl"])
        photo_engine.stage(ALICE, [card])

        result = photo_engine.reconcile(ALICE)

        assert result.imported == 1
        assert result.photos_failed == 1
        assert result.errored == 0

    def test_photos_disabled_without_directory(self, db):
        assert not ReconciliationEngine(db, import_photos=True).import_photos


# =============================================================================
# End-to-end scenarios
# =============================================================================


def card(uid, name):
    return f"BEGIN:VCARD\r\nVERSION:3.0\r\nUID:{uid}\r\nFN:{name}\r\nEND:VCARD\r\n"


class TestEndToEnd:
    """Scenario tests over the upload scope."""

    def counts(self, result):
        return {
            "imported": result.imported,
            "updated": result.updated,
            "restored": result.restored,
            "skipped": result.skipped,
            "errors": result.errored,
        }

    def test_single_new_record(self, engine, people):
        engine.stage(ALICE, [card("u1", "Alice")])

        result = engine.reconcile(ALICE)

        assert self.counts(result) == {
            "imported": 1,
            "updated": 0,
            "restored": 0,
            "skipped": 0,
            "errors": 0,
        }
        rows = people.list_active("alice")
        assert [row["display_name"] for row in rows] == ["Alice"]

    def test_same_uid_twice_in_one_batch(self, engine, people):
        engine.stage(ALICE, [card("u1", "Alice V1") + card("u1", "Alice V2")])

        result = engine.reconcile(ALICE)

        assert result.imported == 1
        assert result.skipped == 1
        assert [row["display_name"] for row in people.list_active("alice")] == ["Alice V2"]

    def test_soft_deleted_record_is_restored(self, engine, people):
        person_id = people.create_from_contact_record(
            "alice", ContactRecord(uid="u2", given_name="Bob")
        )
        people.soft_delete(person_id)
        engine.stage(ALICE, [card("u2", "Bob Restored")])

        result = engine.reconcile(ALICE)

        assert result.restored == 1
        row = people.get(person_id)
        assert row["deleted_at"] is None
        assert row["display_name"] == "Bob Restored"

    def test_invalid_record_does_not_block_valid_one(self, engine, people):
        engine.stage(ALICE, ["BEGIN:VCARD\r\nVERSION:3.0\r\nNOTE\r\nEND:VCARD\r\n" + card("u3", "Carol")])

        result = engine.reconcile(ALICE)

        assert result.imported == 1
        assert result.errored == 1
        assert "Invalid vCard" in result.errors[0].reason
        assert list(people.find_active_by_uid("alice")) == ["u3"]

    def test_reconciling_twice_is_idempotent(self, engine, people):
        engine.stage(ALICE, [card("u1", "Alice")])
        engine.reconcile(ALICE)
        engine.stage(ALICE, [card("u1", "Alice")])

        result = engine.reconcile(ALICE)

        assert result.errored == 0
        assert people.count_active("alice") == 1

    def test_uploads_never_write_mappings(self, engine, db, connection_id):
        engine.stage(ALICE, [card("u1", "Alice")])
        engine.reconcile(ALICE)
        assert db.count_mappings(connection_id) == 0

    def test_concurrent_runs_for_one_connection(self, engine, connection_id):
        """Test that a second run fails while the first holds the lock."""
        scope = ConnectionScope(connection_id)
        engine.stage(scope, [card("u1", "Alice"), card("u2", "Bob")])
        outcomes = []

        def second_run(outcome, totals):
            if totals.processed == 1:
                try:
                    engine.reconcile(scope)
                except LockContentionError as e:
                    outcomes.append(e)

        result = engine.reconcile(scope, reporter=RecordingReporter(on_item=second_run))

        assert result.imported == 2
        assert len(outcomes) == 1
