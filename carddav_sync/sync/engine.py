"""
Reconciliation engine for CardDAV connections and vCard uploads.

Drains staged pending imports into the local contact store. For every item
the identity resolver decides between create, update, restore and skip;
the local mutation, the external mapping and the removal of the pending row
commit together. Also stages uploads, pulls changed cards from CardDAV
servers into the staging area, records conflicts when a contact changed on
both sides, and pushes local changes back to the server.
"""

import hashlib
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from carddav_sync.api.carddav import CardDAVClient, ChangeSet, RemoteCard
from carddav_sync.api.errors import (
    ErrorCategory,
    PreconditionFailedError,
    RemoteCallError,
    SyncTokenExpiredError,
    categorize_error,
    user_message,
)
from carddav_sync.config.settings import ConnectionConfig, Settings
from carddav_sync.storage.db import StoreError, SyncDatabase
from carddav_sync.storage.people import PeopleStore
from carddav_sync.storage.staging import PendingImport, StagedEntry, StagingStore
from carddav_sync.sync.contact import ContactRecord
from carddav_sync.sync.guard import (
    LockContentionError,
    RemoteCallGuard,
    SyncLock,
    SyncLockManager,
)
from carddav_sync.sync.identity import BatchIndex, Classification, MatchKind, plan_item
from carddav_sync.sync.photo import PhotoError, save_contact_photo
from carddav_sync.sync.progress import (
    ItemOutcome,
    NullProgressReporter,
    OutcomeKind,
    ProgressReporter,
    RunTotals,
)
from carddav_sync.sync.scope import ConnectionScope, Scope, UploadScope
from carddav_sync.sync.vcard import DecodeError, decode, encode, split_cards
from carddav_sync.utils.normalization import PLACEHOLDER_NAME

logger = logging.getLogger(__name__)

# Extend the connection lock after this many items
LOCK_REFRESH_EVERY = 50

DUPLICATE_REASON = "Superseded by a later record with the same UID in this batch"
UNCHANGED_REASON = "Unchanged since the last sync"
CONFLICT_REASON = "Changed both locally and on the server since the last sync"


class UnknownConnectionError(Exception):
    """Raised when a scope names a connection that is not registered."""

    pass


@dataclass
class ItemError:
    """
    A record that could not be applied, fetched or pushed.

    pending_id is None for server cards that never reached the staging area
    and for pushed contacts; href names those instead.
    """

    pending_id: Optional[int]
    uid: str
    display_name: str
    reason: str
    href: Optional[str] = None


@dataclass
class DiscoveryResult:
    """
    Result of pulling a connection's changes into the staging area.

    Attributes:
        listed: Cards the server reported as new or changed
        unchanged: Listed cards whose etag matched the stored mapping
        staged: Pending imports created
        deleted_on_server: Hrefs the server reported as removed
        full_listing: True if every card was listed instead of a delta
        pending_ids: Ids of the staged pending imports
        fetch_errors: Cards whose multiget batch failed; they are listed
            again next time because the sync token is not advanced
    """

    listed: int = 0
    unchanged: int = 0
    staged: int = 0
    deleted_on_server: int = 0
    full_listing: bool = False
    pending_ids: list[int] = field(default_factory=list)
    fetch_errors: list[ItemError] = field(default_factory=list)


@dataclass
class PushResult:
    """
    Result of writing local changes back to a connection's server.

    Attributes:
        pushed: Existing cards replaced on the server
        created: New cards uploaded
        stale: Cards skipped because they changed on the server first
        errors: Cards the server refused
    """

    pushed: int = 0
    created: int = 0
    stale: int = 0
    errors: list[ItemError] = field(default_factory=list)


@dataclass
class RunResult:
    """
    Outcome of one reconciliation run.

    Counts are partial when the run was cancelled or aborted.
    """

    imported: int = 0
    updated: int = 0
    restored: int = 0
    skipped: int = 0
    conflicted: int = 0
    errors: list[ItemError] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False
    fatal_error: Optional[str] = None

    # Photo import statistics
    photos_saved: int = 0
    photos_failed: int = 0

    # Set by sync(); None for plain reconcile() runs
    discovery: Optional[DiscoveryResult] = None
    push: Optional[PushResult] = None

    @property
    def errored(self) -> int:
        return len(self.errors)

    @property
    def processed(self) -> int:
        return (
            self.imported
            + self.updated
            + self.restored
            + self.skipped
            + self.conflicted
            + self.errored
        )

    def has_changes(self) -> bool:
        """Check if the run wrote anything to the local store."""
        return bool(self.imported or self.updated or self.restored)

    def record(self, outcome: ItemOutcome) -> None:
        if outcome.kind is OutcomeKind.IMPORTED:
            self.imported += 1
        elif outcome.kind is OutcomeKind.UPDATED:
            self.updated += 1
        elif outcome.kind is OutcomeKind.RESTORED:
            self.restored += 1
        elif outcome.kind is OutcomeKind.SKIPPED:
            self.skipped += 1
        elif outcome.kind is OutcomeKind.CONFLICTED:
            self.conflicted += 1
        else:
            self.errors.append(
                ItemError(
                    pending_id=outcome.pending_id,
                    uid=outcome.uid,
                    display_name=outcome.display_name,
                    reason=outcome.reason or "Unknown error",
                )
            )

    def summary(self) -> str:
        """
        Generate a human-readable summary of the run.

        Returns:
            Formatted multi-line summary
        """
        lines = ["Reconciliation Summary:"]
        if self.discovery is not None:
            lines.extend(
                [
                    f"  Listed on server: {self.discovery.listed}"
                    + (" (full listing)" if self.discovery.full_listing else ""),
                    f"  Unchanged (etag): {self.discovery.unchanged}",
                    f"  Deleted on server: {self.discovery.deleted_on_server}",
                ]
            )
        lines.extend(
            [
                f"  Imported: {self.imported}",
                f"  Updated: {self.updated}",
                f"  Restored: {self.restored}",
                f"  Skipped: {self.skipped}",
                f"  Conflicts: {self.conflicted}",
                f"  Errors: {self.errored}",
            ]
        )

        if self.photos_saved or self.photos_failed:
            lines.append(
                f"  Photos: {self.photos_saved} saved, {self.photos_failed} failed"
            )

        for error in self.errors:
            lines.append(
                f"    - {error.display_name} ({error.href or error.uid}): {error.reason}"
            )

        if self.push is not None:
            lines.append(
                f"  Pushed: {self.push.pushed} updated, {self.push.created} created, "
                f"{self.push.stale} stale, {len(self.push.errors)} failed"
            )

        if self.cancelled:
            lines.append("  Run was cancelled; remaining records stay pending.")
        if self.aborted:
            lines.append(f"  Run aborted: {self.fatal_error}")

        return "\n".join(lines)


def synthetic_uid(text: str) -> str:
    """Stable uid for an uploaded card that has none (or cannot be decoded)."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"urn:sha256:{digest}"


def href_uid(href: str) -> str:
    """Stable uid for a server card that has none."""
    return f"urn:carddav-href:{href}"


def _staged_entry(
    text: str, href: str, fallback_uid: str, etag: Optional[str] = None
) -> StagedEntry:
    try:
        record = decode(text)
    except DecodeError as e:
        logger.debug(f"Staging undecodable card {href}: {e}")
        return StagedEntry(
            uid=fallback_uid,
            href=href,
            vcard_data=text,
            display_name=PLACEHOLDER_NAME,
            etag=etag,
        )
    return StagedEntry(
        uid=record.uid or fallback_uid,
        href=href,
        vcard_data=text,
        display_name=record.display_name,
        etag=etag,
    )


def register_connections(
    database: SyncDatabase, connections: Iterable[ConnectionConfig]
) -> None:
    """Create or refresh connection rows from configuration."""
    for config in connections:
        database.upsert_connection(
            connection_id=config.id,
            user_id=config.user_id,
            server_url=config.server_url,
            address_book_url=config.collection_url,
            username=config.username,
            auto_sync_interval=config.auto_sync_interval,
            sync_enabled=config.sync_enabled,
        )


class ReconciliationEngine:
    """
    Applies staged contact records to the local store.

    Features:
    - Create, update, restore or skip per record using uid identity
    - Last occurrence wins for repeated uids within one batch
    - Per-item transactions: a record's mutation, mapping and pending row
      removal commit or roll back together
    - Malformed records become item errors; store failures abort the run
      with partial counts
    - Exclusive per-connection lock, released on every exit path
    - Cooperative cancellation between items
    - Conflicts when a contact changed locally and on the server
    - Conditional PUT of local changes back to the server

    Usage:
        engine = ReconciliationEngine(db, guard=RemoteCallGuard())
        ids = engine.stage(UploadScope("alice"), [vcf_text])
        result = engine.reconcile(UploadScope("alice"))
        print(result.summary())

        # Server pull followed by reconciliation, under one lock
        result = engine.sync("home")

        # Write local edits back with conditional PUTs
        pushed = engine.push("home")
    """

    def __init__(
        self,
        database: SyncDatabase,
        people: Optional[PeopleStore] = None,
        staging: Optional[StagingStore] = None,
        lock_manager: Optional[SyncLockManager] = None,
        guard: Optional[RemoteCallGuard] = None,
        client_factory: Optional[Callable[[str], CardDAVClient]] = None,
        photo_dir: Optional[Path] = None,
        import_photos: bool = False,
    ):
        """
        Initialize the engine.

        Args:
            database: SyncDatabase holding connections, mappings and locks
            people: Local contact store (defaults to one on database)
            staging: Staging store (defaults to one on database)
            lock_manager: Connection lock manager (defaults to one on database)
            guard: Guard for remote calls made by discover()/sync()
            client_factory: Builds a CardDAVClient for a connection id;
                required for discover()/sync()
            photo_dir: Directory for imported photos
            import_photos: Whether to store photos of reconciled records
        """
        self.database = database
        self.people = people or PeopleStore(database)
        self.staging = staging or StagingStore(database)
        self.lock_manager = lock_manager or SyncLockManager(database)
        self.guard = guard or RemoteCallGuard()
        self.client_factory = client_factory
        self.photo_dir = photo_dir
        self.import_photos = import_photos and photo_dir is not None

    @classmethod
    def from_settings(
        cls, settings: Settings, database: SyncDatabase
    ) -> "ReconciliationEngine":
        """Build an engine wired to the configured connections."""

        def client_factory(connection_id: str) -> CardDAVClient:
            return CardDAVClient.from_config(settings.get_connection(connection_id))

        return cls(
            database=database,
            lock_manager=SyncLockManager(database, timeout=settings.lock_timeout),
            guard=RemoteCallGuard.from_settings(settings.guard),
            client_factory=client_factory,
            photo_dir=settings.photo_dir,
            import_photos=settings.import_photos,
        )

    # =========================================================================
    # Staging
    # =========================================================================

    def stage(self, scope: Scope, raw_texts: Iterable[str]) -> list[int]:
        """
        Split vCard documents into cards and stage them.

        Cards without a UID (including cards that fail to decode) get a uid
        derived from their text, so uploading the same file twice maps to the
        same records. A new upload replaces the user's previous, unreconciled
        upload.

        Args:
            scope: Upload or connection scope to stage into
            raw_texts: vCard documents, each holding one or more cards

        Returns:
            Pending import ids in arrival order
        """
        entries: list[StagedEntry] = []
        for raw in raw_texts:
            for card in split_cards(raw):
                href = f"upload:{len(entries) + 1}"
                entries.append(_staged_entry(card, href, synthetic_uid(card)))

        with self.database.transaction():
            if isinstance(scope, UploadScope):
                cleared = self.staging.clear_scope(scope)
                if cleared:
                    logger.info(f"Discarded {cleared} unreconciled contact(s) for {scope}")
            ids = self.staging.stage_batch(scope, entries)
        logger.info(f"Staged {len(ids)} contact(s) for {scope}")
        return ids

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def _owner_for(self, scope: Scope) -> str:
        if isinstance(scope, UploadScope):
            return scope.user_id
        connection = self.database.get_connection(scope.connection_id)
        if connection is None:
            raise UnknownConnectionError(
                f"Connection '{scope.connection_id}' is not registered"
            )
        return str(connection["user_id"])

    def reconcile(
        self,
        scope: Scope,
        ids: Optional[Sequence[int]] = None,
        cancel_event: Optional[threading.Event] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> RunResult:
        """
        Apply the staged records of a scope to the local store.

        Args:
            scope: Scope whose pending imports are drained
            ids: Restrict the run to these pending import ids
            cancel_event: Set to stop the run between items
            reporter: Receives per-item outcomes and the final totals

        Returns:
            RunResult with counts and per-item errors

        Raises:
            LockContentionError: If another run holds the connection's lock
            UnknownConnectionError: If the connection is not registered
            StoreError: If the pending set or local snapshot cannot be read
        """
        if isinstance(scope, ConnectionScope):
            with self.lock_manager.hold(scope.connection_id) as lock:
                return self._run(scope, ids, cancel_event, reporter, lock)
        return self._run(scope, ids, cancel_event, reporter, None)

    def _run(
        self,
        scope: Scope,
        ids: Optional[Sequence[int]],
        cancel_event: Optional[threading.Event],
        reporter: Optional[ProgressReporter],
        lock: Optional[SyncLock],
    ) -> RunResult:
        reporter = reporter or NullProgressReporter()
        owner_id = self._owner_for(scope)
        pending = self.staging.list_for(scope, ids)

        uids = [item.uid for item in pending]
        index = BatchIndex.build(
            uids,
            self.people.find_active_by_uid(owner_id, uids),
            self.people.find_soft_deleted_by_uid(owner_id, uids),
        )
        mappings: dict[str, dict[str, Any]] = {}
        if isinstance(scope, ConnectionScope):
            mappings = {
                mapping["uid"]: mapping
                for mapping in self.database.get_mappings_for_connection(
                    scope.connection_id
                )
            }

        logger.info(f"Reconciling {len(pending)} pending contact(s) for {scope}")
        result = RunResult()
        totals = RunTotals(total=len(pending))

        for item in pending:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Reconciliation of {scope} cancelled")
                result.cancelled = True
                break

            index, classification = plan_item(index, item.uid)
            try:
                outcome, record = self._apply_item(
                    scope, owner_id, item, classification, mappings
                )
                if outcome.person_id is not None and outcome.kind not in (
                    OutcomeKind.SKIPPED,
                    OutcomeKind.CONFLICTED,
                ):
                    index = index.record_applied(item.uid, outcome.person_id)

                result.record(outcome)
                totals = totals.add(outcome.kind)
                reporter.on_item(outcome, totals)

                if record is not None and outcome.person_id is not None:
                    self._import_photo(outcome, record, result)

                if lock is not None and totals.processed % LOCK_REFRESH_EVERY == 0:
                    lock = self.lock_manager.refresh(lock)
            except StoreError as e:
                logger.error(f"Reconciliation of {scope} aborted: {e}")
                result.aborted = True
                result.fatal_error = str(e)
                break
            except LockContentionError as e:
                logger.error(f"Lost sync lock while reconciling {scope}: {e}")
                result.aborted = True
                result.fatal_error = str(e)
                break

        reporter.on_complete(totals)
        return result

    def _apply_item(
        self,
        scope: Scope,
        owner_id: str,
        item: PendingImport,
        classification: Classification,
        mappings: dict[str, dict[str, Any]],
    ) -> tuple[ItemOutcome, Optional[ContactRecord]]:
        """Apply one pending import; returns the outcome and the applied record."""

        def outcome(
            kind: OutcomeKind,
            display_name: str,
            person_id: Optional[int] = None,
            reason: Optional[str] = None,
        ) -> ItemOutcome:
            return ItemOutcome(
                pending_id=item.id,
                uid=item.uid,
                display_name=display_name,
                kind=kind,
                person_id=person_id,
                reason=reason,
            )

        with self.database.transaction():
            if classification.kind is MatchKind.DUPLICATE_IN_BATCH:
                self.staging.remove([item.id])
                skipped = outcome(
                    OutcomeKind.SKIPPED, item.display_name, reason=DUPLICATE_REASON
                )
                return skipped, None

            try:
                record = decode(item.vcard_data)
            except DecodeError as e:
                self.staging.remove([item.id])
                failed = outcome(
                    OutcomeKind.ERRORED, item.display_name, reason=f"Invalid vCard: {e}"
                )
                return failed, None

            record.uid = item.uid
            content_hash = record.content_hash()
            applied: Optional[ContactRecord] = record
            connection_id = (
                scope.connection_id if isinstance(scope, ConnectionScope) else None
            )

            if classification.kind is MatchKind.NEW:
                person_id = self.people.create_from_contact_record(owner_id, record)
                result = outcome(OutcomeKind.IMPORTED, record.display_name, person_id)
            elif classification.kind is MatchKind.MATCHES_ACTIVE:
                person_id = classification.local_id  # type: ignore[assignment]
                mapping = mappings.get(item.uid) or {}
                synced = mapping.get("person_id") == person_id
                if synced and mapping.get("last_synced_hash") == content_hash:
                    result = outcome(
                        OutcomeKind.SKIPPED, record.display_name, person_id, UNCHANGED_REASON
                    )
                    applied = None
                elif synced and mapping.get("local_changed_at"):
                    # Keep both versions; the mapping stays at the last agreed state
                    self.database.upsert_conflict(
                        connection_id=connection_id,  # type: ignore[arg-type]
                        uid=item.uid,
                        person_id=person_id,
                        vcard_data=item.vcard_data,
                        display_name=record.display_name,
                        href=item.href,
                        etag=item.etag,
                    )
                    self.staging.remove([item.id])
                    conflict = outcome(
                        OutcomeKind.CONFLICTED, record.display_name, person_id, CONFLICT_REASON
                    )
                    return conflict, None
                else:
                    self.people.update_from_contact_record(person_id, record)
                    self.database.mark_local_change(person_id, except_connection=connection_id)
                    result = outcome(OutcomeKind.UPDATED, record.display_name, person_id)
            else:
                person_id = classification.local_id  # type: ignore[assignment]
                self.people.restore_from_contact_record(person_id, record)
                self.database.mark_local_change(person_id, except_connection=connection_id)
                result = outcome(OutcomeKind.RESTORED, record.display_name, person_id)

            if connection_id is not None:
                # Skipped records still refresh href and etag
                keeps_local_change = result.kind is OutcomeKind.SKIPPED
                self.database.upsert_contact_mapping(
                    connection_id=connection_id,
                    uid=item.uid,
                    person_id=person_id,
                    href=item.href,
                    etag=item.etag,
                    last_synced_hash=content_hash,
                    clear_local_change=not keeps_local_change,
                )
                previous = mappings.get(item.uid) or {}
                mappings[item.uid] = {
                    "person_id": person_id,
                    "last_synced_hash": content_hash,
                    "local_changed_at": (
                        previous.get("local_changed_at") if keeps_local_change else None
                    ),
                }

            self.staging.remove([item.id])

        return result, applied

    def _import_photo(
        self, outcome: ItemOutcome, record: ContactRecord, result: RunResult
    ) -> None:
        if not self.import_photos or not record.photo or self.photo_dir is None:
            return
        person_id: int = outcome.person_id  # type: ignore[assignment]
        try:
            path = save_contact_photo(
                record.photo, self.photo_dir, person_id, timeout=self.guard.timeout
            )
        except PhotoError as e:
            logger.warning(f"Failed to import photo for {record.display_name}: {e}")
            result.photos_failed += 1
            return
        self.people.set_photo_path(person_id, str(path))
        result.photos_saved += 1

    # =========================================================================
    # Server pull
    # =========================================================================

    def _client(self, connection_id: str) -> CardDAVClient:
        if self.client_factory is None:
            raise UnknownConnectionError(
                f"No CardDAV client available for connection '{connection_id}'"
            )
        return self.client_factory(connection_id)

    def _list_changes(
        self, client: CardDAVClient, connection_id: str, sync_token: Optional[str]
    ) -> ChangeSet:
        try:
            return self.guard.call(
                lambda timeout: client.list_changed(sync_token, timeout=timeout),
                "list_changed",
            )
        except SyncTokenExpiredError:
            logger.info(f"Sync token for {connection_id} expired, listing all cards")
            self.database.clear_sync_token(connection_id)
            return self.guard.call(
                lambda timeout: client.list_changed(None, timeout=timeout),
                "list_changed",
            )

    def _fetch_cards(
        self, client: CardDAVClient, hrefs: Sequence[str], lock: SyncLock
    ) -> tuple[list[RemoteCard], list[ItemError], SyncLock]:
        """Fetch cards batch by batch; a failed batch becomes per-card errors."""
        fetched: list[RemoteCard] = []
        errors: list[ItemError] = []
        for batch in self.guard.batches(hrefs):
            try:
                fetched.extend(
                    self.guard.call(
                        lambda timeout: client.fetch_many(batch, timeout=timeout),  # noqa: B023
                        "multiget",
                    )
                )
            except RemoteCallError as e:
                if categorize_error(e) is ErrorCategory.AUTH:
                    raise
                logger.warning(f"Failed to fetch {len(batch)} card(s): {e}")
                reason = user_message(e)
                errors.extend(
                    ItemError(
                        pending_id=None,
                        uid=href_uid(href),
                        display_name=PLACEHOLDER_NAME,
                        reason=reason,
                        href=href,
                    )
                    for href in batch
                )
            lock = self.lock_manager.refresh(lock)
        return fetched, errors, lock

    def _discover(
        self, connection_id: str, lock: SyncLock
    ) -> tuple[DiscoveryResult, SyncLock]:
        connection = self.database.get_connection(connection_id)
        if connection is None:
            raise UnknownConnectionError(f"Connection '{connection_id}' is not registered")

        scope = ConnectionScope(connection_id)
        client = self._client(connection_id)
        try:
            changes = self._list_changes(client, connection_id, connection["sync_token"])

            known_etags = {
                mapping["href"]: mapping["etag"]
                for mapping in self.database.get_mappings_for_connection(connection_id)
                if mapping["href"]
            }
            to_fetch = [
                card
                for card in changes.cards
                if card.etag is None or known_etags.get(card.href) != card.etag
            ]
            listed_etags = {card.href: card.etag for card in to_fetch}
            fetched, fetch_errors, lock = self._fetch_cards(
                client, [card.href for card in to_fetch], lock
            )
        finally:
            client.close()

        entries = [
            _staged_entry(
                card.text or "",
                card.href,
                href_uid(card.href),
                etag=card.etag or listed_etags.get(card.href),
            )
            for card in fetched
        ]

        with self.database.transaction():
            self.staging.clear_scope(scope)
            ids = self.staging.stage_batch(scope, entries)
            # Keep the old token so failed cards are listed again next time
            if changes.sync_token and not fetch_errors:
                self.database.update_sync_token(connection_id, changes.sync_token)

        discovery = DiscoveryResult(
            listed=len(changes.cards),
            unchanged=len(changes.cards) - len(to_fetch),
            staged=len(ids),
            deleted_on_server=len(changes.deleted_hrefs),
            full_listing=changes.full,
            pending_ids=ids,
            fetch_errors=fetch_errors,
        )
        logger.info(
            f"Discovered {discovery.staged} changed contact(s) on {connection_id} "
            f"({discovery.unchanged} unchanged, {discovery.deleted_on_server} deleted "
            f"on server)"
        )
        if fetch_errors:
            logger.warning(
                f"{len(fetch_errors)} contact(s) on {connection_id} could not be fetched"
            )
        return discovery, lock

    def discover(self, connection_id: str) -> DiscoveryResult:
        """
        Pull changed cards from a connection's server into the staging area.

        The connection's previous pending set is cleared first. Cards whose
        etag matches the stored mapping are not fetched. A failed multiget
        batch is reported in fetch_errors without stopping the others.

        Returns:
            DiscoveryResult

        Raises:
            LockContentionError: If the connection is being synced
            RemoteCallError: If the server cannot be reached after retries
        """
        with self.lock_manager.hold(connection_id) as lock:
            try:
                discovery, _ = self._discover(connection_id, lock)
            except RemoteCallError as e:
                self.database.record_sync_error(connection_id, user_message(e))
                raise
            return discovery

    # =========================================================================
    # Server push
    # =========================================================================

    def _put_card(
        self,
        client: CardDAVClient,
        connection_id: str,
        person_id: int,
        record: ContactRecord,
        href: str,
        etag: Optional[str],
        result: PushResult,
    ) -> bool:
        text = encode(record)
        try:
            new_etag = self.guard.call(
                lambda timeout: client.put_card(href, text, etag=etag, timeout=timeout),
                "put",
            )
        except PreconditionFailedError:
            logger.info(f"{record.display_name} changed on {connection_id}, not pushed")
            result.stale += 1
            return False
        except RemoteCallError as e:
            if categorize_error(e) is ErrorCategory.AUTH:
                raise
            logger.warning(f"Failed to push {record.display_name}: {e}")
            result.errors.append(
                ItemError(
                    pending_id=None,
                    uid=record.uid or "",
                    display_name=record.display_name,
                    reason=user_message(e),
                    href=href,
                )
            )
            return False

        self.database.upsert_contact_mapping(
            connection_id=connection_id,
            uid=record.uid,  # type: ignore[arg-type]
            person_id=person_id,
            href=href,
            etag=new_etag,
            last_synced_hash=record.content_hash(),
        )
        return True

    def _push(
        self, connection_id: str, include_new: bool, lock: SyncLock
    ) -> tuple[PushResult, SyncLock]:
        connection = self.database.get_connection(connection_id)
        if connection is None:
            raise UnknownConnectionError(f"Connection '{connection_id}' is not registered")

        result = PushResult()
        client = self._client(connection_id)
        try:
            for mapping in self.database.list_local_changes(connection_id):
                record = self.people.get_contact_record(mapping["person_id"])
                record.uid = mapping["uid"]
                href = mapping["href"] or client.href_for(mapping["uid"])
                if self._put_card(
                    client,
                    connection_id,
                    mapping["person_id"],
                    record,
                    href,
                    mapping["etag"],
                    result,
                ):
                    result.pushed += 1
                lock = self.lock_manager.refresh(lock)

            if include_new:
                mapped = {
                    mapping["person_id"]
                    for mapping in self.database.get_mappings_for_connection(connection_id)
                }
                for row in self.people.list_active(str(connection["user_id"])):
                    if row["id"] in mapped:
                        continue
                    record = self.people.get_contact_record(row["id"])
                    href = client.href_for(row["uid"])
                    if self._put_card(
                        client, connection_id, row["id"], record, href, None, result
                    ):
                        result.created += 1
                    lock = self.lock_manager.refresh(lock)
        finally:
            client.close()

        logger.info(
            f"Pushed {result.pushed} changed and {result.created} new contact(s) to "
            f"{connection_id} ({result.stale} stale, {len(result.errors)} failed)"
        )
        return result, lock

    def push(self, connection_id: str, include_new: bool = False) -> PushResult:
        """
        Write locally changed contacts back to a connection's server.

        Each card is sent with the etag it was last synced at, so a card that
        changed on the server in the meantime is counted as stale and left
        for the next sync to turn into a conflict.

        Args:
            connection_id: Connection to push to
            include_new: Also upload the owner's contacts that have no card
                on this connection yet

        Returns:
            PushResult

        Raises:
            LockContentionError: If the connection is being synced
            RemoteCallError: If the server rejects our credentials
        """
        with self.lock_manager.hold(connection_id) as lock:
            try:
                push_result, _ = self._push(connection_id, include_new, lock)
            except RemoteCallError as e:
                self.database.record_sync_error(connection_id, user_message(e))
                raise
            return push_result

    # =========================================================================
    # Full sync
    # =========================================================================

    def sync(
        self,
        connection_id: str,
        cancel_event: Optional[threading.Event] = None,
        reporter: Optional[ProgressReporter] = None,
        push: bool = False,
    ) -> RunResult:
        """
        Discover and reconcile a connection under one lock.

        Remote failures are recorded on the connection and returned as an
        aborted RunResult. Cards that could not be fetched are returned as
        item errors and recorded on the connection.

        Args:
            connection_id: Connection to sync
            cancel_event: Set to stop reconciliation between items
            reporter: Receives per-item outcomes and the final totals
            push: Push local changes after a complete reconciliation

        Raises:
            LockContentionError: If the connection is already being synced
        """
        scope = ConnectionScope(connection_id)
        with self.lock_manager.hold(connection_id) as lock:
            try:
                discovery, lock = self._discover(connection_id, lock)
            except RemoteCallError as e:
                message = user_message(e)
                logger.error(f"Sync of {connection_id} failed: {e}")
                self.database.record_sync_error(connection_id, message)
                return RunResult(aborted=True, fatal_error=message)

            result = self._run(scope, None, cancel_event, reporter, lock)
            result.discovery = discovery
            result.errors = discovery.fetch_errors + result.errors

            if push and not (result.aborted or result.cancelled):
                try:
                    result.push, lock = self._push(connection_id, False, lock)
                except (RemoteCallError, StoreError) as e:
                    logger.error(f"Push to {connection_id} failed: {e}")
                    result.aborted = True
                    result.fatal_error = (
                        user_message(e) if isinstance(e, RemoteCallError) else str(e)
                    )

        if result.aborted:
            self.database.record_sync_error(connection_id, result.fatal_error or "")
        elif discovery.fetch_errors:
            self.database.record_sync_error(
                connection_id,
                f"{len(discovery.fetch_errors)} contact(s) could not be fetched: "
                f"{discovery.fetch_errors[0].reason}",
            )
        elif not result.cancelled:
            self.database.record_sync_success(connection_id)
        return result

    # =========================================================================
    # Conflicts
    # =========================================================================

    def list_conflicts(self, connection_id: Optional[str] = None) -> list[dict[str, Any]]:
        return self.database.list_conflicts(connection_id)

    def resolve_conflict(self, conflict_id: int, keep: str) -> dict[str, Any]:
        """
        Settle a conflict by keeping one side.

        keep="remote" applies the server's version to the local contact.
        keep="local" accepts the server's etag as the base, so the next push
        overwrites the server's version with the local one.

        Args:
            conflict_id: Id from list_conflicts()
            keep: "local" or "remote"

        Returns:
            The resolved conflict row

        Raises:
            ValueError: If keep is invalid or the conflict does not exist
            LockContentionError: If the connection is being synced
        """
        if keep not in ("local", "remote"):
            raise ValueError(f"keep must be 'local' or 'remote', got {keep!r}")
        conflict = self.database.get_conflict(conflict_id)
        if conflict is None:
            raise ValueError(f"Conflict {conflict_id} not found")

        connection_id = conflict["connection_id"]
        person_id = conflict["person_id"]
        with self.lock_manager.hold(connection_id):
            with self.database.transaction():
                remote = decode(conflict["vcard_data"])
                remote.uid = conflict["uid"]
                if keep == "remote":
                    self.people.update_from_contact_record(person_id, remote)
                    self.database.mark_local_change(person_id, except_connection=connection_id)
                self.database.upsert_contact_mapping(
                    connection_id=connection_id,
                    uid=conflict["uid"],
                    person_id=person_id,
                    href=conflict["href"],
                    etag=conflict["etag"],
                    last_synced_hash=remote.content_hash(),
                    clear_local_change=keep == "remote",
                )
                self.database.delete_conflict(conflict_id)

        logger.info(
            f"Resolved conflict on {conflict['display_name']} ({connection_id}) "
            f"keeping the {keep} version"
        )
        return conflict
