"""
Command-line interface for carddav_sync.

Provides CLI commands for uploading vCard files, reviewing and reconciling
pending imports, pulling from and pushing to CardDAV connections, resolving
conflicts, and running the sync daemon.

Usage:
    # Show help
    carddav-sync --help

    # Upload a vCard file for a user and import it
    carddav-sync upload contacts.vcf --user alice

    # Pull a configured CardDAV connection
    carddav-sync pull home

    # Pull and push local edits back
    carddav-sync pull home --push

    # Review staged records before importing them
    carddav-sync pull home --stage-only
    carddav-sync pending --connection home
    carddav-sync reconcile --connection home

    # Review and resolve conflicts
    carddav-sync conflicts
    carddav-sync resolve 3 --keep remote

    # Check status
    carddav-sync status
"""

import signal
import sys
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import click

from carddav_sync import __version__
from carddav_sync.api.errors import RemoteCallError, user_message
from carddav_sync.cli.formatters import (
    ClickProgressReporter,
    show_conflicts,
    show_connection_status,
    show_discovery,
    show_pending,
    show_push,
    show_run_result,
)
from carddav_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from carddav_sync.config.settings import Settings
from carddav_sync.storage.db import StoreError, SyncDatabase
from carddav_sync.sync.engine import (
    ReconciliationEngine,
    UnknownConnectionError,
    register_connections,
)
from carddav_sync.sync.guard import LockContentionError
from carddav_sync.sync.scope import ConnectionScope, Scope, UploadScope
from carddav_sync.sync.vcard import encode
from carddav_sync.utils import resolve_config_dir
from carddav_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging

# New contacts listed after a staging-only pull
MAX_LISTED_NEW = 20


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _resolve_scope(connection: Optional[str], user: Optional[str]) -> Scope:
    if bool(connection) == bool(user):
        raise click.UsageError("Specify exactly one of --connection or --user.")
    if connection:
        return ConnectionScope(connection)
    return UploadScope(user)  # type: ignore[arg-type]


def get_engine(ctx: click.Context) -> ReconciliationEngine:
    """
    Open the database and build the engine for this invocation.

    Configured connections are registered (or refreshed) in the database
    first. The database is closed when the command finishes.
    """
    if "engine" in ctx.obj:
        return ctx.obj["engine"]  # type: ignore[no-any-return]

    settings: Settings = ctx.obj["settings"]
    try:
        settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        database = SyncDatabase(str(settings.database_path))
        database.initialize()
        register_connections(database, settings.connections)
    except (OSError, StoreError) as e:
        _fail(f"Cannot open database {settings.database_path}: {e}")

    ctx.call_on_close(database.close)
    engine = ReconciliationEngine.from_settings(settings, database)
    ctx.obj["engine"] = engine
    return engine


@contextmanager
def cancel_on_interrupt() -> Generator[threading.Event, None, None]:
    """Turn Ctrl+C into a cancel signal that stops a run between items."""
    cancel_event = threading.Event()

    def handler(signum: int, frame: Any) -> None:
        click.echo(click.style("\nCancelling after the current record...", fg="yellow"))
        cancel_event.set()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not on the main thread; run without Ctrl+C handling
        yield cancel_event
        return
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


scope_options = [
    click.option(
        "--connection", "-C", "connection", default=None, help="CardDAV connection id."
    ),
    click.option("--user", "-u", "user", default=None, help="Uploading user id."),
]


def with_scope_options(func: Any) -> Any:
    for option in reversed(scope_options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="carddav-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CARDDAV_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.carddav-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CARDDAV_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    CardDAV contact sync.

    Mirrors CardDAV address books and uploaded vCard files into the local
    contact database, restoring deleted contacts instead of duplicating them.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = (
        Path(config_file) if config_file else resolved_config_dir / DEFAULT_CONFIG_FILE
    )
    ctx.obj["config_dir"] = resolved_config_dir

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Keep working with defaults so status/unlock remain usable
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    settings = Settings.from_dict(config, resolved_config_dir)
    ctx.obj["settings"] = settings

    effective_verbose = verbose or bool(config.get("verbose", False))
    ctx.obj["verbose"] = effective_verbose

    log_dir = settings.log_dir or resolved_config_dir / "logs"
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)


# =============================================================================
# Upload Command
# =============================================================================


@cli.command("upload")
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--user", "-u", required=True, help="User the contacts belong to.")
@click.option(
    "--stage-only",
    is_flag=True,
    help="Stage the records for review without importing them.",
)
@click.pass_context
def upload_command(
    ctx: click.Context, files: tuple[Path, ...], user: str, stage_only: bool
) -> None:
    """
    Upload one or more vCard files.

    Every card is staged as a pending import for the user and, unless
    --stage-only is given, reconciled right away. Cards with a UID already in
    the user's contacts update them; deleted contacts are restored.

    Examples:

        carddav-sync upload export.vcf --user alice

        carddav-sync upload a.vcf b.vcf --user alice --stage-only
    """
    logger = get_logger(__name__)
    engine = get_engine(ctx)
    scope = UploadScope(user)

    try:
        texts = [path.read_text(encoding="utf-8-sig", errors="replace") for path in files]
    except OSError as e:
        _fail(f"Cannot read file: {e}")

    try:
        ids = engine.stage(scope, texts)
        click.echo(f"Staged {len(ids)} contact(s) for {user}.")
        if stage_only or not ids:
            if ids:
                click.echo(f"Run 'carddav-sync reconcile --user {user}' to import them.")
            return

        with cancel_on_interrupt() as cancel_event:
            result = engine.reconcile(
                scope,
                ids=ids,
                cancel_event=cancel_event,
                reporter=ClickProgressReporter(),
            )
    except StoreError as e:
        logger.error(f"Upload failed: {e}")
        _fail(str(e))

    show_run_result(result)
    if result.aborted:
        sys.exit(1)


# =============================================================================
# Pending Imports
# =============================================================================


@cli.command("pending")
@with_scope_options
@click.option(
    "--mark-notified",
    is_flag=True,
    help="Mark the listed records as seen so they are no longer flagged new.",
)
@click.pass_context
def pending_command(
    ctx: click.Context,
    connection: Optional[str],
    user: Optional[str],
    mark_notified: bool,
) -> None:
    """
    List pending imports of a connection or user.

    Example:

        carddav-sync pending --connection home
    """
    scope = _resolve_scope(connection, user)
    engine = get_engine(ctx)
    try:
        pending = engine.staging.list_for(scope)
        show_pending(pending)
        if mark_notified and pending:
            engine.staging.mark_notified([item.id for item in pending])
    except StoreError as e:
        _fail(str(e))


@cli.command("dismiss")
@click.argument("ids", nargs=-1, type=int)
@with_scope_options
@click.option("--all", "dismiss_all", is_flag=True, help="Dismiss every pending import.")
@click.pass_context
def dismiss_command(
    ctx: click.Context,
    ids: tuple[int, ...],
    connection: Optional[str],
    user: Optional[str],
    dismiss_all: bool,
) -> None:
    """
    Discard pending imports without importing them.

    Examples:

        carddav-sync dismiss 12 13 --user alice

        carddav-sync dismiss --all --connection home
    """
    scope = _resolve_scope(connection, user)
    if not ids and not dismiss_all:
        raise click.UsageError("Give pending import ids or --all.")

    engine = get_engine(ctx)
    try:
        if dismiss_all:
            removed = engine.staging.clear_scope(scope)
        else:
            found = engine.staging.get_many(list(ids))
            owned = [item for item in found if item.scope == scope]
            missing = sorted(set(ids) - {item.id for item in owned})
            if missing:
                click.echo(
                    click.style(
                        f"Not pending in {scope}: {', '.join(map(str, missing))}",
                        fg="yellow",
                    ),
                    err=True,
                )
            for item in owned:
                click.echo(f"  - [{item.id}] {item.display_name}")
            removed = engine.staging.remove([item.id for item in owned])
    except StoreError as e:
        _fail(str(e))

    click.echo(f"Dismissed {removed} pending import(s).")


# =============================================================================
# Reconcile Command
# =============================================================================


@cli.command("reconcile")
@with_scope_options
@click.option(
    "--id",
    "ids",
    type=int,
    multiple=True,
    help="Only reconcile this pending import (repeatable).",
)
@click.pass_context
def reconcile_command(
    ctx: click.Context,
    connection: Optional[str],
    user: Optional[str],
    ids: tuple[int, ...],
) -> None:
    """
    Import pending records into the local contacts.

    Press Ctrl+C to stop after the current record; unprocessed records stay
    pending.

    Examples:

        carddav-sync reconcile --user alice

        carddav-sync reconcile --connection home --id 4 --id 9
    """
    logger = get_logger(__name__)
    scope = _resolve_scope(connection, user)
    engine = get_engine(ctx)

    try:
        with cancel_on_interrupt() as cancel_event:
            result = engine.reconcile(
                scope,
                ids=list(ids) or None,
                cancel_event=cancel_event,
                reporter=ClickProgressReporter(),
            )
    except LockContentionError as e:
        _fail(str(e))
    except (UnknownConnectionError, StoreError) as e:
        logger.error(f"Reconciliation failed: {e}")
        _fail(str(e))

    show_run_result(result)
    if result.aborted:
        sys.exit(1)


# =============================================================================
# Pull Command
# =============================================================================


@cli.command("pull")
@click.argument("connection_id")
@click.option(
    "--stage-only",
    is_flag=True,
    help="Only fetch changed cards into pending imports; do not import them.",
)
@click.option(
    "--full", is_flag=True, help="Ignore the stored sync token and list every card."
)
@click.option(
    "--push", "push", is_flag=True, help="Push local changes after importing."
)
@click.pass_context
def pull_command(
    ctx: click.Context, connection_id: str, stage_only: bool, full: bool, push: bool
) -> None:
    """
    Pull changes from a CardDAV connection.

    Examples:

        carddav-sync pull home

        carddav-sync pull home --stage-only

        carddav-sync pull home --full --push
    """
    logger = get_logger(__name__)
    engine = get_engine(ctx)
    if stage_only and push:
        raise click.UsageError("--push cannot be combined with --stage-only.")

    try:
        if engine.database.get_connection(connection_id) is None:
            _fail(f"Unknown connection '{connection_id}'")
        if full:
            engine.database.clear_sync_token(connection_id)

        if stage_only:
            discovery = engine.discover(connection_id)
            show_discovery(discovery)
            new_items = engine.staging.list_unnotified(ConnectionScope(connection_id))
            if new_items:
                click.echo(f"\nNew contacts found ({len(new_items)}):")
                for item in new_items[:MAX_LISTED_NEW]:
                    click.echo(f"  + {item.display_name}")
                if len(new_items) > MAX_LISTED_NEW:
                    click.echo(f"  ... and {len(new_items) - MAX_LISTED_NEW} more")
                engine.staging.mark_notified([item.id for item in new_items])
            if discovery.staged:
                click.echo(
                    f"Run 'carddav-sync reconcile --connection {connection_id}' "
                    "to import them."
                )
            return

        with cancel_on_interrupt() as cancel_event:
            result = engine.sync(
                connection_id,
                cancel_event=cancel_event,
                reporter=ClickProgressReporter(),
                push=push,
            )
    except LockContentionError as e:
        _fail(str(e))
    except RemoteCallError as e:
        logger.error(f"Pull of {connection_id} failed: {e}")
        _fail(user_message(e))
    except (ConfigError, UnknownConnectionError, StoreError) as e:
        logger.error(f"Pull of {connection_id} failed: {e}")
        _fail(str(e))

    show_run_result(result)
    if result.aborted:
        sys.exit(1)
    click.echo(click.style("\nSync completed.", fg="green"))


# =============================================================================
# Push / Conflicts
# =============================================================================


@cli.command("push")
@click.argument("connection_id")
@click.option(
    "--include-new",
    is_flag=True,
    help="Also upload contacts that are not on the server yet.",
)
@click.pass_context
def push_command(ctx: click.Context, connection_id: str, include_new: bool) -> None:
    """
    Push local contact changes to a CardDAV connection.

    Cards that changed on the server since the last pull are not
    overwritten; pull again to review them as conflicts.

    Examples:

        carddav-sync push home

        carddav-sync push home --include-new
    """
    logger = get_logger(__name__)
    engine = get_engine(ctx)

    try:
        if engine.database.get_connection(connection_id) is None:
            _fail(f"Unknown connection '{connection_id}'")
        push_result = engine.push(connection_id, include_new=include_new)
    except LockContentionError as e:
        _fail(str(e))
    except RemoteCallError as e:
        logger.error(f"Push to {connection_id} failed: {e}")
        _fail(user_message(e))
    except (ConfigError, UnknownConnectionError, StoreError) as e:
        logger.error(f"Push to {connection_id} failed: {e}")
        _fail(str(e))

    show_push(push_result)
    if push_result.stale:
        click.echo(
            f"Run 'carddav-sync pull {connection_id}' to fetch the newer server versions."
        )
    if push_result.errors:
        sys.exit(1)


@cli.command("conflicts")
@click.option("--connection", "-C", "connection", default=None, help="CardDAV connection id.")
@click.pass_context
def conflicts_command(ctx: click.Context, connection: Optional[str]) -> None:
    """
    List contacts that changed both locally and on the server.

    Example:

        carddav-sync conflicts --connection home
    """
    engine = get_engine(ctx)
    try:
        show_conflicts(engine.list_conflicts(connection))
    except StoreError as e:
        _fail(str(e))


@cli.command("resolve")
@click.argument("conflict_id", type=int)
@click.option(
    "--keep",
    required=True,
    type=click.Choice(["local", "remote"]),
    help="Version to keep.",
)
@click.pass_context
def resolve_command(ctx: click.Context, conflict_id: int, keep: str) -> None:
    """
    Resolve a conflict by keeping the local or the server version.

    Keeping the local version marks it to be pushed on the next push.

    Examples:

        carddav-sync resolve 3 --keep remote

        carddav-sync resolve 4 --keep local
    """
    logger = get_logger(__name__)
    engine = get_engine(ctx)
    try:
        conflict = engine.resolve_conflict(conflict_id, keep)
    except LockContentionError as e:
        _fail(str(e))
    except (ValueError, StoreError) as e:
        logger.error(f"Resolving conflict {conflict_id} failed: {e}")
        _fail(str(e))

    click.echo(
        click.style(
            f"Kept the {keep} version of {conflict['display_name']}.", fg="green"
        )
    )


# =============================================================================
# Delete Command
# =============================================================================


@cli.command("delete-contact")
@click.argument("person_id", type=int)
@click.option(
    "--permanent",
    is_flag=True,
    help="Remove the contact and its mappings instead of moving it to the trash.",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def delete_contact_command(
    ctx: click.Context, person_id: int, permanent: bool, yes: bool
) -> None:
    """
    Delete a local contact.

    A deleted contact is restored in place when a card with its UID is
    imported again. Permanently deleted contacts are imported as new ones.

    Examples:

        carddav-sync delete-contact 42

        carddav-sync delete-contact 42 --permanent --yes
    """
    engine = get_engine(ctx)
    try:
        row = engine.people.get(person_id)
    except StoreError as e:
        _fail(str(e))
    if row is None:
        _fail(f"Contact {person_id} not found")

    action = "Permanently delete" if permanent else "Delete"
    if not yes and not click.confirm(
        f"{action} {row['display_name']} ({row['uid']})?", default=False
    ):
        click.echo("Cancelled.")
        return

    try:
        if permanent:
            deleted = engine.people.purge(person_id)
        else:
            deleted = engine.people.soft_delete(person_id)
    except StoreError as e:
        _fail(str(e))

    if deleted:
        click.echo(click.style(f"Deleted {row['display_name']}.", fg="green"))
    else:
        click.echo(f"{row['display_name']} was already deleted.")


# =============================================================================
# Status / Unlock
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show connection and sync status.

    Example:

        carddav-sync status
    """
    settings: Settings = ctx.obj["settings"]
    engine = get_engine(ctx)
    database = engine.database

    click.echo("=== CardDAV Sync Status ===\n")
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
    click.echo(f"Database: {settings.database_path}")
    click.echo()

    try:
        connections = database.list_connections()
        if not connections:
            click.echo("No connections configured.")
            click.echo("Add a 'connections' list to config.yaml to sync a CardDAV server.")
            return

        for connection in connections:
            connection_id = connection["id"]
            lock = database.get_lock(connection_id)
            locked = engine.lock_manager.is_locked(connection_id)
            show_connection_status(
                connection,
                pending_count=engine.staging.count_for(ConnectionScope(connection_id)),
                mapping_count=database.count_mappings(connection_id),
                locked=locked,
                lock_expires=_format_epoch(lock["expires_at"]) if lock and locked else None,
            )
            click.echo()
    except StoreError as e:
        _fail(str(e))


def _format_epoch(value: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(value))


@cli.command("unlock")
@click.argument("connection_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def unlock_command(ctx: click.Context, connection_id: str, yes: bool) -> None:
    """
    Release a connection's sync lock left behind by a crashed run.

    Only use this when no sync is running; stale locks also expire on their
    own after the configured lock timeout.
    """
    engine = get_engine(ctx)
    if not yes and not click.confirm(
        f"Release the sync lock for '{connection_id}'?", default=False
    ):
        click.echo("Cancelled.")
        return

    try:
        released = engine.database.force_release_lock(connection_id)
    except StoreError as e:
        _fail(str(e))

    if released:
        click.echo(click.style(f"Released sync lock for {connection_id}.", fg="green"))
    else:
        click.echo(f"No sync lock held for {connection_id}.")


# =============================================================================
# Export Command
# =============================================================================


@cli.command("export")
@click.option("--user", "-u", required=True, help="User whose contacts to export.")
@click.option(
    "--output",
    "-o",
    default="-",
    type=click.Path(dir_okay=False, allow_dash=True),
    help="Output file (default: stdout).",
)
@click.pass_context
def export_command(ctx: click.Context, user: str, output: str) -> None:
    """
    Export a user's active contacts as vCard 4.0.

    Example:

        carddav-sync export --user alice -o contacts.vcf
    """
    engine = get_engine(ctx)
    try:
        records = engine.people.export_records(user)
    except StoreError as e:
        _fail(str(e))

    document = "".join(encode(record) for record in records)
    with click.open_file(output, "wb") as f:
        f.write(document.encode("utf-8"))

    if output != "-":
        click.echo(f"Exported {len(records)} contact(s) to {output}.")


# =============================================================================
# Daemon Command Group
# =============================================================================


@cli.group("daemon")
@click.pass_context
def daemon_group(ctx: click.Context) -> None:
    """
    Manage the background synchronization daemon.

    The daemon wakes up at a fixed interval and syncs every enabled
    connection whose auto_sync_interval has elapsed.

    Examples:

        carddav-sync daemon start --interval 15m

        carddav-sync daemon status

        carddav-sync daemon stop
    """
    pass


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Wake-up interval (e.g. '30s', '5m', '1h'). Defaults to config value or '1h'.",
)
@click.option(
    "--no-initial-sync", is_flag=True, help="Skip the sync cycle on startup."
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: Optional[str], no_initial_sync: bool
) -> None:
    """
    Run the synchronization daemon in the foreground.

    Handles SIGTERM/SIGINT for graceful shutdown and writes a PID file so
    only one daemon runs per configuration directory.
    """
    from carddav_sync.daemon import (
        DaemonAlreadyRunningError,
        DaemonError,
        DaemonScheduler,
        parse_interval,
        run_due_syncs,
    )

    logger = get_logger(__name__)
    settings: Settings = ctx.obj["settings"]

    effective_interval = interval or settings.daemon_interval
    try:
        interval_seconds = parse_interval(effective_interval)
    except ValueError as e:
        _fail(str(e))

    engine = get_engine(ctx)
    scheduler = DaemonScheduler(
        interval=interval_seconds,
        pid_file=settings.daemon_pid_file,
        run_immediately=not no_initial_sync,
    )

    def sync_cycle() -> bool:
        report = run_due_syncs(
            engine,
            connection_delay=settings.connection_delay,
            cancel_event=scheduler.stop_event,
        )
        for connection_id, message in report.failed.items():
            logger.warning(f"{connection_id}: {message}")
        return report.ok

    scheduler.set_cycle_callback(sync_cycle)

    click.echo(f"Starting daemon with {effective_interval} interval (Ctrl+C to stop)...")
    if ctx.obj["verbose"]:
        click.echo(f"  Config directory: {ctx.obj['config_dir']}")
        click.echo(f"  PID file: {scheduler.pid_file}")

    try:
        scheduler.run()
    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'carddav-sync daemon stop' to stop the running daemon.")
        sys.exit(1)
    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        _fail(str(e))

    click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """Stop the running daemon."""
    from carddav_sync.daemon import DaemonScheduler, PIDFileError

    settings: Settings = ctx.obj["settings"]
    try:
        stopped = DaemonScheduler.stop_running_daemon(settings.daemon_pid_file)
    except PIDFileError as e:
        _fail(str(e))

    if stopped:
        click.echo(click.style("Stop signal sent to daemon.", fg="green"))
    else:
        click.echo("No running daemon found.")


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    from carddav_sync.daemon import DaemonScheduler, PIDFileError

    settings: Settings = ctx.obj["settings"]
    try:
        pid = DaemonScheduler.get_running_pid(settings.daemon_pid_file)
    except PIDFileError as e:
        _fail(str(e))

    if pid is None:
        click.echo("Daemon: " + click.style("not running", fg="yellow"))
    else:
        click.echo("Daemon: " + click.style(f"running (PID {pid})", fg="green"))
    click.echo(f"PID file: {settings.daemon_pid_file}")
