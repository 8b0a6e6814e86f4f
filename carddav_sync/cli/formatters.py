"""CLI output formatting functions.

This module contains the click progress reporter and functions for displaying
reconciliation results, pending imports, conflicts and connection status on
the command line.
"""

from typing import TYPE_CHECKING, Any, Optional

import click

from carddav_sync.sync.progress import ItemOutcome, OutcomeKind, RunTotals

if TYPE_CHECKING:
    from carddav_sync.storage.staging import PendingImport
    from carddav_sync.sync.engine import DiscoveryResult, PushResult, RunResult

# Maximum number of item errors listed after a run
MAX_LISTED_ERRORS = 20


class ClickProgressReporter:
    """
    Progress reporter that echoes to the terminal.

    Failed items are printed as they happen; a progress line is printed every
    ``every`` items and once at the end.
    """

    def __init__(self, every: int = 25, quiet: bool = False):
        self.every = every
        self.quiet = quiet

    def on_item(self, outcome: ItemOutcome, totals: RunTotals) -> None:
        if outcome.kind in (OutcomeKind.ERRORED, OutcomeKind.CONFLICTED):
            click.echo(
                click.style(
                    f"  ! {outcome.display_name}: {outcome.reason}", fg="yellow"
                ),
                err=True,
            )
        if not self.quiet and totals.processed % self.every == 0:
            click.echo(f"  Processed {totals.processed}/{totals.total}")

    def on_complete(self, totals: RunTotals) -> None:
        if not self.quiet and totals.total:
            click.echo(f"  Processed {totals.processed}/{totals.total}")


def show_run_result(result: "RunResult") -> None:
    """
    Display the outcome of a reconciliation run.

    Args:
        result: RunResult returned by the engine
    """
    click.echo("\n=== Reconciliation Result ===")
    if result.discovery is not None:
        show_discovery(result.discovery)

    click.echo(f"Imported: {click.style(str(result.imported), fg='green')}")
    click.echo(f"Updated:  {click.style(str(result.updated), fg='cyan')}")
    click.echo(f"Restored: {click.style(str(result.restored), fg='cyan')}")
    click.echo(f"Skipped:  {result.skipped}")
    conflict_color = "yellow" if result.conflicted else None
    click.echo(f"Conflicts: {click.style(str(result.conflicted), fg=conflict_color)}")

    error_color = "red" if result.errors else None
    click.echo(f"Errors:   {click.style(str(result.errored), fg=error_color)}")

    if result.photos_saved or result.photos_failed:
        click.echo(
            f"Photos:   {result.photos_saved} saved, {result.photos_failed} failed"
        )

    if result.errors:
        click.echo("\nRecords that could not be imported:")
        for error in result.errors[:MAX_LISTED_ERRORS]:
            source = error.pending_id if error.pending_id is not None else error.href
            click.echo(f"  - [{source}] {error.display_name}: {error.reason}")
        if len(result.errors) > MAX_LISTED_ERRORS:
            click.echo(f"  ... and {len(result.errors) - MAX_LISTED_ERRORS} more")

    if result.conflicted:
        click.echo("Run 'carddav-sync conflicts' to review conflicting contacts.")
    if result.push is not None:
        show_push(result.push)

    if result.cancelled:
        click.echo(
            click.style("\nRun cancelled; remaining records are still pending.", fg="yellow")
        )
    if result.aborted:
        click.echo(
            click.style(f"\nRun aborted: {result.fatal_error}", fg="red"), err=True
        )


def show_discovery(discovery: "DiscoveryResult") -> None:
    listing = "full listing" if discovery.full_listing else "changes since last sync"
    click.echo(
        f"Server ({listing}): {discovery.listed} listed, "
        f"{discovery.unchanged} unchanged, {discovery.staged} staged, "
        f"{discovery.deleted_on_server} deleted"
    )
    if discovery.fetch_errors:
        click.echo(
            click.style(
                f"Could not fetch {len(discovery.fetch_errors)} card(s); "
                "they will be retried on the next pull.",
                fg="yellow",
            )
        )


def show_push(push: "PushResult") -> None:
    click.echo(
        f"Pushed to server: {push.pushed} updated, {push.created} created, "
        f"{push.stale} changed on server"
    )
    for error in push.errors[:MAX_LISTED_ERRORS]:
        click.echo(
            click.style(f"  ! {error.display_name} ({error.href}): {error.reason}", fg="yellow"),
            err=True,
        )


def show_conflicts(conflicts: list[dict[str, Any]]) -> None:
    """
    Display open conflicts as a table.

    Args:
        conflicts: Conflict rows from the database
    """
    if not conflicts:
        click.echo("No conflicts.")
        return

    click.echo(f"{'ID':>6}  {'CONNECTION':<16}  {'NAME':<32}  DETECTED")
    for conflict in conflicts:
        name = conflict["display_name"]
        if len(name) > 32:
            name = name[:29] + "..."
        click.echo(
            f"{conflict['id']:>6}  {conflict['connection_id']:<16}  {name:<32}  "
            f"{conflict['detected_at']}"
        )
    click.echo(f"\n{len(conflicts)} conflict(s)")


def show_pending(pending: list["PendingImport"]) -> None:
    """
    Display pending imports as a table.

    Args:
        pending: Pending imports of one scope
    """
    if not pending:
        click.echo("No pending imports.")
        return

    click.echo(f"{'ID':>6}  {'NAME':<32}  {'UID':<40}  DISCOVERED")
    for item in pending:
        name = item.display_name
        if len(name) > 32:
            name = name[:29] + "..."
        uid = item.uid if len(item.uid) <= 40 else item.uid[:37] + "..."
        marker = "" if item.notified_at else click.style(" (new)", fg="green")
        click.echo(f"{item.id:>6}  {name:<32}  {uid:<40}  {item.discovered_at}{marker}")
    click.echo(f"\n{len(pending)} pending import(s)")


def show_connection_status(
    connection: dict[str, Any],
    pending_count: int,
    mapping_count: int,
    locked: bool,
    lock_expires: Optional[str] = None,
) -> None:
    """
    Display the sync status of one connection.

    Args:
        connection: Connection row
        pending_count: Pending imports staged for the connection
        mapping_count: Contacts mapped to server cards
        locked: Whether a sync currently holds the connection's lock
        lock_expires: Human-readable lock expiry, if locked
    """
    enabled = (
        click.style("enabled", fg="green")
        if connection["sync_enabled"]
        else click.style("disabled", fg="yellow")
    )
    click.echo(f"{connection['id']} ({connection['username']} @ {connection['server_url']})")
    click.echo(
        f"  Owner: {connection['user_id']}  Auto-sync: {enabled}, "
        f"every {connection['auto_sync_interval']}s"
    )
    click.echo(f"  Last sync: {connection['last_sync_at'] or 'Never'}")
    click.echo(f"  Sync token: {'Yes' if connection['sync_token'] else 'No'}")
    click.echo(f"  Mapped contacts: {mapping_count}  Pending imports: {pending_count}")
    if connection["last_error"]:
        click.echo(
            click.style(
                f"  Last error ({connection['last_error_at']}): {connection['last_error']}",
                fg="red",
            )
        )
    if locked:
        suffix = f" until {lock_expires}" if lock_expires else ""
        click.echo(click.style(f"  Sync in progress (locked{suffix})", fg="yellow"))
