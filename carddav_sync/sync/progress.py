"""
Progress reporting for reconciliation runs.

The engine calls on_item() after every staged record and on_complete() once
at the end. Reporters only observe; they make no decisions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    IMPORTED = "imported"
    UPDATED = "updated"
    RESTORED = "restored"
    SKIPPED = "skipped"
    ERRORED = "errored"
    CONFLICTED = "conflicted"


@dataclass(frozen=True)
class ItemOutcome:
    """
    What happened to one staged record.

    Attributes:
        pending_id: Id of the pending import
        uid: The record's uid
        display_name: Name shown to the user
        kind: Outcome category
        person_id: Local contact id, when one was written or matched
        reason: Explanation for skipped, errored and conflicted items
    """

    pending_id: int
    uid: str
    display_name: str
    kind: OutcomeKind
    person_id: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class RunTotals:
    """Running counts for one reconciliation run."""

    total: int = 0
    imported: int = 0
    updated: int = 0
    restored: int = 0
    skipped: int = 0
    errored: int = 0
    conflicted: int = 0

    @property
    def processed(self) -> int:
        return (
            self.imported
            + self.updated
            + self.restored
            + self.skipped
            + self.errored
            + self.conflicted
        )

    def add(self, kind: OutcomeKind) -> RunTotals:
        """Return new totals with one more item of the given kind."""
        field_name = kind.value
        return replace(self, **{field_name: getattr(self, field_name) + 1})


class ProgressReporter(Protocol):
    """Observer notified as a run progresses."""

    def on_item(self, outcome: ItemOutcome, totals: RunTotals) -> None: ...

    def on_complete(self, totals: RunTotals) -> None: ...


class NullProgressReporter:
    """Reporter that ignores all events."""

    def on_item(self, outcome: ItemOutcome, totals: RunTotals) -> None:
        pass

    def on_complete(self, totals: RunTotals) -> None:
        pass


class LoggingProgressReporter:
    """
    Reporter that logs each outcome at DEBUG and a periodic summary at INFO.

    Args:
        every: Log a progress line every N processed items
    """

    def __init__(self, every: int = 50):
        self.every = every

    def on_item(self, outcome: ItemOutcome, totals: RunTotals) -> None:
        detail = f": {outcome.reason}" if outcome.reason else ""
        logger.debug(
            f"{outcome.kind.value} {outcome.display_name} ({outcome.uid}){detail}"
        )
        if outcome.kind is OutcomeKind.CONFLICTED:
            logger.warning(f"Conflict on {outcome.display_name}: {outcome.reason}")
        elif outcome.kind is OutcomeKind.ERRORED:
            logger.warning(f"Failed to import {outcome.display_name}: {outcome.reason}")
        if totals.processed % self.every == 0:
            logger.info(f"Processed {totals.processed}/{totals.total} contacts")

    def on_complete(self, totals: RunTotals) -> None:
        logger.info(
            f"Reconciled {totals.processed} contacts: {totals.imported} imported, "
            f"{totals.updated} updated, {totals.restored} restored, "
            f"{totals.skipped} skipped, {totals.conflicted} conflicts, "
            f"{totals.errored} errors"
        )
