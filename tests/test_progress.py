"""
Tests for progress reporting.
"""

import logging

from carddav_sync.sync.progress import (
    ItemOutcome,
    LoggingProgressReporter,
    NullProgressReporter,
    OutcomeKind,
    RunTotals,
)


def outcome(kind, reason=None):
    return ItemOutcome(
        pending_id=1, uid="u1", display_name="Alice", kind=kind, reason=reason
    )


class TestRunTotals:
    """Tests for RunTotals."""

    def test_add_returns_new_totals(self):
        totals = RunTotals(total=3)
        updated = totals.add(OutcomeKind.IMPORTED).add(OutcomeKind.ERRORED)

        assert totals.processed == 0
        assert updated.imported == 1
        assert updated.errored == 1
        assert updated.processed == 2
        assert updated.total == 3


class TestReporters:
    """Tests for the built-in reporters."""

    def test_null_reporter_accepts_events(self):
        reporter = NullProgressReporter()
        reporter.on_item(outcome(OutcomeKind.IMPORTED), RunTotals(total=1, imported=1))
        reporter.on_complete(RunTotals(total=1, imported=1))

    def test_logging_reporter(self, caplog):
        """Test periodic progress lines and warnings for failed items."""
        reporter = LoggingProgressReporter(every=2)

        with caplog.at_level(logging.DEBUG, logger="carddav_sync.sync.progress"):
            totals = RunTotals(total=2).add(OutcomeKind.IMPORTED)
            reporter.on_item(outcome(OutcomeKind.IMPORTED), totals)
            totals = totals.add(OutcomeKind.ERRORED)
            reporter.on_item(outcome(OutcomeKind.ERRORED, "Invalid vCard"), totals)
            reporter.on_complete(totals)

        messages = [record.getMessage() for record in caplog.records]
        assert "Failed to import Alice: Invalid vCard" in messages
        assert "Processed 2/2 contacts" in messages
        assert messages[-1].startswith("Reconciled 2 contacts: 1 imported")

    def test_conflicts_are_counted_and_warned(self, caplog):
        reporter = LoggingProgressReporter(every=10)
        totals = RunTotals(total=1).add(OutcomeKind.CONFLICTED)

        with caplog.at_level(logging.INFO, logger="carddav_sync.sync.progress"):
            reporter.on_item(outcome(OutcomeKind.CONFLICTED, "Changed on both sides"), totals)
            reporter.on_complete(totals)

        assert totals.conflicted == 1
        assert totals.processed == 1
        messages = [record.getMessage() for record in caplog.records]
        assert "Conflict on Alice: Changed on both sides" in messages
        assert "1 conflicts" in messages[-1]
