"""Unit tests for the rich run summary."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from rich.console import Console

from dlqsweep.core.enums import ErrorKind
from dlqsweep.sweep.domain import DrainOutcome, Entity, ErrorRecord, RunReport
from dlqsweep.sweep.report import build_error_table, render_report

STARTED = datetime(2026, 1, 1, tzinfo=UTC)


def _console() -> Console:
    return Console(record=True, width=200, force_terminal=False, color_system=None)


def _report(**kwargs) -> RunReport:
    return RunReport(
        dry_run=kwargs.pop("dry_run", False),
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=2),
        max_messages_per_entity=3,
        entities_located=2,
        **kwargs,
    )


class TestRenderReport:
    """Tests for render_report output."""

    def test_lists_entities_and_totals(self) -> None:
        """Test each entity gets a row and the footer sums the counts."""
        report = _report(
            outcomes=(
                DrainOutcome(entity=Entity.queue("orders-queue", 5), messages_inspected=3, messages_removed=3),
                DrainOutcome(
                    entity=Entity.subscription("billing", "retry-sub", 2),
                    messages_inspected=2,
                    messages_redriven=2,
                ),
            )
        )
        console = _console()

        render_report(report, console)

        text = console.export_text()
        assert "orders-queue" in text
        assert "billing/subscriptions/retry-sub" in text
        assert "Total" in text
        assert "SUCCEEDED" in text
        assert "exit code 0" in text

    def test_dry_run_title(self) -> None:
        console = _console()
        render_report(_report(dry_run=True), console)
        assert "(dry run)" in console.export_text()

    def test_errors_are_tabled(self) -> None:
        """Test run-level and entity errors are both listed."""
        report = _report(
            errors=(ErrorRecord(kind=ErrorKind.ENTITY_NOT_FOUND, detail="queue 'x' not found", entity_path="x"),),
            outcomes=(
                DrainOutcome(
                    entity=Entity.queue("orders-queue", 1),
                    messages_inspected=1,
                    errors=(ErrorRecord(kind=ErrorKind.LOCK_EXPIRED, detail="lock lost", message_id="m-1"),),
                ),
            ),
        )
        console = _console()

        render_report(report, console)

        text = console.export_text()
        assert "entity_not_found" in text
        assert "lock_expired" in text
        assert "m-1" in text
        assert "FAILED" in text

    def test_no_error_table_without_errors(self) -> None:
        assert build_error_table(_report()) is None
