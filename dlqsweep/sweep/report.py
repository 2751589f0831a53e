from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from ..core.enums import RunStatus

if TYPE_CHECKING:
    from .domain import DrainOutcome, RunReport

_STATUS_STYLES: dict[RunStatus, str] = {
    RunStatus.SUCCEEDED: "bold green",
    RunStatus.FAILED: "bold red",
    RunStatus.CANCELLED: "bold yellow",
}


def _outcome_state(outcome: DrainOutcome) -> str:
    if outcome.fatal:
        return "[red]fatal[/red]"
    if outcome.cancelled:
        return "[yellow]cancelled[/yellow]"
    if outcome.errors:
        return "[yellow]errors[/yellow]"
    return "[green]ok[/green]"


def build_outcome_table(report: RunReport) -> Table:
    title = "Dead-letter sweep (dry run)" if report.dry_run else "Dead-letter sweep"
    table = Table(title=title, show_footer=True)
    totals = report.totals

    table.add_column("Entity", footer="Total", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Depth", justify="right")
    table.add_column("Inspected", justify="right", footer=str(totals.messages_inspected))
    table.add_column("Removed", justify="right", footer=str(totals.messages_removed))
    table.add_column("Redriven", justify="right", footer=str(totals.messages_redriven))
    table.add_column("Skipped", justify="right", footer=str(totals.messages_skipped))
    table.add_column("Errors", justify="right", footer=str(totals.errors))
    table.add_column("State")

    for outcome in sorted(report.outcomes, key=lambda o: o.entity.path):
        table.add_row(
            outcome.entity.path,
            outcome.entity.kind,
            str(outcome.entity.dead_letter_depth),
            str(outcome.messages_inspected),
            str(outcome.messages_removed),
            str(outcome.messages_redriven),
            str(outcome.messages_skipped),
            str(len(outcome.errors)),
            _outcome_state(outcome),
        )
    return table


def build_error_table(report: RunReport) -> Table | None:
    rows = [*report.errors, *(error for outcome in report.outcomes for error in outcome.errors)]
    if not rows:
        return None

    table = Table(title="Errors", title_style="bold red")
    table.add_column("Kind", style="red")
    table.add_column("Entity", style="cyan")
    table.add_column("Message")
    table.add_column("Detail", overflow="fold")
    for error in rows:
        table.add_row(error.kind, error.entity_path or "-", error.message_id or "-", error.detail)
    return table


def render_report(report: RunReport, console: Console | None = None) -> None:
    """Print the per-entity table, any errors, and a one-line status."""
    console = console or Console()

    console.print(build_outcome_table(report))
    error_table = build_error_table(report)
    if error_table is not None:
        console.print(error_table)

    elapsed = (report.finished_at - report.started_at).total_seconds()
    style = _STATUS_STYLES[report.status]
    console.print(
        f"[{style}]{report.status.upper()}[/{style}] "
        f"{report.totals.entities_drained} of {report.entities_located} located entities drained "
        f"in {elapsed:.1f}s (cap {report.max_messages_per_entity} per entity, "
        f"concurrency {report.concurrency_limit}, exit code {report.exit_code})"
    )
