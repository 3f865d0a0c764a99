"""Shared formatting helpers for CLI commands."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import typer
from rich.table import Table
from rich.text import Text

from reposync.core.formatting import decision_to_color, format_bytes


if TYPE_CHECKING:
    from reposync.core.exceptions import RepoSyncError
    from reposync.core.models import (
        BatchReport,
        CacheEntry,
        CachedDerivedState,
        MassOperationCluster,
        SyncOutcome,
    )


def format_timestamp(ms: int) -> str:
    """Format Unix milliseconds as a UTC date and time."""
    if ms <= 0:
        return "-"
    return datetime.fromtimestamp(ms / 1000, UTC).strftime("%Y-%m-%d %H:%M:%S")


def _format_decision(outcome: SyncOutcome) -> Text:
    """Color a sync decision, marking fallbacks and failures."""
    if not outcome.ok or outcome.decision is None:
        return Text("failed", style=decision_to_color("failed"))
    label = outcome.decision.value
    if outcome.fell_back_to_full:
        label = f"{label} (fallback)"
    color = decision_to_color(outcome.decision.value)
    return Text(label, style=color) if color else Text(label)


def outcomes_table(report: BatchReport) -> Table:
    """Build a table with one row per synced identity."""
    table = Table()
    table.add_column("DID")
    table.add_column("Result")
    table.add_column("Blocks", justify="right")
    table.add_column("Follows", justify="right")
    table.add_column("Subscribed lists", justify="right")
    table.add_column("Skipped", justify="right")

    for outcome in report.outcomes:
        state = outcome.state
        table.add_row(
            outcome.identity,
            _format_decision(outcome),
            str(len(state.direct_blocks)) if state else "-",
            str(len(state.follows)) if state else "-",
            str(len(state.subscribed_lists)) if state else "-",
            str(outcome.skipped_entries),
        )
    return table


def clusters_table(clusters: tuple[MassOperationCluster, ...]) -> Table:
    """Build a table of mass-operation clusters."""
    table = Table()
    table.add_column("Type")
    table.add_column("Count", justify="right")
    table.add_column("Start (UTC)")
    table.add_column("End (UTC)")
    table.add_column("Lists")

    for cluster in clusters:
        list_names = sorted({op.list_name for op in cluster.operations if op.list_name})
        table.add_row(
            cluster.type,
            str(cluster.count),
            format_timestamp(cluster.start_time_ms),
            format_timestamp(cluster.end_time_ms),
            ", ".join(list_names),
        )
    return table


def cache_table(entries: list[CacheEntry]) -> Table:
    """Build a table of cached identities."""
    table = Table()
    table.add_column("DID")
    table.add_column("Handle")
    table.add_column("Revision")
    table.add_column("Last sync (UTC)")
    table.add_column("Blocks", justify="right")
    table.add_column("Follows", justify="right")
    table.add_column("Archive", justify="right")

    for entry in entries:
        table.add_row(
            entry.state.identity,
            entry.state.handle or "-",
            entry.state.repo_rev or "-",
            format_timestamp(entry.state.last_sync_ms),
            str(len(entry.state.direct_blocks)),
            str(len(entry.state.follows)),
            format_bytes(entry.revision.size_bytes),
        )
    return table


def identities_table(states: list[CachedDerivedState], title: str | None = None) -> Table:
    """Build a table of cached identities from their derived state."""
    table = Table(title=title)
    table.add_column("DID")
    table.add_column("Handle")
    table.add_column("Last sync (UTC)")
    table.add_column("Blocks", justify="right")

    for state in states:
        table.add_row(
            state.identity,
            state.handle or "-",
            format_timestamp(state.last_sync_ms),
            str(len(state.direct_blocks)),
        )
    return table


def exit_with_error(error: RepoSyncError) -> typer.Exit:
    """Print an error and its recovery hint, returning the Exit to raise."""
    typer.echo(f"Error: {error}", err=True)
    if error.recovery_hint:
        typer.echo(f"Hint: {error.recovery_hint}", err=True)
    return typer.Exit(1)
