"""CLI commands for reposync."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import typer
from rich.console import Console

from reposync.core.exceptions import RepoSyncError


if TYPE_CHECKING:
    from reposync.core.models import BatchReport, CachedDerivedState, MassOperationScan
    from reposync.core.services import RepoSync


app = typer.Typer(
    name="reposync",
    help="Sync account repositories into a size-bounded local cache.",
    no_args_is_help=True,
)


@app.callback()
def configure(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show log messages from the sync engine.",
    ),
) -> None:
    """Configure logging for all commands."""
    if verbose:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        )


def load_service() -> RepoSync:
    """Create the sync service for the current project.

    Raises:
        typer.Exit: If the project configuration is invalid.
    """
    from reposync.cli.formatting import exit_with_error
    from reposync.core.services import RepoSync

    try:
        return RepoSync.from_directory()
    except RepoSyncError as e:
        raise exit_with_error(e) from None


@app.command()
def sync(
    dids: list[str] = typer.Argument(help="DIDs of the accounts to sync."),
    pds: str | None = typer.Option(
        None,
        "--pds",
        help="PDS base URL tried before the fallback host.",
    ),
    handle: str | None = typer.Option(
        None,
        "--handle",
        help="Handle to store with the state (single DID only).",
    ),
    resolve_lists: bool = typer.Option(
        False,
        "--resolve-lists",
        help="Also fetch the members of subscribed blocklists.",
    ),
) -> None:
    """Sync one or more repositories, incrementally when possible."""
    from reposync import RichProgressReporter
    from reposync.cli.formatting import exit_with_error, outcomes_table
    from reposync.core.models import Identity

    if handle and len(dids) > 1:
        typer.echo("Error: --handle can only be used with a single DID.")
        raise typer.Exit(1)

    try:
        identities = [Identity(did, handle=handle or "", endpoint=pds) for did in dids]
    except ValueError as e:
        typer.echo(f"Error: {e}")
        raise typer.Exit(1) from None

    service = load_service()

    async def run() -> tuple[BatchReport, int]:
        async with service:
            with RichProgressReporter() as progress:
                report = await service.sync_many(identities, progress=progress)
                resolved = 0
                if resolve_lists:
                    for outcome in report.succeeded:
                        lists = await service.resolve_subscribed_lists(
                            outcome.identity, progress=progress
                        )
                        resolved += len(lists)
            return report, resolved

    try:
        report, resolved = asyncio.run(run())
    except RepoSyncError as e:
        raise exit_with_error(e) from None

    console = Console(force_terminal=True)
    console.print(outcomes_table(report))
    if resolve_lists:
        typer.echo(f"Resolved {resolved} subscribed list(s).")
    for message in report.messages():
        typer.echo(message, err=True)
    if report.failed:
        raise typer.Exit(1)


@app.command()
def scan(
    did: str = typer.Argument(help="DID of the account to scan."),
    pds: str | None = typer.Option(
        None,
        "--pds",
        help="PDS base URL tried before the fallback host.",
    ),
    window: int | None = typer.Option(
        None,
        "--window",
        "-w",
        min=1,
        help="Window length in minutes (default from settings).",
    ),
    min_count: int | None = typer.Option(
        None,
        "--min-count",
        "-n",
        min=1,
        help="Operations needed in a window (default from settings).",
    ),
) -> None:
    """Detect mass blocks, follows and list additions in a repository."""
    from reposync import RichProgressReporter
    from reposync.cli.formatting import clusters_table, exit_with_error
    from reposync.core.models import Identity

    service = load_service()

    async def run() -> MassOperationScan:
        async with service:
            with RichProgressReporter() as progress:
                return await service.scan_mass_operations(
                    Identity(did, endpoint=pds),
                    window_minutes=window,
                    min_count=min_count,
                    progress=progress,
                )

    try:
        result = asyncio.run(run())
    except RepoSyncError as e:
        raise exit_with_error(e) from None

    counts = ", ".join(
        f"{count} {op_type}" for op_type, count in result.operation_counts.items()
    )
    typer.echo(f"Operations: {counts}")
    if not result.clusters:
        typer.echo("No mass operations found.")
        return

    console = Console(force_terminal=True)
    console.print(clusters_table(result.clusters))


@app.command()
def blockers(
    dids: list[str] = typer.Argument(help="DIDs of the profiles to look up."),
    direct_only: bool = typer.Option(
        False,
        "--direct-only",
        help="Ignore blocks made through subscribed blocklists.",
    ),
) -> None:
    """Show which synced accounts block a profile, using only the cache.

    With several DIDs, lists the accounts that block all of them.
    """
    from reposync.cli.formatting import exit_with_error, identities_table

    service = load_service()
    include_lists = not direct_only

    async def run() -> tuple[list[CachedDerivedState], list[CachedDerivedState]]:
        if len(dids) > 1:
            return await service.common_blockers(dids, include_lists), []
        found = await service.relationships(dids[0], include_lists)
        return list(found.blocked_by), list(found.blocking)

    try:
        blocked_by, blocking = asyncio.run(run())
    except RepoSyncError as e:
        raise exit_with_error(e) from None

    subject = dids[0] if len(dids) == 1 else f"all {len(dids)} profiles"
    console = Console(force_terminal=True)
    if blocked_by:
        console.print(identities_table(blocked_by, title=f"Blocking {subject}"))
    else:
        typer.echo(f"No synced account blocks {subject}.")
    if blocking:
        console.print(identities_table(blocking, title=f"Blocked by {subject}"))


def main() -> None:
    """Entry point for the CLI."""
    app()
