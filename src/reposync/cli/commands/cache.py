"""Cache maintenance commands for CLI."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import typer
from rich.console import Console

from reposync.cli.formatting import cache_table, exit_with_error
from reposync.cli.main import app, load_service
from reposync.core.exceptions import RepoSyncError
from reposync.core.formatting import format_bytes


if TYPE_CHECKING:
    from reposync.core.models import BlockRelationshipStats, CacheEntry


cache_app = typer.Typer(
    help="Inspect and maintain the local cache.",
    no_args_is_help=True,
)
app.add_typer(cache_app, name="cache")


@cache_app.command()
def status() -> None:
    """Show cached identities and the total cache size."""
    service = load_service()

    async def run() -> tuple[list[CacheEntry], list[str], int, BlockRelationshipStats]:
        cache = service.cache
        return (
            await cache.identities(),
            await cache.shared_uris(),
            await cache.total_size(),
            await service.block_stats(),
        )

    try:
        entries, shared, size, stats = asyncio.run(run())
    except RepoSyncError as e:
        raise exit_with_error(e) from None

    if not entries:
        typer.echo("Cache is empty. Run 'reposync sync DID' to get started.")
        return

    console = Console(force_terminal=True)
    console.print(cache_table(entries))
    typer.echo(
        f"{len(entries)} identities, {len(shared)} shared list(s), "
        f"{format_bytes(size)} of {format_bytes(service.settings.cache_size_ceiling_bytes)}"
    )
    typer.echo(
        f"{stats.total_direct_blocks} direct block(s), about {stats.average_direct_blocks} "
        f"per identity; {stats.total_list_subscriptions} list subscription(s)"
    )


@cache_app.command()
def prune(
    max_bytes: int | None = typer.Argument(
        None,
        min=0,
        help="Size budget in bytes (default: the configured ceiling).",
    ),
) -> None:
    """Evict least recently synced identities until within budget."""
    service = load_service()
    try:
        removed = asyncio.run(service.prune(max_bytes))
    except RepoSyncError as e:
        raise exit_with_error(e) from None
    typer.echo(f"Pruned {removed} identit{'y' if removed == 1 else 'ies'}.")


@cache_app.command()
def sweep() -> None:
    """Remove shared lists no cached identity subscribes to."""
    service = load_service()
    try:
        removed = asyncio.run(service.sweep())
    except RepoSyncError as e:
        raise exit_with_error(e) from None
    typer.echo(f"Removed {removed} orphaned shared list(s).")


@cache_app.command()
def remove(did: str = typer.Argument(help="DID to remove from the cache.")) -> None:
    """Remove one identity from the cache."""
    service = load_service()
    try:
        removed = asyncio.run(service.remove(did))
    except RepoSyncError as e:
        raise exit_with_error(e) from None
    if not removed:
        typer.echo(f"'{did}' is not cached.")
        raise typer.Exit(1)
    typer.echo(f"Removed {did}.")


@cache_app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove everything from the cache."""
    if not yes:
        typer.confirm("Remove all cached state?", abort=True)
    service = load_service()
    try:
        asyncio.run(service.clear())
    except RepoSyncError as e:
        raise exit_with_error(e) from None
    typer.echo("Cache cleared.")
