"""Sync commands for the remotesync CLI.

Commands:
- sync: One-way or two-way directory sync
- watch: Propagate local changes as they happen
- upload-changed: Upload the files git reports as changed
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from remotesync.cli.config import load_endpoint, run_async
from remotesync.connection.registry import ConnectionRegistry
from remotesync.core.config import SyncMode
from remotesync.sync.changeset import GitChangeSet
from remotesync.sync.engine import TransferEngine
from remotesync.sync.types import SyncResult
from remotesync.sync.watcher import WatcherManager


def print_result(result: SyncResult) -> None:
    """Print a SyncResult the way every sync command reports it."""
    for path in result.uploaded:
        click.echo(f"  ↑ {path}")
    for path in result.downloaded:
        click.echo(f"  ↓ {path}")
    for path in result.deleted:
        click.echo(f"  - {path}")

    if result.conflicts:
        click.echo(click.style("\nConflicts (newer side kept):", fg="yellow"))
        for path in result.conflicts:
            click.echo(f"  ! {path}")

    if result.failed:
        click.echo(click.style("\nErrors:", fg="red"))
        for path, error in result.failed:
            click.echo(f"  ✗ {path}: {error}")

    if result.cancelled:
        click.echo(click.style("Cancelled.", fg="yellow"))

    if result.attempted == 0:
        click.echo("Everything is up to date.")
    else:
        click.echo(
            f"\nDone: {len(result.uploaded)} uploaded, {len(result.downloaded)} downloaded, "
            f"{len(result.deleted)} deleted, {len(result.failed)} failed."
        )


@click.command()
@click.option("--name", "-n", help="Endpoint name (defaults to the first endpoint).")
@click.option(
    "--direction",
    "-d",
    type=click.Choice(["up", "down", "both"]),
    default="up",
    show_default=True,
    help="up: local to remote, down: remote to local, both: newer side wins.",
)
@click.option("--delete", is_flag=True, help="Delete files missing on the source side.")
@click.pass_context
def sync(ctx: click.Context, name: str | None, direction: str, delete: bool) -> None:
    """Synchronize the local root with the endpoint's remote path."""
    config_path: Path = ctx.obj["config_path"]
    endpoint, local_root = load_endpoint(config_path, name)
    delete = delete or endpoint.sync_mode is SyncMode.FULL

    async def run() -> SyncResult:
        async with ConnectionRegistry() as registry:
            connection = await registry.ensure_connection(endpoint)
            engine = TransferEngine()
            operation = {
                "up": engine.sync_to_remote,
                "down": engine.sync_to_local,
                "both": engine.sync_both_ways,
            }[direction]
            return await operation(
                connection,
                local_root,
                endpoint.remote_path,
                ignore=endpoint.ignore,
                delete=delete,
            )

    click.echo(f"Syncing {local_root} with {endpoint.display_name}:{endpoint.remote_path}...")
    result = run_async(run())
    print_result(result)
    if result.failed:
        ctx.exit(1)


@click.command()
@click.option("--name", "-n", help="Endpoint name (defaults to the first endpoint).")
@click.pass_context
def watch(ctx: click.Context, name: str | None) -> None:
    """Upload local changes as they happen (Ctrl+C to stop)."""
    config_path: Path = ctx.obj["config_path"]
    endpoint, local_root = load_endpoint(config_path, name)

    async def run() -> None:
        async with ConnectionRegistry() as registry:
            await registry.ensure_connection(endpoint)
            manager = WatcherManager(registry, TransferEngine())
            manager.start(endpoint, local_root)
            try:
                await asyncio.Event().wait()
            finally:
                await manager.aclose()

    click.echo(f"Watching {local_root} for {endpoint.display_name}... (Ctrl+C to stop)")
    try:
        run_async(run())
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@click.command("upload-changed")
@click.option("--name", "-n", help="Endpoint name (defaults to the first endpoint).")
@click.pass_context
def upload_changed(ctx: click.Context, name: str | None) -> None:
    """Upload only the files git reports as changed."""
    config_path: Path = ctx.obj["config_path"]
    endpoint, local_root = load_endpoint(config_path, name)

    async def run() -> SyncResult:
        async with ConnectionRegistry() as registry:
            connection = await registry.ensure_connection(endpoint)
            return await TransferEngine().upload_changed(
                connection,
                GitChangeSet(local_root),
                local_root,
                endpoint.remote_path,
                ignore=endpoint.ignore,
            )

    result = run_async(run())
    print_result(result)
    if result.failed:
        ctx.exit(1)
