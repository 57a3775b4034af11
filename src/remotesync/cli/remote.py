"""Remote inspection commands for the remotesync CLI.

Commands:
- ls: List a remote directory
- exec: Run a shell command on an SFTP endpoint
"""

from __future__ import annotations

import time
from pathlib import Path

import click

from remotesync.cli.config import load_endpoint, run_async
from remotesync.connection.registry import ConnectionRegistry
from remotesync.core.types import ExecResult, FileEntry, FileType, join_remote_path


def format_entry(entry: FileEntry) -> str:
    """One ``ls -l`` style line for a remote entry."""
    kind = {FileType.DIRECTORY: "d", FileType.SYMLINK: "l"}.get(entry.type, "-")
    permissions = entry.permissions or "?" * 9
    mtime = time.strftime("%Y-%m-%d %H:%M", time.localtime(entry.mtime)) if entry.mtime else "-"
    return f"{kind}{permissions} {entry.size:>10} {mtime}  {entry.name}"


@click.command()
@click.argument("path", required=False)
@click.option("--name", "-n", help="Endpoint name (defaults to the first endpoint).")
@click.pass_context
def ls(ctx: click.Context, path: str | None, name: str | None) -> None:
    """List PATH on the remote (relative paths start at the remote root)."""
    config_path: Path = ctx.obj["config_path"]
    endpoint, _ = load_endpoint(config_path, name)
    target = endpoint.remote_path
    if path:
        target = path if path.startswith("/") else join_remote_path(endpoint.remote_path, path)

    async def run() -> list[FileEntry]:
        async with ConnectionRegistry() as registry:
            connection = await registry.ensure_connection(endpoint)
            return await connection.list(target)

    entries = run_async(run())
    for entry in sorted(entries, key=lambda e: (not e.is_dir, e.name)):
        click.echo(format_entry(entry))


@click.command("exec")
@click.argument("command")
@click.option("--name", "-n", help="Endpoint name (defaults to the first endpoint).")
@click.pass_context
def exec_command(ctx: click.Context, command: str, name: str | None) -> None:
    """Run COMMAND on the remote host and exit with its status."""
    config_path: Path = ctx.obj["config_path"]
    endpoint, _ = load_endpoint(config_path, name)

    async def run() -> ExecResult:
        async with ConnectionRegistry() as registry:
            connection = await registry.ensure_connection(endpoint)
            return await connection.exec(command)

    result = run_async(run())
    if result.stdout:
        click.echo(result.stdout, nl=not result.stdout.endswith("\n"))
    if result.stderr:
        click.echo(result.stderr, err=True, nl=not result.stderr.endswith("\n"))
    ctx.exit(result.code)
