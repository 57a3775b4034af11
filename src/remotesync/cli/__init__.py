"""Command-line interface for remotesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- sync: Synchronize the local root with a remote endpoint
- watch: Upload local changes as they happen
- upload-changed: Upload the files git reports as changed
- ls: List a remote directory
- exec: Run a command on an SFTP endpoint
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from remotesync.cli.config import (
    DEFAULT_CONFIG_FILE,
    get_local_root,
    load_endpoint,
    load_endpoints,
    select_endpoint,
)
from remotesync.cli.remote import exec_command, ls
from remotesync.cli.sync import sync, upload_changed, watch

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool) -> None:
    """Route remotesync log records to stderr, replacing earlier handlers."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    remotesync_logger = logging.getLogger("remotesync")
    for existing in remotesync_logger.handlers[:]:
        remotesync_logger.removeHandler(existing)
    remotesync_logger.addHandler(handler)
    remotesync_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


@click.group()
@click.version_option(package_name="remotesync")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Endpoint file (JSON object or list of objects).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, verbose: bool) -> None:
    """remotesync - keep a local tree in sync with SFTP/FTP/FTPS servers."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# Sync commands
cli.add_command(sync)
cli.add_command(watch)
cli.add_command(upload_changed)

# Remote commands
cli.add_command(ls)
cli.add_command(exec_command)


def main() -> None:
    """Main entry point."""
    cli()


__all__ = [
    # Entry points
    "cli",
    "main",
    "setup_logging",
    # Config helpers
    "DEFAULT_CONFIG_FILE",
    "get_local_root",
    "load_endpoint",
    "load_endpoints",
    "select_endpoint",
]
