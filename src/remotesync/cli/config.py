"""Configuration utilities for the remotesync CLI.

This module provides shared functions used across CLI commands: loading
endpoint files, picking an endpoint and running coroutines with uniform
error reporting.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click

from remotesync.core.config import EndpointConfig
from remotesync.core.errors import ConfigurationError, RemoteSyncError

T = TypeVar("T")

DEFAULT_CONFIG_FILE = ".remotesync.json"


def load_endpoints(path: Path) -> list[EndpointConfig]:
    """Load endpoint definitions from a JSON file.

    The file holds either one endpoint object or a list of them.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or malformed.
    """
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

    items = data if isinstance(data, list) else [data]
    endpoints = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Endpoint {index} in {path} is not an object")
        endpoints.append(EndpointConfig.from_dict(item).validate())
    if not endpoints:
        raise ConfigurationError(f"No endpoints defined in {path}")
    return endpoints


def select_endpoint(endpoints: list[EndpointConfig], name: str | None = None) -> EndpointConfig:
    """Pick the endpoint called ``name``, or the first one.

    Raises:
        ConfigurationError: If no endpoint matches.
    """
    if name is None:
        return endpoints[0]
    for endpoint in endpoints:
        if name in (endpoint.name, endpoint.host, endpoint.identity):
            return endpoint
    known = ", ".join(e.display_name for e in endpoints)
    raise ConfigurationError(f"No endpoint named {name!r} (known: {known})")


def get_local_root(endpoint: EndpointConfig, config_path: Path) -> Path:
    """Local sync root: ``local_path`` relative to the config file, else its directory."""
    base = config_path.resolve().parent
    if endpoint.local_path:
        return (base / Path(endpoint.local_path).expanduser()).resolve()
    return base


def load_endpoint(config_path: Path, name: str | None) -> tuple[EndpointConfig, Path]:
    """Load the selected endpoint and its local root, exiting on bad config."""
    try:
        endpoint = select_endpoint(load_endpoints(config_path), name)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    return endpoint, get_local_root(endpoint, config_path)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a command coroutine, turning remotesync errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except RemoteSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
