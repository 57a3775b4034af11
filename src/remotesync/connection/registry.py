"""Registry of live connections keyed by endpoint identity.

This module provides:
- ConnectionRegistry: Lazily connects, caches and evicts Connections
- ByConfig, ByActiveConnections, Explicit: Request variants for ``resolve``
- create_transport: Default transport factory (SFTP or FTP/FTPS)

The registry is a plain object owned by the caller. It is only touched from
the event loop thread, so the connection map needs no lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from remotesync.connection.base import Connection
from remotesync.connection.ftp import FTPTransport
from remotesync.connection.retry import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    retry_with_backoff,
)
from remotesync.connection.sftp import SFTPTransport
from remotesync.core.config import Protocol
from remotesync.core.errors import ConfigurationError

if TYPE_CHECKING:
    from types import TracebackType

    from remotesync.connection.transport import Transport, TransportFactory
    from remotesync.core.config import EndpointConfig

logger = logging.getLogger(__name__)


def create_transport(config: EndpointConfig) -> Transport:
    """Build the blocking transport matching the endpoint's protocol."""
    if config.protocol is Protocol.SFTP:
        return SFTPTransport(config)
    return FTPTransport(config)


@dataclass(frozen=True)
class ByConfig:
    """Target the endpoint described by ``config`` (connecting if needed)."""

    config: EndpointConfig


@dataclass(frozen=True)
class ByActiveConnections:
    """Target every currently connected endpoint."""


@dataclass(frozen=True)
class Explicit:
    """Target a connection the caller already holds."""

    config: EndpointConfig
    connection: Connection


ConnectionRequest = ByConfig | ByActiveConnections | Explicit


class ConnectionRegistry:
    """Owns the live Connections of a session.

    Usage:
        async with ConnectionRegistry() as registry:
            conn = await registry.ensure_connection(config)
            entries = await conn.list(config.remote_path)
    """

    def __init__(
        self,
        transport_factory: TransportFactory | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
    ) -> None:
        """Initialize the registry.

        Args:
            transport_factory: Builds a Transport for an endpoint. Defaults to
                ``create_transport``.
            max_retries: Connect retries for transient transport failures.
            initial_backoff: First retry delay in seconds.
            max_backoff: Upper bound for the retry delay in seconds.
        """
        self._transport_factory = transport_factory or create_transport
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._connections: dict[str, tuple[EndpointConfig, Connection]] = {}
        self._connecting: dict[str, asyncio.Task[Connection]] = {}
        self._primary: str | None = None

    async def __aenter__(self) -> ConnectionRegistry:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def ensure_connection(self, config: EndpointConfig) -> Connection:
        """Return the live Connection for ``config``, connecting if needed.

        A cached connection that has gone stale is closed and replaced.
        Concurrent callers for the same endpoint share one connect attempt.

        Raises:
            ConfigurationError: If the config is invalid.
            AuthenticationError: If credentials are rejected (not retried).
            TransportError: If connecting still fails after the retries.
        """
        config.validate()
        key = config.identity

        cached = self._connections.get(key)
        if cached is not None:
            if cached[1].connected:
                return cached[1]
            logger.info(f"Replacing stale connection to {config.display_name}")
            self._evict(key)
            await cached[1].disconnect()

        task = self._connecting.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._open(config))
            self._connecting[key] = task
            task.add_done_callback(lambda done: self._forget_attempt(key, done))
        return await asyncio.shield(task)

    def _forget_attempt(self, key: str, task: asyncio.Task[Connection]) -> None:
        if self._connecting.get(key) is task:
            del self._connecting[key]
        # Retrieve the exception so an attempt nobody awaits is not reported
        if not task.cancelled():
            task.exception()

    async def _open(self, config: EndpointConfig) -> Connection:
        async def attempt() -> Connection:
            connection = Connection(config, self._transport_factory(config))
            await connection.connect()
            return connection

        connection = await retry_with_backoff(
            attempt,
            max_retries=self._max_retries,
            initial_backoff=self._initial_backoff,
            max_backoff=self._max_backoff,
        )
        self._connections[config.identity] = (config, connection)
        self._primary = config.identity
        return connection

    def get_connection(self, config: EndpointConfig) -> Connection | None:
        """Return the cached live Connection without connecting."""
        cached = self._connections.get(config.identity)
        if cached is None or not cached[1].connected:
            return None
        return cached[1]

    def is_connected(self, config: EndpointConfig) -> bool:
        return self.get_connection(config) is not None

    def list_active(self) -> list[tuple[EndpointConfig, Connection]]:
        return [entry for entry in self._connections.values() if entry[1].connected]

    def set_primary(self, config: EndpointConfig) -> None:
        """Make ``config`` the target for requests without explicit context.

        Raises:
            ConfigurationError: If the endpoint has no cached connection.
        """
        if config.identity not in self._connections:
            raise ConfigurationError(f"No connection for {config.display_name}")
        self._primary = config.identity

    def get_primary(self) -> tuple[EndpointConfig, Connection] | None:
        if self._primary is None:
            return None
        return self._connections.get(self._primary)

    async def resolve(
        self, request: ConnectionRequest
    ) -> list[tuple[EndpointConfig, Connection]]:
        """Map a request variant to the connections it targets."""
        if isinstance(request, ByConfig):
            connection = await self.ensure_connection(request.config)
            return [(request.config, connection)]
        if isinstance(request, ByActiveConnections):
            return self.list_active()
        if isinstance(request, Explicit):
            return [(request.config, request.connection)]
        raise TypeError(f"Unknown connection request: {request!r}")

    def _evict(self, key: str) -> Connection | None:
        entry = self._connections.pop(key, None)
        if self._primary == key:
            self._primary = None
        return entry[1] if entry else None

    async def disconnect(self, config: EndpointConfig | None = None) -> None:
        """Close one endpoint's connection, or every connection when None."""
        keys = [config.identity] if config is not None else list(self._connections)
        for key in keys:
            connection = self._evict(key)
            if connection is not None:
                await connection.disconnect()

    async def close(self) -> None:
        """Cancel pending connects and disconnect everything."""
        for task in list(self._connecting.values()):
            task.cancel()
        await self.disconnect()

    def __len__(self) -> int:
        return len(self._connections)
