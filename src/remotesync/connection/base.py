"""Serialized connection to one remote endpoint.

This module provides:
- Connection: Async facade over a blocking Transport with a private FIFO
- ConnectionStatus: Snapshot of a connection's state
- ProgressListener: Callback type for advisory transfer progress

Every operation is funneled through ``enqueue``. Callers may issue operations
concurrently; a single drain task executes them one at a time in submission
order, because the underlying protocol sessions cannot interleave commands.
A failing operation rejects only its own future.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from remotesync.core.errors import TransportError
from remotesync.core.types import (
    ExecResult,
    FileEntry,
    TransferProgress,
    normalize_remote_path,
    parse_mode,
)

if TYPE_CHECKING:
    from remotesync.connection.transport import ByteProgress, Transport
    from remotesync.core.config import EndpointConfig, Protocol

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressListener = Callable[[TransferProgress], None]
Operation = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ConnectionStatus:
    """Snapshot of a connection's state."""

    connected: bool
    host: str
    protocol: Protocol
    current_path: str


class Connection:
    """A session bound to one remote endpoint.

    The connection never reconnects by itself: after a TransportError it is
    marked disconnected and the registry replaces it.
    """

    def __init__(self, config: EndpointConfig, transport: Transport) -> None:
        """Initialize the connection.

        Args:
            config: Endpoint this session is bound to.
            transport: Blocking protocol adapter.
        """
        self._config = config
        self._transport = transport
        self._connected = False
        self._current_path = normalize_remote_path(config.remote_path)
        self._queue: deque[tuple[Operation, asyncio.Future[Any]]] = deque()
        self._draining = False
        self._drain_task: asyncio.Task[None] | None = None
        self._listeners: list[ProgressListener] = []

    @property
    def config(self) -> EndpointConfig:
        return self._config

    @property
    def identity(self) -> str:
        return self._config.identity

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def current_path(self) -> str:
        return self._current_path

    @property
    def pending(self) -> int:
        """Number of operations waiting to run."""
        return len(self._queue)

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=self._connected,
            host=self._config.host,
            protocol=self._config.protocol,
            current_path=self._current_path,
        )

    def __repr__(self) -> str:
        state = "connected" if self._connected else "disconnected"
        return f"Connection({self._config.identity!r}, {state})"

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, operation: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Append an operation to the FIFO and return its future immediately.

        Must be called from the event loop thread.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._queue.append((operation, future))
        if not self._draining:
            # Flag is set before the task exists so a second enqueue in the
            # same tick cannot start another drain loop.
            self._draining = True
            self._drain_task = loop.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        current: asyncio.Future[Any] | None = None
        try:
            while self._queue:
                operation, current = self._queue.popleft()
                if current.cancelled():
                    continue
                try:
                    result = await operation()
                except Exception as e:
                    if not current.done():
                        current.set_exception(e)
                else:
                    if not current.done():
                        current.set_result(result)
        finally:
            # Only leaves work behind if the drain task itself was cancelled
            if current is not None and not current.done():
                current.cancel()
            while self._queue:
                _, future = self._queue.popleft()
                future.cancel()
            self._draining = False
            self._drain_task = None

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking transport call on a worker thread."""
        try:
            return await asyncio.to_thread(func, *args)
        except TransportError:
            self._connected = False
            raise

    def _submit(self, func: Callable[..., T], *args: Any) -> asyncio.Future[T]:
        async def operation() -> T:
            if not self._connected:
                raise TransportError(f"Not connected to {self._config.display_name}")
            return await self._call(func, *args)

        return self.enqueue(operation)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit_progress(
        self, event: TransferProgress, extra: ProgressListener | None
    ) -> None:
        listeners = list(self._listeners)
        if extra is not None:
            listeners.append(extra)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("Progress listener failed", exc_info=True)

    def _progress_callback(
        self, filename: str, extra: ProgressListener | None
    ) -> ByteProgress:
        """Build a thread-safe byte callback that posts events to the loop."""
        loop = asyncio.get_running_loop()

        def callback(transferred: int, total: int) -> None:
            event = TransferProgress(filename=filename, transferred=transferred, total=total)
            loop.call_soon_threadsafe(self._emit_progress, event, extra)

        return callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the session. Idempotent while connected."""

        async def operation() -> None:
            if self._connected:
                return
            await self._call(self._transport.connect)
            self._connected = True
            logger.info(
                f"Connected to {self._config.display_name} "
                f"({self._config.protocol.value}://{self._config.host}:{self._config.effective_port})"
            )

        await self.enqueue(operation)

    async def disconnect(self) -> None:
        """Close the session after already-queued operations finish."""

        async def operation() -> None:
            was_connected = self._connected
            self._connected = False
            try:
                await asyncio.to_thread(self._transport.close)
            except Exception as e:
                logger.warning(f"Error closing {self._config.display_name}: {e}")
            if was_connected:
                logger.info(f"Disconnected from {self._config.display_name}")

        await self.enqueue(operation)

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    async def list(self, path: str) -> list[FileEntry]:
        return await self._submit(self._transport.list, normalize_remote_path(path))

    async def stat(self, path: str) -> FileEntry | None:
        """Return the entry for ``path`` or None if it does not exist."""
        return await self._submit(self._transport.stat, normalize_remote_path(path))

    async def exists(self, path: str) -> bool:
        return await self.stat(path) is not None

    async def download(
        self,
        remote_path: str,
        local_path: Path | str,
        on_progress: ProgressListener | None = None,
    ) -> None:
        local_path = Path(local_path)
        callback = self._progress_callback(local_path.name, on_progress)
        await self._submit(
            self._transport.download, normalize_remote_path(remote_path), local_path, callback
        )

    async def upload(
        self,
        local_path: Path | str,
        remote_path: str,
        on_progress: ProgressListener | None = None,
    ) -> None:
        local_path = Path(local_path)
        callback = self._progress_callback(local_path.name, on_progress)
        await self._submit(
            self._transport.upload, local_path, normalize_remote_path(remote_path), callback
        )

    async def delete(self, path: str) -> None:
        await self._submit(self._transport.delete, normalize_remote_path(path))

    async def mkdir(self, path: str) -> None:
        """Ensure a remote directory (and its parents) exists."""
        await self._submit(self._transport.mkdir, normalize_remote_path(path))

    async def rmdir(self, path: str, recursive: bool = False) -> None:
        await self._submit(self._transport.rmdir, normalize_remote_path(path), recursive)

    async def rename(self, old_path: str, new_path: str) -> None:
        await self._submit(
            self._transport.rename,
            normalize_remote_path(old_path),
            normalize_remote_path(new_path),
        )

    async def chmod(self, path: str, mode: int | str) -> None:
        await self._submit(self._transport.chmod, normalize_remote_path(path), parse_mode(mode))

    async def read_file(self, path: str) -> bytes:
        return await self._submit(self._transport.read_file, normalize_remote_path(path))

    async def write_file(self, path: str, content: bytes | str) -> None:
        data = content.encode("utf-8") if isinstance(content, str) else content
        await self._submit(self._transport.write_file, normalize_remote_path(path), data)

    async def exec(self, command: str) -> ExecResult:
        """Run a shell command on the endpoint (SFTP endpoints only).

        Raises:
            CapabilityError: If the protocol has no shell.
        """
        return await self._submit(self._transport.exec, command)
