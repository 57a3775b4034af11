"""Local file system watcher with per-path debouncing.

This module provides:
- LocalChangeWatcher: Watches a local root with watchdog and pushes settled
  changes to one endpoint through the TransferEngine
- WatcherManager: One watcher per (local root, endpoint) pair

Each path moves Idle -> Debouncing -> Dispatching -> Idle. Every event for a
path resets its timer and overwrites the pending kind, so only the latest
kind is dispatched once the path has been quiet for the debounce window.
Observer threads never touch watcher state; they hand events to the event
loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from remotesync.core.config import WatcherSettings
from remotesync.core.errors import RemoteSyncError
from remotesync.core.types import join_remote_path
from remotesync.sync.ignore import IgnorePatterns, matches_pattern
from remotesync.sync.types import (
    ChangeKind,
    PendingChange,
    TransferDirection,
    TransferTask,
)

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from remotesync.connection.registry import ConnectionRegistry
    from remotesync.core.config import EndpointConfig
    from remotesync.sync.engine import TransferEngine

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_S = 0.5
# Change events this soon after an upload-on-save are duplicates
RECENT_UPLOAD_WINDOW = 2.0
OBSERVER_JOIN_TIMEOUT = 5.0


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class _ForwardingHandler(FileSystemEventHandler):
    """Hands watchdog events to the watcher on the event loop thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop, watcher: LocalChangeWatcher) -> None:
        super().__init__()
        self._loop = loop
        self._watcher = watcher

    def _forward(self, path: str | bytes, kind: ChangeKind) -> None:
        self._loop.call_soon_threadsafe(self._watcher.notify, Path(_decode(path)), kind)

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path, ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtimes change whenever a child does
        if isinstance(event, DirModifiedEvent):
            return
        self._forward(event.src_path, ChangeKind.CHANGED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path, ChangeKind.DELETED)
        self._forward(event.dest_path, ChangeKind.CREATED)


class LocalChangeWatcher:
    """Propagates local changes below ``local_root`` to one endpoint.

    Usage:
        watcher = LocalChangeWatcher(config, registry, engine, Path("site"))
        watcher.start()          # inside a running event loop
        ...
        watcher.stop()
    """

    def __init__(
        self,
        config: EndpointConfig,
        registry: ConnectionRegistry,
        engine: TransferEngine,
        local_root: Path | str,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        """Initialize the watcher.

        Args:
            config: Endpoint receiving the changes.
            registry: Supplies the endpoint's Connection.
            engine: Executes the resulting TransferTasks.
            local_root: Local directory mirrored to ``config.remote_path``.
            debounce_s: Quiet period before a path's change is dispatched.
            observer_factory: Builds the watchdog observer.
        """
        self._config = config
        self._registry = registry
        self._engine = engine
        self._local_root = Path(local_root).resolve()
        self._debounce_s = debounce_s
        self._observer_factory = observer_factory
        self._settings = config.watcher or WatcherSettings()
        self._ignore = IgnorePatterns(config.ignore)

        self._timers: dict[Path, asyncio.TimerHandle] = {}
        self._pending: dict[Path, PendingChange] = {}
        self._dispatching: set[asyncio.Task[TransferTask | None]] = set()
        self._recent_uploads: dict[Path, float] = {}
        self._observer: BaseObserver | None = None
        self._stopped = False

    @property
    def config(self) -> EndpointConfig:
        return self._config

    @property
    def local_root(self) -> Path:
        return self._local_root

    @property
    def settings(self) -> WatcherSettings:
        return self._settings

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def pending(self) -> dict[Path, PendingChange]:
        """Changes still inside their debounce window."""
        return dict(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the watchdog observer. Must run inside the event loop."""
        if self._observer is not None:
            return
        if not self._local_root.is_dir():
            raise ValueError(f"Watch path must be a directory: {self._local_root}")

        loop = asyncio.get_running_loop()
        observer = self._observer_factory()
        observer.schedule(_ForwardingHandler(loop, self), str(self._local_root), recursive=True)
        observer.start()
        self._stopped = False
        self._observer = observer
        logger.info(
            f"Watching {self._local_root} ({self._settings.files}) "
            f"for {self._config.display_name}"
        )

    def _halt(self) -> BaseObserver | None:
        """Drop pending changes, refuse new ones and signal the observer."""
        self._stopped = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()

        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
        return observer

    def stop(self) -> None:
        """Cancel every pending timer and stop the observer.

        Changes still debouncing are dropped, as are events the observer
        posts after this call; dispatches already running finish on their
        own. Blocks for up to OBSERVER_JOIN_TIMEOUT while the observer thread
        exits, so coroutines should await ``aclose()`` instead.
        """
        observer = self._halt()
        if observer is not None:
            observer.join(timeout=OBSERVER_JOIN_TIMEOUT)
            logger.info(f"Stopped watching {self._local_root}")

    async def aclose(self) -> None:
        """Same as ``stop()``, joining the observer thread off the event loop."""
        observer = self._halt()
        if observer is not None:
            await asyncio.to_thread(observer.join, OBSERVER_JOIN_TIMEOUT)
            logger.info(f"Stopped watching {self._local_root}")

    async def wait_dispatched(self) -> None:
        """Wait for dispatches that are already running."""
        if self._dispatching:
            await asyncio.gather(*self._dispatching, return_exceptions=True)

    # ------------------------------------------------------------------
    # Debounce
    # ------------------------------------------------------------------

    def _relative(self, path: Path) -> str | None:
        if not path.is_absolute():
            path = self._local_root / path
        try:
            return path.relative_to(self._local_root).as_posix()
        except ValueError:
            return None

    def _absolute(self, path: Path | str) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self._local_root / path

    def notify(self, path: Path | str, kind: ChangeKind) -> None:
        """Record a local change and (re)arm its debounce timer.

        Must be called on the event loop thread.
        """
        if self._stopped:
            return
        path = self._absolute(path)
        relative = self._relative(path)
        if not relative or relative == ".":
            return
        if self._ignore.matches(relative):
            logger.debug(f"Ignoring {kind.value} of {relative}")
            return
        if not matches_pattern(relative, [self._settings.files]):
            return

        loop = asyncio.get_running_loop()
        existing = self._timers.pop(path, None)
        if existing is not None:
            existing.cancel()
        self._pending[path] = PendingChange(path=path, kind=kind, arrived_at=loop.time())
        self._timers[path] = loop.call_later(self._debounce_s, self._settle, path)
        logger.debug(f"File {kind.value}: {relative}")

    def _settle(self, path: Path) -> None:
        self._timers.pop(path, None)
        change = self._pending.pop(path, None)
        if change is None:
            return
        task = asyncio.get_running_loop().create_task(self._dispatch(change))
        self._dispatching.add(task)
        task.add_done_callback(self._dispatching.discard)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def was_recently_uploaded(self, path: Path | str) -> bool:
        path = self._absolute(path)
        uploaded_at = self._recent_uploads.get(path)
        if uploaded_at is None:
            return False
        if asyncio.get_running_loop().time() - uploaded_at < RECENT_UPLOAD_WINDOW:
            return True
        del self._recent_uploads[path]
        return False

    async def _dispatch(self, change: PendingChange) -> TransferTask | None:
        """Turn a settled change into one TransferTask and run it.

        Errors are logged, never raised into the event loop.
        """
        relative = self._relative(change.path)
        if relative is None:
            return None
        remote_path = join_remote_path(self._config.remote_path, relative)

        try:
            if change.kind == ChangeKind.DELETED:
                return await self._dispatch_delete(change.path, relative, remote_path)
            return await self._dispatch_upload(change.path, relative, remote_path)
        except (RemoteSyncError, OSError) as e:
            logger.error(f"Failed to process {change.kind.value} of {relative}: {e}")
            return None

    async def _dispatch_upload(
        self, path: Path, relative: str, remote_path: str
    ) -> TransferTask | None:
        if not self._settings.auto_upload:
            logger.debug(f"Auto-upload disabled, skipping: {relative}")
            return None
        if self.was_recently_uploaded(path):
            logger.debug(f"Skipping duplicate upload for recently uploaded file: {relative}")
            return None
        if not path.exists():
            return None

        connection = await self._registry.ensure_connection(self._config)
        if path.is_dir():
            task = TransferTask(
                TransferDirection.MKDIR_REMOTE,
                relative_path=relative,
                local_path=path,
                remote_path=remote_path,
                is_directory=True,
            )
        else:
            task = TransferTask(
                TransferDirection.UPLOAD,
                relative_path=relative,
                local_path=path,
                remote_path=remote_path,
                size=path.stat().st_size,
            )
        await self._engine.run_task(connection, task)
        logger.info(f"Auto-uploaded: {relative}")
        return task

    async def _dispatch_delete(
        self, path: Path, relative: str, remote_path: str
    ) -> TransferTask | None:
        if not self._settings.auto_delete:
            logger.debug(f"Auto-delete disabled, keeping remote copy of {relative}")
            return None

        connection = await self._registry.ensure_connection(self._config)
        entry = await connection.stat(remote_path)
        if entry is None:
            return None
        task = TransferTask(
            TransferDirection.DELETE_REMOTE,
            relative_path=relative,
            local_path=path,
            remote_path=remote_path,
            is_directory=entry.is_dir,
        )
        await self._engine.run_task(connection, task)
        logger.info(f"Auto-deleted: {relative}")
        return task

    async def notify_saved(self, path: Path | str) -> TransferTask | None:
        """Upload a just-saved file immediately when upload-on-save is on.

        The watcher's own change event for the same save is then dropped.
        """
        if not self._config.upload_on_save:
            return None
        path = self._absolute(path)
        relative = self._relative(path)
        if not relative or self._ignore.matches(relative) or not path.is_file():
            return None

        self._recent_uploads[path] = asyncio.get_running_loop().time()
        remote_path = join_remote_path(self._config.remote_path, relative)
        task = TransferTask(
            TransferDirection.UPLOAD,
            relative_path=relative,
            local_path=path,
            remote_path=remote_path,
            size=path.stat().st_size,
        )
        try:
            connection = await self._registry.ensure_connection(self._config)
            await self._engine.run_task(connection, task)
        except (RemoteSyncError, OSError) as e:
            logger.error(f"Upload on save failed for {relative}: {e}")
            return None
        logger.info(f"Uploaded on save: {relative}")
        return task


class WatcherManager:
    """Owns one LocalChangeWatcher per (local root, endpoint identity)."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        engine: TransferEngine,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self._registry = registry
        self._engine = engine
        self._debounce_s = debounce_s
        self._observer_factory = observer_factory
        self._watchers: dict[tuple[Path, str], LocalChangeWatcher] = {}

    @staticmethod
    def _key(config: EndpointConfig, local_root: Path | str) -> tuple[Path, str]:
        return (Path(local_root).resolve(), config.identity)

    def get(self, config: EndpointConfig, local_root: Path | str) -> LocalChangeWatcher | None:
        return self._watchers.get(self._key(config, local_root))

    def start(self, config: EndpointConfig, local_root: Path | str) -> LocalChangeWatcher:
        """Start (or return the running) watcher for this pair."""
        key = self._key(config, local_root)
        watcher = self._watchers.get(key)
        if watcher is None:
            watcher = LocalChangeWatcher(
                config,
                self._registry,
                self._engine,
                local_root,
                debounce_s=self._debounce_s,
                observer_factory=self._observer_factory,
            )
            watcher.start()
            self._watchers[key] = watcher
        return watcher

    def stop(self, config: EndpointConfig, local_root: Path | str) -> None:
        watcher = self._watchers.pop(self._key(config, local_root), None)
        if watcher is not None:
            watcher.stop()

    def stop_all(self) -> None:
        while self._watchers:
            _, watcher = self._watchers.popitem()
            watcher.stop()

    async def aclose(self) -> None:
        """Stop every watcher without blocking the event loop."""
        while self._watchers:
            _, watcher = self._watchers.popitem()
            await watcher.aclose()

    def __len__(self) -> int:
        return len(self._watchers)
