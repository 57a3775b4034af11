"""Tests for the debounced local change watcher."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from remotesync.connection.base import Connection
from remotesync.core.config import EndpointConfig, WatcherSettings
from remotesync.core.errors import ProtocolError
from remotesync.sync.engine import TransferEngine
from remotesync.sync.types import ChangeKind, TransferDirection
from remotesync.sync.watcher import (
    OBSERVER_JOIN_TIMEOUT,
    LocalChangeWatcher,
    WatcherManager,
    _ForwardingHandler,
)

DEBOUNCE = 0.05


def mock_registry(connection: object | None = None) -> MagicMock:
    registry = MagicMock()
    registry.ensure_connection = AsyncMock(return_value=connection or MagicMock())
    return registry


def mock_engine() -> MagicMock:
    engine = MagicMock()
    engine.run_task = AsyncMock(side_effect=lambda conn, task: task)
    return engine


async def settle(watcher: LocalChangeWatcher) -> None:
    await asyncio.sleep(DEBOUNCE * 3)
    await watcher.wait_dispatched()


class TestDebounce:
    """Tests for per-path debouncing."""

    @pytest.mark.asyncio
    async def test_burst_dispatches_once(self, endpoint: EndpointConfig, local_root: Path) -> None:
        """Five rapid events for one path should become a single upload."""
        engine = mock_engine()
        watcher = LocalChangeWatcher(endpoint, mock_registry(), engine, local_root, DEBOUNCE)
        target = watcher.local_root / "index.html"
        target.write_text("<html>")

        for _ in range(5):
            watcher.notify(target, ChangeKind.CHANGED)
        assert list(watcher.pending) == [target]

        await settle(watcher)

        assert engine.run_task.await_count == 1
        task = engine.run_task.await_args.args[1]
        assert task.direction == TransferDirection.UPLOAD
        assert task.remote_path == "/srv/site/index.html"
        assert watcher.pending == {}

    @pytest.mark.asyncio
    async def test_latest_kind_wins(self, endpoint: EndpointConfig, local_root: Path) -> None:
        """A create followed by a delete within the window dispatches the delete."""
        engine = mock_engine()
        watcher = LocalChangeWatcher(endpoint, mock_registry(), engine, local_root, DEBOUNCE)
        target = watcher.local_root / "tmp.txt"

        watcher.notify(target, ChangeKind.CREATED)
        watcher.notify(target, ChangeKind.DELETED)
        assert watcher.pending[target].kind == ChangeKind.DELETED

        await settle(watcher)

        # auto_delete is off by default
        engine.run_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_paths_debounce_independently(
        self, endpoint: EndpointConfig, local_root: Path
    ) -> None:
        engine = mock_engine()
        watcher = LocalChangeWatcher(endpoint, mock_registry(), engine, local_root, DEBOUNCE)
        for name in ("a.txt", "b.txt"):
            (watcher.local_root / name).write_text(name)
            watcher.notify(watcher.local_root / name, ChangeKind.CHANGED)

        await settle(watcher)

        uploaded = sorted(call.args[1].relative_path for call in engine.run_task.await_args_list)
        assert uploaded == ["a.txt", "b.txt"]

    @pytest.mark.asyncio
    async def test_stop_drops_pending(self, endpoint: EndpointConfig, local_root: Path) -> None:
        engine = mock_engine()
        watcher = LocalChangeWatcher(endpoint, mock_registry(), engine, local_root, DEBOUNCE)
        (watcher.local_root / "a.txt").write_text("a")
        watcher.notify("a.txt", ChangeKind.CHANGED)

        watcher.stop()
        await settle(watcher)

        assert watcher.pending == {}
        engine.run_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_events_posted_before_stop_are_dropped(
        self, endpoint: EndpointConfig, local_root: Path
    ) -> None:
        """An event the observer thread queued just before stop() never dispatches."""
        engine = mock_engine()
        observer_factory = MagicMock()
        watcher = LocalChangeWatcher(
            endpoint,
            mock_registry(),
            engine,
            local_root,
            DEBOUNCE,
            observer_factory=observer_factory,
        )
        (watcher.local_root / "a.txt").write_text("a")
        watcher.start()
        handler = observer_factory.return_value.schedule.call_args.args[0]

        handler.on_modified(FileModifiedEvent(str(watcher.local_root / "a.txt")))
        watcher.stop()
        await settle(watcher)

        assert watcher.pending == {}
        engine.run_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restart_accepts_events(self, endpoint: EndpointConfig, local_root: Path) -> None:
        engine = mock_engine()
        watcher = LocalChangeWatcher(
            endpoint, mock_registry(), engine, local_root, DEBOUNCE, observer_factory=MagicMock()
        )
        (watcher.local_root / "a.txt").write_text("a")
        watcher.start()
        watcher.stop()
        watcher.start()

        watcher.notify("a.txt", ChangeKind.CHANGED)
        await settle(watcher)

        assert engine.run_task.await_count == 1
        watcher.stop()


class TestFiltering:
    """Tests for paths the watcher never dispatches."""

    @pytest.mark.asyncio
    async def test_ignored_path(self, endpoint: EndpointConfig, local_root: Path) -> None:
        config = dataclasses.replace(endpoint, ignore=("*.log",))
        watcher = LocalChangeWatcher(config, mock_registry(), mock_engine(), local_root, DEBOUNCE)

        watcher.notify(watcher.local_root / "logs" / "app.log", ChangeKind.CHANGED)
        watcher.notify(watcher.local_root / ".git" / "index", ChangeKind.CHANGED)

        assert watcher.pending == {}

    @pytest.mark.asyncio
    async def test_ignored_delete(
        self, endpoint: EndpointConfig, connection: Connection, transport, local_root: Path
    ) -> None:
        """Deleting an ignored file never deletes its remote copy, even with auto_delete."""
        config = dataclasses.replace(
            endpoint, ignore=("*.log",), watcher=WatcherSettings(auto_delete=True)
        )
        remote_log = transport.local("/srv/site/app.log")
        remote_log.parent.mkdir(parents=True)
        remote_log.write_text("log")
        engine = mock_engine()
        watcher = LocalChangeWatcher(
            config, mock_registry(connection), engine, local_root, DEBOUNCE
        )

        watcher.notify("app.log", ChangeKind.DELETED)
        await settle(watcher)

        engine.run_task.assert_not_awaited()
        assert remote_log.exists()

    @pytest.mark.asyncio
    async def test_files_glob(self, endpoint: EndpointConfig, local_root: Path) -> None:
        config = dataclasses.replace(endpoint, watcher=WatcherSettings(files="**/*.py"))
        watcher = LocalChangeWatcher(config, mock_registry(), mock_engine(), local_root, DEBOUNCE)

        watcher.notify("notes.txt", ChangeKind.CHANGED)
        watcher.notify("pkg/mod.py", ChangeKind.CHANGED)
        watcher.notify("setup.py", ChangeKind.CHANGED)

        assert sorted(p.name for p in watcher.pending) == ["mod.py", "setup.py"]

    @pytest.mark.asyncio
    async def test_outside_root(self, endpoint: EndpointConfig, local_root: Path, tmp_path: Path) -> None:
        watcher = LocalChangeWatcher(endpoint, mock_registry(), mock_engine(), local_root, DEBOUNCE)
        watcher.notify(tmp_path / "elsewhere.txt", ChangeKind.CHANGED)
        watcher.notify(watcher.local_root, ChangeKind.CHANGED)
        assert watcher.pending == {}

    @pytest.mark.asyncio
    async def test_auto_upload_disabled(self, endpoint: EndpointConfig, local_root: Path) -> None:
        config = dataclasses.replace(endpoint, watcher=WatcherSettings(auto_upload=False))
        engine = mock_engine()
        watcher = LocalChangeWatcher(config, mock_registry(), engine, local_root, DEBOUNCE)
        (watcher.local_root / "a.txt").write_text("a")

        watcher.notify("a.txt", ChangeKind.CHANGED)
        await settle(watcher)

        engine.run_task.assert_not_awaited()


class TestDispatch:
    """End-to-end dispatches through a real engine and connection."""

    @pytest.mark.asyncio
    async def test_upload_and_directory(
        self, endpoint: EndpointConfig, connection: Connection, transport, local_root: Path
    ) -> None:
        watcher = LocalChangeWatcher(
            endpoint, mock_registry(connection), TransferEngine(), local_root, DEBOUNCE
        )
        (watcher.local_root / "docs").mkdir()
        (watcher.local_root / "page.html").write_text("hello")

        watcher.notify("docs", ChangeKind.CREATED)
        watcher.notify("page.html", ChangeKind.CREATED)
        await settle(watcher)

        assert transport.local("/srv/site/docs").is_dir()
        assert transport.local("/srv/site/page.html").read_text() == "hello"

    @pytest.mark.asyncio
    async def test_auto_delete(
        self, endpoint: EndpointConfig, connection: Connection, transport, local_root: Path
    ) -> None:
        config = dataclasses.replace(endpoint, watcher=WatcherSettings(auto_delete=True))
        remote_file = transport.local("/srv/site/old.txt")
        remote_file.parent.mkdir(parents=True)
        remote_file.write_text("old")
        watcher = LocalChangeWatcher(
            config, mock_registry(connection), TransferEngine(), local_root, DEBOUNCE
        )

        watcher.notify("old.txt", ChangeKind.DELETED)
        watcher.notify("never-uploaded.txt", ChangeKind.DELETED)
        await settle(watcher)

        assert not remote_file.exists()
        assert ("delete", "/srv/site/never-uploaded.txt") not in transport.calls

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(
        self,
        endpoint: EndpointConfig,
        connection: Connection,
        transport,
        local_root: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        transport.path_errors["/srv/site/a.txt"] = ProtocolError("Permission denied")
        watcher = LocalChangeWatcher(
            endpoint, mock_registry(connection), TransferEngine(), local_root, DEBOUNCE
        )
        (watcher.local_root / "a.txt").write_text("a")

        watcher.notify("a.txt", ChangeKind.CHANGED)
        await settle(watcher)

        assert "Failed to process changed of a.txt" in caplog.text


class TestUploadOnSave:
    """Tests for notify_saved."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, endpoint: EndpointConfig, local_root: Path) -> None:
        engine = mock_engine()
        watcher = LocalChangeWatcher(endpoint, mock_registry(), engine, local_root, DEBOUNCE)
        (watcher.local_root / "a.txt").write_text("a")

        assert await watcher.notify_saved("a.txt") is None
        engine.run_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_save_suppresses_watcher_duplicate(
        self, endpoint: EndpointConfig, local_root: Path
    ) -> None:
        """The change event following an upload-on-save is not uploaded again."""
        config = dataclasses.replace(endpoint, upload_on_save=True)
        engine = mock_engine()
        watcher = LocalChangeWatcher(config, mock_registry(), engine, local_root, DEBOUNCE)
        (watcher.local_root / "a.txt").write_text("a")

        task = await watcher.notify_saved("a.txt")
        watcher.notify("a.txt", ChangeKind.CHANGED)
        await settle(watcher)

        assert task is not None
        assert task.remote_path == "/srv/site/a.txt"
        assert engine.run_task.await_count == 1
        assert watcher.was_recently_uploaded("a.txt")
        assert not watcher.was_recently_uploaded("b.txt")


class TestForwardingHandler:
    """Tests for the watchdog event bridge."""

    @pytest.mark.asyncio
    async def test_move_is_delete_plus_create(self, endpoint: EndpointConfig, local_root: Path) -> None:
        watcher = LocalChangeWatcher(endpoint, mock_registry(), mock_engine(), local_root, DEBOUNCE)
        handler = _ForwardingHandler(asyncio.get_running_loop(), watcher)
        src = watcher.local_root / "old.txt"
        dest = watcher.local_root / "new.txt"

        handler.on_moved(FileMovedEvent(str(src), str(dest)))
        await asyncio.sleep(0)

        assert watcher.pending[src].kind == ChangeKind.DELETED
        assert watcher.pending[dest].kind == ChangeKind.CREATED
        watcher.stop()

    @pytest.mark.asyncio
    async def test_directory_modifications_dropped(
        self, endpoint: EndpointConfig, local_root: Path
    ) -> None:
        watcher = LocalChangeWatcher(endpoint, mock_registry(), mock_engine(), local_root, DEBOUNCE)
        handler = _ForwardingHandler(asyncio.get_running_loop(), watcher)

        handler.on_modified(DirModifiedEvent(str(watcher.local_root / "docs")))
        handler.on_modified(FileModifiedEvent(str(watcher.local_root / "a.txt")))
        await asyncio.sleep(0)

        assert [p.name for p in watcher.pending] == ["a.txt"]
        watcher.stop()


class TestWatcherManager:
    """Tests for WatcherManager."""

    @pytest.mark.asyncio
    async def test_one_watcher_per_pair(self, endpoint: EndpointConfig, local_root: Path) -> None:
        observer_factory = MagicMock()
        manager = WatcherManager(
            mock_registry(), mock_engine(), DEBOUNCE, observer_factory=observer_factory
        )

        first = manager.start(endpoint, local_root)
        second = manager.start(endpoint, str(local_root))

        assert first is second
        assert len(manager) == 1
        assert manager.get(endpoint, local_root) is first
        observer = observer_factory.return_value
        observer.schedule.assert_called_once()
        assert observer.schedule.call_args.args[1] == str(local_root.resolve())
        assert observer.schedule.call_args.kwargs == {"recursive": True}
        observer.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_distinct_endpoints(self, endpoint: EndpointConfig, local_root: Path) -> None:
        manager = WatcherManager(mock_registry(), mock_engine(), observer_factory=MagicMock())
        other = dataclasses.replace(endpoint, host="mirror.example.com", name="mirror")

        manager.start(endpoint, local_root)
        manager.start(other, local_root)

        assert len(manager) == 2

    @pytest.mark.asyncio
    async def test_stop(self, endpoint: EndpointConfig, local_root: Path) -> None:
        observer_factory = MagicMock()
        manager = WatcherManager(mock_registry(), mock_engine(), observer_factory=observer_factory)
        watcher = manager.start(endpoint, local_root)

        manager.stop(endpoint, local_root)

        assert len(manager) == 0
        assert not watcher.is_running
        observer_factory.return_value.stop.assert_called_once()
        observer_factory.return_value.join.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_all(self, endpoint: EndpointConfig, local_root: Path) -> None:
        manager = WatcherManager(mock_registry(), mock_engine(), observer_factory=MagicMock())
        manager.start(endpoint, local_root)
        other = dataclasses.replace(endpoint, host="mirror.example.com", name="mirror")
        manager.start(other, local_root)

        manager.stop_all()

        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_aclose_joins_off_loop(self, endpoint: EndpointConfig, local_root: Path) -> None:
        observer_factory = MagicMock()
        manager = WatcherManager(mock_registry(), mock_engine(), observer_factory=observer_factory)
        watcher = manager.start(endpoint, local_root)

        await manager.aclose()

        assert len(manager) == 0
        assert not watcher.is_running
        observer_factory.return_value.join.assert_called_once_with(OBSERVER_JOIN_TIMEOUT)

    @pytest.mark.asyncio
    async def test_root_must_be_directory(self, endpoint: EndpointConfig, tmp_path: Path) -> None:
        manager = WatcherManager(mock_registry(), mock_engine(), observer_factory=MagicMock())
        with pytest.raises(ValueError):
            manager.start(endpoint, tmp_path / "missing")
        assert len(manager) == 0
