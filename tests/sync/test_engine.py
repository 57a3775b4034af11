"""Tests for TransferEngine over a directory-backed connection."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from remotesync.connection.base import Connection
from remotesync.core.config import EndpointConfig
from remotesync.core.errors import (
    CancellationError,
    CapabilityError,
    ProtocolError,
    TransportError,
)
from remotesync.sync.changeset import ChangedFile, ChangeStatus
from remotesync.sync.engine import TransferEngine
from remotesync.sync.types import (
    CancellationToken,
    TransferDirection,
    TransferStatus,
    TransferTask,
)
from tests.conftest import DirectoryTransport

REMOTE = "/srv/site"


def write(path: Path, content: str = "data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class RecordingSink:
    """Progress sink that records reports and can cancel after N of them."""

    def __init__(self, cancel_after: int | None = None, token: CancellationToken | None = None):
        self.reports: list[tuple[str, float]] = []
        self.cancel_after = cancel_after
        self.token = token
        self.engine: TransferEngine | None = None
        self.queue_lengths: list[int] = []

    def report(self, message: str, increment_percent: float) -> None:
        self.reports.append((message, increment_percent))
        if self.engine is not None:
            self.queue_lengths.append(len(self.engine.get_queue()))
        if self.cancel_after is not None and len(self.reports) == self.cancel_after:
            if self.token is not None:
                self.token.cancel()
            elif self.engine is not None:
                self.engine.cancel()


class FakeChangeSet:
    def __init__(self, root: Path, files: list[ChangedFile], repository: bool = True) -> None:
        self.root = root
        self.files = files
        self.repository = repository

    def is_repository(self) -> bool:
        return self.repository

    def get_changed_files(self) -> list[ChangedFile]:
        return self.files


class TestSyncToRemote:
    """Tests for one-way local-to-remote syncs."""

    @pytest.mark.asyncio
    async def test_round_trip(
        self, connection: Connection, transport, local_root: Path, tmp_path: Path
    ) -> None:
        """Files synced up and back down should match the originals."""
        write(local_root / "a.txt", "alpha")
        write(local_root / "docs" / "b.md", "# beta")
        write(local_root / "debug.log", "noise")
        engine = TransferEngine()

        result = await engine.sync_to_remote(connection, local_root, REMOTE, ignore=["*.log"])

        assert result.uploaded == ["a.txt", "docs", "docs/b.md"]
        assert "debug.log" in result.skipped
        assert result.success
        assert transport.local(f"{REMOTE}/docs/b.md").read_text() == "# beta"
        assert not transport.local(f"{REMOTE}/debug.log").exists()

        copy = tmp_path / "copy"
        down = await engine.sync_to_local(connection, copy, REMOTE)
        assert down.downloaded == ["a.txt", "docs", "docs/b.md"]
        assert (copy / "a.txt").read_text() == "alpha"
        assert (copy / "docs" / "b.md").read_text() == "# beta"

    @pytest.mark.asyncio
    async def test_second_sync_is_a_no_op(self, connection: Connection, local_root: Path) -> None:
        write(local_root / "a.txt")
        engine = TransferEngine()
        await engine.sync_to_remote(connection, local_root, REMOTE)

        result = await engine.sync_to_remote(connection, local_root, REMOTE)

        assert result.attempted == 0
        assert result.skipped == ["a.txt"]

    @pytest.mark.asyncio
    async def test_parents_created_before_children(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        write(local_root / "a" / "b" / "c.txt")
        await TransferEngine().sync_to_remote(connection, local_root, REMOTE)

        calls = transport.calls
        assert calls.index(("mkdir", f"{REMOTE}/a")) < calls.index(("mkdir", f"{REMOTE}/a/b"))
        assert calls.index(("mkdir", f"{REMOTE}/a/b")) < calls.index(
            ("upload", f"{REMOTE}/a/b/c.txt")
        )

    @pytest.mark.asyncio
    async def test_delete_orphans(self, connection: Connection, transport, local_root: Path) -> None:
        """With delete=True remote-only paths go, children before parents."""
        write(local_root / "keep.txt")
        write(transport.local(f"{REMOTE}/old/x.txt"))

        result = await TransferEngine().sync_to_remote(
            connection, local_root, REMOTE, delete=True
        )

        assert result.uploaded == ["keep.txt"]
        assert result.deleted == ["old/x.txt", "old"]
        assert not transport.local(f"{REMOTE}/old").exists()

    @pytest.mark.asyncio
    async def test_orphans_kept_without_delete(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        write(transport.local(f"{REMOTE}/old.txt"))
        result = await TransferEngine().sync_to_remote(connection, local_root, REMOTE)
        assert result.deleted == []
        assert "old.txt" in result.skipped
        assert transport.local(f"{REMOTE}/old.txt").exists()

    @pytest.mark.asyncio
    async def test_task_failure_does_not_stop_the_plan(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        for name in ("a.txt", "b.txt", "c.txt"):
            write(local_root / name)
        transport.path_errors[f"{REMOTE}/b.txt"] = ProtocolError("Permission denied")

        result = await TransferEngine().sync_to_remote(connection, local_root, REMOTE)

        assert result.uploaded == ["a.txt", "c.txt"]
        assert result.failed == [("b.txt", "Permission denied")]
        assert not result.success

    @pytest.mark.asyncio
    async def test_transport_error_aborts(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        """A lost session raises and marks the remaining tasks cancelled."""
        for name in ("a.txt", "b.txt", "c.txt"):
            write(local_root / name)
        transport.path_errors[f"{REMOTE}/b.txt"] = TransportError("Connection reset")
        engine = TransferEngine()

        with pytest.raises(TransportError):
            await engine.sync_to_remote(connection, local_root, REMOTE)

        statuses = {
            s.remote_path: s.status for s in engine.get_queue(include_finished=True)
        }
        assert statuses[f"{REMOTE}/a.txt"] == TransferStatus.COMPLETED
        assert statuses[f"{REMOTE}/b.txt"] == TransferStatus.FAILED
        assert statuses[f"{REMOTE}/c.txt"] == TransferStatus.CANCELLED
        assert not engine.is_active

    @pytest.mark.asyncio
    async def test_type_mismatch_recorded_as_failure(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        (local_root / "thing").mkdir()
        write(transport.local(f"{REMOTE}/thing"))

        result = await TransferEngine().sync_to_remote(connection, local_root, REMOTE)

        assert [path for path, _ in result.failed] == ["thing"]
        assert "Type mismatch" in result.failed[0][1]


class TestSyncBothWays:
    """Tests for two-way syncs."""

    @pytest.mark.asyncio
    async def test_one_sided_files_cross_over(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        write(local_root / "x.txt", "from local")
        write(transport.local(f"{REMOTE}/y.txt"), "from remote")

        result = await TransferEngine().sync_both_ways(connection, local_root, REMOTE)

        assert result.uploaded == ["x.txt"]
        assert result.downloaded == ["y.txt"]
        assert (local_root / "y.txt").read_text() == "from remote"
        assert transport.local(f"{REMOTE}/x.txt").read_text() == "from local"
        assert result.conflicts == []

    @pytest.mark.asyncio
    async def test_newer_side_wins(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        local_file = write(local_root / "a.txt", "old")
        remote_file = write(transport.local(f"{REMOTE}/a.txt"), "newer")
        os.utime(local_file, (1_700_000_000, 1_700_000_000))
        os.utime(remote_file, (1_700_000_100, 1_700_000_100))

        result = await TransferEngine().sync_both_ways(connection, local_root, REMOTE)

        assert result.downloaded == ["a.txt"]
        assert result.conflicts == ["a.txt"]
        assert local_file.read_text() == "newer"


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_token_stops_after_current_task(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        """Cancelling after K tasks leaves exactly K completed."""
        for i in range(5):
            write(local_root / f"f{i}.txt")
        token = CancellationToken()
        sink = RecordingSink(cancel_after=2, token=token)
        engine = TransferEngine(progress=sink)

        result = await engine.sync_to_remote(connection, local_root, REMOTE, token=token)

        assert result.cancelled
        assert result.uploaded == ["f0.txt", "f1.txt"]
        uploads = [path for op, path in transport.calls if op == "upload"]
        assert len(uploads) == 2
        statuses = [s.status for s in engine.get_queue(include_finished=True)]
        assert statuses.count(TransferStatus.COMPLETED) == 2
        assert statuses.count(TransferStatus.CANCELLED) == 3

    @pytest.mark.asyncio
    async def test_engine_cancel(self, connection: Connection, local_root: Path) -> None:
        """engine.cancel() should stop a running plan."""
        for i in range(3):
            write(local_root / f"f{i}.txt")
        sink = RecordingSink(cancel_after=1)
        engine = TransferEngine(progress=sink)
        sink.engine = engine

        result = await engine.sync_to_remote(connection, local_root, REMOTE)

        assert result.cancelled
        assert len(result.uploaded) == 1

    @pytest.mark.asyncio
    async def test_pre_cancelled_single_file(self, connection: Connection, local_root: Path) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancellationError):
            await TransferEngine().upload_file(
                connection, write(local_root / "a.txt"), f"{REMOTE}/a.txt", token
            )


class TestProgressAndQueue:
    """Tests for progress reports and queue snapshots."""

    @pytest.mark.asyncio
    async def test_one_report_per_task(self, connection: Connection, local_root: Path) -> None:
        write(local_root / "a.txt")
        write(local_root / "b.txt")
        sink = RecordingSink()

        await TransferEngine(progress=sink).sync_to_remote(connection, local_root, REMOTE)

        assert sink.reports == [("upload a.txt", 50.0), ("upload b.txt", 50.0)]

    @pytest.mark.asyncio
    async def test_queue_shows_outstanding_tasks(
        self, connection: Connection, local_root: Path
    ) -> None:
        for i in range(3):
            write(local_root / f"f{i}.txt")
        sink = RecordingSink()
        engine = TransferEngine(progress=sink)
        sink.engine = engine

        await engine.sync_to_remote(connection, local_root, REMOTE)

        assert sink.queue_lengths == [2, 1, 0]
        assert engine.get_queue() == []
        history = engine.get_queue(include_finished=True)
        assert [s.progress for s in history] == [100, 100, 100]
        assert all(s.direction == TransferDirection.UPLOAD for s in history)

        engine.clear_completed()
        assert engine.get_queue(include_finished=True) == []


class TestSingleFiles:
    """Tests for single-file transfers and remote-to-remote copies."""

    @pytest.mark.asyncio
    async def test_upload_creates_parent(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        source = write(local_root / "a.txt", "hello")
        task = await TransferEngine().upload_file(connection, source, f"{REMOTE}/deep/dir/a.txt")

        assert task.status == TransferStatus.COMPLETED
        assert task.size == 5
        assert transport.local(f"{REMOTE}/deep/dir/a.txt").read_text() == "hello"

    @pytest.mark.asyncio
    async def test_download_creates_parent(
        self, connection: Connection, transport, tmp_path: Path
    ) -> None:
        write(transport.local(f"{REMOTE}/a.txt"), "hello")
        target = tmp_path / "x" / "y" / "a.txt"

        task = await TransferEngine().download_file(connection, f"{REMOTE}/a.txt", target)

        assert task.progress == 100
        assert target.read_text() == "hello"

    @pytest.mark.asyncio
    async def test_failed_download_raises(self, connection: Connection, tmp_path: Path) -> None:
        engine = TransferEngine()
        with pytest.raises(ProtocolError):
            await engine.download_file(connection, f"{REMOTE}/missing.txt", tmp_path / "m.txt")
        [snapshot] = engine.get_queue(include_finished=True)
        assert snapshot.status == TransferStatus.FAILED

    @pytest.mark.asyncio
    async def test_copy_remote_to_remote(
        self, connection: Connection, transport, tmp_path: Path
    ) -> None:
        """A file should pass through local staging between two endpoints."""
        write(transport.local(f"{REMOTE}/a.txt"), "payload")
        other_endpoint = EndpointConfig(host="mirror.example.com", username="deploy", name="mirror")
        other_transport = DirectoryTransport(tmp_path / "mirror")
        other = Connection(other_endpoint, other_transport)
        await other.connect()
        try:
            await TransferEngine().copy_remote_to_remote(
                connection, f"{REMOTE}/a.txt", other, "/backup/a.txt"
            )
        finally:
            await other.disconnect()

        assert other_transport.local("/backup/a.txt").read_text() == "payload"

    @pytest.mark.asyncio
    async def test_run_task(self, connection: Connection, transport, local_root: Path) -> None:
        write(transport.local(f"{REMOTE}/gone/a.txt"))
        task = TransferTask(
            TransferDirection.DELETE_REMOTE,
            relative_path="gone",
            remote_path=f"{REMOTE}/gone",
            is_directory=True,
        )

        await TransferEngine().run_task(connection, task)

        assert task.status == TransferStatus.COMPLETED
        assert not transport.local(f"{REMOTE}/gone").exists()

    @pytest.mark.asyncio
    async def test_run_task_without_paths(self, connection: Connection, transport) -> None:
        """A task missing the paths its direction needs fails before any transfer."""
        task = TransferTask(TransferDirection.UPLOAD, relative_path="a.txt")

        with pytest.raises(ValueError, match="has no remote path"):
            await TransferEngine().run_task(connection, task)

        assert task.status == TransferStatus.FAILED
        assert not any(call[0] == "upload" for call in transport.calls)


class TestDirectories:
    """Tests for whole-directory copies."""

    @pytest.mark.asyncio
    async def test_upload_directory_overwrites(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        write(local_root / "a.txt", "new")
        write(local_root / "sub" / "b.txt")
        write(transport.local(f"{REMOTE}/a.txt"), "old but longer")

        result = await TransferEngine().upload_directory(connection, local_root, REMOTE)

        assert result.uploaded == ["a.txt", "sub", "sub/b.txt"]
        assert transport.local(f"{REMOTE}/a.txt").read_text() == "new"

    @pytest.mark.asyncio
    async def test_download_directory(
        self, connection: Connection, transport, tmp_path: Path
    ) -> None:
        write(transport.local(f"{REMOTE}/a.txt"), "alpha")
        write(transport.local(f"{REMOTE}/cache/tmp.bin"))
        target = tmp_path / "download"

        result = await TransferEngine().download_directory(
            connection, REMOTE, target, ignore=["cache"]
        )

        assert result.downloaded == ["a.txt"]
        assert result.skipped == ["cache"]
        assert (target / "a.txt").read_text() == "alpha"

    @pytest.mark.asyncio
    async def test_delete_local_orphans(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        write(transport.local(f"{REMOTE}/keep.txt"))
        write(local_root / "stray" / "x.txt")

        result = await TransferEngine().sync_to_local(connection, local_root, REMOTE, delete=True)

        assert result.downloaded == ["keep.txt"]
        assert result.deleted == ["stray/x.txt", "stray"]
        assert not (local_root / "stray").exists()


class TestUploadChanged:
    """Tests for change-set uploads."""

    @pytest.mark.asyncio
    async def test_uploads_only_changed_files(
        self, connection: Connection, transport, local_root: Path
    ) -> None:
        changed = write(local_root / "src" / "app.py", "print()")
        write(local_root / "untouched.py")
        provider = FakeChangeSet(
            local_root,
            [
                ChangedFile("src/app.py", ChangeStatus.MODIFIED, changed),
                ChangedFile("removed.py", ChangeStatus.DELETED, local_root / "removed.py"),
                ChangedFile("debug.log", ChangeStatus.UNTRACKED, write(local_root / "debug.log")),
            ],
        )

        result = await TransferEngine().upload_changed(
            connection, provider, local_root, REMOTE, ignore=["*.log"]
        )

        assert result.uploaded == ["src/app.py"]
        assert result.skipped == ["debug.log"]
        assert transport.local(f"{REMOTE}/src/app.py").read_text() == "print()"
        assert not transport.local(f"{REMOTE}/untouched.py").exists()

    @pytest.mark.asyncio
    async def test_paths_escaping_the_root_are_skipped(
        self, connection: Connection, transport, local_root: Path, tmp_path: Path
    ) -> None:
        outside = write(tmp_path / "outside.txt")
        provider = FakeChangeSet(
            local_root, [ChangedFile("../outside.txt", ChangeStatus.MODIFIED, outside)]
        )

        result = await TransferEngine().upload_changed(connection, provider, local_root, REMOTE)

        assert result.uploaded == []
        assert result.skipped == ["../outside.txt"]

    @pytest.mark.asyncio
    async def test_not_a_repository(self, connection: Connection, local_root: Path) -> None:
        provider = FakeChangeSet(local_root, [], repository=False)
        with pytest.raises(CapabilityError):
            await TransferEngine().upload_changed(connection, provider, local_root, REMOTE)
