"""Transfer engine executing copy, delete and sync plans.

This module provides:
- TransferEngine: Single-file copies, directory copies, one-way and two-way
  syncs, change-set uploads and remote-to-remote copies over Connections

A plan is a list of TransferTasks run one after another. A task failure
(remote rejection or local I/O error) is recorded in the SyncResult and the
plan continues; a TransportError aborts the call. Cancellation is checked
between tasks only.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from remotesync.core.errors import (
    AlreadyExistsError,
    CancellationError,
    CapabilityError,
    ProtocolError,
    TransportError,
)
from remotesync.core.types import join_remote_path, remote_parent, sanitize_relative_path
from remotesync.sync.changeset import filter_uploadable
from remotesync.sync.comparator import (
    CLOCK_SKEW_TOLERANCE,
    SyncAction,
    SyncComparator,
    SyncDirection,
)
from remotesync.sync.ignore import IgnorePatterns
from remotesync.sync.scanner import MAX_DEPTH, MAX_FILES, scan_local, scan_remote
from remotesync.sync.types import (
    CancellationToken,
    SyncResult,
    TransferDirection,
    TransferSnapshot,
    TransferStatus,
    TransferTask,
)

if TYPE_CHECKING:
    from remotesync.connection.base import Connection, ProgressListener
    from remotesync.core.types import TransferProgress
    from remotesync.sync.changeset import ChangeSetProvider
    from remotesync.sync.types import CancellationSignal, ProgressSink

logger = logging.getLogger(__name__)

__all__ = [
    "CLOCK_SKEW_TOLERANCE",
    "MAX_DEPTH",
    "MAX_FILES",
    "TransferEngine",
]

# Finished tasks kept for get_queue(include_finished=True)
MAX_HISTORY = 1000

# Failures recorded per task instead of aborting the plan
TASK_ERRORS: tuple[type[Exception], ...] = (ProtocolError, CapabilityError, OSError)

_ACTION_DIRECTIONS = {
    SyncAction.UPLOAD: TransferDirection.UPLOAD,
    SyncAction.DOWNLOAD: TransferDirection.DOWNLOAD,
    SyncAction.MKDIR_REMOTE: TransferDirection.MKDIR_REMOTE,
    SyncAction.MKDIR_LOCAL: TransferDirection.MKDIR_LOCAL,
    SyncAction.DELETE_REMOTE: TransferDirection.DELETE_REMOTE,
    SyncAction.DELETE_LOCAL: TransferDirection.DELETE_LOCAL,
}


def _local_path(task: TransferTask) -> Path:
    if task.local_path is None:
        raise ValueError(f"{task.direction.value} task for {task.relative_path} has no local path")
    return task.local_path


def _remote_path(task: TransferTask) -> str:
    if task.remote_path is None:
        raise ValueError(f"{task.direction.value} task for {task.relative_path} has no remote path")
    return task.remote_path


class _Run:
    """Cancellation state of one top-level engine call."""

    def __init__(self, signal: CancellationSignal | None) -> None:
        self.token = CancellationToken()
        self.signal = signal

    @property
    def cancelled(self) -> bool:
        if self.token.is_cancellation_requested:
            return True
        return self.signal is not None and self.signal.is_cancellation_requested


class TransferEngine:
    """Plans and executes transfers against Connections.

    Usage:
        engine = TransferEngine()
        result = await engine.sync_to_remote(conn, Path("site"), "/var/www")
        print(result.uploaded, result.failed)
    """

    def __init__(self, progress: ProgressSink | None = None) -> None:
        """Initialize the engine.

        Args:
            progress: Optional sink receiving one report per finished task.
        """
        self._progress = progress
        self._tasks: list[TransferTask] = []
        self._runs: list[_Run] = []

    # ------------------------------------------------------------------
    # Queue and cancellation
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return bool(self._runs)

    def cancel(self) -> None:
        """Stop every running top-level transfer after its current task."""
        for run in self._runs:
            run.token.cancel()
        if self._runs:
            logger.info("Transfer cancellation requested")

    def get_queue(self, include_finished: bool = False) -> list[TransferSnapshot]:
        """Snapshot of pending and in-flight tasks (plus history if asked)."""
        return [
            TransferSnapshot(
                direction=task.direction,
                local_path=task.local_path,
                remote_path=task.remote_path,
                status=task.status,
                progress=task.progress,
            )
            for task in self._tasks
            if include_finished or not task.status.is_finished
        ]

    def clear_completed(self) -> None:
        """Drop finished tasks from the history."""
        self._tasks = [task for task in self._tasks if not task.status.is_finished]

    def _track(self, tasks: Iterable[TransferTask]) -> None:
        self._tasks.extend(tasks)
        if len(self._tasks) > MAX_HISTORY:
            finished = [t for t in self._tasks if t.status.is_finished]
            drop = {t.id for t in finished[: len(self._tasks) - MAX_HISTORY]}
            self._tasks = [t for t in self._tasks if t.id not in drop]

    def _begin(self, signal: CancellationSignal | None) -> _Run:
        run = _Run(signal)
        self._runs.append(run)
        return run

    def _end(self, run: _Run) -> None:
        self._runs.remove(run)

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    def _tracker(self, task: TransferTask) -> ProgressListener:
        def on_progress(event: TransferProgress) -> None:
            task.transferred = event.transferred
            if event.total:
                task.size = event.total

        return on_progress

    async def _ensure_remote_dir(
        self, conn: Connection, path: str, ensured: set[str] | None = None
    ) -> None:
        """Create a remote directory; failures are logged, never raised."""
        if path in ("/", ".", "") or (ensured is not None and path in ensured):
            return
        try:
            await conn.mkdir(path)
        except AlreadyExistsError:
            pass
        except ProtocolError as e:
            logger.warning(f"Could not create remote directory {path}: {e}")
            return
        if ensured is not None:
            ensured.add(path)

    async def _perform(
        self, conn: Connection, task: TransferTask, ensured: set[str] | None = None
    ) -> None:
        """Run one task, updating its status. Errors propagate."""
        task.status = TransferStatus.IN_PROGRESS
        try:
            await self._dispatch(conn, task, ensured)
        except BaseException as e:
            task.status = (
                TransferStatus.CANCELLED
                if isinstance(e, asyncio.CancelledError)
                else TransferStatus.FAILED
            )
            task.error = str(e) or type(e).__name__
            raise
        task.status = TransferStatus.COMPLETED
        task.transferred = task.size

    async def _dispatch(
        self, conn: Connection, task: TransferTask, ensured: set[str] | None
    ) -> None:
        direction = task.direction

        if direction == TransferDirection.UPLOAD:
            remote_path = _remote_path(task)
            await self._ensure_remote_dir(conn, remote_parent(remote_path), ensured)
            await conn.upload(_local_path(task), remote_path, on_progress=self._tracker(task))
        elif direction == TransferDirection.DOWNLOAD:
            local_path = _local_path(task)
            await asyncio.to_thread(local_path.parent.mkdir, parents=True, exist_ok=True)
            await conn.download(_remote_path(task), local_path, on_progress=self._tracker(task))
        elif direction == TransferDirection.MKDIR_REMOTE:
            remote_path = _remote_path(task)
            await conn.mkdir(remote_path)
            if ensured is not None:
                ensured.add(remote_path)
        elif direction == TransferDirection.MKDIR_LOCAL:
            await asyncio.to_thread(_local_path(task).mkdir, parents=True, exist_ok=True)
        elif direction == TransferDirection.DELETE_REMOTE:
            if task.is_directory:
                await conn.rmdir(_remote_path(task), recursive=True)
            else:
                await conn.delete(_remote_path(task))
        elif direction == TransferDirection.DELETE_LOCAL:
            if task.is_directory:
                await asyncio.to_thread(shutil.rmtree, _local_path(task))
            else:
                await asyncio.to_thread(_local_path(task).unlink)

    async def _execute(
        self,
        conn: Connection,
        tasks: list[TransferTask],
        result: SyncResult,
        run: _Run,
    ) -> SyncResult:
        """Run a plan in order, recording each outcome in ``result``."""
        self._track(tasks)
        ensured: set[str] = set()
        total = len(tasks)

        for index, task in enumerate(tasks):
            if run.cancelled:
                result.cancelled = True
                for remaining in tasks[index:]:
                    remaining.status = TransferStatus.CANCELLED
                logger.info(f"Transfer cancelled after {index} of {total} tasks")
                break

            try:
                await self._perform(conn, task, ensured)
            except TransportError:
                for remaining in tasks[index + 1 :]:
                    remaining.status = TransferStatus.CANCELLED
                raise
            except TASK_ERRORS as e:
                logger.error(f"{task.direction.value} failed for {task.relative_path}: {e}")
                result.record_failure(task, task.error or str(e))
            else:
                logger.debug(f"{task.direction.value}: {task.relative_path}")
                result.record_success(task)

            if self._progress is not None:
                self._progress.report(
                    f"{task.direction.value} {task.relative_path}", 100.0 / total
                )

        return result

    async def run_task(self, conn: Connection, task: TransferTask) -> TransferTask:
        """Execute one task outside any plan.

        Raises:
            Whatever the task raised; the task is marked failed first.
        """
        self._track([task])
        await self._perform(conn, task)
        return task

    # ------------------------------------------------------------------
    # Single files
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        conn: Connection,
        local_path: Path | str,
        remote_path: str,
        token: CancellationSignal | None = None,
    ) -> TransferTask:
        """Upload one file, creating the remote parent directory first.

        Raises:
            CancellationError: If ``token`` is already cancelled.
            ProtocolError: If the remote rejects the upload.
            TransportError: If the session is lost.
        """
        local_path = Path(local_path)
        if token is not None and token.is_cancellation_requested:
            raise CancellationError(f"Upload of {local_path.name} cancelled")
        size = (await asyncio.to_thread(local_path.stat)).st_size
        task = TransferTask(
            TransferDirection.UPLOAD,
            relative_path=local_path.name,
            local_path=local_path,
            remote_path=remote_path,
            size=size,
        )
        run = self._begin(token)
        try:
            self._track([task])
            await self._perform(conn, task)
        finally:
            self._end(run)
        return task

    async def download_file(
        self,
        conn: Connection,
        remote_path: str,
        local_path: Path | str,
        token: CancellationSignal | None = None,
    ) -> TransferTask:
        """Download one file, creating the local parent directory first.

        Raises:
            CancellationError: If ``token`` is already cancelled.
            ProtocolError: If the remote rejects the download.
            TransportError: If the session is lost.
        """
        local_path = Path(local_path)
        if token is not None and token.is_cancellation_requested:
            raise CancellationError(f"Download of {posixpath.basename(remote_path)} cancelled")
        task = TransferTask(
            TransferDirection.DOWNLOAD,
            relative_path=posixpath.basename(remote_path),
            local_path=local_path,
            remote_path=remote_path,
        )
        run = self._begin(token)
        try:
            self._track([task])
            await self._perform(conn, task)
        finally:
            self._end(run)
        return task

    async def copy_remote_to_remote(
        self,
        src_conn: Connection,
        src_path: str,
        dst_conn: Connection,
        dst_path: str,
        token: CancellationSignal | None = None,
    ) -> None:
        """Copy a file between endpoints: download to a scratch dir, then upload."""
        with tempfile.TemporaryDirectory(prefix="remotesync-") as scratch:
            staged = Path(scratch) / (posixpath.basename(src_path) or "file")
            await self.download_file(src_conn, src_path, staged, token)
            await self.upload_file(dst_conn, staged, dst_path, token)

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    async def upload_directory(
        self,
        conn: Connection,
        local_root: Path | str,
        remote_root: str,
        ignore: Iterable[str] = (),
        token: CancellationSignal | None = None,
    ) -> SyncResult:
        """Copy a local tree to the remote, overwriting existing files."""
        local_root = Path(local_root)
        run = self._begin(token)
        try:
            scan = await asyncio.to_thread(scan_local, local_root, IgnorePatterns(ignore))
            result = SyncResult(skipped=list(scan.skipped))
            tasks = [
                self._make_task(
                    TransferDirection.MKDIR_REMOTE if entry.is_dir else TransferDirection.UPLOAD,
                    rel,
                    local_root,
                    remote_root,
                    entry.size,
                    entry.is_dir,
                )
                for rel, entry in sorted(scan.entries.items())
            ]
            if tasks:
                await self._ensure_remote_dir(conn, remote_root)
            return await self._execute(conn, tasks, result, run)
        finally:
            self._end(run)

    async def download_directory(
        self,
        conn: Connection,
        remote_root: str,
        local_root: Path | str,
        ignore: Iterable[str] = (),
        token: CancellationSignal | None = None,
    ) -> SyncResult:
        """Copy a remote tree to local disk, overwriting existing files."""
        local_root = Path(local_root)
        run = self._begin(token)
        try:
            scan = await scan_remote(conn, remote_root, IgnorePatterns(ignore))
            result = SyncResult(skipped=list(scan.skipped))
            tasks = [
                self._make_task(
                    TransferDirection.MKDIR_LOCAL if entry.is_dir else TransferDirection.DOWNLOAD,
                    rel,
                    local_root,
                    remote_root,
                    entry.size,
                    entry.is_dir,
                )
                for rel, entry in sorted(scan.entries.items())
            ]
            await asyncio.to_thread(local_root.mkdir, parents=True, exist_ok=True)
            return await self._execute(conn, tasks, result, run)
        finally:
            self._end(run)

    @staticmethod
    def _make_task(
        direction: TransferDirection,
        relative_path: str,
        local_root: Path,
        remote_root: str,
        size: int = 0,
        is_directory: bool = False,
    ) -> TransferTask:
        return TransferTask(
            direction,
            relative_path=relative_path,
            local_path=local_root.joinpath(*relative_path.split("/")),
            remote_path=join_remote_path(remote_root, relative_path),
            size=0 if is_directory else size,
            is_directory=is_directory,
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_to_remote(
        self,
        conn: Connection,
        local_root: Path | str,
        remote_root: str,
        ignore: Iterable[str] = (),
        delete: bool = False,
        token: CancellationSignal | None = None,
    ) -> SyncResult:
        """Make the remote tree match the local one (new or changed files)."""
        return await self._sync(
            conn, Path(local_root), remote_root, SyncDirection.TO_REMOTE, ignore, delete, token
        )

    async def sync_to_local(
        self,
        conn: Connection,
        local_root: Path | str,
        remote_root: str,
        ignore: Iterable[str] = (),
        delete: bool = False,
        token: CancellationSignal | None = None,
    ) -> SyncResult:
        """Make the local tree match the remote one (new or changed files)."""
        return await self._sync(
            conn, Path(local_root), remote_root, SyncDirection.TO_LOCAL, ignore, delete, token
        )

    async def sync_both_ways(
        self,
        conn: Connection,
        local_root: Path | str,
        remote_root: str,
        ignore: Iterable[str] = (),
        delete: bool = False,
        token: CancellationSignal | None = None,
    ) -> SyncResult:
        """Copy one-sided paths across and let the newer side win elsewhere.

        ``delete`` has no effect: a path missing on one side is always copied.
        """
        return await self._sync(
            conn, Path(local_root), remote_root, SyncDirection.BOTH, ignore, delete, token
        )

    async def _sync(
        self,
        conn: Connection,
        local_root: Path,
        remote_root: str,
        direction: SyncDirection,
        ignore: Iterable[str],
        delete: bool,
        token: CancellationSignal | None,
    ) -> SyncResult:
        patterns = IgnorePatterns(ignore)
        run = self._begin(token)
        try:
            local_scan = await asyncio.to_thread(scan_local, local_root, patterns)
            remote_scan = await scan_remote(conn, remote_root, patterns)
            decisions = SyncComparator(direction, delete=delete).compare(
                local_scan.entries, remote_scan.entries
            )

            result = SyncResult(skipped=sorted(set(local_scan.skipped) | set(remote_scan.skipped)))
            copies: list[TransferTask] = []
            deletes: list[TransferTask] = []
            for decision in decisions:
                if decision.conflict:
                    result.conflicts.append(decision.relative_path)
                if decision.action == SyncAction.SKIP:
                    result.skipped.append(decision.relative_path)
                    continue
                if decision.action == SyncAction.ERROR:
                    result.failed.append((decision.relative_path, decision.reason))
                    continue

                entry = decision.local or decision.remote
                if entry is None:
                    raise ValueError(f"No entry on either side for {decision.relative_path}")
                task = self._make_task(
                    _ACTION_DIRECTIONS[decision.action],
                    decision.relative_path,
                    local_root,
                    remote_root,
                    entry.size,
                    entry.is_dir,
                )
                (deletes if task.direction.is_delete else copies).append(task)

            # Children are deleted before their directories
            deletes.sort(key=lambda t: (-t.relative_path.count("/"), t.relative_path))
            tasks = copies + deletes

            logger.info(
                f"Sync {direction.value} {local_root} <-> {remote_root}: "
                f"{len(tasks)} tasks, {len(result.skipped)} skipped"
            )
            directions = {t.direction for t in tasks}
            if directions & {TransferDirection.UPLOAD, TransferDirection.MKDIR_REMOTE}:
                await self._ensure_remote_dir(conn, remote_root)
            if directions & {TransferDirection.DOWNLOAD, TransferDirection.MKDIR_LOCAL}:
                await asyncio.to_thread(local_root.mkdir, parents=True, exist_ok=True)

            return await self._execute(conn, tasks, result, run)
        finally:
            self._end(run)

    # ------------------------------------------------------------------
    # Change sets
    # ------------------------------------------------------------------

    async def upload_changed(
        self,
        conn: Connection,
        provider: ChangeSetProvider,
        local_root: Path | str,
        remote_root: str,
        ignore: Iterable[str] = (),
        token: CancellationSignal | None = None,
    ) -> SyncResult:
        """Upload the uploadable files a change-set provider reports.

        Raises:
            CapabilityError: If the provider has no change set for this tree.
        """
        local_root = Path(local_root)
        if not await asyncio.to_thread(provider.is_repository):
            raise CapabilityError(f"No change tracking available for {local_root}")

        patterns = IgnorePatterns(ignore)
        changed = filter_uploadable(await asyncio.to_thread(provider.get_changed_files))
        result = SyncResult()
        tasks = []
        for changed_file in sorted(changed, key=lambda f: f.relative_path):
            try:
                rel = sanitize_relative_path(changed_file.relative_path)
            except ValueError as e:
                logger.warning(f"Skipping change outside {local_root}: {e}")
                result.skipped.append(changed_file.relative_path)
                continue
            if patterns.matches(rel):
                result.skipped.append(rel)
                continue
            tasks.append(
                TransferTask(
                    TransferDirection.UPLOAD,
                    relative_path=rel,
                    local_path=changed_file.absolute_path,
                    remote_path=join_remote_path(remote_root, rel),
                )
            )

        run = self._begin(token)
        try:
            return await self._execute(conn, tasks, result, run)
        finally:
            self._end(run)
