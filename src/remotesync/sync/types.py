"""Shared types and dataclasses for sync operations.

This module provides:
- TransferDirection, TransferStatus: Task classification enums
- TransferTask: One planned unit of work
- TransferSnapshot: Read-only view of a queued task
- SyncResult: Overall directory/sync operation result
- CancellationToken: Cooperative cancellation flag
- ChangeKind, PendingChange: Watcher event types
- Protocols for the cancellation signal and progress sink
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol


class TransferDirection(str, Enum):
    """What a TransferTask does."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_REMOTE = "delete_remote"
    DELETE_LOCAL = "delete_local"
    MKDIR_REMOTE = "mkdir_remote"
    MKDIR_LOCAL = "mkdir_local"

    @property
    def is_mkdir(self) -> bool:
        return self in (TransferDirection.MKDIR_REMOTE, TransferDirection.MKDIR_LOCAL)

    @property
    def is_delete(self) -> bool:
        return self in (TransferDirection.DELETE_REMOTE, TransferDirection.DELETE_LOCAL)


class TransferStatus(str, Enum):
    """Lifecycle of a TransferTask."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
            TransferStatus.CANCELLED,
        )


@dataclass
class TransferTask:
    """One planned copy, delete or directory creation.

    Attributes:
        direction: What the task does.
        relative_path: Path relative to the sync roots (forward slashes).
        local_path: Local file or directory, when the task touches local disk.
        remote_path: Remote file or directory, when the task touches the remote.
        size: Bytes to transfer when known.
        is_directory: Whether the path is a directory (deletes and mkdirs).
        status: Current lifecycle state.
        transferred: Bytes transferred so far.
        error: Failure message once failed.
        id: Unique task id.
    """

    direction: TransferDirection
    relative_path: str
    local_path: Path | None = None
    remote_path: str | None = None
    size: int = 0
    is_directory: bool = False
    status: TransferStatus = TransferStatus.PENDING
    transferred: int = 0
    error: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def progress(self) -> int:
        """Completion percentage (0-100)."""
        if self.status == TransferStatus.COMPLETED:
            return 100
        if self.size <= 0:
            return 0
        return min(100, round(self.transferred / self.size * 100))


@dataclass(frozen=True)
class TransferSnapshot:
    """Read-only view of a queued or running task."""

    direction: TransferDirection
    local_path: Path | None
    remote_path: str | None
    status: TransferStatus
    progress: int


@dataclass
class SyncResult:
    """Result of a directory copy or sync operation.

    ``uploaded``, ``downloaded``, ``deleted`` and ``failed`` partition the
    attempted tasks: every attempted path lands in exactly one of them.

    Attributes:
        uploaded: Paths copied (or directories created) on the remote.
        downloaded: Paths copied (or directories created) locally.
        deleted: Paths deleted on either side.
        failed: (path, error message) pairs.
        skipped: Paths already in sync, ignored, or left alone.
        conflicts: Paths changed on both sides (informational).
        cancelled: Whether the run stopped early on cancellation.
    """

    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        """Number of tasks that ran (successfully or not)."""
        return len(self.uploaded) + len(self.downloaded) + len(self.deleted) + len(self.failed)

    @property
    def success(self) -> bool:
        return not self.failed and not self.cancelled

    def record_success(self, task: TransferTask) -> None:
        if task.direction in (TransferDirection.UPLOAD, TransferDirection.MKDIR_REMOTE):
            self.uploaded.append(task.relative_path)
        elif task.direction in (TransferDirection.DOWNLOAD, TransferDirection.MKDIR_LOCAL):
            self.downloaded.append(task.relative_path)
        else:
            self.deleted.append(task.relative_path)

    def record_failure(self, task: TransferTask, error: str) -> None:
        self.failed.append((task.relative_path, error))

    def merge(self, other: SyncResult) -> SyncResult:
        """Return a new result combining this one and ``other``."""
        return SyncResult(
            uploaded=self.uploaded + other.uploaded,
            downloaded=self.downloaded + other.downloaded,
            deleted=self.deleted + other.deleted,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            conflicts=self.conflicts + other.conflicts,
            cancelled=self.cancelled or other.cancelled,
        )


class CancellationSignal(Protocol):
    """Anything exposing a cancellation flag."""

    @property
    def is_cancellation_requested(self) -> bool: ...


class CancellationToken:
    """Cooperative cancellation flag checked between transfer tasks."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ProgressSink(Protocol):
    """Write-only progress reporter (one call per task)."""

    def report(self, message: str, increment_percent: float) -> None: ...


class ChangeKind(str, Enum):
    """Kind of a local filesystem change."""

    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


@dataclass(frozen=True)
class PendingChange:
    """A local change waiting for its debounce window to elapse."""

    path: Path
    kind: ChangeKind
    arrived_at: float
