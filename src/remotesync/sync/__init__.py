"""Sync operations between a local tree and a remote endpoint.

Architecture:
    scan_local / scan_remote → SyncComparator → TransferTasks → TransferEngine → Connection

Components:
- **IgnorePatterns**: Glob filtering relative to the sync root
- **Scanners**: Walk local and remote trees (bounded depth and size)
- **SyncComparator**: Classifies each path into an action
- **TransferEngine**: Executes plans with progress and cancellation
- **LocalChangeWatcher / WatcherManager**: Debounced propagation of local edits
- **GitChangeSet**: Change-set provider for "upload changed files only"
"""

from remotesync.sync.changeset import (
    ChangedFile,
    ChangeSetError,
    ChangeSetProvider,
    ChangeStatus,
    GitChangeSet,
    filter_uploadable,
)
from remotesync.sync.comparator import (
    CLOCK_SKEW_TOLERANCE,
    SyncAction,
    SyncComparator,
    SyncDecision,
    SyncDirection,
)
from remotesync.sync.engine import TransferEngine
from remotesync.sync.ignore import DEFAULT_IGNORE_PATTERNS, IgnorePatterns, matches_pattern
from remotesync.sync.scanner import MAX_DEPTH, MAX_FILES, ScanResult, TreeEntry
from remotesync.sync.types import (
    CancellationSignal,
    CancellationToken,
    ChangeKind,
    PendingChange,
    ProgressSink,
    SyncResult,
    TransferDirection,
    TransferSnapshot,
    TransferStatus,
    TransferTask,
)
from remotesync.sync.watcher import (
    DEFAULT_DEBOUNCE_S,
    RECENT_UPLOAD_WINDOW,
    LocalChangeWatcher,
    WatcherManager,
)

__all__ = [
    # Change sets
    "ChangedFile",
    "ChangeSetError",
    "ChangeSetProvider",
    "ChangeStatus",
    "GitChangeSet",
    "filter_uploadable",
    # Comparison
    "CLOCK_SKEW_TOLERANCE",
    "SyncAction",
    "SyncComparator",
    "SyncDecision",
    "SyncDirection",
    # Engine
    "TransferEngine",
    # Ignore
    "DEFAULT_IGNORE_PATTERNS",
    "IgnorePatterns",
    "matches_pattern",
    # Scanning
    "MAX_DEPTH",
    "MAX_FILES",
    "ScanResult",
    "TreeEntry",
    # Types
    "CancellationSignal",
    "CancellationToken",
    "ChangeKind",
    "PendingChange",
    "ProgressSink",
    "SyncResult",
    "TransferDirection",
    "TransferSnapshot",
    "TransferStatus",
    "TransferTask",
    # Watcher
    "DEFAULT_DEBOUNCE_S",
    "RECENT_UPLOAD_WINDOW",
    "LocalChangeWatcher",
    "WatcherManager",
]
