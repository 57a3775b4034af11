"""File comparison logic for sync operations.

This module provides:
- SyncDirection: Which side is the source of truth
- SyncAction: What to do with one relative path
- SyncDecision: An action plus the reason it was chosen
- SyncComparator: Classifies the union of two scanned trees
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from remotesync.sync.scanner import TreeEntry

# Modification times closer than this are considered equal (seconds)
CLOCK_SKEW_TOLERANCE = 2.0


class SyncDirection(str, Enum):
    """Direction of a directory sync."""

    TO_REMOTE = "up"
    TO_LOCAL = "down"
    BOTH = "both"


class SyncAction(str, Enum):
    """Actions that can be taken for one path during sync."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    MKDIR_REMOTE = "mkdir_remote"
    MKDIR_LOCAL = "mkdir_local"
    DELETE_REMOTE = "delete_remote"
    DELETE_LOCAL = "delete_local"
    SKIP = "skip"
    ERROR = "error"


@dataclass(frozen=True)
class SyncDecision:
    """Represents a decision about how to sync one path."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    relative_path: str
    """Relative path of the file or directory"""

    local: TreeEntry | None = None
    """Local entry (if exists)"""

    remote: TreeEntry | None = None
    """Remote entry (if exists)"""

    conflict: bool = False
    """Whether both sides differ in a way a two-way sync had to arbitrate"""


class SyncComparator:
    """Compares local and remote trees to determine sync actions."""

    def __init__(
        self,
        direction: SyncDirection,
        delete: bool = False,
        tolerance: float = CLOCK_SKEW_TOLERANCE,
    ) -> None:
        """Initialize the comparator.

        Args:
            direction: Sync direction.
            delete: Delete destination-only paths on one-way syncs.
            tolerance: Clock-skew tolerance for mtime comparisons in seconds.
        """
        self.direction = direction
        self.delete = delete
        self.tolerance = tolerance

    def compare(
        self,
        local_entries: dict[str, TreeEntry],
        remote_entries: dict[str, TreeEntry],
    ) -> list[SyncDecision]:
        """Classify every path found on either side.

        Directories present on both sides need no action and are omitted.

        Returns:
            Decisions sorted by relative path.
        """
        decisions: list[SyncDecision] = []
        for path in sorted(set(local_entries) | set(remote_entries)):
            local = local_entries.get(path)
            remote = remote_entries.get(path)
            if local and remote:
                if local.is_dir and remote.is_dir:
                    continue
                decisions.append(self._compare_existing(path, local, remote))
            elif local:
                decisions.append(self._handle_local_only(path, local))
            elif remote:
                decisions.append(self._handle_remote_only(path, remote))
        return decisions

    def _handle_local_only(self, path: str, local: TreeEntry) -> SyncDecision:
        if self.direction == SyncDirection.TO_LOCAL:
            if self.delete:
                return SyncDecision(SyncAction.DELETE_LOCAL, "Not on remote", path, local=local)
            return SyncDecision(SyncAction.SKIP, "Local only, deletion disabled", path, local=local)
        action = SyncAction.MKDIR_REMOTE if local.is_dir else SyncAction.UPLOAD
        return SyncDecision(action, "Only exists locally", path, local=local)

    def _handle_remote_only(self, path: str, remote: TreeEntry) -> SyncDecision:
        if self.direction == SyncDirection.TO_REMOTE:
            if self.delete:
                return SyncDecision(SyncAction.DELETE_REMOTE, "Not local", path, remote=remote)
            return SyncDecision(
                SyncAction.SKIP, "Remote only, deletion disabled", path, remote=remote
            )
        action = SyncAction.MKDIR_LOCAL if remote.is_dir else SyncAction.DOWNLOAD
        return SyncDecision(action, "Only exists remotely", path, remote=remote)

    def _compare_existing(self, path: str, local: TreeEntry, remote: TreeEntry) -> SyncDecision:
        if local.is_dir != remote.is_dir:
            kind = "directory locally, file remotely" if local.is_dir else (
                "file locally, directory remotely"
            )
            return SyncDecision(SyncAction.ERROR, f"Type mismatch: {kind}", path, local, remote)

        size_differs = local.size != remote.size
        drift = local.mtime - remote.mtime
        local_newer = drift > self.tolerance
        remote_newer = drift < -self.tolerance

        if self.direction == SyncDirection.TO_REMOTE:
            if size_differs or local_newer:
                reason = "Size differs" if size_differs else "Local is newer"
                return SyncDecision(SyncAction.UPLOAD, reason, path, local, remote)
            return SyncDecision(SyncAction.SKIP, "In sync", path, local, remote)

        if self.direction == SyncDirection.TO_LOCAL:
            if size_differs or remote_newer:
                reason = "Size differs" if size_differs else "Remote is newer"
                return SyncDecision(SyncAction.DOWNLOAD, reason, path, local, remote)
            return SyncDecision(SyncAction.SKIP, "In sync", path, local, remote)

        # Two-way: newer wins, equal timestamps with different sizes are left alone
        if local_newer:
            return SyncDecision(
                SyncAction.UPLOAD, "Local is newer", path, local, remote, conflict=True
            )
        if remote_newer:
            return SyncDecision(
                SyncAction.DOWNLOAD, "Remote is newer", path, local, remote, conflict=True
            )
        if size_differs:
            return SyncDecision(
                SyncAction.SKIP,
                "Size differs with equal timestamps",
                path,
                local,
                remote,
                conflict=True,
            )
        return SyncDecision(SyncAction.SKIP, "In sync", path, local, remote)
