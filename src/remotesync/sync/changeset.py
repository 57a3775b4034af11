"""Change-set providers for "upload changed files only" workflows.

This module provides:
- ChangeSetProvider: Contract consumed by TransferEngine.upload_changed
- ChangedFile, ChangeStatus: One changed path and its status
- GitChangeSet: Provider backed by ``git status --porcelain``
- filter_uploadable: Keep entries that can be uploaded
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from remotesync.core.errors import RemoteSyncError

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30.0  # seconds


class ChangeStatus(str, Enum):
    """Status of a changed path."""

    MODIFIED = "modified"
    ADDED = "added"
    DELETED = "deleted"
    RENAMED = "renamed"
    COPIED = "copied"
    UNTRACKED = "untracked"


# Porcelain status codes (trimmed XY field); anything else counts as modified
_STATUS_CODES = {
    "M": ChangeStatus.MODIFIED,
    "A": ChangeStatus.ADDED,
    "D": ChangeStatus.DELETED,
    "R": ChangeStatus.RENAMED,
    "C": ChangeStatus.COPIED,
    "??": ChangeStatus.UNTRACKED,
    "MM": ChangeStatus.MODIFIED,
    "AM": ChangeStatus.ADDED,
}


class ChangeSetError(RemoteSyncError):
    """The change-tracking tool failed."""

    kind = "changeset"


@dataclass(frozen=True)
class ChangedFile:
    """A locally changed path.

    Attributes:
        relative_path: Path relative to the provider root (forward slashes).
        status: What happened to the path.
        absolute_path: Absolute local path.
    """

    relative_path: str
    status: ChangeStatus
    absolute_path: Path


class ChangeSetProvider(Protocol):
    """Supplies locally changed paths; the engine never looks further."""

    def is_repository(self) -> bool: ...

    def get_changed_files(self) -> list[ChangedFile]: ...


def map_status_code(code: str) -> ChangeStatus:
    """Map a porcelain XY code to a ChangeStatus."""
    return _STATUS_CODES.get(code.strip(), ChangeStatus.MODIFIED)


def filter_uploadable(files: Iterable[ChangedFile]) -> list[ChangedFile]:
    """Keep entries that exist, are regular files and are not deleted."""
    return [
        f
        for f in files
        if f.status != ChangeStatus.DELETED
        and f.absolute_path.is_file()
        and not f.absolute_path.is_symlink()
    ]


class GitChangeSet:
    """Changed files of a git working tree (staged and unstaged).

    Usage:
        provider = GitChangeSet(Path("~/project").expanduser())
        if provider.is_repository():
            changed = filter_uploadable(provider.get_changed_files())
    """

    def __init__(self, root: Path, git: str = "git") -> None:
        """Initialize the provider.

        Args:
            root: Directory whose changes are reported; may be below the
                repository top level.
            git: Git executable.
        """
        self._root = Path(root).resolve()
        self._git = git

    @property
    def root(self) -> Path:
        return self._root

    def _run_git(self, args: Sequence[str]) -> str:
        completed = subprocess.run(
            [self._git, *args],
            cwd=self._root,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=GIT_TIMEOUT,
        )
        return completed.stdout

    def is_repository(self) -> bool:
        try:
            return self._run_git(["rev-parse", "--is-inside-work-tree"]).strip() == "true"
        except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return False

    def _status_entries(self) -> list[tuple[str, str]]:
        """Return ``(XY, path relative to the top level)`` pairs."""
        try:
            output = self._run_git(
                ["status", "--porcelain", "-z", "--untracked-files=all", "--", "."]
            )
        except subprocess.CalledProcessError as e:
            raise ChangeSetError(f"git status failed: {e.stderr.strip()}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ChangeSetError(f"Cannot run git: {e}") from e

        entries: list[tuple[str, str]] = []
        fields = output.split("\0")
        i = 0
        while i < len(fields):
            record = fields[i]
            i += 1
            if len(record) < 4:
                continue
            code, path = record[:2], record[3:]
            if code[0] in "RC":
                # Renames and copies carry the source path as the next field
                i += 1
            entries.append((code, path))
        return entries

    def _entries_below_root(self) -> list[tuple[str, str, Path]]:
        """Return ``(XY, relative path, absolute path)`` for paths below the root."""
        try:
            top_level = Path(self._run_git(["rev-parse", "--show-toplevel"]).strip()).resolve()
        except subprocess.CalledProcessError as e:
            raise ChangeSetError(f"git rev-parse failed: {e.stderr.strip()}") from e

        entries = []
        for code, path in self._status_entries():
            absolute = top_level / path
            try:
                relative = absolute.relative_to(self._root).as_posix()
            except ValueError:
                continue
            entries.append((code, relative, absolute))
        return entries

    def get_changed_files(self) -> list[ChangedFile]:
        """List changed files below the root, de-duplicated by path.

        Returns:
            An empty list when the root is not inside a git work tree.

        Raises:
            ChangeSetError: If git fails inside a repository.
        """
        if not self.is_repository():
            logger.warning(f"Not a git repository: {self._root}")
            return []

        seen: set[str] = set()
        changed: list[ChangedFile] = []
        for code, relative, absolute in self._entries_below_root():
            if relative in seen:
                continue
            seen.add(relative)
            changed.append(ChangedFile(relative, map_status_code(code), absolute))

        logger.debug(f"git reports {len(changed)} changed files under {self._root}")
        return changed

    def get_staged_files(self) -> list[ChangedFile]:
        """Only the changes recorded in the index."""
        if not self.is_repository():
            return []
        return [
            ChangedFile(relative, map_status_code(code[0]), absolute)
            for code, relative, absolute in self._entries_below_root()
            if code[0] not in (" ", "?")
        ]
