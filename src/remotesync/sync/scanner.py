"""Local and remote tree scanners.

This module provides:
- TreeEntry: One file or directory found below a sync root
- ScanResult: Entries keyed by relative path plus skipped paths
- scan_local: Walk a local directory tree
- scan_remote: Walk a remote directory tree through a Connection

Both scanners stop descending at MAX_DEPTH and stop collecting at MAX_FILES,
logging a warning when a limit truncates the tree.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from remotesync.core.types import FileType, join_remote_path

if TYPE_CHECKING:
    from remotesync.connection.base import Connection
    from remotesync.sync.ignore import IgnorePatterns

logger = logging.getLogger(__name__)

# Safety limits for tree traversal
MAX_DEPTH = 50
MAX_FILES = 100_000


@dataclass(frozen=True)
class TreeEntry:
    """A file or directory below a sync root."""

    relative_path: str
    type: FileType
    size: int = 0
    mtime: float = 0.0

    @property
    def is_dir(self) -> bool:
        return self.type == FileType.DIRECTORY


@dataclass
class ScanResult:
    """Result of scanning one tree.

    Attributes:
        entries: Files and directories keyed by relative path.
        skipped: Relative paths left out (ignored or symlinks).
        truncated: Whether MAX_DEPTH or MAX_FILES cut the scan short.
    """

    entries: dict[str, TreeEntry] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    truncated: bool = False


def scan_local(
    root: Path,
    ignore: IgnorePatterns,
    max_depth: int = MAX_DEPTH,
    max_files: int = MAX_FILES,
) -> ScanResult:
    """Walk a local directory tree.

    Blocking; the engine runs it on a worker thread. A missing root yields
    an empty result.
    """
    result = ScanResult()
    root = Path(root)
    if not root.is_dir():
        return result

    for root_str, dirs, files in os.walk(root):
        current = Path(root_str)
        relative_dir = current.relative_to(root).as_posix()
        depth = 0 if relative_dir == "." else relative_dir.count("/") + 1

        kept_dirs = []
        for name in sorted(dirs):
            path = current / name
            rel = path.relative_to(root).as_posix()
            if ignore.should_ignore(path, root):
                result.skipped.append(rel)
                continue
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                logger.debug(f"{rel} vanished during scan")
                continue
            result.entries[rel] = TreeEntry(rel, FileType.DIRECTORY, mtime=mtime)
            kept_dirs.append(name)
        if depth >= max_depth:
            if kept_dirs:
                result.truncated = True
            kept_dirs = []
        dirs[:] = kept_dirs

        for name in sorted(files):
            if len(result.entries) >= max_files:
                result.truncated = True
                break
            path = current / name
            rel = path.relative_to(root).as_posix()
            if ignore.should_ignore(path, root):
                result.skipped.append(rel)
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                logger.debug(f"{rel} vanished during scan")
                continue
            result.entries[rel] = TreeEntry(
                rel, FileType.FILE, size=stat.st_size, mtime=stat.st_mtime
            )
        if len(result.entries) >= max_files:
            result.truncated = True
            break

    if result.truncated:
        logger.warning(
            f"Local traversal of {root} hit the limit ({max_depth} levels, "
            f"{max_files} entries). Some files may have been skipped."
        )
    return result


async def scan_remote(
    connection: Connection,
    root: str,
    ignore: IgnorePatterns,
    max_depth: int = MAX_DEPTH,
    max_files: int = MAX_FILES,
) -> ScanResult:
    """Walk a remote directory tree breadth-first.

    A missing root yields an empty result. Remote symlinks are skipped.
    """
    result = ScanResult()
    root_entry = await connection.stat(root)
    if root_entry is None or not root_entry.is_dir:
        return result

    pending: list[tuple[str, int]] = [("", 0)]
    while pending:
        relative_dir, depth = pending.pop(0)
        listing = await connection.list(join_remote_path(root, relative_dir))
        for entry in sorted(listing, key=lambda e: e.name):
            if len(result.entries) >= max_files:
                result.truncated = True
                break
            rel = f"{relative_dir}/{entry.name}" if relative_dir else entry.name
            if entry.type == FileType.SYMLINK or ignore.matches(rel):
                result.skipped.append(rel)
                continue
            result.entries[rel] = TreeEntry(rel, entry.type, size=entry.size, mtime=entry.mtime)
            if entry.is_dir:
                if depth + 1 > max_depth:
                    result.truncated = True
                else:
                    pending.append((rel, depth + 1))
        if result.truncated and len(result.entries) >= max_files:
            break

    if result.truncated:
        logger.warning(
            f"Remote traversal of {root} hit the limit ({max_depth} levels, "
            f"{max_files} entries). Some files may have been skipped."
        )
    return result
