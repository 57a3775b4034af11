"""Shared types for remote listings.

This module defines types used by transports, connections and the engine.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from enum import Enum


class FileType(str, Enum):
    """Type of a remote entry."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class FileEntry:
    """Remote listing record.

    Attributes:
        name: Base name of the entry.
        path: Absolute remote path (forward slashes).
        type: File, directory or symlink.
        size: Size in bytes (0 for directories).
        mtime: Modification time as epoch seconds.
        mode: Permission bits, or None when the server does not report them.
    """

    name: str
    path: str
    type: FileType
    size: int = 0
    mtime: float = 0.0
    mode: int | None = None

    @property
    def is_dir(self) -> bool:
        return self.type == FileType.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.type == FileType.FILE

    @property
    def permissions(self) -> str:
        """Permission bits as an ``rwxr-xr-x`` string ("" when unknown)."""
        if self.mode is None:
            return ""
        return format_permissions(self.mode)


@dataclass(frozen=True)
class ExecResult:
    """Output of a remote shell command."""

    stdout: str
    stderr: str
    code: int


@dataclass(frozen=True)
class TransferProgress:
    """Advisory progress event for a single file copy."""

    filename: str
    transferred: int
    total: int

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.transferred / self.total * 100)


def format_permissions(mode: int) -> str:
    """Format the low nine permission bits as ``rwxrwxrwx``."""
    chars = "rwx"
    return "".join(
        chars[2 - (i % 3)] if (mode >> i) & 1 else "-" for i in range(8, -1, -1)
    )


def parse_mode(mode: int | str) -> int:
    """Accept ``0o755``, ``"755"`` or ``"rwxr-xr-x"`` and return the int mode."""
    if isinstance(mode, int):
        return mode
    if re.fullmatch(r"[rwx-]{9}", mode):
        value = 0
        for i, char in enumerate(mode):
            if char != "-":
                value |= 1 << (8 - i)
        return value
    return int(mode, 8)


def normalize_remote_path(path: str) -> str:
    """Use forward slashes and collapse duplicate separators."""
    path = re.sub(r"/+", "/", path.replace("\\", "/"))
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def join_remote_path(*parts: str) -> str:
    """Join remote path components with forward slashes."""
    return normalize_remote_path("/".join(p for p in parts if p))


def remote_parent(path: str) -> str:
    """Parent directory of a remote path."""
    path = normalize_remote_path(path)
    parent = posixpath.dirname(path)
    if parent:
        return parent
    return "/" if path.startswith("/") else "."


def sanitize_relative_path(path: str) -> str:
    """Normalize a path relative to a sync root.

    Raises:
        ValueError: If the path is absolute or escapes the root with ``..``.
    """
    normalized = normalize_remote_path(path)
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        raise ValueError(f"Expected a relative path, got {path!r}")
    if ".." in normalized.split("/"):
        raise ValueError(f"Path escapes the sync root: {path!r}")
    return normalized
