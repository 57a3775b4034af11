"""Shared fixtures: an in-process transport backed by a local directory.

DirectoryTransport implements the blocking Transport contract against a
directory under ``tmp_path``, so Connection, the registry, the engine and the
watcher can be exercised end to end without an SFTP or FTP server.
"""

from __future__ import annotations

import os
import shutil
import stat
import threading
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from remotesync.connection.base import Connection
from remotesync.core.config import EndpointConfig
from remotesync.core.errors import ProtocolError, RemoteNotFoundError
from remotesync.core.types import ExecResult, FileEntry, FileType, join_remote_path


class DirectoryTransport:
    """Serves remote paths from ``server_root``.

    Attributes:
        calls: ``(operation, path)`` pairs in the order they ran.
        connect_errors: Errors raised by successive ``connect`` calls.
        path_errors: Errors raised by any operation on a given remote path.
    """

    def __init__(self, server_root: Path) -> None:
        self.server_root = server_root
        self.calls: list[tuple[str, str]] = []
        self.connect_errors: list[Exception] = []
        self.path_errors: dict[str, Exception] = {}
        self.connected = False
        self.connect_count = 0
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def local(self, remote_path: str) -> Path:
        return self.server_root / remote_path.lstrip("/")

    def _record(self, operation: str, path: str) -> None:
        with self._lock:
            self.calls.append((operation, path))
        if path in self.path_errors:
            raise self.path_errors[path]

    def _entry(self, remote_path: str) -> FileEntry:
        target = self.local(remote_path)
        info = target.lstat()
        if stat.S_ISLNK(info.st_mode):
            file_type = FileType.SYMLINK
        elif stat.S_ISDIR(info.st_mode):
            file_type = FileType.DIRECTORY
        else:
            file_type = FileType.FILE
        return FileEntry(
            name=target.name or "/",
            path=remote_path,
            type=file_type,
            size=0 if file_type == FileType.DIRECTORY else info.st_size,
            mtime=info.st_mtime,
            mode=stat.S_IMODE(info.st_mode),
        )

    def connect(self) -> None:
        self._record("connect", "")
        self.connect_count += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.server_root.mkdir(parents=True, exist_ok=True)
        self.connected = True

    def close(self) -> None:
        self._record("close", "")
        self.connected = False

    def list(self, path: str) -> list[FileEntry]:
        self._record("list", path)
        target = self.local(path)
        if not target.is_dir():
            raise RemoteNotFoundError(f"No such directory: {path}")
        return [self._entry(join_remote_path(path, child.name)) for child in target.iterdir()]

    def stat(self, path: str) -> FileEntry | None:
        self._record("stat", path)
        target = self.local(path)
        if not target.exists() and not target.is_symlink():
            return None
        return self._entry(path)

    def download(self, remote_path: str, local_path: Path, callback: Callable[[int, int], None]) -> None:
        self._record("download", remote_path)
        source = self.local(remote_path)
        if not source.is_file():
            raise RemoteNotFoundError(f"No such file: {remote_path}")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, local_path)
        size = source.stat().st_size
        callback(size, size)

    def upload(self, local_path: Path, remote_path: str, callback: Callable[[int, int], None]) -> None:
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            self._record("upload", remote_path)
            target = self.local(remote_path)
            if not target.parent.is_dir():
                raise RemoteNotFoundError(f"No such directory: {remote_path}")
            shutil.copy2(local_path, target)
            size = target.stat().st_size
            callback(size, size)
        finally:
            with self._lock:
                self._active -= 1

    def delete(self, path: str) -> None:
        self._record("delete", path)
        target = self.local(path)
        if not target.is_file():
            raise RemoteNotFoundError(f"No such file: {path}")
        target.unlink()

    def mkdir(self, path: str) -> None:
        self._record("mkdir", path)
        target = self.local(path)
        if target.exists() and not target.is_dir():
            raise ProtocolError(f"Not a directory: {path}")
        target.mkdir(parents=True, exist_ok=True)

    def rmdir(self, path: str, recursive: bool = False) -> None:
        self._record("rmdir", path)
        target = self.local(path)
        if not target.is_dir():
            raise RemoteNotFoundError(f"No such directory: {path}")
        if recursive:
            shutil.rmtree(target)
        else:
            try:
                target.rmdir()
            except OSError as e:
                raise ProtocolError(f"Directory not empty: {path}") from e

    def rename(self, old_path: str, new_path: str) -> None:
        self._record("rename", old_path)
        os.replace(self.local(old_path), self.local(new_path))

    def chmod(self, path: str, mode: int) -> None:
        self._record("chmod", path)
        os.chmod(self.local(path), mode)

    def read_file(self, path: str) -> bytes:
        self._record("read_file", path)
        target = self.local(path)
        if not target.is_file():
            raise RemoteNotFoundError(f"No such file: {path}")
        return target.read_bytes()

    def write_file(self, path: str, data: bytes) -> None:
        self._record("write_file", path)
        self.local(path).write_bytes(data)

    def exec(self, command: str) -> ExecResult:
        self._record("exec", command)
        return ExecResult(stdout=f"ran {command}\n", stderr="", code=0)


@pytest.fixture
def server_root(tmp_path: Path) -> Path:
    """Directory standing in for the remote file system."""
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def local_root(tmp_path: Path) -> Path:
    """Local sync root."""
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def transport(server_root: Path) -> DirectoryTransport:
    """A single shared DirectoryTransport."""
    return DirectoryTransport(server_root)


@pytest.fixture
def endpoint() -> EndpointConfig:
    """A valid SFTP endpoint rooted at /srv/site."""
    return EndpointConfig(
        host="example.com",
        username="deploy",
        password="secret",
        remote_path="/srv/site",
        name="site",
    )


@pytest_asyncio.fixture
async def connection(endpoint: EndpointConfig, transport: DirectoryTransport) -> AsyncIterator[Connection]:
    """A connected Connection over the shared DirectoryTransport."""
    conn = Connection(endpoint, transport)
    await conn.connect()
    yield conn
    await conn.disconnect()
