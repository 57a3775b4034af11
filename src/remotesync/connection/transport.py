"""Blocking transport contract wrapped by Connection.

Transports talk to one remote endpoint through a protocol library. They are
blocking and not safe for interleaved commands; Connection runs them one call
at a time on a worker thread.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from remotesync.core.types import ExecResult, FileEntry

if TYPE_CHECKING:
    from remotesync.core.config import EndpointConfig

# (bytes_transferred, total_bytes)
ByteProgress = Callable[[int, int], None]


class Transport(Protocol):
    """Uniform file-operation contract implemented per protocol."""

    def connect(self) -> None: ...

    def close(self) -> None: ...

    def list(self, path: str) -> list[FileEntry]: ...

    def stat(self, path: str) -> FileEntry | None: ...

    def download(self, remote_path: str, local_path: Path, callback: ByteProgress) -> None: ...

    def upload(self, local_path: Path, remote_path: str, callback: ByteProgress) -> None: ...

    def delete(self, path: str) -> None: ...

    def mkdir(self, path: str) -> None: ...

    def rmdir(self, path: str, recursive: bool = False) -> None: ...

    def rename(self, old_path: str, new_path: str) -> None: ...

    def chmod(self, path: str, mode: int) -> None: ...

    def read_file(self, path: str) -> bytes: ...

    def write_file(self, path: str, data: bytes) -> None: ...

    def exec(self, command: str) -> ExecResult: ...


TransportFactory = Callable[["EndpointConfig"], Transport]
