"""SFTP transport built on paramiko.

This module provides:
- SFTPTransport: Blocking Transport implementation over SSH/SFTP, with
  optional hop chains and remote command execution
"""

from __future__ import annotations

import logging
import os
import posixpath
import socket
import stat
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import paramiko

from remotesync.connection.hopping import ClientFactory, HopChain, connect_ssh_client
from remotesync.core.errors import (
    AuthenticationError,
    ConfigurationError,
    ProtocolError,
    RemoteNotFoundError,
    TransportError,
)
from remotesync.core.types import ExecResult, FileEntry, FileType, join_remote_path

if TYPE_CHECKING:
    from remotesync.connection.transport import ByteProgress
    from remotesync.core.config import EndpointConfig

logger = logging.getLogger(__name__)


@contextmanager
def _sftp_errors(path: str) -> Iterator[None]:
    """Translate paramiko/socket errors into the remotesync taxonomy."""
    try:
        yield
    except (paramiko.SSHException, EOFError, ConnectionError, socket.timeout) as e:
        raise TransportError(f"SFTP session lost: {e}") from e
    except FileNotFoundError as e:
        raise RemoteNotFoundError(f"No such file or directory: {path}") from e
    except paramiko.SFTPError as e:
        raise ProtocolError(f"{path}: {e}") from e
    except OSError as e:
        raise ProtocolError(f"{path}: {e}") from e


def _entry_from_attr(directory: str, attr: paramiko.SFTPAttributes) -> FileEntry:
    mode = attr.st_mode or 0
    if stat.S_ISDIR(mode):
        file_type = FileType.DIRECTORY
    elif stat.S_ISLNK(mode):
        file_type = FileType.SYMLINK
    else:
        file_type = FileType.FILE
    return FileEntry(
        name=attr.filename,
        path=join_remote_path(directory, attr.filename),
        type=file_type,
        size=attr.st_size or 0,
        mtime=float(attr.st_mtime or 0),
        mode=stat.S_IMODE(mode) if attr.st_mode is not None else None,
    )


class SFTPTransport:
    """Blocking SFTP adapter for one endpoint."""

    def __init__(
        self,
        config: EndpointConfig,
        client_factory: ClientFactory = paramiko.SSHClient,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._chain: HopChain | None = None

    def connect(self) -> None:
        """Open the SSH session (through any hops) and start SFTP.

        Raises:
            AuthenticationError: Credentials were rejected.
            TransportError: Host unreachable or SSH negotiation failed.
        """
        config = self._config
        sock = None
        if config.hops:
            self._chain = HopChain(
                config.hops,
                config.host,
                config.effective_port,
                timeout=config.connect_timeout,
                client_factory=self._client_factory,
            )
            sock = self._chain.open()

        try:
            self._client = connect_ssh_client(
                host=config.host,
                port=config.effective_port,
                username=config.username,
                password=config.password,
                private_key_path=config.private_key_path,
                passphrase=config.passphrase,
                timeout=config.connect_timeout,
                keepalive=config.keepalive,
                sock=sock,
                client_factory=self._client_factory,
            )
            self._sftp = self._client.open_sftp()
        except ConfigurationError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise AuthenticationError(
                f"Authentication failed for {config.username}@{config.host}: {e}"
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            self.close()
            raise TransportError(f"Cannot connect to {config.host}: {e}") from e

    def close(self) -> None:
        if self._sftp is not None:
            try:
                self._sftp.close()
            except Exception as e:
                logger.debug("Error closing SFTP channel: %s", e)
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None
        if self._chain is not None:
            self._chain.close()
            self._chain = None

    @property
    def _session(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise TransportError("SFTP session is not open")
        return self._sftp

    def list(self, path: str) -> list[FileEntry]:
        with _sftp_errors(path):
            attrs = self._session.listdir_attr(path)
        return [
            _entry_from_attr(path, attr)
            for attr in attrs
            if attr.filename not in (".", "..")
        ]

    def stat(self, path: str) -> FileEntry | None:
        try:
            with _sftp_errors(path):
                attr = self._session.stat(path)
        except RemoteNotFoundError:
            return None
        attr.filename = posixpath.basename(path) or path
        return _entry_from_attr(posixpath.dirname(path), attr)

    def download(self, remote_path: str, local_path: Path, callback: ByteProgress) -> None:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with _sftp_errors(remote_path):
            self._session.get(remote_path, str(local_path), callback=callback)
            attr = self._session.stat(remote_path)
        if attr.st_mtime is not None:
            os.utime(local_path, (attr.st_atime or attr.st_mtime, attr.st_mtime))

    def upload(self, local_path: Path, remote_path: str, callback: ByteProgress) -> None:
        with _sftp_errors(remote_path):
            self._session.put(str(local_path), remote_path, callback=callback)
        local_stat = local_path.stat()
        try:
            with _sftp_errors(remote_path):
                self._session.utime(remote_path, (local_stat.st_atime, local_stat.st_mtime))
        except ProtocolError as e:
            # Some servers refuse SETSTAT; the copy itself succeeded
            logger.debug("Could not preserve mtime on %s: %s", remote_path, e)

    def delete(self, path: str) -> None:
        with _sftp_errors(path):
            self._session.remove(path)

    def mkdir(self, path: str) -> None:
        """Create ``path`` and any missing parents; existing directories are fine."""
        current = "/" if path.startswith("/") else ""
        for part in [p for p in path.split("/") if p]:
            current = join_remote_path(current, part)
            try:
                with _sftp_errors(current):
                    attr = self._session.stat(current)
            except RemoteNotFoundError:
                with _sftp_errors(current):
                    self._session.mkdir(current)
                continue
            if not stat.S_ISDIR(attr.st_mode or 0):
                raise ProtocolError(f"Not a directory: {current}")

    def rmdir(self, path: str, recursive: bool = False) -> None:
        if recursive:
            for entry in self.list(path):
                if entry.is_dir:
                    self.rmdir(entry.path, recursive=True)
                else:
                    self.delete(entry.path)
        with _sftp_errors(path):
            self._session.rmdir(path)

    def rename(self, old_path: str, new_path: str) -> None:
        with _sftp_errors(old_path):
            self._session.rename(old_path, new_path)

    def chmod(self, path: str, mode: int) -> None:
        with _sftp_errors(path):
            self._session.chmod(path, mode)

    def read_file(self, path: str) -> bytes:
        with _sftp_errors(path), self._session.open(path, "rb") as f:
            return f.read()

    def write_file(self, path: str, data: bytes) -> None:
        with _sftp_errors(path), self._session.open(path, "wb") as f:
            f.write(data)

    def exec(self, command: str) -> ExecResult:
        if self._client is None:
            raise TransportError("SSH session is not open")
        with _sftp_errors(command):
            _, stdout, stderr = self._client.exec_command(command)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
        return ExecResult(stdout=out, stderr=err, code=code)
