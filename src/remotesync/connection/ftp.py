"""FTP and FTPS transport built on ftplib.

This module provides:
- FTPTransport: Blocking Transport implementation for plain FTP and
  explicit FTPS (``AUTH TLS`` with a protected data channel)
- parse_list_line: Parser for Unix-style ``LIST`` output, used when the
  server does not support ``MLSD``
"""

from __future__ import annotations

import ftplib
import io
import logging
import os
import posixpath
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from remotesync.core.config import Protocol
from remotesync.core.errors import (
    AuthenticationError,
    CapabilityError,
    ProtocolError,
    TransportError,
)
from remotesync.core.types import FileEntry, FileType, join_remote_path, parse_mode

if TYPE_CHECKING:
    from remotesync.connection.transport import ByteProgress
    from remotesync.core.config import EndpointConfig
    from remotesync.core.types import ExecResult

logger = logging.getLogger(__name__)

FTPFactory = Callable[[Protocol], ftplib.FTP]

# Replies meaning "command not implemented"
_UNSUPPORTED = ("500", "501", "502")

_LIST_RE = re.compile(
    r"^(?P<type>[-dlbcps])(?P<perms>[-rwxsStT]{9})\S*\s+\d+\s+\S+\s+\S+\s+"
    r"(?P<size>\d+)\s+(?P<month>\w{3})\s+(?P<day>\d{1,2})\s+"
    r"(?P<time>\d{1,2}:\d{2}|\d{4})\s+(?P<name>.+)$"
)


def _default_factory(protocol: Protocol) -> ftplib.FTP:
    return ftplib.FTP_TLS() if protocol is Protocol.FTPS else ftplib.FTP()


def _parse_timestamp(value: str) -> float:
    """Parse ``YYYYMMDDHHMMSS[.fff]`` (MLSD/MDTM, always UTC)."""
    stamp = datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=UTC)
    return stamp.timestamp()


def _format_timestamp(mtime: float) -> str:
    return datetime.fromtimestamp(mtime, tz=UTC).strftime("%Y%m%d%H%M%S")


def parse_list_line(line: str, directory: str, now: datetime | None = None) -> FileEntry | None:
    """Parse one line of Unix ``LIST`` output.

    Returns:
        The entry, or None for lines that are not entries (``total 12``,
        ``.``/``..``, unparseable formats).
    """
    match = _LIST_RE.match(line)
    if not match:
        return None

    name = match["name"]
    type_char = match["type"]
    if type_char == "l" and " -> " in name:
        name = name.split(" -> ", 1)[0]
    if name in (".", ".."):
        return None

    now = now or datetime.now(tz=UTC)
    when = match["time"]
    if ":" in when:
        stamp = datetime.strptime(
            f"{match['month']} {match['day']} {now.year} {when}", "%b %d %Y %H:%M"
        ).replace(tzinfo=UTC)
        # Listings omit the year for the last six months
        if stamp > now:
            stamp = stamp.replace(year=now.year - 1)
    else:
        stamp = datetime.strptime(
            f"{match['month']} {match['day']} {when}", "%b %d %Y"
        ).replace(tzinfo=UTC)

    perms = match["perms"].translate(str.maketrans({"s": "x", "t": "x", "S": "-", "T": "-"}))
    file_type = {"d": FileType.DIRECTORY, "l": FileType.SYMLINK}.get(type_char, FileType.FILE)
    return FileEntry(
        name=name,
        path=join_remote_path(directory, name),
        type=file_type,
        size=int(match["size"]) if file_type is not FileType.DIRECTORY else 0,
        mtime=stamp.timestamp(),
        mode=parse_mode(perms),
    )


class _LocalFileError(Exception):
    """Carries a local file error out of an ftplib data callback."""

    def __init__(self, error: OSError) -> None:
        super().__init__(str(error))
        self.error = error


@contextmanager
def _ftp_errors(path: str) -> Iterator[None]:
    """Translate ftplib errors into the remotesync taxonomy.

    Only wrap session calls: an ``OSError`` raised inside is treated as a
    lost connection.
    """
    try:
        yield
    except ftplib.error_perm as e:
        raise ProtocolError(f"{path}: {e}") from e
    except ftplib.error_temp as e:
        if str(e).startswith("421"):
            raise TransportError(f"FTP server closed the connection: {e}") from e
        raise ProtocolError(f"{path}: {e}") from e
    except ftplib.error_reply as e:
        raise ProtocolError(f"{path}: unexpected reply {e}") from e
    except (ftplib.error_proto, OSError, EOFError) as e:
        raise TransportError(f"FTP session lost: {e}") from e


class FTPTransport:
    """Blocking FTP/FTPS adapter for one endpoint."""

    def __init__(
        self,
        config: EndpointConfig,
        ftp_factory: FTPFactory = _default_factory,
    ) -> None:
        self._config = config
        self._ftp_factory = ftp_factory
        self._ftp: ftplib.FTP | None = None
        self._home = "/"
        self._mlsd_supported = True

    def connect(self) -> None:
        """Connect, log in and select binary passive transfers.

        Raises:
            AuthenticationError: Login was rejected (530).
            TransportError: Host unreachable or TLS negotiation failed.
        """
        config = self._config
        ftp = self._ftp_factory(config.protocol)
        try:
            ftp.connect(config.host, config.effective_port, timeout=config.connect_timeout)
            ftp.login(config.username, config.password or "")
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            ftp.set_pasv(config.passive)
            self._home = ftp.pwd()
        except ftplib.error_perm as e:
            ftp.close()
            if str(e).startswith("530"):
                raise AuthenticationError(
                    f"Login failed for {config.username}@{config.host}: {e}"
                ) from e
            raise TransportError(f"Cannot connect to {config.host}: {e}") from e
        except ftplib.all_errors as e:
            ftp.close()
            raise TransportError(f"Cannot connect to {config.host}: {e}") from e
        self._ftp = ftp

    def close(self) -> None:
        if self._ftp is None:
            return
        try:
            self._ftp.quit()
        except ftplib.all_errors:
            self._ftp.close()
        self._ftp = None

    @property
    def _session(self) -> ftplib.FTP:
        if self._ftp is None:
            raise TransportError("FTP session is not open")
        return self._ftp

    def list(self, path: str) -> list[FileEntry]:
        if self._mlsd_supported:
            try:
                return self._list_mlsd(path)
            except ProtocolError as e:
                cause = e.__cause__
                if not isinstance(cause, ftplib.error_perm) or str(cause)[:3] not in _UNSUPPORTED:
                    raise
                logger.info("Server does not support MLSD, falling back to LIST")
                self._mlsd_supported = False
        return self._list_unix(path)

    def _list_mlsd(self, path: str) -> list[FileEntry]:
        entries = []
        with _ftp_errors(path):
            listing = list(self._session.mlsd(path, facts=["type", "size", "modify", "unix.mode"]))
        for name, facts in listing:
            kind = facts.get("type", "file").lower()
            if kind in ("cdir", "pdir") or name in (".", ".."):
                continue
            if kind == "dir":
                file_type = FileType.DIRECTORY
            elif kind.startswith("os.unix=symlink") or kind == "os.unix=slink":
                file_type = FileType.SYMLINK
            else:
                file_type = FileType.FILE
            modify = facts.get("modify")
            mode = facts.get("unix.mode")
            entries.append(
                FileEntry(
                    name=name,
                    path=join_remote_path(path, name),
                    type=file_type,
                    size=int(facts.get("size", 0) or 0),
                    mtime=_parse_timestamp(modify) if modify else 0.0,
                    mode=int(mode, 8) if mode else None,
                )
            )
        return entries

    def _list_unix(self, path: str) -> list[FileEntry]:
        lines: list[str] = []
        with _ftp_errors(path):
            self._session.retrlines(f"LIST {path}", lines.append)
        entries = []
        for line in lines:
            entry = parse_list_line(line, path)
            if entry is not None:
                entries.append(entry)
            elif line and not line.startswith("total"):
                logger.warning("Skipping unparseable LIST line: %r", line)
        return entries

    def stat(self, path: str) -> FileEntry | None:
        if path in ("/", "") or path == self._home:
            return FileEntry(name=path or "/", path=path or "/", type=FileType.DIRECTORY)
        parent = posixpath.dirname(path) or self._home
        name = posixpath.basename(path)
        try:
            entries = self.list(parent)
        except ProtocolError:
            return None
        for entry in entries:
            if entry.name == name:
                return entry
        return None

    def download(self, remote_path: str, local_path: Path, callback: ByteProgress) -> None:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        ftp = self._session
        with _ftp_errors(remote_path):
            ftp.voidcmd("TYPE I")
            try:
                total = ftp.size(remote_path) or 0
            except ftplib.error_perm:
                total = 0

        transferred = 0
        try:
            with open(local_path, "wb") as f, _ftp_errors(remote_path):
                def write_block(block: bytes) -> None:
                    nonlocal transferred
                    try:
                        f.write(block)
                    except OSError as e:
                        raise _LocalFileError(e) from e
                    transferred += len(block)
                    callback(transferred, total)

                ftp.retrbinary(f"RETR {remote_path}", write_block)
        except _LocalFileError as e:
            self._finish_aborted_transfer()
            raise e.error from None

        try:
            with _ftp_errors(remote_path):
                response = ftp.sendcmd(f"MDTM {remote_path}")
            mtime = _parse_timestamp(response.split()[-1])
            os.utime(local_path, (mtime, mtime))
        except (ProtocolError, ValueError) as e:
            logger.debug("Could not read mtime of %s: %s", remote_path, e)

    def _finish_aborted_transfer(self) -> None:
        """Consume the reply of a download we stopped reading."""
        try:
            self._session.voidresp()
        except ftplib.all_errors as e:
            logger.debug("Discarding reply of aborted transfer: %s", e)

    def upload(self, local_path: Path, remote_path: str, callback: ByteProgress) -> None:
        ftp = self._session
        local_stat = local_path.stat()
        total = local_stat.st_size
        transferred = 0

        def on_block(block: bytes) -> None:
            nonlocal transferred
            transferred += len(block)
            callback(transferred, total)

        with open(local_path, "rb") as f, _ftp_errors(remote_path):
            ftp.storbinary(f"STOR {remote_path}", f, callback=on_block)

        try:
            with _ftp_errors(remote_path):
                ftp.sendcmd(f"MFMT {_format_timestamp(local_stat.st_mtime)} {remote_path}")
        except ProtocolError as e:
            logger.debug("Could not preserve mtime on %s: %s", remote_path, e)

    def delete(self, path: str) -> None:
        with _ftp_errors(path):
            self._session.delete(path)

    def mkdir(self, path: str) -> None:
        """Create ``path`` and any missing parents; existing directories are fine."""
        ftp = self._session
        current = "/" if path.startswith("/") else ""
        with _ftp_errors(path):
            try:
                for part in [p for p in path.split("/") if p]:
                    current = join_remote_path(current, part)
                    try:
                        ftp.cwd(current)
                    except ftplib.error_perm:
                        ftp.mkd(current)
            finally:
                ftp.cwd(self._home)

    def rmdir(self, path: str, recursive: bool = False) -> None:
        if recursive:
            for entry in self.list(path):
                if entry.is_dir:
                    self.rmdir(entry.path, recursive=True)
                else:
                    self.delete(entry.path)
        with _ftp_errors(path):
            self._session.rmd(path)

    def rename(self, old_path: str, new_path: str) -> None:
        with _ftp_errors(old_path):
            self._session.rename(old_path, new_path)

    def chmod(self, path: str, mode: int) -> None:
        with _ftp_errors(path):
            self._session.sendcmd(f"SITE CHMOD {mode:o} {path}")

    def read_file(self, path: str) -> bytes:
        buffer = io.BytesIO()
        with _ftp_errors(path):
            self._session.retrbinary(f"RETR {path}", buffer.write)
        return buffer.getvalue()

    def write_file(self, path: str, data: bytes) -> None:
        with _ftp_errors(path):
            self._session.storbinary(f"STOR {path}", io.BytesIO(data))

    def exec(self, command: str) -> ExecResult:
        raise CapabilityError(
            "Remote command execution is not supported over FTP. Use SFTP instead."
        )

