"""Endpoint configuration classes.

This module defines the immutable configuration consumed by the registry,
the transfer engine and the watcher. Loading endpoint files is the job of
the CLI layer; here we only build and validate objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from remotesync.core.errors import ConfigurationError


class Protocol(str, Enum):
    """Remote file-access protocol."""

    SFTP = "sftp"
    FTP = "ftp"
    FTPS = "ftps"

    @property
    def default_port(self) -> int:
        return 22 if self is Protocol.SFTP else 21


class SyncMode(str, Enum):
    """How directory syncs treat orphans on the destination side."""

    UPDATE = "update"  # copy new/changed files only
    FULL = "full"  # also delete destination-only files


@dataclass(frozen=True)
class HopConfig:
    """An SSH jump host between the client and the endpoint."""

    host: str
    username: str
    port: int = 22
    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HopConfig:
        """Create from an endpoint-file dictionary."""
        return cls(
            host=str(data.get("host", "")),
            username=str(data.get("username", "")),
            port=int(data.get("port") or 22),
            password=data.get("password"),
            private_key_path=data.get("privateKeyPath", data.get("private_key_path")),
            passphrase=data.get("passphrase"),
        )


@dataclass(frozen=True)
class WatcherSettings:
    """Watcher options for an endpoint.

    Attributes:
        files: Glob (relative to the local root) of files to watch.
        auto_upload: Upload created/changed files.
        auto_delete: Delete remote files when the local file is deleted.
    """

    files: str = "**/*"
    auto_upload: bool = True
    auto_delete: bool = False

    @classmethod
    def from_value(cls, value: Any) -> WatcherSettings | None:
        """Accept ``true``/``false`` or an object with ``files``/``autoUpload``/``autoDelete``."""
        if value is None or value is False:
            return None
        if value is True:
            return cls()
        return cls(
            files=value.get("files") or "**/*",
            auto_upload=bool(value.get("autoUpload", value.get("auto_upload", True))),
            auto_delete=bool(value.get("autoDelete", value.get("auto_delete", False))),
        )


@dataclass(frozen=True)
class EndpointConfig:
    """Configuration for one remote endpoint.

    Immutable for the lifetime of a session. The registry keys live
    connections by ``identity``.
    """

    host: str
    username: str
    protocol: Protocol = Protocol.SFTP
    port: int | None = None
    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    remote_path: str = "/"
    local_path: str | None = None
    name: str | None = None
    ignore: tuple[str, ...] = ()
    upload_on_save: bool = False
    sync_mode: SyncMode = SyncMode.UPDATE
    hops: tuple[HopConfig, ...] = ()
    watcher: WatcherSettings | None = None
    connect_timeout: float = 10.0
    keepalive: float = 10.0
    passive: bool = True

    def __post_init__(self) -> None:
        # Accept plain strings for the enum fields
        try:
            object.__setattr__(self, "protocol", Protocol(self.protocol))
        except ValueError as e:
            raise ConfigurationError(f"Unsupported protocol: {self.protocol}") from e
        try:
            object.__setattr__(self, "sync_mode", SyncMode(self.sync_mode))
        except ValueError as e:
            raise ConfigurationError(f"Unknown sync mode: {self.sync_mode}") from e

    @property
    def effective_port(self) -> int:
        return self.port or self.protocol.default_port

    @property
    def identity(self) -> str:
        """Registry key: explicit name, else ``host:port-username``."""
        if self.name:
            return self.name
        return f"{self.host}:{self.effective_port}-{self.username}"

    @property
    def display_name(self) -> str:
        return self.name or self.host

    def validate(self) -> EndpointConfig:
        """Check the configuration before any network attempt.

        Returns:
            self, for chaining.

        Raises:
            ConfigurationError: If a required field is missing or invalid.
        """
        if not self.host:
            raise ConfigurationError("Endpoint host is required")
        if not self.username:
            raise ConfigurationError(f"Username is required for {self.host}")
        if not 1 <= self.effective_port <= 65535:
            raise ConfigurationError(f"Invalid port {self.effective_port} for {self.host}")
        if not self.remote_path:
            raise ConfigurationError(f"Remote path is required for {self.host}")
        if self.hops and self.protocol is not Protocol.SFTP:
            raise ConfigurationError(
                f"Hop chains require the sftp protocol, {self.display_name} uses "
                f"{self.protocol.value}"
            )
        for index, hop in enumerate(self.hops, start=1):
            if not hop.host or not hop.username:
                raise ConfigurationError(f"Hop {index} needs both host and username")
            if not 1 <= hop.port <= 65535:
                raise ConfigurationError(f"Invalid port {hop.port} for hop {index}")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EndpointConfig:
        """Create from an endpoint-file dictionary.

        Accepts the camelCase keys used by endpoint files (``remotePath``,
        ``privateKeyPath``, ``uploadOnSave``...) as well as snake_case.

        Raises:
            ConfigurationError: If the protocol or sync mode is unknown.
        """
        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        try:
            protocol = Protocol(str(data.get("protocol", "sftp")).lower())
        except ValueError as e:
            raise ConfigurationError(f"Unsupported protocol: {data.get('protocol')}") from e
        try:
            sync_mode = SyncMode(pick("syncMode", "sync_mode", "update"))
        except ValueError as e:
            raise ConfigurationError(f"Unknown sync mode: {pick('syncMode', 'sync_mode')}") from e

        hop_data = data.get("hop", data.get("hops"))
        if isinstance(hop_data, dict):
            hop_data = [hop_data]
        hops = tuple(HopConfig.from_dict(h) for h in hop_data or [])

        # Timeouts in endpoint files are milliseconds
        timeout_ms = pick("connTimeout", "conn_timeout")
        keepalive_ms = data.get("keepalive")

        return cls(
            host=str(data.get("host", "")),
            username=str(data.get("username", "")),
            protocol=protocol,
            port=int(data["port"]) if data.get("port") else None,
            password=data.get("password"),
            private_key_path=pick("privateKeyPath", "private_key_path"),
            passphrase=data.get("passphrase"),
            remote_path=pick("remotePath", "remote_path", "/"),
            local_path=pick("localPath", "local_path"),
            name=data.get("name"),
            ignore=tuple(data.get("ignore") or ()),
            upload_on_save=bool(pick("uploadOnSave", "upload_on_save", False)),
            sync_mode=sync_mode,
            hops=hops,
            watcher=WatcherSettings.from_value(data.get("watcher")),
            connect_timeout=timeout_ms / 1000 if timeout_ms else 10.0,
            keepalive=keepalive_ms / 1000 if keepalive_ms else 10.0,
            passive=bool(data.get("passive", True)),
        )
