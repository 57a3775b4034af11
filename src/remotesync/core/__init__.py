"""Core module - Endpoint configuration, listing types and errors."""

from remotesync.core.config import (
    EndpointConfig,
    HopConfig,
    Protocol,
    SyncMode,
    WatcherSettings,
)
from remotesync.core.errors import (
    AlreadyExistsError,
    AuthenticationError,
    CancellationError,
    CapabilityError,
    ConfigurationError,
    ProtocolError,
    RemoteNotFoundError,
    RemoteSyncError,
    TransportError,
)
from remotesync.core.types import (
    ExecResult,
    FileEntry,
    FileType,
    TransferProgress,
    join_remote_path,
    normalize_remote_path,
    remote_parent,
    sanitize_relative_path,
)

__all__ = [
    # Config
    "EndpointConfig",
    "HopConfig",
    "Protocol",
    "SyncMode",
    "WatcherSettings",
    # Errors
    "AlreadyExistsError",
    "AuthenticationError",
    "CancellationError",
    "CapabilityError",
    "ConfigurationError",
    "ProtocolError",
    "RemoteNotFoundError",
    "RemoteSyncError",
    "TransportError",
    # Types
    "ExecResult",
    "FileEntry",
    "FileType",
    "TransferProgress",
    "join_remote_path",
    "normalize_remote_path",
    "remote_parent",
    "sanitize_relative_path",
]
