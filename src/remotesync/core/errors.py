"""Error taxonomy shared by connections, the transfer engine and the watcher.

This module provides:
- RemoteSyncError: Base exception carrying a taxonomy ``kind``
- TransportError, AuthenticationError: Connection-fatal failures
- ProtocolError, AlreadyExistsError, RemoteNotFoundError: Remote rejections
- CapabilityError: Operation unsupported by the active protocol
- CancellationError: Caller-requested stop
- ConfigurationError: Invalid endpoint configuration
"""

from __future__ import annotations


class RemoteSyncError(Exception):
    """Base exception for remotesync errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(RemoteSyncError):
    """Socket, DNS, SSH or authentication failure.

    The connection that raised it is unusable and must be discarded.

    Attributes:
        hop: Description of the jump host that failed, if any.
    """

    kind = "transport"

    def __init__(self, message: str, hop: str | None = None) -> None:
        super().__init__(message)
        self.hop = hop


class AuthenticationError(TransportError):
    """Credentials were rejected. Never retried."""

    kind = "authentication"


class ProtocolError(RemoteSyncError):
    """Remote side rejected an operation; the connection stays usable."""

    kind = "protocol"


class AlreadyExistsError(ProtocolError):
    """Target already exists (typically a directory on mkdir)."""


class RemoteNotFoundError(ProtocolError):
    """Remote path does not exist."""


class CapabilityError(RemoteSyncError):
    """Operation is not supported by this protocol."""

    kind = "capability"


class CancellationError(RemoteSyncError):
    """The caller asked to stop. Not a failure."""

    kind = "cancelled"


class ConfigurationError(RemoteSyncError):
    """Endpoint configuration is invalid; raised before any network attempt."""

    kind = "configuration"
