"""Connection module - Serialized remote sessions and their registry.

Components:
- **Connection**: Per-endpoint async facade with a private FIFO
- **SFTPTransport / FTPTransport**: Blocking protocol adapters
- **HopChain**: SSH jump-host tunnels for SFTP endpoints
- **ConnectionRegistry**: One live Connection per endpoint identity
"""

from remotesync.connection.base import Connection, ConnectionStatus, ProgressListener
from remotesync.connection.ftp import FTPTransport
from remotesync.connection.hopping import HopChain, connect_ssh_client
from remotesync.connection.registry import (
    ByActiveConnections,
    ByConfig,
    ConnectionRegistry,
    ConnectionRequest,
    Explicit,
    create_transport,
)
from remotesync.connection.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    retry_with_backoff,
)
from remotesync.connection.sftp import SFTPTransport
from remotesync.connection.transport import ByteProgress, Transport, TransportFactory

__all__ = [
    # Connection
    "Connection",
    "ConnectionStatus",
    "ProgressListener",
    # Transports
    "ByteProgress",
    "FTPTransport",
    "SFTPTransport",
    "Transport",
    "TransportFactory",
    # Hopping
    "HopChain",
    "connect_ssh_client",
    # Registry
    "ByActiveConnections",
    "ByConfig",
    "ConnectionRegistry",
    "ConnectionRequest",
    "Explicit",
    "create_transport",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "retry_with_backoff",
]
