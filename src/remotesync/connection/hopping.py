"""SSH jump-host chains.

This module provides:
- connect_ssh_client: Authenticate a paramiko SSHClient (optionally over a socket)
- HopChain: Open local -> hop 1 -> ... -> hop N -> target tunnels

Each hop is authenticated in order. From hop *i* a ``direct-tcpip`` channel is
opened to hop *i+1* (or to the real target) and used as the socket of the next
SSH session, so the terminal session is only opened once every hop is up.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import paramiko

from remotesync.core.config import HopConfig
from remotesync.core.errors import AuthenticationError, ConfigurationError, TransportError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], paramiko.SSHClient]

# Source address reported for forwarded channels
FORWARD_ORIGIN = ("127.0.0.1", 0)


def connect_ssh_client(
    host: str,
    port: int,
    username: str,
    password: str | None = None,
    private_key_path: str | None = None,
    passphrase: str | None = None,
    timeout: float = 10.0,
    keepalive: float | None = None,
    sock: Any = None,
    client_factory: ClientFactory = paramiko.SSHClient,
) -> paramiko.SSHClient:
    """Open and authenticate an SSH client.

    Args:
        host: Host name (used for host keys even when tunnelled).
        port: SSH port.
        username: Login name.
        password: Password, used when no private key is configured.
        private_key_path: Path to a private key file.
        passphrase: Passphrase of the private key.
        timeout: TCP/banner/auth timeout in seconds.
        keepalive: Keepalive interval in seconds (None or 0 disables).
        sock: Pre-connected socket or channel (for hop chains).
        client_factory: Builds the SSHClient (tests inject mocks).

    Returns:
        A connected SSHClient.

    Raises:
        ConfigurationError: If the private key file does not exist.
        paramiko.AuthenticationException, paramiko.SSHException, OSError:
            Propagated from paramiko for the caller to translate.
    """
    kwargs: dict[str, Any] = {
        "hostname": host,
        "port": port,
        "username": username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if sock is not None:
        kwargs["sock"] = sock

    if private_key_path:
        key_file = Path(private_key_path).expanduser()
        if not key_file.is_file():
            raise ConfigurationError(f"Private key not found: {key_file}")
        kwargs["key_filename"] = str(key_file)
        if passphrase:
            kwargs["passphrase"] = passphrase
    elif password:
        kwargs["password"] = password

    client = client_factory()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    client.connect(**kwargs)

    if keepalive:
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(int(keepalive))
    return client


class HopChain:
    """A chain of authenticated jump hosts ending in a tunnel to the target.

    Usage:
        chain = HopChain(config.hops, config.host, config.effective_port)
        channel = chain.open()          # socket for the terminal session
        ...
        chain.close()                   # tears hops down in reverse order
    """

    def __init__(
        self,
        hops: Sequence[HopConfig],
        target_host: str,
        target_port: int,
        timeout: float = 10.0,
        client_factory: ClientFactory = paramiko.SSHClient,
    ) -> None:
        if not hops:
            raise ConfigurationError("Hop chain needs at least one hop")
        self._hops = list(hops)
        self._target = (target_host, target_port)
        self._timeout = timeout
        self._client_factory = client_factory
        self._clients: list[paramiko.SSHClient] = []

    @property
    def depth(self) -> int:
        """Number of hops currently open."""
        return len(self._clients)

    def open(self) -> paramiko.Channel:
        """Authenticate every hop in order and tunnel to the target.

        Returns:
            Channel connected to the target's SSH port.

        Raises:
            AuthenticationError: A hop rejected the credentials.
            TransportError: A hop could not be reached or refused forwarding.
        """
        destinations = [(hop.host, hop.port) for hop in self._hops[1:]]
        destinations.append(self._target)

        sock: Any = None
        for index, (hop, destination) in enumerate(zip(self._hops, destinations), start=1):
            label = f"hop {index} ({hop.label})"
            logger.info(f"Connecting to {label}")
            try:
                client = connect_ssh_client(
                    host=hop.host,
                    port=hop.port,
                    username=hop.username,
                    password=hop.password,
                    private_key_path=hop.private_key_path,
                    passphrase=hop.passphrase,
                    timeout=self._timeout,
                    sock=sock,
                    client_factory=self._client_factory,
                )
                self._clients.append(client)
                transport = client.get_transport()
                if transport is None:
                    raise paramiko.SSHException("transport closed")
                sock = transport.open_channel("direct-tcpip", destination, FORWARD_ORIGIN)
                logger.debug("Forwarded %s to %s:%s", label, *destination)
            except paramiko.AuthenticationException as e:
                self.close()
                raise AuthenticationError(
                    f"Authentication failed at {label}: {e}", hop=label
                ) from e
            except ConfigurationError:
                self.close()
                raise
            except (paramiko.SSHException, OSError, EOFError) as e:
                self.close()
                raise TransportError(f"Connection failed at {label}: {e}", hop=label) from e

        return sock

    def close(self) -> None:
        """Close open hops, innermost first."""
        while self._clients:
            client = self._clients.pop()
            try:
                client.close()
            except Exception as e:
                logger.debug("Error closing hop client: %s", e)
