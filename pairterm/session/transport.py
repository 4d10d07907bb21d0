"""
Abstract secure-shell transport.

SessionConnection and PairingCoordinator talk to this, never to paramiko
directly, so the state machine can be driven by in-memory fakes.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Callable

# Signs an authentication challenge, returning the raw signature
Signer = Callable[[bytes], bytes]


class ShellChannel(ABC):
    """Interactive shell channel inside an authenticated session."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    @abstractmethod
    async def read(self, max_bytes: int) -> bytes:
        """
        Read up to max_bytes of terminal output.
        Returns b"" once the remote end has closed the channel.
        """
        pass

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write terminal input, all of it, in order."""
        pass

    @abstractmethod
    async def resize(self, cols: int, rows: int) -> None:
        """Send a window-change request."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class SecureShellTransport(ABC):
    """
    One secure-shell session: key exchange, auth, channels.

    Network-level failures raise TransportError (or OSError). Auth methods
    return False when the host rejects the credential.
    """

    @abstractmethod
    async def open(self, host: str, port: int, timeout: float) -> str:
        """
        Connect and run key exchange.
        Returns the negotiated host key fingerprint (SHA256:...).
        """
        pass

    @abstractmethod
    async def auth_token(self, username: str, token: str) -> bool:
        """Password-style authentication with a one-time pairing token."""
        pass

    @abstractmethod
    async def auth_signer(self, username: str, public_blob: bytes, signer: Signer) -> bool:
        """Public-key authentication; signer answers the host's challenge."""
        pass

    @abstractmethod
    async def exec(self, command: str) -> str:
        """Run a command on a fresh channel and return its output."""
        pass

    @abstractmethod
    async def open_shell(self, term: str, cols: int, rows: int) -> ShellChannel:
        """Open an interactive shell channel with a PTY."""
        pass

    @abstractmethod
    async def probe(self) -> None:
        """Round-trip a keepalive request. Raises TransportError if dead."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


TransportFactory = Callable[[], SecureShellTransport]
