"""
Session management - connection lifecycle, transport and I/O supervision.

- SessionConnection: state machine from pairing through teardown
- SecureShellTransport / ShellChannel: transport interface it drives
- ParamikoTransport: Paramiko-based implementation of that interface
"""

from .base import (
    SessionState,
    ConnectionState,
    Idle,
    Pairing,
    Connecting,
    Authenticating,
    Connected,
    Degraded,
    Closed,
    Failed,
    is_recovering,
    requires_action,
    describe,
)
from .transport import SecureShellTransport, ShellChannel, Signer, TransportFactory
from .ssh import ParamikoTransport, ParamikoChannel, StoreBackedKey
from .connection import SessionConnection

__all__ = [
    # States
    "SessionState",
    "ConnectionState",
    "Idle",
    "Pairing",
    "Connecting",
    "Authenticating",
    "Connected",
    "Degraded",
    "Closed",
    "Failed",
    "is_recovering",
    "requires_action",
    "describe",
    # Transport
    "SecureShellTransport",
    "ShellChannel",
    "Signer",
    "TransportFactory",
    "ParamikoTransport",
    "ParamikoChannel",
    "StoreBackedKey",
    # Connection
    "SessionConnection",
]
