"""
pairterm - secure remote shell sessions for paired handheld clients.

- One-time visual pairing turns a scanned code into a durable credential
- Credential store signs challenges; private keys never leave it
- Connection state machine with keepalive, degradation and reconnect
- Backpressure-aware duplex bridge to any terminal view

Transport:
- ParamikoTransport: Paramiko-based secure-shell client
"""

__version__ = "0.1.0"

from .config import AppSettings, ConnectionPolicy, BackoffPolicy
from .errors import (
    FailureReason,
    PairtermError,
    PairingError,
    PairingExpired,
    TokenRejected,
    FingerprintMismatch,
    TransportUnreachable,
    PayloadFormatError,
    TransportError,
    ConnectionFailed,
    PairingRequired,
    CredentialStoreError,
    CredentialNotSaved,
    UnknownHost,
)
from .credentials import Credential, CredentialStore, MemoryCredentialStore, FileCredentialStore
from .pairing import PairingPayload, PairingCoordinator, PairingTokenIssuer
from .session import SessionConnection, SessionState, ParamikoTransport
from .terminal import TerminalSink, TransportBridge, KeyInput, Resize, InputQueue

__all__ = [
    # Config
    "AppSettings",
    "ConnectionPolicy",
    "BackoffPolicy",
    # Errors
    "FailureReason",
    "PairtermError",
    "PairingError",
    "PairingExpired",
    "TokenRejected",
    "FingerprintMismatch",
    "TransportUnreachable",
    "PayloadFormatError",
    "TransportError",
    "ConnectionFailed",
    "PairingRequired",
    "CredentialStoreError",
    "CredentialNotSaved",
    "UnknownHost",
    # Credentials
    "Credential",
    "CredentialStore",
    "MemoryCredentialStore",
    "FileCredentialStore",
    # Pairing
    "PairingPayload",
    "PairingCoordinator",
    "PairingTokenIssuer",
    # Sessions
    "SessionConnection",
    "SessionState",
    "ParamikoTransport",
    # Terminal
    "TerminalSink",
    "TransportBridge",
    "KeyInput",
    "Resize",
    "InputQueue",
]
