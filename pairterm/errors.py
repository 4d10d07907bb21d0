"""
Error taxonomy for pairing, credential storage and connections.
"""

from __future__ import annotations
from enum import Enum


class FailureReason(Enum):
    """Why a connection ended up in the Failed state."""
    EXPIRED = "expired"
    TOKEN_REJECTED = "token_rejected"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    UNREACHABLE = "unreachable"
    IDENTITY_CHANGED = "identity_changed"
    AUTH_REJECTED = "auth_rejected"
    CONNECTION_LOST = "connection_lost"
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def retryable(self) -> bool:
        """Network-transient reasons, retried locally under backoff."""
        return self in (FailureReason.UNREACHABLE, FailureReason.CONNECTION_LOST)

    @property
    def requires_repair(self) -> bool:
        """The stored credential can no longer be used; user must pair again."""
        return self in (
            FailureReason.AUTH_REJECTED,
            FailureReason.IDENTITY_CHANGED,
            FailureReason.FINGERPRINT_MISMATCH,
            FailureReason.TOKEN_REJECTED,
            FailureReason.EXPIRED,
            FailureReason.STORE_UNAVAILABLE,
        )


class PairtermError(Exception):
    """Base class for all pairterm errors."""


class PayloadFormatError(PairtermError, ValueError):
    """Pairing URI could not be parsed."""


class TransportError(PairtermError):
    """Network or SSH protocol level failure. Retryable."""


class PairingError(PairtermError):
    """Pairing did not produce a credential."""
    reason: FailureReason = FailureReason.TOKEN_REJECTED


class PairingExpired(PairingError):
    reason = FailureReason.EXPIRED


class TokenRejected(PairingError):
    reason = FailureReason.TOKEN_REJECTED


class FingerprintMismatch(PairingError):
    reason = FailureReason.FINGERPRINT_MISMATCH

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Host key mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class TransportUnreachable(PairingError):
    reason = FailureReason.UNREACHABLE


class ConnectionFailed(PairtermError):
    """Raised by the connect logic; carries the Failed reason."""

    def __init__(self, reason: FailureReason, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason


class PairingRequired(PairtermError):
    """No credential is stored for the requested host."""


class CredentialStoreError(PairtermError):
    """Credential store could not be read or written."""


class CredentialNotSaved(PairingError, CredentialStoreError):
    """Pairing succeeded on the host but the credential could not be stored."""
    reason = FailureReason.STORE_UNAVAILABLE


class UnknownHost(CredentialStoreError, KeyError):
    """No credential stored under the given fingerprint."""

    def __str__(self) -> str:
        return Exception.__str__(self)
