"""
Client identity keys and host key fingerprints.

ClientKey is the public half only. Private keys are generated, held and
used by the credential store (see store.py).
"""

from __future__ import annotations
import base64
import binascii
import hashlib
import struct
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

KEY_TYPE = "ssh-ed25519"


def fingerprint_sha256(key_blob: bytes) -> str:
    """OpenSSH style fingerprint of a public key blob: SHA256:<base64>."""
    digest = hashlib.sha256(key_blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def normalize_fingerprint(fingerprint: str) -> str:
    """Accept fingerprints with or without the SHA256: prefix."""
    fingerprint = fingerprint.strip()
    if not fingerprint.startswith("SHA256:"):
        fingerprint = "SHA256:" + fingerprint
    return fingerprint.rstrip("=")


def host_key_fingerprint(path: Path) -> str:
    """
    Fingerprint of an OpenSSH public key file, e.g.
    /etc/ssh/ssh_host_ed25519_key.pub. Raises ValueError if unreadable.
    """
    fields = Path(path).read_text().split()
    if len(fields) < 2:
        raise ValueError(f"{path} is not an OpenSSH public key")
    try:
        blob = base64.b64decode(fields[1], validate=True)
    except binascii.Error as e:
        raise ValueError(f"{path} is not an OpenSSH public key: {e}") from e
    return fingerprint_sha256(blob)


def _ssh_string(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data


class ClientKey:
    """
    Public half of an Ed25519 client identity.

    Carries no private material; signing goes through the CredentialStore
    that created the key.
    """

    __slots__ = ("_public_raw",)

    def __init__(self, public_raw: bytes):
        if len(public_raw) != 32:
            raise ValueError("Ed25519 public keys are 32 bytes")
        self._public_raw = bytes(public_raw)

    @classmethod
    def from_public_key(cls, public_key: Ed25519PublicKey) -> ClientKey:
        return cls(public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ))

    @property
    def public_raw(self) -> bytes:
        return self._public_raw

    @property
    def public_blob(self) -> bytes:
        """SSH wire encoding of the public key."""
        return _ssh_string(KEY_TYPE.encode()) + _ssh_string(self._public_raw)

    @property
    def public_openssh(self) -> str:
        """Public key in authorized_keys format."""
        return f"{KEY_TYPE} {base64.b64encode(self.public_blob).decode('ascii')}"

    @property
    def fingerprint(self) -> str:
        return fingerprint_sha256(self.public_blob)

    def __repr__(self) -> str:
        return f"<ClientKey {KEY_TYPE} {self.fingerprint}>"

    def __eq__(self, other) -> bool:
        if not isinstance(other, ClientKey):
            return NotImplemented
        return self._public_raw == other._public_raw

    def __hash__(self) -> int:
        return hash(self._public_raw)
