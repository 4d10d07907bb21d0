"""
Credential storage keyed by host fingerprint.

The store is the only holder of private keys. It generates client keys,
hands out their public half, and signs authentication challenges on
behalf of higher layers.
"""

from __future__ import annotations
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..errors import CredentialStoreError, UnknownHost
from .keys import ClientKey, normalize_fingerprint
from .models import Credential, DEFAULT_USERNAME

logger = logging.getLogger(__name__)

STORE_VERSION = 1


def _export_private(private_key: Ed25519PrivateKey, passphrase: Optional[str] = None) -> str:
    """PKCS8 PEM of a private key, encrypted when a passphrase is given."""
    if passphrase:
        encryption = serialization.BestAvailableEncryption(passphrase.encode())
    else:
        encryption = serialization.NoEncryption()
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    return pem.decode("ascii")


def _import_private(pem: str, passphrase: Optional[str] = None) -> Ed25519PrivateKey:
    """Load a private key written by _export_private."""
    private_key = serialization.load_pem_private_key(
        pem.encode("ascii"),
        password=passphrase.encode() if passphrase else None,
    )
    if not isinstance(private_key, Ed25519PrivateKey):
        raise ValueError("Stored client key is not an Ed25519 key")
    return private_key


class CredentialStore(ABC):
    """
    Thread-safe credential store.

    Mutations (save/forget) are serialized by one lock; lookups take the
    same lock briefly, so one in-flight pairing and any number of
    concurrent lookups are safe.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._credentials: dict[str, Credential] = {}
        # public key bytes -> private key
        self._keys: dict[bytes, Ed25519PrivateKey] = {}

    def create_client_key(self) -> ClientKey:
        """
        Generate a new client identity and return its public half.

        The key stays pending until a Credential using it is saved; call
        discard_client_key if pairing does not get that far.
        """
        private_key = Ed25519PrivateKey.generate()
        client_key = ClientKey.from_public_key(private_key.public_key())
        with self._lock:
            self._keys[client_key.public_raw] = private_key
        logger.debug(f"Generated client key {client_key.fingerprint}")
        return client_key

    def discard_client_key(self, client_key: ClientKey) -> None:
        """Drop a pending key. Keys in use by a stored credential are kept."""
        with self._lock:
            self._drop_key_if_unused(client_key)

    def save(self, credential: Credential) -> None:
        """Store a credential, replacing any previous one for the host."""
        fingerprint = normalize_fingerprint(credential.host_fingerprint)
        with self._lock:
            if credential.client_key.public_raw not in self._keys:
                raise CredentialStoreError(
                    f"Client key {credential.client_key.fingerprint} was not created by this store"
                )
            previous = self._credentials.get(fingerprint)
            self._credentials[fingerprint] = credential
            try:
                self._persist()
            except Exception:
                if previous is None:
                    del self._credentials[fingerprint]
                else:
                    self._credentials[fingerprint] = previous
                raise
            if previous is not None:
                self._drop_key_if_unused(previous.client_key)
        logger.info(f"Saved credential for {credential.display_name} ({fingerprint})")

    def lookup(self, fingerprint: str) -> Optional[Credential]:
        """Return the credential for a host, or None."""
        with self._lock:
            return self._credentials.get(normalize_fingerprint(fingerprint))

    def forget(self, fingerprint: str) -> bool:
        """Remove a host. Returns False if it was not stored."""
        fingerprint = normalize_fingerprint(fingerprint)
        with self._lock:
            credential = self._credentials.pop(fingerprint, None)
            if credential is None:
                return False
            try:
                self._persist()
            except Exception:
                self._credentials[fingerprint] = credential
                raise
            self._drop_key_if_unused(credential.client_key)
        logger.info(f"Forgot credential for {credential.display_name} ({fingerprint})")
        return True

    def invalidate(self, fingerprint: str, reason: str) -> bool:
        """Drop a credential that can no longer be trusted."""
        logger.warning(f"Invalidating credential {fingerprint}: {reason}")
        return self.forget(fingerprint)

    def list(self) -> list[Credential]:
        with self._lock:
            return sorted(self._credentials.values(), key=lambda c: c.display_name)

    def sign(self, fingerprint: str, challenge: bytes) -> bytes:
        """Sign an authentication challenge with the host's client key."""
        with self._lock:
            credential = self._credentials.get(normalize_fingerprint(fingerprint))
            private_key = None
            if credential is not None:
                private_key = self._keys.get(credential.client_key.public_raw)
        if private_key is None:
            raise UnknownHost(f"No credential for {fingerprint}")
        return private_key.sign(challenge)

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    def __contains__(self, fingerprint: str) -> bool:
        return self.lookup(fingerprint) is not None

    def _drop_key_if_unused(self, client_key: ClientKey) -> None:
        """Called under the lock."""
        if any(c.client_key == client_key for c in self._credentials.values()):
            return
        self._keys.pop(client_key.public_raw, None)

    def _private_key(self, client_key: ClientKey) -> Ed25519PrivateKey:
        """Called under the lock by implementations that persist keys."""
        return self._keys[client_key.public_raw]

    @abstractmethod
    def _persist(self) -> None:
        """Write current contents to durable storage. Called under the lock."""


class MemoryCredentialStore(CredentialStore):
    """Store that lives only as long as the process."""

    def _persist(self) -> None:
        pass


class FileCredentialStore(CredentialStore):
    """
    YAML file backed store.

    Private keys are written as PKCS8 PEM, encrypted when a passphrase is
    given. The file is created with mode 0600.
    """

    def __init__(self, path: Path, passphrase: Optional[str] = None):
        super().__init__()
        self._path = Path(path)
        self._passphrase = passphrase
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.debug(f"No credential store at {self._path}, starting empty")
            return

        try:
            data = yaml.safe_load(self._path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CredentialStoreError(f"Cannot read credential store {self._path}: {e}") from e

        for record in data.get("hosts", []):
            try:
                credential, private_key = self._from_record(record)
            except (KeyError, TypeError, ValueError) as e:
                raise CredentialStoreError(
                    f"Corrupt or locked credential record in {self._path}: {e}"
                ) from e
            self._keys[credential.client_key.public_raw] = private_key
            self._credentials[normalize_fingerprint(credential.host_fingerprint)] = credential

        logger.debug(f"Loaded {len(self._credentials)} credential(s) from {self._path}")

    def _from_record(self, record: dict) -> tuple[Credential, Ed25519PrivateKey]:
        private_key = _import_private(record["private_key"], self._passphrase)
        paired_at = record.get("paired_at")
        credential = Credential(
            host_fingerprint=normalize_fingerprint(record["fingerprint"]),
            client_key=ClientKey.from_public_key(private_key.public_key()),
            host=record["host"],
            port=int(record["port"]),
            label=record.get("label", ""),
            username=record.get("username", DEFAULT_USERNAME),
            paired_at=datetime.fromisoformat(paired_at) if paired_at else datetime.now(),
        )
        return credential, private_key

    def _to_record(self, credential: Credential) -> dict:
        return {
            "fingerprint": credential.host_fingerprint,
            "label": credential.label,
            "host": credential.host,
            "port": credential.port,
            "username": credential.username,
            "paired_at": credential.paired_at.isoformat(),
            "public_key": credential.client_key.public_openssh,
            "private_key": _export_private(
                self._private_key(credential.client_key), self._passphrase
            ),
        }

    def _persist(self) -> None:
        data = {
            "version": STORE_VERSION,
            "encrypted": bool(self._passphrase),
            "hosts": [self._to_record(c) for c in self._credentials.values()],
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(data, f, sort_keys=False)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise CredentialStoreError(f"Cannot write credential store {self._path}: {e}") from e
        logger.debug(f"Saved {len(self._credentials)} credential(s) to {self._path}")
