"""
Host side one-time pairing tokens.

Tokens are kept as SHA-256 digests. With a `path` the pending set lives
in a YAML file (mode 0600), so the process that shows the pairing code
and the process that answers the login can be different.
"""

from __future__ import annotations
import hashlib
import hmac
import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import yaml

from ..errors import CredentialStoreError
from .payload import PairingPayload

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_LIFETIME = 300.0  # 5 minutes


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class PairingTokenIssuer:
    """
    Issues single-use pairing tokens and redeems them.

    Tokens expire after `lifetime` seconds and are consumed on first
    successful redeem.
    """

    def __init__(
        self,
        lifetime: float = TOKEN_LIFETIME,
        clock: Callable[[], float] = time.time,
        path: Optional[Path] = None,
    ):
        self._lifetime = lifetime
        self._clock = clock
        self._path = Path(path) if path else None
        self._tokens: dict[str, float] = {}
        self._lock = threading.Lock()

    def issue(self, host: str, port: int, fingerprint: str, name: str = "") -> PairingPayload:
        """Create a fresh token and the payload that carries it."""
        token = secrets.token_hex(TOKEN_BYTES)
        expires_at = self._clock() + self._lifetime
        with self._lock:
            self._load()
            self._prune()
            self._tokens[_digest(token)] = expires_at
            self._save()
        logger.info(f"Issued pairing token for {host}:{port}, expires in {self._lifetime:.0f}s")
        return PairingPayload(
            host=host,
            port=port,
            token=token,
            fingerprint=fingerprint,
            expires_at=float(int(expires_at)),
            name=name,
        )

    def redeem(self, token: str) -> bool:
        """Validate and consume a token. False if unknown, used or expired."""
        digest = _digest(token)
        with self._lock:
            self._load()
            self._prune()
            match: Optional[str] = None
            for candidate in self._tokens:
                if hmac.compare_digest(candidate, digest):
                    match = candidate
                    break
            if match is None:
                logger.warning("Rejected pairing token")
                return False
            del self._tokens[match]
            self._save()
        logger.info("Pairing token redeemed")
        return True

    @property
    def outstanding(self) -> int:
        with self._lock:
            self._load()
            self._prune()
            return len(self._tokens)

    def _prune(self) -> None:
        now = self._clock()
        expired = [t for t, exp in self._tokens.items() if exp <= now]
        for token in expired:
            del self._tokens[token]

    def _load(self) -> None:
        """Reload pending tokens from the file. Called under the lock."""
        if self._path is None:
            return
        if not self._path.exists():
            self._tokens = {}
            return
        try:
            data = yaml.safe_load(self._path.read_text()) or {}
            self._tokens = {str(k): float(v) for k, v in data.get("tokens", {}).items()}
        except (OSError, yaml.YAMLError, AttributeError, TypeError, ValueError) as e:
            raise CredentialStoreError(f"Cannot read pairing tokens {self._path}: {e}") from e

    def _save(self) -> None:
        """Called under the lock."""
        if self._path is None:
            return
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump({"tokens": self._tokens}, f)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise CredentialStoreError(f"Cannot write pairing tokens {self._path}: {e}") from e
        logger.debug(f"Saved {len(self._tokens)} pending pairing token(s) to {self._path}")
