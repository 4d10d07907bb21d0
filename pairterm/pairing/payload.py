"""
Pairing payload carried by the visual code.

Format:
    pairterm://host:port?token=<one-time-token>&fp=<fingerprint>&exp=<unix-ts>[&name=<label>][&v=1]

Parsing fails closed: anything missing or malformed is rejected before
any network activity.
"""

from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, parse_qs, urlencode, quote

from ..errors import PayloadFormatError
from ..credentials.keys import normalize_fingerprint

SCHEME = "pairterm"
PROTOCOL_VERSION = 1
REQUIRED_PARAMS = ("token", "fp", "exp")


@dataclass(frozen=True)
class PairingPayload:
    """Ephemeral, single-use bootstrap data for pairing with a host."""
    host: str
    port: int
    token: str
    fingerprint: str
    expires_at: float
    name: str = ""

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    def seconds_remaining(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    @classmethod
    def parse(cls, uri: str) -> PairingPayload:
        """Parse a pairing URI. Raises PayloadFormatError."""
        if not isinstance(uri, str) or not uri.strip():
            raise PayloadFormatError("Empty pairing payload")

        try:
            parts = urlsplit(uri.strip())
            host = parts.hostname
            port = parts.port
        except ValueError as e:
            raise PayloadFormatError(f"Malformed pairing URI: {e}") from e

        if parts.scheme.lower() != SCHEME:
            raise PayloadFormatError(
                f"Unsupported scheme '{parts.scheme}', expected '{SCHEME}'"
            )
        if not host:
            raise PayloadFormatError("Pairing URI has no host")
        if port is None:
            raise PayloadFormatError("Pairing URI has no port")
        if parts.username or parts.password:
            raise PayloadFormatError("Pairing URI must not carry user info")

        try:
            params = parse_qs(parts.query, keep_blank_values=True, strict_parsing=True)
        except ValueError as e:
            raise PayloadFormatError(f"Malformed query string: {e}") from e

        for key in REQUIRED_PARAMS:
            values = params.get(key)
            if not values or not values[0]:
                raise PayloadFormatError(f"Pairing URI missing '{key}'")
            if len(values) > 1:
                raise PayloadFormatError(f"Pairing URI repeats '{key}'")

        version = params.get("v", [str(PROTOCOL_VERSION)])[0]
        if version != str(PROTOCOL_VERSION):
            raise PayloadFormatError(f"Unsupported pairing protocol version: {version}")

        exp = params["exp"][0]
        if not exp.isdigit():
            raise PayloadFormatError(f"Malformed expiry timestamp: {exp!r}")

        return cls(
            host=host,
            port=port,
            token=params["token"][0],
            # a literal "+" in a hand-typed URI decodes to a space
            fingerprint=normalize_fingerprint(params["fp"][0].replace(" ", "+")),
            expires_at=float(int(exp)),
            name=params.get("name", [""])[0],
        )

    def to_uri(self) -> str:
        """Encode as a pairing URI (inverse of parse)."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        query = {
            "token": self.token,
            "fp": self.fingerprint,
            "exp": str(int(self.expires_at)),
        }
        if self.name:
            query["name"] = self.name
        return f"{SCHEME}://{host}:{self.port}?{urlencode(query, quote_via=quote)}"

    def to_dict(self) -> dict:
        """Public view without the token."""
        return {
            "host": self.host,
            "port": self.port,
            "fingerprint": self.fingerprint,
            "expires_at": int(self.expires_at),
            "name": self.name,
        }

    def __repr__(self) -> str:
        return (
            f"<PairingPayload {self.host}:{self.port} fp={self.fingerprint} "
            f"exp={int(self.expires_at)} token=***>"
        )
