"""
Credential data model.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime

from .keys import ClientKey

# Username used for public-key logins after pairing
DEFAULT_USERNAME = "pairterm"


@dataclass(frozen=True)
class Credential:
    """
    Durable per-host identity produced by a successful pairing.

    Holds the public half of the client key only. The private half stays
    in the CredentialStore, which signs on behalf of the credential.
    """
    host_fingerprint: str
    client_key: ClientKey = field(repr=False)
    host: str
    port: int
    label: str = ""
    username: str = DEFAULT_USERNAME
    paired_at: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def display_name(self) -> str:
        return self.label or f"{self.host}:{self.port}"

    def to_dict(self) -> dict:
        """Public view, safe to print or serialize."""
        return {
            "fingerprint": self.host_fingerprint,
            "label": self.label,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "client_key": self.client_key.public_openssh,
            "paired_at": self.paired_at.isoformat(),
        }

    def __str__(self) -> str:
        lines = [
            f"Host: {self.display_name}",
            f"  Address: {self.host}:{self.port}",
            f"  Fingerprint: {self.host_fingerprint}",
            f"  Client key: {self.client_key.fingerprint}",
            f"  Paired at: {self.paired_at.strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        return '\n'.join(lines)
