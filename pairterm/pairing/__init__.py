"""
Pairing - bootstrap trust in a host from a one-time visual code.
"""

from .payload import PairingPayload, SCHEME, PROTOCOL_VERSION
from .tokens import PairingTokenIssuer, TOKEN_LIFETIME
from .coordinator import (
    PairingCoordinator,
    PAIRING_USERNAME,
    REGISTER_KEY_COMMAND,
    REGISTER_OK,
)

__all__ = [
    "PairingPayload",
    "SCHEME",
    "PROTOCOL_VERSION",
    "PairingTokenIssuer",
    "TOKEN_LIFETIME",
    "PairingCoordinator",
    "PAIRING_USERNAME",
    "REGISTER_KEY_COMMAND",
    "REGISTER_OK",
]
