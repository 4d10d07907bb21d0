"""
Durable host credentials produced by pairing.
"""

from .keys import ClientKey, fingerprint_sha256, host_key_fingerprint, normalize_fingerprint
from .models import Credential, DEFAULT_USERNAME
from .store import CredentialStore, MemoryCredentialStore, FileCredentialStore

__all__ = [
    "ClientKey",
    "fingerprint_sha256",
    "host_key_fingerprint",
    "normalize_fingerprint",
    "Credential",
    "DEFAULT_USERNAME",
    "CredentialStore",
    "MemoryCredentialStore",
    "FileCredentialStore",
]
