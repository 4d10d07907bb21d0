"""
PairingCoordinator - turns a scanned pairing payload into a stored Credential.

Handshake:
  1. connect and verify the host key against the payload fingerprint
  2. authenticate as PAIRING_USERNAME with the one-time token
  3. have the store generate a client key, register its public half
  4. persist the resulting Credential

Nothing is persisted unless every step succeeded. Pairing is never
retried here; the caller decides whether to try again.
"""

from __future__ import annotations
import asyncio
import hashlib
import logging
import time
from typing import TYPE_CHECKING, Callable

from ..credentials.keys import ClientKey, normalize_fingerprint
from ..credentials.models import Credential
from ..credentials.store import CredentialStore
from ..errors import (
    CredentialNotSaved,
    CredentialStoreError,
    FingerprintMismatch,
    PairingExpired,
    TokenRejected,
    TransportError,
    TransportUnreachable,
)
from .payload import PairingPayload

if TYPE_CHECKING:
    from ..session.transport import SecureShellTransport, TransportFactory

logger = logging.getLogger(__name__)

PAIRING_USERNAME = "pairterm-pair"
REGISTER_KEY_COMMAND = "pairterm-register-key"
REGISTER_OK = "OK"

NETWORK_ERRORS = (TransportError, OSError, EOFError, asyncio.TimeoutError)


class PairingCoordinator:
    """
    Runs the pairing handshake. One pairing at a time per coordinator;
    a payload whose token was presented once is never presented again.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport_factory: TransportFactory,
        *,
        connect_timeout: float = 10.0,
        auth_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._transport_factory = transport_factory
        self._connect_timeout = connect_timeout
        self._auth_timeout = auth_timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self._consumed: set[str] = set()

    @staticmethod
    def _token_key(payload: PairingPayload) -> str:
        return hashlib.sha256(payload.token.encode()).hexdigest()

    async def begin_pairing(self, payload: PairingPayload) -> Credential:
        """
        Pair with the host described by payload.

        Raises PairingExpired, TokenRejected, FingerprintMismatch,
        TransportUnreachable or CredentialNotSaved. Returns the new, already stored Credential.
        """
        if payload.is_expired(self._clock()):
            logger.warning(f"Pairing payload for {payload.host}:{payload.port} has expired")
            raise PairingExpired(f"Pairing code for {payload.host} has expired")

        async with self._lock:
            token_key = self._token_key(payload)
            if token_key in self._consumed:
                raise TokenRejected("Pairing code was already used")

            logger.info(f"Pairing with {payload.host}:{payload.port}")
            transport = self._transport_factory()
            try:
                try:
                    fingerprint = await asyncio.wait_for(
                        transport.open(payload.host, payload.port, self._connect_timeout),
                        self._connect_timeout,
                    )
                except NETWORK_ERRORS as e:
                    raise TransportUnreachable(
                        f"Cannot reach {payload.host}:{payload.port}: {e!r}"
                    ) from e

                if normalize_fingerprint(fingerprint) != normalize_fingerprint(payload.fingerprint):
                    logger.error(
                        f"Host key mismatch! Expected: {payload.fingerprint}, Got: {fingerprint}"
                    )
                    raise FingerprintMismatch(payload.fingerprint, fingerprint)

                # from here on the token counts as presented
                self._consumed.add(token_key)
                client_key = await self._register(transport, payload)
            finally:
                try:
                    await transport.close()
                except NETWORK_ERRORS as e:
                    logger.debug(f"Transport close error: {e}")

            credential = Credential(
                host_fingerprint=normalize_fingerprint(payload.fingerprint),
                client_key=client_key,
                host=payload.host,
                port=payload.port,
                label=payload.name,
            )
            try:
                self._store.save(credential)
            except CredentialStoreError as e:
                self._store.discard_client_key(client_key)
                raise CredentialNotSaved(f"Paired, but could not save the credential: {e}") from e
            logger.info(f"Paired with {credential.display_name}")
            return credential

    async def _register(self, transport: SecureShellTransport, payload: PairingPayload) -> ClientKey:
        """Authenticate with the token and upload a fresh client key."""
        try:
            accepted = await asyncio.wait_for(
                transport.auth_token(PAIRING_USERNAME, payload.token),
                self._auth_timeout,
            )
        except NETWORK_ERRORS as e:
            raise TransportUnreachable(f"Pairing handshake interrupted: {e!r}") from e
        if not accepted:
            raise TokenRejected("Host declined the pairing token")

        client_key = self._store.create_client_key()
        try:
            response = await asyncio.wait_for(
                transport.exec(f"{REGISTER_KEY_COMMAND} {client_key.public_openssh}"),
                self._auth_timeout,
            )
            answer = response.strip()
            if answer != REGISTER_OK:
                raise TokenRejected(f"Host refused key registration: {answer or 'no answer'}")
        except NETWORK_ERRORS as e:
            self._store.discard_client_key(client_key)
            raise TransportUnreachable(f"Pairing handshake interrupted: {e!r}") from e
        except BaseException:
            self._store.discard_client_key(client_key)
            raise
        return client_key
