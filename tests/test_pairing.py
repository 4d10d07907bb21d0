"""Tests for the pairing handshake."""

from __future__ import annotations

import time

import pytest

from pairterm.credentials import ClientKey, MemoryCredentialStore
from pairterm.errors import (
    CredentialNotSaved,
    CredentialStoreError,
    FailureReason,
    FingerprintMismatch,
    PairingExpired,
    TokenRejected,
    TransportUnreachable,
)
from pairterm.pairing import PairingCoordinator, PairingPayload

from conftest import FakeHost, random_fingerprint


def make_coordinator(host: FakeHost, store: MemoryCredentialStore, **kwargs) -> PairingCoordinator:
    return PairingCoordinator(store, host.transport, connect_timeout=1.0, auth_timeout=1.0, **kwargs)


class RecordingStore(MemoryCredentialStore):
    """Memory store that records discarded client keys."""

    def __init__(self, fail_saves: bool = False):
        super().__init__()
        self.fail_saves = fail_saves
        self.discarded: list[ClientKey] = []

    def discard_client_key(self, client_key: ClientKey) -> None:
        self.discarded.append(client_key)
        super().discard_client_key(client_key)

    def _persist(self) -> None:
        if self.fail_saves:
            raise CredentialStoreError("disk full")


class TestBeginPairing:

    @pytest.mark.asyncio
    async def test_success_stores_one_credential(self, host, store) -> None:
        payload = host.issue(name="workstation")
        credential = await make_coordinator(host, store).begin_pairing(payload)

        assert len(store) == 1
        assert store.lookup(host.fingerprint) == credential
        assert credential.host_fingerprint == host.fingerprint
        assert credential.label == "workstation"
        assert credential.host == payload.host
        assert credential.port == payload.port
        assert credential.client_key.public_blob in host.authorized

    @pytest.mark.asyncio
    async def test_transport_closed_after_pairing(self, host, store) -> None:
        await make_coordinator(host, store).begin_pairing(host.issue())
        assert all(t.closed for t in host.transports)

    @pytest.mark.asyncio
    async def test_replay_is_rejected(self, host, store) -> None:
        coordinator = make_coordinator(host, store)
        payload = host.issue()
        await coordinator.begin_pairing(payload)

        with pytest.raises(TokenRejected):
            await coordinator.begin_pairing(payload)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_replay_rejected_by_host(self, host, store) -> None:
        payload = host.issue()
        await make_coordinator(host, store).begin_pairing(payload)

        # a fresh coordinator has no local memory of the token
        with pytest.raises(TokenRejected):
            await make_coordinator(host, MemoryCredentialStore()).begin_pairing(payload)

    @pytest.mark.asyncio
    async def test_expired_makes_no_network_call(self, host, store) -> None:
        payload = PairingPayload(
            host="10.0.0.5",
            port=2222,
            token="a" * 64,
            fingerprint=host.fingerprint,
            expires_at=time.time() - 1,
        )
        with pytest.raises(PairingExpired) as exc_info:
            await make_coordinator(host, store).begin_pairing(payload)

        assert exc_info.value.reason is FailureReason.EXPIRED
        assert host.opens == 0
        assert host.transports == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_expiry_uses_clock(self, host, store) -> None:
        payload = host.issue()
        coordinator = make_coordinator(host, store, clock=lambda: payload.expires_at + 1)
        with pytest.raises(PairingExpired):
            await coordinator.begin_pairing(payload)
        assert host.opens == 0

    @pytest.mark.asyncio
    async def test_fingerprint_mismatch_persists_nothing(self, host, store) -> None:
        payload = host.issue()
        host.fingerprint = random_fingerprint()

        with pytest.raises(FingerprintMismatch) as exc_info:
            await make_coordinator(host, store).begin_pairing(payload)

        assert exc_info.value.expected == payload.fingerprint
        assert exc_info.value.actual == host.fingerprint
        assert len(store) == 0
        # token never reached the impostor
        assert host.issuer.outstanding == 1

    @pytest.mark.asyncio
    async def test_unreachable(self, host, store) -> None:
        host.reachable = False
        with pytest.raises(TransportUnreachable) as exc_info:
            await make_coordinator(host, store).begin_pairing(host.issue())

        assert exc_info.value.reason is FailureReason.UNREACHABLE
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unreachable_can_retry_same_payload(self, host, store) -> None:
        coordinator = make_coordinator(host, store)
        payload = host.issue()
        host.reachable = False
        with pytest.raises(TransportUnreachable):
            await coordinator.begin_pairing(payload)

        host.reachable = True
        await coordinator.begin_pairing(payload)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_registration_refused(self, host, store) -> None:
        host.refuse_registration = True
        with pytest.raises(TokenRejected):
            await make_coordinator(host, store).begin_pairing(host.issue())
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unknown_token(self, host, store) -> None:
        payload = host.issue()
        forged = PairingPayload(
            payload.host, payload.port, "b" * 64, payload.fingerprint, payload.expires_at
        )
        with pytest.raises(TokenRejected):
            await make_coordinator(host, store).begin_pairing(forged)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_keeps_other_hosts(self, host, store) -> None:
        other = FakeHost()
        await make_coordinator(other, store).begin_pairing(other.issue())
        await make_coordinator(host, store).begin_pairing(host.issue())
        assert len(store) == 2
        assert isinstance(store.lookup(other.fingerprint).client_key, ClientKey)

    @pytest.mark.asyncio
    async def test_refused_registration_discards_key(self, host) -> None:
        store = RecordingStore()
        host.refuse_registration = True
        with pytest.raises(TokenRejected):
            await make_coordinator(host, store).begin_pairing(host.issue())

        assert len(store.discarded) == 1
        assert host.authorized == set()

    @pytest.mark.asyncio
    async def test_store_failure_is_a_pairing_failure(self, host) -> None:
        store = RecordingStore(fail_saves=True)
        with pytest.raises(CredentialNotSaved) as exc_info:
            await make_coordinator(host, store).begin_pairing(host.issue())

        assert exc_info.value.reason is FailureReason.STORE_UNAVAILABLE
        assert isinstance(exc_info.value, CredentialStoreError)
        assert len(store) == 0
        assert len(store.discarded) == 1
