"""Tests for the host side pairing token issuer."""

from __future__ import annotations

import os
import stat

import pytest

from pairterm.errors import CredentialStoreError
from pairterm.pairing import PairingTokenIssuer, TOKEN_LIFETIME


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPairingTokenIssuer:

    def test_issue_builds_payload(self) -> None:
        clock = FakeClock()
        issuer = PairingTokenIssuer(clock=clock)
        payload = issuer.issue("10.0.0.5", 2222, "SHA256:abc", name="desk")

        assert payload.host == "10.0.0.5"
        assert payload.port == 2222
        assert payload.fingerprint == "SHA256:abc"
        assert payload.name == "desk"
        assert payload.expires_at == clock.now + TOKEN_LIFETIME
        assert len(payload.token) == 64
        assert issuer.outstanding == 1

    def test_tokens_are_unique(self) -> None:
        issuer = PairingTokenIssuer()
        tokens = {issuer.issue("h", 22, "SHA256:x").token for _ in range(20)}
        assert len(tokens) == 20

    def test_redeem_is_single_use(self) -> None:
        issuer = PairingTokenIssuer()
        payload = issuer.issue("h", 22, "SHA256:x")

        assert issuer.redeem(payload.token) is True
        assert issuer.redeem(payload.token) is False
        assert issuer.outstanding == 0

    def test_unknown_token_rejected(self) -> None:
        issuer = PairingTokenIssuer()
        issuer.issue("h", 22, "SHA256:x")
        assert issuer.redeem("0" * 64) is False
        assert issuer.outstanding == 1

    def test_expired_token_rejected(self) -> None:
        clock = FakeClock()
        issuer = PairingTokenIssuer(lifetime=60.0, clock=clock)
        payload = issuer.issue("h", 22, "SHA256:x")

        clock.now += 61.0
        assert issuer.redeem(payload.token) is False
        assert issuer.outstanding == 0


class TestPersistentIssuer:

    def test_token_redeemed_by_another_process(self, tmp_path) -> None:
        path = tmp_path / "pairing-tokens.yaml"
        payload = PairingTokenIssuer(path=path).issue("10.0.0.5", 22, "SHA256:abc")

        host_side = PairingTokenIssuer(path=path)
        assert host_side.outstanding == 1
        assert host_side.redeem(payload.token)
        assert not PairingTokenIssuer(path=path).redeem(payload.token)

    def test_file_holds_no_raw_tokens(self, tmp_path) -> None:
        path = tmp_path / "pairing-tokens.yaml"
        payload = PairingTokenIssuer(path=path).issue("10.0.0.5", 22, "SHA256:abc")

        assert payload.token not in path.read_text()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_expired_tokens_pruned_from_file(self, tmp_path) -> None:
        path = tmp_path / "pairing-tokens.yaml"
        clock = FakeClock()
        payload = PairingTokenIssuer(clock=clock, path=path).issue("h", 22, "SHA256:abc")

        clock.now += TOKEN_LIFETIME + 1
        issuer = PairingTokenIssuer(clock=clock, path=path)
        assert issuer.outstanding == 0
        assert not issuer.redeem(payload.token)

    def test_corrupt_file(self, tmp_path) -> None:
        path = tmp_path / "pairing-tokens.yaml"
        path.write_text("tokens: [1, 2]\n")
        with pytest.raises(CredentialStoreError):
            PairingTokenIssuer(path=path).redeem("a" * 64)
