"""Tests for settings and connection policy."""

from __future__ import annotations

import json
import random

import pytest

from pairterm.config import AppSettings, BackoffPolicy, ConnectionPolicy, SettingsManager


class TestBackoffPolicy:

    def test_exponential_without_jitter(self) -> None:
        policy = BackoffPolicy(base=0.5, factor=2.0, cap=30.0, jitter=0.0)
        assert [policy.delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4.0, 8.0]

    def test_capped(self) -> None:
        policy = BackoffPolicy(jitter=0.0)
        assert policy.delay(20) == 30.0

    def test_jitter_bounds(self) -> None:
        policy = BackoffPolicy(base=1.0, factor=1.0, cap=10.0, jitter=0.2)
        rng = random.Random(7)
        delays = [policy.delay(1, rng) for _ in range(200)]
        assert all(0.8 <= d <= 1.2 for d in delays)
        assert len(set(delays)) > 1

    @pytest.mark.parametrize(
        "kwargs",
        [{"base": 0}, {"cap": -1}, {"factor": 0.5}, {"jitter": 1.0}, {"jitter": -0.1}],
    )
    def test_invalid(self, kwargs) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestConnectionPolicy:

    def test_defaults(self) -> None:
        policy = ConnectionPolicy()
        assert policy.max_attempts == 5
        assert policy.keepalive_timeout == 15.0
        assert policy.backoff.base == 0.5
        assert policy.backoff.cap == 30.0
        assert policy.term_type == "xterm-256color"

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"keepalive_timeout": 0}, {"connect_timeout": -1},
         {"inbound_buffer_chunks": 0}],
    )
    def test_invalid(self, kwargs) -> None:
        with pytest.raises(ValueError):
            ConnectionPolicy(**kwargs)


class TestAppSettings:

    def test_connection_policy_mapping(self) -> None:
        settings = AppSettings(
            reconnect_max_attempts=3,
            reconnect_delay=1.0,
            keepalive_timeout=20.0,
            default_cols=132,
        )
        policy = settings.connection_policy()
        assert policy.max_attempts == 3
        assert policy.backoff.base == 1.0
        assert policy.keepalive_timeout == 20.0
        assert policy.term_cols == 132

    def test_from_dict_ignores_unknown(self) -> None:
        settings = AppSettings.from_dict({"log_level": "DEBUG", "theme": "dark"})
        assert settings.log_level == "DEBUG"

    def test_host_side_defaults(self) -> None:
        settings = AppSettings()
        assert settings.ssh_port == 22
        assert settings.pairing_lifetime == 300.0
        assert settings.tokens_path.endswith("pairing-tokens.yaml")
        assert settings.host_key_path == "/etc/ssh/ssh_host_ed25519_key.pub"


class TestSettingsManager:

    def test_defaults_when_missing(self, tmp_path) -> None:
        manager = SettingsManager(tmp_path / "config.json")
        assert manager.settings == AppSettings()

    def test_save_and_reload(self, tmp_path) -> None:
        path = tmp_path / "nested" / "config.json"
        manager = SettingsManager(path)
        manager.settings.keepalive_timeout = 42.0
        manager.save()

        assert json.loads(path.read_text())["keepalive_timeout"] == 42.0
        assert SettingsManager(path).settings.keepalive_timeout == 42.0

    def test_corrupt_file_uses_defaults(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert SettingsManager(path).settings == AppSettings()

    def test_reset(self, tmp_path) -> None:
        manager = SettingsManager(tmp_path / "config.json")
        manager.settings.log_level = "DEBUG"
        assert manager.reset().log_level == "WARNING"
