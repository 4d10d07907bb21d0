"""
Persistent application settings for pairterm.
Stored in ~/.pairterm/config.json
"""

from __future__ import annotations
import json
import logging
import random
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".pairterm"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_STORE_FILE = DEFAULT_CONFIG_DIR / "hosts.yaml"
DEFAULT_TOKENS_FILE = DEFAULT_CONFIG_DIR / "pairing-tokens.yaml"
DEFAULT_HOST_KEY_FILE = Path("/etc/ssh/ssh_host_ed25519_key.pub")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with jitter between reconnect attempts.

    delay(n) = min(cap, base * factor ** (n - 1)), scaled by a random
    factor in [1 - jitter, 1 + jitter].
    """
    base: float = 0.5
    factor: float = 2.0
    cap: float = 30.0
    jitter: float = 0.2

    def __post_init__(self):
        if self.base <= 0 or self.cap <= 0:
            raise ValueError("backoff base and cap must be positive")
        if self.factor < 1:
            raise ValueError("backoff factor must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("backoff jitter must be in [0, 1)")

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in seconds to wait after failed attempt number `attempt` (1-based)."""
        raw = min(self.cap, self.base * (self.factor ** max(attempt - 1, 0)))
        if not self.jitter:
            return raw
        spread = (rng or random).uniform(1 - self.jitter, 1 + self.jitter)
        return raw * spread


@dataclass(frozen=True)
class ConnectionPolicy:
    """Timeouts, retry budget and buffer bounds for one SessionConnection."""
    connect_timeout: float = 10.0
    auth_timeout: float = 10.0
    keepalive_interval: float = 5.0
    keepalive_timeout: float = 15.0
    max_attempts: int = 5
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    outbound_buffer_events: int = 1024
    inbound_buffer_chunks: int = 256
    flush_grace: float = 0.5

    term_type: str = "xterm-256color"
    term_cols: int = 80
    term_rows: int = 24

    def __post_init__(self):
        for name in ("connect_timeout", "auth_timeout", "keepalive_interval",
                     "keepalive_timeout", "flush_grace"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("max_attempts", "outbound_buffer_events",
                     "inbound_buffer_chunks", "term_cols", "term_rows"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")


@dataclass
class AppSettings:
    """
    Application settings that persist across sessions.
    """
    # Storage
    store_path: str = str(DEFAULT_STORE_FILE)
    log_level: str = "WARNING"

    # Host side pairing
    tokens_path: str = str(DEFAULT_TOKENS_FILE)
    host_key_path: str = str(DEFAULT_HOST_KEY_FILE)
    ssh_port: int = 22
    pairing_lifetime: float = 300.0

    # Terminal
    default_term_type: str = "xterm-256color"
    default_cols: int = 80
    default_rows: int = 24

    # Connection
    connect_timeout: float = 10.0
    auth_timeout: float = 10.0
    keepalive_interval: float = 5.0
    keepalive_timeout: float = 15.0
    reconnect_max_attempts: int = 5
    reconnect_delay: float = 0.5
    reconnect_backoff: float = 2.0
    reconnect_max_delay: float = 30.0
    reconnect_jitter: float = 0.2

    # Bridge
    outbound_buffer_events: int = 1024
    inbound_buffer_chunks: int = 256
    flush_grace: float = 0.5

    def to_dict(self) -> dict:
        """Serialize to dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> AppSettings:
        """Deserialize from dict, ignoring unknown keys."""
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    def connection_policy(self) -> ConnectionPolicy:
        """Build the connection policy these settings describe."""
        return ConnectionPolicy(
            connect_timeout=self.connect_timeout,
            auth_timeout=self.auth_timeout,
            keepalive_interval=self.keepalive_interval,
            keepalive_timeout=self.keepalive_timeout,
            max_attempts=self.reconnect_max_attempts,
            backoff=BackoffPolicy(
                base=self.reconnect_delay,
                factor=self.reconnect_backoff,
                cap=self.reconnect_max_delay,
                jitter=self.reconnect_jitter,
            ),
            outbound_buffer_events=self.outbound_buffer_events,
            inbound_buffer_chunks=self.inbound_buffer_chunks,
            flush_grace=self.flush_grace,
            term_type=self.default_term_type,
            term_cols=self.default_cols,
            term_rows=self.default_rows,
        )


class SettingsManager:
    """
    Manages loading and saving application settings.

    Usage:
        manager = SettingsManager()
        settings = manager.settings

        settings.keepalive_timeout = 30
        manager.save()
    """

    def __init__(self, config_path: Path = None):
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_FILE
        self._settings: Optional[AppSettings] = None

    @property
    def settings(self) -> AppSettings:
        """Get current settings, loading from disk if needed."""
        if self._settings is None:
            self._settings = self.load()
        return self._settings

    def load(self) -> AppSettings:
        """Load settings from disk, or return defaults."""
        if self._config_path.exists():
            try:
                data = json.loads(self._config_path.read_text())
                logger.debug(f"Loaded settings from {self._config_path}")
                return AppSettings.from_dict(data)
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning(f"Failed to load settings: {e}, using defaults")
                return AppSettings()
        else:
            logger.debug("No settings file found, using defaults")
            return AppSettings()

    def save(self) -> None:
        """Save current settings to disk."""
        if self._settings is None:
            return

        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._config_path.write_text(
                json.dumps(self._settings.to_dict(), indent=2)
            )
            logger.debug(f"Saved settings to {self._config_path}")
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def reset(self) -> AppSettings:
        """Reset to default settings (does not save automatically)."""
        self._settings = AppSettings()
        return self._settings

