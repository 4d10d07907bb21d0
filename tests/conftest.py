"""Shared test fixtures for the pairterm test suite.

Provides an in-memory simulated host (FakeHost) with a matching
transport and loopback shell channel, a recording terminal sink, and a
fast connection policy so state machine tests finish in milliseconds.
"""

from __future__ import annotations

import asyncio
import base64
import os
import time
from typing import Optional

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from pairterm.config import BackoffPolicy, ConnectionPolicy
from pairterm.credentials import (
    ClientKey,
    Credential,
    MemoryCredentialStore,
    fingerprint_sha256,
)
from pairterm.errors import TransportError
from pairterm.pairing import (
    PAIRING_USERNAME,
    REGISTER_KEY_COMMAND,
    PairingTokenIssuer,
)
from pairterm.session.transport import SecureShellTransport, ShellChannel
from pairterm.terminal import InputQueue

_EOF = object()
_SEVERED = object()


# ---------------------------------------------------------------------------
# Simulated host
# ---------------------------------------------------------------------------


def random_fingerprint() -> str:
    return fingerprint_sha256(os.urandom(51))


class LoopbackChannel(ShellChannel):
    """Shell channel that echoes every write back to the reader."""

    def __init__(self, cols: int = 80, rows: int = 24, echo: bool = True):
        self.size = (cols, rows)
        self.echo = echo
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._severed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Chunks the reader has not picked up yet."""
        return self._queue.qsize()

    def inject(self, data: bytes) -> None:
        """Host side output."""
        self._queue.put_nowait(data)

    def sever(self) -> None:
        """Drop the link: reads and writes fail from now on."""
        self._severed = True
        self._queue.put_nowait(_SEVERED)

    async def read(self, max_bytes: int) -> bytes:
        item = await self._queue.get()
        if item is _SEVERED:
            self._queue.put_nowait(_SEVERED)
            raise TransportError("Connection reset")
        if item is _EOF:
            self._queue.put_nowait(_EOF)
            return b""
        return item

    async def write(self, data: bytes) -> None:
        if self._severed or self._closed:
            raise TransportError("Channel is gone")
        self.written.append(data)
        if self.echo:
            self._queue.put_nowait(data)

    async def resize(self, cols: int, rows: int) -> None:
        if self._severed or self._closed:
            raise TransportError("Channel is gone")
        self.size = (cols, rows)
        self.resizes.append((cols, rows))

    async def close(self) -> None:
        self._closed = True
        self._queue.put_nowait(_EOF)


class FakeHost:
    """
    In-memory secure-shell host.

    Knobs: `reachable` (open fails when False), `fail_opens` (number of
    upcoming opens to fail), `silent` (keepalive probes never answer),
    `refuse_registration` (register command answers with an error).
    """

    def __init__(self, fingerprint: Optional[str] = None, clock=time.time):
        self.fingerprint = fingerprint or random_fingerprint()
        self.issuer = PairingTokenIssuer(clock=clock)
        self.authorized: set[bytes] = set()
        self.reachable = True
        self.fail_opens = 0
        self.silent = False
        self.refuse_registration = False
        self.echo = True

        self.opens = 0
        self.transports: list[FakeTransport] = []
        self.channels: list[LoopbackChannel] = []
        self.terms: list[str] = []

    def transport(self) -> FakeTransport:
        """TransportFactory for this host."""
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def issue(self, name: str = "", port: int = 2222):
        return self.issuer.issue("10.0.0.5", port, self.fingerprint, name)

    def authorize(self, key: ClientKey) -> None:
        self.authorized.add(key.public_blob)

    @property
    def channel(self) -> LoopbackChannel:
        return self.channels[-1]


class FakeTransport(SecureShellTransport):
    """Transport to a FakeHost."""

    def __init__(self, host: FakeHost):
        self.host = host
        self.opened = False
        self.closed = False
        self.pairing_session = False
        self.authenticated = False
        self.challenges: list[bytes] = []

    async def open(self, host: str, port: int, timeout: float) -> str:
        self.host.opens += 1
        await asyncio.sleep(0)
        if not self.host.reachable:
            raise TransportError(f"Connection refused: {host}:{port}")
        if self.host.fail_opens > 0:
            self.host.fail_opens -= 1
            raise OSError(f"Network is unreachable: {host}:{port}")
        self.opened = True
        return self.host.fingerprint

    async def auth_token(self, username: str, token: str) -> bool:
        if username != PAIRING_USERNAME:
            return False
        self.pairing_session = self.host.issuer.redeem(token)
        return self.pairing_session

    async def auth_signer(self, username: str, public_blob: bytes, signer) -> bool:
        if public_blob not in self.host.authorized:
            return False
        challenge = os.urandom(32)
        self.challenges.append(challenge)
        signature = signer(challenge)
        # last 32 bytes of an ssh-ed25519 blob are the raw public key
        try:
            Ed25519PublicKey.from_public_bytes(public_blob[-32:]).verify(signature, challenge)
        except InvalidSignature:
            return False
        self.authenticated = True
        return True

    async def exec(self, command: str) -> str:
        if not self.pairing_session:
            return "ERROR: not authorized\n"
        name, _, key = command.partition(" ")
        if name != REGISTER_KEY_COMMAND or not key:
            return "ERROR: unknown command\n"
        if self.host.refuse_registration:
            return "ERROR: registration disabled\n"
        _key_type, _, b64 = key.partition(" ")
        self.host.authorized.add(base64.b64decode(b64))
        return "OK\n"

    async def open_shell(self, term: str, cols: int, rows: int) -> ShellChannel:
        if not self.authenticated:
            raise TransportError("Not authenticated")
        channel = LoopbackChannel(cols, rows, echo=self.host.echo)
        self.host.channels.append(channel)
        self.host.terms.append(term)
        return channel

    async def probe(self) -> None:
        if self.closed or not self.host.reachable:
            raise TransportError("Keepalive failed")
        if self.host.silent:
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Terminal sink
# ---------------------------------------------------------------------------


class RecordingSink:
    """TerminalSink double that records output and state changes."""

    def __init__(self):
        self.output = bytearray()
        self.chunks: list[bytes] = []
        self.states: list = []
        self.input = InputQueue()
        self.gate: Optional[asyncio.Event] = None

    def feed(self, data: bytes):
        self.chunks.append(data)
        self.output.extend(data)
        if self.gate is not None:
            return self.gate.wait()
        return None

    def input_events(self):
        return self.input.input_events()

    def on_connection_state(self, state) -> None:
        self.states.append(state)

    def kinds(self) -> list:
        return [s.kind for s in self.states]

    async def wait_for_output(self, expected: bytes, timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while bytes(self.output) != expected:
            if time.monotonic() > deadline:
                raise AssertionError(f"Expected {expected!r}, got {bytes(self.output)!r}")
            await asyncio.sleep(0.005)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fast_policy() -> ConnectionPolicy:
    """Short timeouts and no jitter."""
    return ConnectionPolicy(
        connect_timeout=1.0,
        auth_timeout=1.0,
        keepalive_interval=0.05,
        keepalive_timeout=0.3,
        max_attempts=5,
        backoff=BackoffPolicy(base=0.01, factor=2.0, cap=0.05, jitter=0.0),
        flush_grace=0.2,
    )


@pytest.fixture
def client_key(store: MemoryCredentialStore) -> ClientKey:
    return store.create_client_key()


@pytest.fixture
def paired(host: FakeHost, store: MemoryCredentialStore, client_key: ClientKey) -> Credential:
    """A credential for `host`, stored and authorized as if pairing had run."""
    credential = Credential(
        host_fingerprint=host.fingerprint,
        client_key=client_key,
        host="10.0.0.5",
        port=2222,
        label="workstation",
    )
    host.authorize(client_key)
    store.save(credential)
    return credential
