"""
SessionConnection - the state machine for one logical connection.

    Idle -> Pairing -> Connecting -> Authenticating -> Connected <-> Degraded
                                                            \\-> Closed
    Failed(reason) is terminal and reachable from any non-terminal state.

One driver task runs the machine. While Connected/Degraded the
TransportBridge runs its own pump tasks under this connection; the
connection is the only writer of state and the only owner of the
transport.
"""

from __future__ import annotations
import asyncio
import logging
import random
import time
from typing import Callable, Optional

from ..config import ConnectionPolicy
from ..credentials.keys import normalize_fingerprint
from ..credentials.models import Credential
from ..credentials.store import CredentialStore
from ..errors import (
    ConnectionFailed,
    CredentialStoreError,
    FailureReason,
    PairingError,
    PairingRequired,
    TransportError,
    UnknownHost,
)
from ..pairing.coordinator import PairingCoordinator
from ..pairing.payload import PairingPayload
from ..terminal.bridge import TransportBridge
from ..terminal.sink import TerminalSink
from .base import (
    Authenticating,
    Closed,
    Connected,
    Connecting,
    ConnectionState,
    Degraded,
    Failed,
    Idle,
    Pairing,
    describe,
)
from .transport import SecureShellTransport, ShellChannel, TransportFactory

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], None]

# Network-level failures; everything here is retried under backoff
NETWORK_ERRORS = (TransportError, OSError, EOFError, asyncio.TimeoutError)


class SessionConnection:
    """
    Owns one connection's lifecycle, from pairing through teardown.

    Usage:
        conn = SessionConnection(sink, store, ParamikoTransport, credential=cred)
        conn.start()
        ...
        await conn.close()

    Constructed either with a stored Credential, or with a PairingPayload
    when the host was never paired.
    """

    def __init__(
        self,
        sink: TerminalSink,
        store: CredentialStore,
        transport_factory: TransportFactory,
        *,
        credential: Optional[Credential] = None,
        payload: Optional[PairingPayload] = None,
        policy: Optional[ConnectionPolicy] = None,
        pairing: Optional[PairingCoordinator] = None,
        rng: Optional[random.Random] = None,
    ):
        if credential is None and payload is None:
            raise PairingRequired("A credential or a pairing payload is required")

        self._sink = sink
        self._store = store
        self._transport_factory = transport_factory
        self._credential = credential
        self._payload = payload if credential is None else None
        self._policy = policy or ConnectionPolicy()
        self._pairing = pairing or PairingCoordinator(
            store,
            transport_factory,
            connect_timeout=self._policy.connect_timeout,
            auth_timeout=self._policy.auth_timeout,
        )
        self._rng = rng or random.Random()

        self._state: ConnectionState = Idle()
        self._last_error: Optional[BaseException] = None
        self._listeners: list[StateListener] = []
        self._waiters: list[tuple[Callable[[ConnectionState], bool], asyncio.Future]] = []

        self._transport: Optional[SecureShellTransport] = None
        self._bridge: Optional[TransportBridge] = None
        self._io_error: Optional[asyncio.Event] = None
        self._driver: Optional[asyncio.Task] = None

    @classmethod
    def for_host(
        cls,
        fingerprint: str,
        sink: TerminalSink,
        store: CredentialStore,
        transport_factory: TransportFactory,
        **kwargs,
    ) -> SessionConnection:
        """Connection to a paired host. Raises PairingRequired if unknown."""
        credential = store.lookup(fingerprint)
        if credential is None:
            raise PairingRequired(f"Host {fingerprint} is not paired; scan a new pairing code")
        return cls(sink, store, transport_factory, credential=credential, **kwargs)

    # -- public state --------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def is_connected(self) -> bool:
        return isinstance(self._state, Connected)

    @property
    def bridge(self) -> Optional[TransportBridge]:
        return self._bridge

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new_state: ConnectionState) -> None:
        """Update state and notify the sink, listeners and waiters."""
        old_state = self._state
        self._state = new_state
        logger.info(
            f"Session state: {old_state.kind.name} -> {new_state.kind.name} {describe(new_state)}"
        )

        for handler in [self._sink.on_connection_state, *self._listeners]:
            try:
                handler(new_state)
            except Exception as e:
                logger.exception(f"State handler error: {e}")

        for waiter in list(self._waiters):
            predicate, future = waiter
            if not future.done() and predicate(new_state):
                future.set_result(new_state)
                self._waiters.remove(waiter)

    async def wait_for(
        self,
        predicate: Callable[[ConnectionState], bool],
        timeout: Optional[float] = None,
    ) -> ConnectionState:
        """Wait until a state satisfying predicate is entered (or is current)."""
        if predicate(self._state):
            return self._state
        future = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def wait_closed(self, timeout: Optional[float] = None) -> ConnectionState:
        """Wait for Closed or Failed."""
        return await self.wait_for(lambda s: isinstance(s, (Closed, Failed)), timeout)

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Spawn the driver task. Requires a running event loop."""
        if isinstance(self._state, Failed):
            raise RuntimeError(f"Connection failed ({self._state.reason.value}); create a new one")
        if self._driver is not None and not self._driver.done():
            return self._driver
        if isinstance(self._state, Closed):
            self._set_state(Idle())
        self._driver = asyncio.create_task(self._run(), name="session-driver")
        return self._driver

    async def run(self) -> ConnectionState:
        """Start and wait until the connection is closed or failed."""
        self.start()
        return await self.wait_closed()

    async def close(self) -> None:
        """
        User initiated teardown. Releases transport and bridge; the
        credential is kept so a later start() does not need pairing.
        """
        driver = self._driver
        if driver is not None and not driver.done() and driver is not asyncio.current_task():
            driver.cancel()
            try:
                await driver
            except asyncio.CancelledError:
                pass
        self._driver = None

        await self._release()
        if not isinstance(self._state, (Closed, Failed)):
            self._set_state(Closed())

    async def _run(self) -> None:
        try:
            if self._credential is None:
                await self._pair()

            transport, channel = await self._establish(recovering=False)
            self._transport = transport
            self._start_bridge(channel)
            self._set_state(Connected())

            await self._supervise()

        except PairingError as e:
            self._last_error = e
            self._fail(e.reason, str(e))
        except ConnectionFailed as e:
            self._last_error = e
            await self._release()
            self._fail(e.reason, str(e))
        except Exception as e:
            logger.exception("Connection driver crashed")
            self._last_error = e
            await self._release()
            self._fail(FailureReason.CONNECTION_LOST, str(e))

    def _fail(self, reason: FailureReason, message: str) -> None:
        if isinstance(self._state, Failed):
            return
        logger.error(f"Connection failed: {reason.value}: {message}")
        self._set_state(Failed(reason, message))

    async def _release(self) -> None:
        """Tear down bridge then transport, each exactly once."""
        bridge, self._bridge = self._bridge, None
        transport, self._transport = self._transport, None
        if bridge is not None:
            await bridge.close()
        if transport is not None:
            await self._close_transport(transport)

    @staticmethod
    async def _close_transport(transport: SecureShellTransport) -> None:
        try:
            await transport.close()
        except NETWORK_ERRORS as e:
            logger.debug(f"Transport close error: {e}")

    # -- pairing ---------------------------------------------------------------

    async def _pair(self) -> None:
        payload = self._payload
        self._set_state(Pairing(payload.host, payload.port))
        self._credential = await self._pairing.begin_pairing(payload)
        self._payload = None

    # -- connecting ------------------------------------------------------------

    def _sign(self, challenge: bytes) -> bytes:
        return self._store.sign(self._credential.host_fingerprint, challenge)

    async def _establish(self, recovering: bool) -> tuple[SecureShellTransport, ShellChannel]:
        """
        Connect, verify the host key and authenticate, retrying network
        failures with backoff. Identity and auth failures are not retried.
        """
        credential = self._credential
        policy = self._policy
        max_attempts = policy.max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            self._set_state(Connecting(attempt, max_attempts, recovering))
            transport = self._transport_factory()
            try:
                fingerprint = await asyncio.wait_for(
                    transport.open(credential.host, credential.port, policy.connect_timeout),
                    policy.connect_timeout,
                )
                if normalize_fingerprint(fingerprint) != normalize_fingerprint(credential.host_fingerprint):
                    await self._close_transport(transport)
                    try:
                        self._store.invalidate(credential.host_fingerprint, "host key changed")
                    except CredentialStoreError as e:
                        logger.error(f"Could not invalidate credential: {e}")
                    raise ConnectionFailed(
                        FailureReason.IDENTITY_CHANGED,
                        f"Host key changed: expected {credential.host_fingerprint}, got {fingerprint}",
                    )

                self._set_state(Authenticating(recovering))
                try:
                    accepted = await asyncio.wait_for(
                        transport.auth_signer(
                            credential.username, credential.client_key.public_blob, self._sign
                        ),
                        policy.auth_timeout,
                    )
                except UnknownHost:
                    accepted = False
                if not accepted:
                    await self._close_transport(transport)
                    raise ConnectionFailed(
                        FailureReason.AUTH_REJECTED, "Host rejected the client key"
                    )

                cols, rows = self._terminal_size()
                channel = await asyncio.wait_for(
                    transport.open_shell(policy.term_type, cols, rows),
                    policy.connect_timeout,
                )
                return transport, channel

            except ConnectionFailed:
                raise
            except asyncio.CancelledError:
                await self._close_transport(transport)
                raise
            except NETWORK_ERRORS as e:
                last_error = e
                self._last_error = e
                await self._close_transport(transport)
                logger.warning(f"Connect attempt {attempt}/{max_attempts} failed: {e!r}")

            if attempt < max_attempts:
                delay = policy.backoff.delay(attempt, self._rng)
                logger.info(f"Retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        raise ConnectionFailed(
            FailureReason.UNREACHABLE,
            f"Gave up after {max_attempts} attempts: {last_error!r}",
        )

    def _terminal_size(self) -> tuple[int, int]:
        if self._bridge is not None:
            return self._bridge.terminal_size
        return self._policy.term_cols, self._policy.term_rows

    # -- connected -------------------------------------------------------------

    def _start_bridge(self, channel: ShellChannel) -> None:
        policy = self._policy
        self._io_error = asyncio.Event()
        self._bridge = TransportBridge(
            self._sink,
            on_error=self._on_bridge_error,
            outbound_limit=policy.outbound_buffer_events,
            inbound_limit=policy.inbound_buffer_chunks,
            flush_grace=policy.flush_grace,
            size=(policy.term_cols, policy.term_rows),
        )
        self._bridge.start(channel)

    def _on_bridge_error(self, error: BaseException) -> None:
        self._last_error = error
        if self._io_error is not None:
            self._io_error.set()

    async def _supervise(self) -> None:
        """Watch health; on trouble go Degraded and reconnect underneath."""
        while True:
            cause = await self._watch_health()

            self._bridge.pause()
            self._set_state(Degraded(cause))

            try:
                transport, channel = await self._establish(recovering=True)
            except ConnectionFailed as e:
                if e.reason is FailureReason.UNREACHABLE:
                    raise ConnectionFailed(FailureReason.CONNECTION_LOST, str(e)) from e
                raise

            old_transport, self._transport = self._transport, transport
            self._io_error.clear()
            await self._bridge.swap(channel)
            if old_transport is not None:
                await self._close_transport(old_transport)
            self._set_state(Connected())

    async def _watch_health(self) -> str:
        """
        Return a cause once the bridge reported an I/O error, a keepalive
        probe hit a dead transport, or nothing arrived for keepalive_timeout.
        """
        policy = self._policy
        while True:
            try:
                await asyncio.wait_for(self._io_error.wait(), policy.keepalive_interval)
                return f"I/O error: {self._last_error}"
            except asyncio.TimeoutError:
                pass

            try:
                await asyncio.wait_for(
                    self._transport.probe(),
                    min(policy.keepalive_interval, policy.keepalive_timeout),
                )
                self._bridge.mark_activity()
            except asyncio.TimeoutError:
                logger.debug("Keepalive probe timed out")
            except NETWORK_ERRORS as e:
                self._last_error = e
                return f"Keepalive failed: {e}"

            silence = time.monotonic() - self._bridge.last_activity
            if silence >= policy.keepalive_timeout:
                return f"No traffic for {silence:.1f}s"
