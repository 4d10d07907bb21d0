"""
Secure-shell transport implementation using Paramiko.

Paramiko is blocking; every call that can wait on the network runs in a
worker thread through asyncio.to_thread so the event loop never blocks.
"""

from __future__ import annotations
import asyncio
import logging
import socket
import threading
import time
import warnings
from typing import Optional

import paramiko

from ..credentials.keys import KEY_TYPE, fingerprint_sha256
from ..errors import TransportError
from .transport import SecureShellTransport, ShellChannel, Signer

logger = logging.getLogger(__name__)


# =============================================================================
# Algorithm Configuration
# =============================================================================
# Modern algorithms only; pairterm hosts are paired desktops, not legacy
# network gear.

PREFERRED_CIPHERS = (
    "chacha20-poly1305@openssh.com",
    "aes256-gcm@openssh.com",
    "aes128-gcm@openssh.com",
    "aes256-ctr",
    "aes192-ctr",
    "aes128-ctr",
)

PREFERRED_KEX = (
    "curve25519-sha256",
    "curve25519-sha256@libssh.org",
    "ecdh-sha2-nistp256",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp521",
    "diffie-hellman-group16-sha512",
    "diffie-hellman-group14-sha256",
)

PREFERRED_KEYS = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "rsa-sha2-512",
    "rsa-sha2-256",
)

KEEPALIVE_REQUEST = "keepalive@openssh.com"

# Flag to track if we've applied global transport settings
_transport_configured = False


def _apply_global_transport_settings() -> None:
    """
    Restrict Paramiko's algorithm preferences to the ones listed above,
    filtered by what the installed Paramiko supports.
    """
    global _transport_configured

    if _transport_configured:
        return

    warnings.filterwarnings('ignore', category=DeprecationWarning, module='paramiko')

    try:
        available_ciphers = set(paramiko.Transport._cipher_info.keys())
        available_kex = set(paramiko.Transport._kex_info.keys())
        available_keys = set(paramiko.Transport._key_info.keys())

        ciphers = tuple(c for c in PREFERRED_CIPHERS if c in available_ciphers)
        kex = tuple(k for k in PREFERRED_KEX if k in available_kex)
        keys = tuple(k for k in PREFERRED_KEYS if k in available_keys)

        if ciphers:
            paramiko.Transport._preferred_ciphers = ciphers
        if kex:
            paramiko.Transport._preferred_kex = kex
        if keys:
            paramiko.Transport._preferred_keys = keys

        logger.info(
            f"Applied global transport settings: "
            f"{len(ciphers)} ciphers, {len(kex)} kex, {len(keys)} keys"
        )
    except AttributeError as e:
        logger.warning(f"Could not apply global transport settings: {e}")

    _transport_configured = True


class StoreBackedKey(paramiko.PKey):
    """
    Paramiko key whose signing is delegated to the credential store.

    Holds only the public blob; Paramiko calls sign_ssh_data during
    public-key authentication.
    """

    def __init__(self, public_blob: bytes, signer: Signer):
        self._blob = public_blob
        self._signer = signer
        self.public_blob = None

    def get_name(self) -> str:
        return KEY_TYPE

    def get_bits(self) -> int:
        return 256

    def asbytes(self) -> bytes:
        return self._blob

    def can_sign(self) -> bool:
        return True

    def sign_ssh_data(self, data, algorithm=None) -> paramiko.Message:
        m = paramiko.Message()
        m.add_string(KEY_TYPE)
        m.add_string(self._signer(data))
        return m

    def verify_ssh_sig(self, data, msg) -> bool:
        return False


class ParamikoChannel(ShellChannel):
    """Interactive shell channel on a paramiko session."""

    READ_BUFFER_SIZE = 65536
    POLL_INTERVAL = 0.01

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel

    @property
    def closed(self) -> bool:
        return self._channel.closed

    async def read(self, max_bytes: int = READ_BUFFER_SIZE) -> bytes:
        # recv only after recv_ready, so it never blocks the loop
        while True:
            if self._channel.recv_ready():
                data = self._channel.recv(min(max_bytes, self.READ_BUFFER_SIZE))
                if data:
                    return data
                logger.info("Channel closed by remote")
                return b""
            if self._channel.closed or self._channel.eof_received:
                logger.info("Channel closed")
                return b""
            await asyncio.sleep(self.POLL_INTERVAL)

    async def write(self, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._channel.sendall, data)
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"Write error: {e}") from e

    async def resize(self, cols: int, rows: int) -> None:
        try:
            await asyncio.to_thread(self._channel.resize_pty, width=cols, height=rows)
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"Resize error: {e}") from e

    async def close(self) -> None:
        self._channel.close()


class ParamikoTransport(SecureShellTransport):
    """
    One paramiko.Transport per instance; not reusable after close().
    """

    def __init__(self, banner_timeout: Optional[float] = None):
        _apply_global_transport_settings()
        self._banner_timeout = banner_timeout
        self._sock: Optional[socket.socket] = None
        self._transport: Optional[paramiko.Transport] = None
        self._timeout: float = 10.0
        # guards publishing the connection against a concurrent close()
        self._lock = threading.Lock()
        self._closed = False
        self._probe: Optional[asyncio.Future] = None

    @property
    def is_active(self) -> bool:
        return self._transport is not None and self._transport.is_active()

    def _require_transport(self) -> paramiko.Transport:
        if not self.is_active:
            raise TransportError("Transport is not connected")
        return self._transport

    async def open(self, host: str, port: int, timeout: float) -> str:
        self._timeout = timeout
        try:
            return await asyncio.to_thread(self._open_blocking, host, port, timeout)
        except asyncio.CancelledError:
            # the worker thread tears down whatever it built once it sees this
            await self.close()
            raise
        except (OSError, paramiko.SSHException, EOFError) as e:
            await self.close()
            raise TransportError(f"Cannot connect to {host}:{port}: {e}") from e

    def _open_blocking(self, host: str, port: int, timeout: float) -> str:
        """
        Connect and run key exchange within `timeout` seconds overall.

        The socket and transport are only published on self if close()
        has not been called meanwhile; otherwise they are closed here.
        """
        deadline = time.monotonic() + timeout

        def remaining() -> float:
            left = deadline - time.monotonic()
            if left <= 0:
                raise socket.timeout(f"Connect timed out after {timeout:.1f}s")
            return left

        logger.info(f"Connecting to {host}:{port}")
        sock = socket.create_connection((host, port), timeout=timeout)
        transport = None
        try:
            transport = paramiko.Transport(sock)
            transport.banner_timeout = min(self._banner_timeout or timeout, remaining())
            transport.start_client(timeout=remaining())

            key = transport.get_remote_server_key()
            fingerprint = fingerprint_sha256(key.asbytes())

            with self._lock:
                if self._closed:
                    raise TransportError("Transport closed while connecting")
                self._sock = sock
                self._transport = transport
        except BaseException:
            if transport is not None:
                transport.close()
            sock.close()
            raise

        logger.info(f"Server key fingerprint: {fingerprint}")
        logger.debug(
            f"Negotiated: cipher={transport.remote_cipher}, "
            f"mac={transport.remote_mac}"
        )
        return fingerprint

    async def auth_token(self, username: str, token: str) -> bool:
        transport = self._require_transport()
        try:
            await asyncio.to_thread(transport.auth_password, username, token)
        except paramiko.AuthenticationException as e:
            logger.debug(f"Token auth rejected: {e}")
            return False
        except (OSError, paramiko.SSHException, EOFError) as e:
            raise TransportError(f"Token auth failed: {e}") from e
        return transport.is_authenticated()

    async def auth_signer(self, username: str, public_blob: bytes, signer: Signer) -> bool:
        transport = self._require_transport()
        key = StoreBackedKey(public_blob, signer)
        try:
            await asyncio.to_thread(transport.auth_publickey, username, key)
        except paramiko.AuthenticationException as e:
            logger.debug(f"Public key auth rejected: {e}")
            return False
        except (OSError, paramiko.SSHException, EOFError) as e:
            raise TransportError(f"Public key auth failed: {e}") from e
        return transport.is_authenticated()

    async def exec(self, command: str) -> str:
        transport = self._require_transport()
        try:
            return await asyncio.to_thread(self._exec_blocking, transport, command)
        except (OSError, paramiko.SSHException, EOFError) as e:
            raise TransportError(f"Exec failed: {e}") from e

    def _exec_blocking(self, transport: paramiko.Transport, command: str) -> str:
        channel = transport.open_session(timeout=self._timeout)
        try:
            channel.settimeout(self._timeout)
            channel.exec_command(command)
            chunks = []
            while True:
                data = channel.recv(ParamikoChannel.READ_BUFFER_SIZE)
                if not data:
                    break
                chunks.append(data)
            return b"".join(chunks).decode("utf-8", errors="replace")
        finally:
            channel.close()

    async def open_shell(self, term: str, cols: int, rows: int) -> ShellChannel:
        transport = self._require_transport()
        try:
            channel = await asyncio.to_thread(self._open_shell_blocking, transport, term, cols, rows)
        except (OSError, paramiko.SSHException, EOFError) as e:
            raise TransportError(f"Cannot open shell: {e}") from e
        return ParamikoChannel(channel)

    def _open_shell_blocking(
        self, transport: paramiko.Transport, term: str, cols: int, rows: int
    ) -> paramiko.Channel:
        channel = transport.open_session(timeout=self._timeout)
        channel.get_pty(term=term, width=cols, height=rows)
        channel.invoke_shell()
        return channel

    async def probe(self) -> None:
        """
        Round-trip a keepalive request.

        Paramiko waits for the reply without a timeout, so at most one
        request is in flight; callers that give up waiting leave it
        running and later probes join it. It ends with the transport.
        """
        transport = self._require_transport()
        if self._probe is None or self._probe.done():
            self._probe = asyncio.ensure_future(
                asyncio.to_thread(self._probe_blocking, transport)
            )
            self._probe.add_done_callback(_consume_result)
        else:
            logger.debug("Keepalive request still outstanding")
        await asyncio.shield(self._probe)

    @staticmethod
    def _probe_blocking(transport: paramiko.Transport) -> None:
        # Any reply, including request-failure, proves the host is alive
        transport.global_request(KEEPALIVE_REQUEST, None, True)
        if not transport.is_active():
            raise TransportError("Keepalive failed: transport closed")

    async def close(self) -> None:
        with self._lock:
            self._closed = True
            transport, self._transport = self._transport, None
            sock, self._sock = self._sock, None

        if transport is not None:
            try:
                transport.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Transport close error: {e}")

        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Socket close error: {e}")


def _consume_result(future: asyncio.Future) -> None:
    """Retrieve the outcome of a probe nobody awaited any more."""
    if not future.cancelled():
        future.exception()
