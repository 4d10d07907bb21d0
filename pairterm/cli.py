"""
pairterm/cli.py

Command-line interface for pairing with hosts and opening shells.

Usage:
    pairterm pair 'pairterm://10.0.0.5:2222?token=...&fp=SHA256:...&exp=...'
    pairterm hosts
    pairterm connect SHA256:abc...
    pairterm forget SHA256:abc...
    pairterm payload 'pairterm://...'
    pairterm issue --address 10.0.0.5       (on the host)
"""

import asyncio
import contextlib
import dataclasses
import getpass
import io
import json
import logging
import os
import shutil
import signal
import socket
import sys
from pathlib import Path

import click
import qrcode

from .config import SettingsManager
from .credentials import FileCredentialStore, host_key_fingerprint
from .errors import CredentialStoreError, PairingError, PairingRequired, PayloadFormatError
from .pairing import PairingCoordinator, PairingPayload, PairingTokenIssuer
from .session import Failed, ParamikoTransport, SessionConnection, describe, is_recovering
from .terminal import InputQueue

# Ctrl-] ends an interactive session, like telnet
ESCAPE_KEY = b"\x1d"
STDIN_READ_SIZE = 1024


def format_table(items: list, columns: list[tuple[str, str, int]]) -> str:
    """
    Format items as a simple table.

    Args:
        items: List of objects with attributes
        columns: List of (attr_name, header, width) tuples
    """
    if not items:
        return "No results."

    header = ""
    separator = ""
    for attr, name, width in columns:
        header += f"{name:<{width}} "
        separator += "-" * width + " "

    lines = [header.rstrip(), separator.rstrip()]

    for item in items:
        row = ""
        for attr, name, width in columns:
            val = getattr(item, attr, "")
            if val is None:
                val = ""
            val_str = str(val)[:width - 1]  # Truncate if needed
            row += f"{val_str:<{width}} "
        lines.append(row.rstrip())

    return "\n".join(lines)


class StdioTerminalSink:
    """TerminalSink that writes host output to stdout and reads keys from stdin."""

    def __init__(self, stdout=None):
        self._out = stdout or sys.stdout.buffer
        self.input = InputQueue()

    def feed(self, data: bytes) -> None:
        self._out.write(data)
        self._out.flush()

    def input_events(self):
        return self.input.input_events()

    def on_connection_state(self, state) -> None:
        if is_recovering(state) or isinstance(state, Failed):
            click.echo(f"\r\n[{describe(state)}]\r", err=True)


@contextlib.contextmanager
def raw_terminal(fd: int):
    """Put a tty into raw mode for the duration of the block."""
    if not os.isatty(fd):
        yield
        return

    import termios
    import tty

    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


async def run_interactive(conn: SessionConnection, sink: StdioTerminalSink, fd: int):
    """Pump stdin into the sink until the session ends or the escape key is hit."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def on_stdin():
        data = os.read(fd, STDIN_READ_SIZE)
        if not data or ESCAPE_KEY in data:
            sink.input.put_key(data.split(ESCAPE_KEY, 1)[0])
            stop.set()
            return
        sink.input.put_key(data)

    def on_resize():
        size = shutil.get_terminal_size()
        sink.input.put_resize(size.columns, size.lines)

    loop.add_reader(fd, on_stdin)
    if hasattr(signal, "SIGWINCH"):
        loop.add_signal_handler(signal.SIGWINCH, on_resize)

    conn.start()
    closed = asyncio.create_task(conn.wait_closed())
    stopped = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        loop.remove_reader(fd)
        if hasattr(signal, "SIGWINCH"):
            loop.remove_signal_handler(signal.SIGWINCH)
        stopped.cancel()
        closed.cancel()
        await conn.close()
    return conn.state


def get_store(ctx) -> FileCredentialStore:
    """Open the credential store once per invocation."""
    if ctx.obj.get("store") is None:
        path = ctx.obj["store_path"]
        passphrase = ctx.obj["passphrase"]
        if ctx.obj["unlock"] and passphrase is None:
            passphrase = getpass.getpass("Store passphrase: ")
        try:
            ctx.obj["store"] = FileCredentialStore(path, passphrase=passphrase or None)
        except CredentialStoreError as e:
            click.echo(f"{e}", err=True)
            sys.exit(1)
    return ctx.obj["store"]


def parse_payload(uri: str) -> PairingPayload:
    try:
        return PairingPayload.parse(uri)
    except PayloadFormatError as e:
        click.echo(f"Invalid pairing code: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--store", "store_path", default=None, type=click.Path(dir_okay=False),
              help="Credential store file (default from settings)")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="Settings file (default ~/.pairterm/config.json)")
@click.option("-u", "--unlock", is_flag=True, help="Prompt for the store passphrase")
@click.option("--passphrase", default=None, help="Store passphrase (use --unlock for interactive)")
@click.option("--log-level", default=None,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Log level (default from settings)")
@click.pass_context
def cli(ctx, output_json, store_path, config_path, unlock, passphrase, log_level):
    """pairterm - pair with hosts and open remote shells."""
    ctx.ensure_object(dict)
    settings = SettingsManager(Path(config_path) if config_path else None).settings

    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    ctx.obj["json"] = output_json
    ctx.obj["settings"] = settings
    ctx.obj["store_path"] = Path(store_path or settings.store_path).expanduser()
    ctx.obj["unlock"] = unlock
    ctx.obj["passphrase"] = passphrase
    ctx.obj["store"] = None


@cli.command("pair")
@click.argument("uri")
@click.pass_context
def pair_host(ctx, uri):
    """Pair with a host using a scanned pairing code."""
    payload = parse_payload(uri)
    store = get_store(ctx)
    settings = ctx.obj["settings"]

    coordinator = PairingCoordinator(
        store,
        ParamikoTransport,
        connect_timeout=settings.connect_timeout,
        auth_timeout=settings.auth_timeout,
    )
    try:
        credential = asyncio.run(coordinator.begin_pairing(payload))
    except PairingError as e:
        click.echo(f"Pairing failed ({e.reason.value}): {e}", err=True)
        sys.exit(1)

    if ctx.obj["json"]:
        click.echo(json.dumps(credential.to_dict(), indent=2))
    else:
        click.echo(f"Paired with {credential.display_name}")
        click.echo(f"Fingerprint: {credential.host_fingerprint}")


@cli.command("hosts")
@click.pass_context
def list_hosts(ctx):
    """List paired hosts."""
    credentials = get_store(ctx).list()

    if ctx.obj["json"]:
        click.echo(json.dumps([c.to_dict() for c in credentials], indent=2))
    else:
        columns = [
            ("display_name", "NAME", 24),
            ("host", "HOST", 20),
            ("port", "PORT", 6),
            ("host_fingerprint", "FINGERPRINT", 52),
        ]
        click.echo(format_table(credentials, columns))
        click.echo(f"\n{len(credentials)} host(s)")


@cli.command("forget")
@click.argument("fingerprint")
@click.pass_context
def forget_host(ctx, fingerprint):
    """Remove a paired host; it must be paired again to connect."""
    store = get_store(ctx)
    try:
        removed = store.forget(fingerprint)
    except CredentialStoreError as e:
        click.echo(f"{e}", err=True)
        sys.exit(1)

    if not removed:
        click.echo(f"Host '{fingerprint}' not found.", err=True)
        sys.exit(1)
    click.echo(f"Forgot {fingerprint}")


@cli.command("connect")
@click.argument("fingerprint")
@click.pass_context
def connect_host(ctx, fingerprint):
    """Open an interactive shell on a paired host (Ctrl-] to quit)."""
    store = get_store(ctx)
    size = shutil.get_terminal_size()
    policy = dataclasses.replace(
        ctx.obj["settings"].connection_policy(),
        term_cols=size.columns,
        term_rows=size.lines,
    )

    sink = StdioTerminalSink()
    try:
        conn = SessionConnection.for_host(
            fingerprint, sink, store, ParamikoTransport, policy=policy
        )
    except PairingRequired as e:
        click.echo(f"{e}", err=True)
        sys.exit(1)

    fd = sys.stdin.fileno()
    with raw_terminal(fd):
        state = asyncio.run(run_interactive(conn, sink, fd))

    if isinstance(state, Failed):
        click.echo(describe(state), err=True)
        if state.requires_repair:
            click.echo("Pair with the host again to reconnect.", err=True)
        sys.exit(1)


@cli.command("payload")
@click.argument("uri")
@click.pass_context
def show_payload(ctx, uri):
    """Decode a pairing code without using it."""
    payload = parse_payload(uri)

    if ctx.obj["json"]:
        data = payload.to_dict()
        data["expired"] = payload.is_expired()
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(f"Host:        {payload.host}:{payload.port}")
        click.echo(f"Name:        {payload.name or '(none)'}")
        click.echo(f"Fingerprint: {payload.fingerprint}")
        if payload.is_expired():
            click.echo("Expires:     expired")
        else:
            click.echo(f"Expires:     in {payload.seconds_remaining():.0f}s")


def render_qr(data: str) -> str:
    """Render data as a QR code made of text blocks."""
    qr = qrcode.QRCode(border=2)
    qr.add_data(data)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


def local_address() -> str:
    """Best guess at the address other machines on the LAN reach us by."""
    try:
        # no packet is sent; connect() only picks the outbound interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "localhost"


@cli.command("issue")
@click.option("--address", default=None, help="Address clients connect to (default: this machine's LAN address)")
@click.option("--port", type=int, default=None, help="SSH port (default from settings)")
@click.option("--host-key", "host_key", default=None, type=click.Path(dir_okay=False),
              help="Host public key file (default from settings)")
@click.option("--tokens", "tokens_path", default=None, type=click.Path(dir_okay=False),
              help="Pending pairing tokens file (default from settings)")
@click.option("--name", default=None, help="Name shown to the client (default: hostname)")
@click.option("--qr/--no-qr", default=True, help="Print the pairing code as a QR code")
@click.pass_context
def issue_code(ctx, address, port, host_key, tokens_path, name, qr):
    """Issue a one-time pairing code for this host."""
    settings = ctx.obj["settings"]
    key_path = Path(host_key or settings.host_key_path).expanduser()
    try:
        fingerprint = host_key_fingerprint(key_path)
    except (OSError, ValueError) as e:
        click.echo(f"Cannot read host key {key_path}: {e}", err=True)
        sys.exit(1)

    issuer = PairingTokenIssuer(
        lifetime=settings.pairing_lifetime,
        path=Path(tokens_path or settings.tokens_path).expanduser(),
    )
    try:
        payload = issuer.issue(
            address or local_address(),
            port or settings.ssh_port,
            fingerprint,
            name=socket.gethostname() if name is None else name,
        )
    except CredentialStoreError as e:
        click.echo(f"{e}", err=True)
        sys.exit(1)

    uri = payload.to_uri()
    if ctx.obj["json"]:
        data = payload.to_dict()
        data["uri"] = uri
        click.echo(json.dumps(data, indent=2))
        return

    if qr:
        click.echo(render_qr(uri))
    click.echo(f"Host:        {payload.host}:{payload.port}")
    click.echo(f"Fingerprint: {payload.fingerprint}")
    click.echo(f"Expires in:  {settings.pairing_lifetime:.0f}s")
    click.echo(uri)


def main():
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
