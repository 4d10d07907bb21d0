"""
Duplex byte pump between a shell channel and a TerminalSink.

Inbound:  channel.read -> bounded queue -> sink.feed
Outbound: sink.input_events -> bounded buffer -> channel.write / resize

A full inbound queue stops reading from the channel (flow control)
instead of dropping data. Outbound events stay in the buffer until the
channel accepted them, so a channel can be swapped underneath without
losing input.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Callable, Optional

from ..errors import TransportError
from .sink import InputEvent, KeyInput, Resize, TerminalSink

if TYPE_CHECKING:
    from ..session.transport import ShellChannel

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], None]


class OutboundBuffer:
    """
    Bounded FIFO of input events awaiting the channel.

    The head is only removed after it was written (pop). A Resize arriving
    right after another queued Resize replaces it, unless that Resize is
    currently being written.
    """

    def __init__(self, limit: int):
        self._items: deque[InputEvent] = deque()
        self._limit = limit
        self._in_flight = False
        self._changed = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._items)

    async def put(self, event: InputEvent) -> None:
        async with self._changed:
            if isinstance(event, Resize) and self._items and isinstance(self._items[-1], Resize):
                if not (self._in_flight and len(self._items) == 1):
                    self._items[-1] = event
                    return
            await self._changed.wait_for(lambda: len(self._items) < self._limit)
            self._items.append(event)
            self._changed.notify_all()

    async def peek(self) -> InputEvent:
        """Wait for and return the head, marking it in flight."""
        async with self._changed:
            await self._changed.wait_for(lambda: bool(self._items))
            self._in_flight = True
            return self._items[0]

    async def pop(self) -> None:
        """Drop the head after it was delivered."""
        async with self._changed:
            self._items.popleft()
            self._in_flight = False
            self._changed.notify_all()

    def release(self) -> None:
        """Head was not delivered; keep it for the next attempt."""
        self._in_flight = False

    async def join(self) -> None:
        """Wait until everything was delivered."""
        async with self._changed:
            await self._changed.wait_for(lambda: not self._items)


class TransportBridge:
    """
    Owns the pump tasks for one logical connection.

    The inbound delivery and input draining tasks live as long as the
    bridge; the channel reader and writer are restarted on swap(). Any
    I/O error is reported once per channel through on_error; the bridge
    never decides reconnect policy itself.
    """

    READ_SIZE = 65536
    MAX_RESUBSCRIBE = 3

    def __init__(
        self,
        sink: TerminalSink,
        *,
        on_error: Optional[ErrorHandler] = None,
        outbound_limit: int = 1024,
        inbound_limit: int = 256,
        flush_grace: float = 0.5,
        size: tuple[int, int] = (80, 24),
    ):
        self._sink = sink
        self._on_error = on_error
        self._flush_grace = flush_grace

        self._outbound = OutboundBuffer(outbound_limit)
        self._inbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=inbound_limit)

        # Shared cancellation signal for both directions
        self._cancelled = asyncio.Event()
        self._writable = asyncio.Event()

        self._channel: Optional[ShellChannel] = None
        # chunk read from a channel but not yet queued for the sink
        self._carry: Optional[bytes] = None
        self._generation = 0
        self._reported: set[int] = set()

        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._input_task: Optional[asyncio.Task] = None
        self._deliver_task: Optional[asyncio.Task] = None

        self._size = size
        self.last_activity = time.monotonic()
        self.bytes_in = 0
        self.bytes_out = 0

    @property
    def terminal_size(self) -> tuple[int, int]:
        """Last size sent to (or requested of) the host: (cols, rows)."""
        return self._size

    @property
    def paused(self) -> bool:
        return not self._writable.is_set()

    @property
    def closed(self) -> bool:
        return self._cancelled.is_set()

    @property
    def pending_outbound(self) -> int:
        return len(self._outbound)

    def mark_activity(self) -> None:
        self.last_activity = time.monotonic()

    def start(self, channel: ShellChannel) -> None:
        """Begin pumping on the first channel. Requires a running loop."""
        if self._input_task is not None:
            raise RuntimeError("Bridge already started")
        self._input_task = asyncio.create_task(self._drain_input(), name="bridge-input")
        self._deliver_task = asyncio.create_task(self._deliver(), name="bridge-deliver")
        self._attach(channel)
        logger.debug("Bridge started")

    def pause(self) -> None:
        """Stop writing; new input is buffered. Reads continue."""
        if self._writable.is_set():
            logger.info(f"Bridge paused, {len(self._outbound)} event(s) pending")
        self._writable.clear()

    async def swap(self, channel: ShellChannel) -> None:
        """Replace the channel, close the old one and resume writing."""
        old = self._channel
        await self._stop_channel_tasks()
        await self._close_channel(old)
        self._attach(channel)
        logger.info(f"Bridge resumed on new channel, {len(self._outbound)} event(s) pending")

    async def close(self) -> None:
        """
        Cancel both directions. Pending input is flushed for up to
        flush_grace seconds if the channel is writable, then the channel
        is closed.
        """
        if self._cancelled.is_set():
            return

        await self._cancel_task(self._input_task)
        self._input_task = None

        if self._writable.is_set() and self._writer_task and not self._writer_task.done():
            try:
                await asyncio.wait_for(self._outbound.join(), self._flush_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Dropped {len(self._outbound)} unsent event(s) on close")

        self._cancelled.set()
        self._writable.clear()
        await self._stop_channel_tasks()
        await self._cancel_task(self._deliver_task)
        self._deliver_task = None

        await self._close_channel(self._channel)
        self._channel = None
        logger.debug(f"Bridge closed ({self.bytes_in} bytes in, {self.bytes_out} bytes out)")

    # -- channel lifecycle --------------------------------------------------

    def _attach(self, channel: ShellChannel) -> None:
        self._generation += 1
        self._channel = channel
        generation = self._generation
        self._reader_task = asyncio.create_task(
            self._read_loop(channel, generation), name=f"bridge-read-{generation}"
        )
        self._writer_task = asyncio.create_task(
            self._write_loop(channel, generation), name=f"bridge-write-{generation}"
        )
        self.mark_activity()
        self._writable.set()

    async def _stop_channel_tasks(self) -> None:
        await self._cancel_task(self._reader_task)
        await self._cancel_task(self._writer_task)
        self._reader_task = None
        self._writer_task = None

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    async def _close_channel(channel: Optional[ShellChannel]) -> None:
        if channel is None or channel.closed:
            return
        try:
            await channel.close()
        except (TransportError, OSError) as e:
            logger.debug(f"Channel close error: {e}")

    def _report(self, generation: int, error: BaseException) -> None:
        """Report the first error of a channel generation, once."""
        if generation != self._generation or generation in self._reported:
            return
        if self._cancelled.is_set():
            return
        self._reported.add(generation)
        logger.warning(f"Bridge I/O error: {error}")
        if self._on_error:
            try:
                self._on_error(error)
            except Exception as e:
                logger.exception(f"Bridge error handler failed: {e}")

    # -- pumps ---------------------------------------------------------------

    async def _enqueue(self, data: bytes) -> None:
        """Queue a chunk for the sink, waiting while the queue is full."""
        self._carry = data
        if self._inbound.full():
            logger.debug("Sink backpressure, reads paused")
        await self._inbound.put(data)
        self._carry = None

    async def _read_loop(self, channel: ShellChannel, generation: int) -> None:
        # output of the previous channel goes first
        if self._carry is not None:
            await self._enqueue(self._carry)

        while not self._cancelled.is_set():
            try:
                data = await channel.read(self.READ_SIZE)
            except (TransportError, OSError) as e:
                self._report(generation, e)
                return

            if not data:
                self._report(generation, TransportError("Channel closed by remote"))
                return

            self.bytes_in += len(data)
            self.mark_activity()
            await self._enqueue(data)

    async def _deliver(self) -> None:
        while not self._cancelled.is_set():
            data = await self._inbound.get()
            try:
                result = self._sink.feed(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Terminal sink feed failed: {e}")

    async def _drain_input(self) -> None:
        failures = 0
        while not self._cancelled.is_set():
            try:
                async for event in self._sink.input_events():
                    failures = 0
                    await self._outbound.put(event)
                logger.debug("Terminal input ended")
                return
            except Exception as e:
                failures += 1
                logger.exception(f"Terminal input failed: {e}")
                if failures >= self.MAX_RESUBSCRIBE:
                    logger.error("Giving up on terminal input")
                    return

    async def _write_loop(self, channel: ShellChannel, generation: int) -> None:
        while not self._cancelled.is_set():
            await self._writable.wait()
            event = await self._outbound.peek()
            if not self._writable.is_set():
                self._outbound.release()
                continue
            try:
                if isinstance(event, Resize):
                    await channel.resize(event.cols, event.rows)
                    self._size = (event.cols, event.rows)
                elif isinstance(event, KeyInput):
                    await channel.write(event.data)
                    self.bytes_out += len(event.data)
                else:
                    logger.warning(f"Dropping unknown input event: {event!r}")
            except asyncio.CancelledError:
                self._outbound.release()
                raise
            except (TransportError, OSError) as e:
                self._outbound.release()
                self._report(generation, e)
                return
            await self._outbound.pop()
