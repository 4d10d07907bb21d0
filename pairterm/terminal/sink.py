"""
TerminalSink capability and the input events it produces.

Any terminal view can plug in by providing feed / input_events /
on_connection_state; no base class required.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING, AsyncIterator, Awaitable, Optional, Protocol, Union, runtime_checkable,
)

if TYPE_CHECKING:
    from ..session.base import ConnectionState


@dataclass(frozen=True)
class KeyInput:
    """Bytes typed or pasted by the user."""
    data: bytes


@dataclass(frozen=True)
class Resize:
    """Terminal grid size changed. Sent as a window-change request."""
    cols: int
    rows: int


InputEvent = Union[KeyInput, Resize]


@runtime_checkable
class TerminalSink(Protocol):
    """UI-side terminal emulator as seen by the session layer."""

    def feed(self, data: bytes) -> Optional[Awaitable[None]]:
        """
        Append raw host output. Must return quickly; may return an
        awaitable, which the bridge awaits before delivering more.
        """
        ...

    def input_events(self) -> AsyncIterator[InputEvent]:
        """Fresh iterator of outbound events; callable again to resubscribe."""
        ...

    def on_connection_state(self, state: ConnectionState) -> None:
        """Informational: current connection state for display."""
        ...


_END = object()


class InputQueue:
    """
    Unbounded FIFO of input events for sink implementations.

    input_events() may be called again after a previous iterator was
    abandoned; events not yet consumed are delivered to the new one.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def put_key(self, data: bytes) -> None:
        if data:
            self._put(KeyInput(bytes(data)))

    def put_resize(self, cols: int, rows: int) -> None:
        self._put(Resize(cols, rows))

    def _put(self, event: InputEvent) -> None:
        if self._closed:
            raise RuntimeError("Input queue is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """End every current and future iteration once drained."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    @property
    def closed(self) -> bool:
        return self._closed

    async def input_events(self) -> AsyncIterator[InputEvent]:
        while True:
            event = await self._queue.get()
            if event is _END:
                # leave the marker for later subscribers
                self._queue.put_nowait(_END)
                return
            yield event
