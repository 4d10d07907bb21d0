"""
Terminal side of a session: the sink capability and the byte bridge.
"""

from .sink import TerminalSink, InputEvent, KeyInput, Resize, InputQueue
from .bridge import TransportBridge, OutboundBuffer

__all__ = [
    "TerminalSink",
    "InputEvent",
    "KeyInput",
    "Resize",
    "InputQueue",
    "TransportBridge",
    "OutboundBuffer",
]
