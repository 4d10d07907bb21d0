"""
Connection states.

Each state is its own immutable dataclass carrying only the data that is
meaningful in that state. ConnectionState is the union of them; `kind`
gives the flat SessionState tag for logging and UI.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum, auto
from typing import ClassVar, Union

from ..errors import FailureReason


class SessionState(Enum):
    """Session lifecycle states."""
    IDLE = auto()
    PAIRING = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    CONNECTED = auto()
    DEGRADED = auto()
    CLOSED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class Idle:
    kind: ClassVar[SessionState] = SessionState.IDLE


@dataclass(frozen=True)
class Pairing:
    host: str
    port: int
    kind: ClassVar[SessionState] = SessionState.PAIRING


@dataclass(frozen=True)
class Connecting:
    """
    Opening the transport. `attempt` counts from 1; `recovering` is set
    when reconnecting after Degraded so the UI can say "reconnecting".
    """
    attempt: int = 1
    max_attempts: int = 1
    recovering: bool = False
    kind: ClassVar[SessionState] = SessionState.CONNECTING


@dataclass(frozen=True)
class Authenticating:
    recovering: bool = False
    kind: ClassVar[SessionState] = SessionState.AUTHENTICATING


@dataclass(frozen=True)
class Connected:
    kind: ClassVar[SessionState] = SessionState.CONNECTED


@dataclass(frozen=True)
class Degraded:
    """Connected but unhealthy; writes are buffered while reconnecting."""
    cause: str = ""
    kind: ClassVar[SessionState] = SessionState.DEGRADED


@dataclass(frozen=True)
class Closed:
    kind: ClassVar[SessionState] = SessionState.CLOSED


@dataclass(frozen=True)
class Failed:
    """Terminal. Recovery means building a new SessionConnection."""
    reason: FailureReason
    message: str = ""
    kind: ClassVar[SessionState] = SessionState.FAILED

    @property
    def requires_repair(self) -> bool:
        return self.reason.requires_repair


ConnectionState = Union[
    Idle, Pairing, Connecting, Authenticating, Connected, Degraded, Closed, Failed
]


def is_recovering(state: ConnectionState) -> bool:
    """True while the UI should show "reconnecting, please wait"."""
    if isinstance(state, Degraded):
        return True
    if isinstance(state, (Connecting, Authenticating)):
        return state.recovering
    return False


def requires_action(state: ConnectionState) -> bool:
    """True when the user has to do something (any Failed state)."""
    return isinstance(state, Failed)


def describe(state: ConnectionState) -> str:
    """Short human readable status line."""
    if isinstance(state, Connecting):
        verb = "Reconnecting" if state.recovering else "Connecting"
        if state.attempt > 1:
            return f"{verb} (attempt {state.attempt}/{state.max_attempts})"
        return f"{verb}..."
    if isinstance(state, Authenticating):
        return "Authenticating..."
    if isinstance(state, Pairing):
        return f"Pairing with {state.host}:{state.port}..."
    if isinstance(state, Degraded):
        return f"Connection unstable: {state.cause}" if state.cause else "Connection unstable"
    if isinstance(state, Failed):
        detail = f": {state.message}" if state.message else ""
        return f"Failed ({state.reason.value}){detail}"
    return state.kind.name.capitalize()
