"""
Session data models
"""
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, TYPE_CHECKING

from ..vault.models import ConnectionRecord

if TYPE_CHECKING:
    from .terminal import TerminalChannel


class SessionState(str, Enum):
    """Session lifecycle state"""
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    TERMINAL = "terminal"
    TRANSFERRING = "transferring"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_open(self) -> bool:
        """Connected and usable"""
        return self in _OPEN_STATES

    @property
    def is_final(self) -> bool:
        return self is SessionState.CLOSED


_OPEN_STATES = frozenset({SessionState.READY, SessionState.TERMINAL, SessionState.TRANSFERRING})

# Allowed transitions. FAILED is reachable from any state before CLOSING
# and only leads to CLOSED.
TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.CONNECTING: frozenset({SessionState.AUTHENTICATING, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.AUTHENTICATING: frozenset({SessionState.READY, SessionState.CLOSING, SessionState.FAILED}),
    SessionState.READY: frozenset({
        SessionState.TERMINAL, SessionState.TRANSFERRING, SessionState.CLOSING, SessionState.FAILED,
    }),
    SessionState.TERMINAL: frozenset({
        SessionState.READY, SessionState.TRANSFERRING, SessionState.CLOSING, SessionState.FAILED,
    }),
    SessionState.TRANSFERRING: frozenset({
        SessionState.READY, SessionState.TERMINAL, SessionState.CLOSING, SessionState.FAILED,
    }),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.FAILED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


def can_transition(current: SessionState, new: SessionState) -> bool:
    return new in TRANSITIONS[current]


@dataclass
class Session:
    """
    One authenticated connection (a tab).

    Mutable fields are guarded by `lock`; `sftp_released` is notified
    whenever the SFTP borrower changes.
    """
    record: ConnectionRecord
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: SessionState = SessionState.IDLE
    reason: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    conn: Any = None
    terminal: Optional["TerminalChannel"] = None
    sftp: Any = None
    sftp_owner: Optional[str] = None
    sftp_cancel: Optional[Callable[[], None]] = None
    threads: List[threading.Thread] = field(default_factory=list)

    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    sftp_released: threading.Condition = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.sftp_released = threading.Condition(self.lock)

    @property
    def label(self) -> str:
        return self.record.label

    @property
    def has_terminal(self) -> bool:
        return self.terminal is not None and self.terminal.is_live

    @property
    def is_busy(self) -> bool:
        """Whether the SFTP channel is borrowed"""
        return self.sftp_owner is not None

    def activity_state(self) -> SessionState:
        """Open-state implied by the current channel usage"""
        if self.is_busy:
            return SessionState.TRANSFERRING
        if self.has_terminal:
            return SessionState.TERMINAL
        return SessionState.READY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "id": self.id,
            "record_id": self.record.id,
            "label": self.label,
            "state": self.state.value,
            "reason": self.reason,
            "terminal": self.has_terminal,
            "sftp_owner": self.sftp_owner,
        }
