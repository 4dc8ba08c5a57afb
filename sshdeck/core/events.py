"""
Presentation-facing events and the bus that fans them out
"""
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Type, TypeVar, Union

from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionStateChanged:
    """A session moved to a new state"""
    session_id: str
    new_state: str
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TerminalOutput:
    """Bytes received from a session's terminal channel"""
    session_id: str
    data: bytes
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TransferProgress:
    """Coalesced progress of a transfer job"""
    job_id: str
    bytes_done: int
    total_bytes: int
    current_file: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TransferFinished:
    """A transfer job reached a terminal outcome"""
    job_id: str
    outcome: str
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


Event = Union[SessionStateChanged, TerminalOutput, TransferProgress, TransferFinished]
Subscriber = Callable[[Event], None]
E = TypeVar("E")


class EventBus:
    """
    Synchronous fan-out of events to subscribers.

    Subscribers run on the publishing thread and must return quickly.
    A subscriber that raises is logged and skipped; it never breaks the
    publisher. The most recent events are kept for inspection.
    """

    def __init__(self, history: int = 1000):
        self._subscribers: List[Subscriber] = []
        self._events: Deque[Event] = deque(maxlen=history)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it"""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Record an event and deliver it to every subscriber"""
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", type(event).__name__)

    def get_events(self, kind: Optional[Type[E]] = None) -> List[E]:
        """Get recorded events, optionally filtered by type"""
        with self._lock:
            events = list(self._events)
        if kind is None:
            return events
        return [e for e in events if isinstance(e, kind)]

    def clear(self) -> None:
        """Clear recorded events"""
        with self._lock:
            self._events.clear()
