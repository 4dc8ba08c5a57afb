"""
Concurrent SSH sessions and their terminal channels
"""
from .manager import SessionManager
from .models import Session, SessionState, TRANSITIONS, can_transition
from .terminal import TerminalChannel

__all__ = [
    "SessionManager",
    "Session",
    "SessionState",
    "TRANSITIONS",
    "can_transition",
    "TerminalChannel",
]
