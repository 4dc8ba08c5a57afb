"""
Interactive multi-tab terminal on the local TTY
"""
import os
import select
import shutil
import signal
import sys
import termios
import threading
import tty
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, List

from ...application import Application
from ...core.events import Event, SessionStateChanged
from ...core.exceptions import SshDeckError
from ...core.logging import get_logger

logger = get_logger(__name__)

KEY_EXIT = b"\x07"           # Ctrl+G
KEY_NEXT_TAB = b"\x1b[17~"   # F6
KEY_PREV_TAB = b"\x1b[18~"   # F7
KEY_CLOSE_TAB = b"\x1b[19~"  # F8

SCROLLBACK_BYTES = 64 * 1024


@contextmanager
def raw_mode(fd: int) -> Iterator[None]:
    """Put the TTY in raw mode, restoring it on exit"""
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


class InteractiveTerminal:
    """
    Runs the terminals of several sessions as tabs.

    Keystrokes go to the foreground tab only. Output of background tabs is
    kept in a bounded scrollback and replayed when the tab comes forward.

    Keys: Ctrl+G leaves, F6/F7 switch tabs, F8 closes the current tab.
    """

    def __init__(self, app: Application):
        self.app = app
        self.manager = app.sessions
        self._out = sys.stdout.buffer
        self._out_lock = threading.Lock()
        self._scrollback: Dict[str, Deque[bytes]] = {}
        self._resized = threading.Event()

    def run(self, session_ids: List[str]) -> None:
        cols, rows = shutil.get_terminal_size()
        for session_id in session_ids:
            self._scrollback[session_id] = deque()
            self.manager.open_terminal(session_id, cols, rows, sink=self._sink_for(session_id))
        if session_ids:
            self.manager.foreground(session_ids[0])

        unsubscribe = self.app.bus.subscribe(self._on_event)
        previous_winch = signal.signal(signal.SIGWINCH, lambda *_: self._resized.set())
        fd = sys.stdin.fileno()
        try:
            with raw_mode(fd):
                self._loop(fd)
        finally:
            signal.signal(signal.SIGWINCH, previous_winch)
            unsubscribe()
        self._write(b"\r\n")

    def _loop(self, fd: int) -> None:
        while self._live_tabs():
            if self._resized.is_set():
                self._resized.clear()
                self._resize_all()

            ready, _, _ = select.select([fd], [], [], 0.2)
            if not ready:
                self._ensure_foreground()
                continue

            data = os.read(fd, 1024)
            if not data:
                return
            self.app.touch()

            if KEY_EXIT in data:
                return
            if data == KEY_NEXT_TAB:
                self._switch(1)
            elif data == KEY_PREV_TAB:
                self._switch(-1)
            elif data == KEY_CLOSE_TAB:
                self._close_foreground()
            elif not self.manager.send_keys(data):
                self._ensure_foreground()

    # --------------------
    # Tabs
    # --------------------
    def _live_tabs(self) -> List[str]:
        return [s.id for s in self.manager.list_sessions() if s.has_terminal]

    def _ensure_foreground(self) -> None:
        """Move off a tab whose terminal has ended"""
        current = self.manager.foreground_id
        live = self._live_tabs()
        if live and current not in live:
            self.manager.foreground(live[0])
            self._replay(live[0])

    def _switch(self, step: int) -> None:
        live = self._live_tabs()
        if len(live) < 2:
            return
        current = self.manager.foreground_id
        index = live.index(current) if current in live else 0
        target = live[(index + step) % len(live)]
        self.manager.foreground(target)
        self._replay(target)

    def _close_foreground(self) -> None:
        current = self.manager.foreground_id
        if current is None:
            return
        try:
            self.manager.close_terminal(current)
        except SshDeckError as e:
            logger.warning("Closing tab failed: %s", e)
        self._ensure_foreground()

    def _resize_all(self) -> None:
        cols, rows = shutil.get_terminal_size()
        for session_id in self._live_tabs():
            try:
                self.manager.resize(session_id, cols, rows)
            except SshDeckError as e:
                logger.debug("Resize of %s failed: %s", session_id, e)

    # --------------------
    # Output
    # --------------------
    def _sink_for(self, session_id: str):
        def sink(data: bytes) -> None:
            buffer = self._scrollback.setdefault(session_id, deque())
            buffer.append(data)
            while sum(len(b) for b in buffer) > SCROLLBACK_BYTES and len(buffer) > 1:
                buffer.popleft()
            if self.manager.foreground_id == session_id:
                self._write(data)
        return sink

    def _replay(self, session_id: str) -> None:
        session = self.manager.get(session_id)
        banner = f"\r\n\x1b[7m [{session.label}] \x1b[0m\r\n".encode()
        self._write(banner + b"".join(self._scrollback.get(session_id, ())))

    def _on_event(self, event: Event) -> None:
        if isinstance(event, SessionStateChanged) and event.new_state == "failed":
            note = f"\r\n\x1b[31m[{event.session_id}] {event.reason or 'failed'}\x1b[0m\r\n"
            self._write(note.encode())

    def _write(self, data: bytes) -> None:
        with self._out_lock:
            self._out.write(data)
            self._out.flush()
