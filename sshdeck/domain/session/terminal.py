"""
Duplex byte pump for a session's PTY channel
"""
import queue
import threading
from typing import Any, Callable, Optional

from ...core.constants import TERMINAL_POLL_INTERVAL, TERMINAL_READ_SIZE, THREAD_JOIN_TIMEOUT
from ...core.events import EventBus, TerminalOutput
from ...core.interfaces import ProtocolBackend
from ...core.logging import get_logger

logger = get_logger(__name__)

OutputSink = Callable[[bytes], None]

_STOP = object()


class TerminalChannel:
    """
    PTY channel with a reader and a writer thread.

    - reader: remote bytes -> TerminalOutput events and the optional sink
    - writer: drains one ordered queue of keystrokes, so a keystroke is
      never overtaken by a later one

    End of stream calls on_eof; a read or write error calls on_error. Both
    callbacks run on a pump thread and must not join it.
    """

    def __init__(
        self,
        session_id: str,
        backend: ProtocolBackend,
        channel: Any,
        bus: EventBus,
        sink: Optional[OutputSink] = None,
        on_eof: Optional[Callable[["TerminalChannel"], None]] = None,
        on_error: Optional[Callable[["TerminalChannel", Exception], None]] = None,
        cols: int = 80,
        rows: int = 24,
    ):
        self.session_id = session_id
        self.backend = backend
        self.channel = channel
        self.bus = bus
        self.sink = sink
        self.on_eof = on_eof
        self.on_error = on_error
        self.cols = cols
        self.rows = rows

        self._outgoing: "queue.Queue[Any]" = queue.Queue()
        self._stop = threading.Event()
        self._closed = False
        self._close_lock = threading.Lock()
        self._reader = threading.Thread(
            target=self._read_loop, daemon=True, name=f"Terminal-Reader-{session_id}"
        )
        self._writer = threading.Thread(
            target=self._write_loop, daemon=True, name=f"Terminal-Writer-{session_id}"
        )

    @property
    def is_live(self) -> bool:
        return not self._stop.is_set()

    def start(self) -> None:
        self._reader.start()
        self._writer.start()

    def send(self, data: bytes) -> None:
        """Queue bytes for the remote side"""
        if self.is_live and data:
            self._outgoing.put(data)

    def resize(self, cols: int, rows: int) -> None:
        """Forward a window-change request"""
        cols, rows = max(1, cols), max(1, rows)
        self.cols, self.rows = cols, rows
        self.backend.resize(self.channel, cols, rows)

    def close(self) -> None:
        """Stop both pumps and close the channel; safe to call from any thread"""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        self._outgoing.put(_STOP)
        try:
            self.backend.close(self.channel)
        except Exception as e:
            logger.warning("Error closing terminal on %s: %s", self.session_id, e)

        current = threading.current_thread()
        for thread in (self._reader, self._writer):
            if thread is not current and thread.is_alive():
                thread.join(timeout=THREAD_JOIN_TIMEOUT)

    # --------------------
    # Pumps
    # --------------------
    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                data = self.backend.read(self.channel, TERMINAL_READ_SIZE)
            except Exception as e:
                if not self._stop.is_set():
                    self._fail(e)
                return

            if data is None:
                continue
            if not data:
                if not self._stop.is_set():
                    logger.debug("Terminal on %s reached end of stream", self.session_id)
                    self._stop.set()
                    self._outgoing.put(_STOP)
                    if self.on_eof:
                        self.on_eof(self)
                return

            self.bus.publish(TerminalOutput(session_id=self.session_id, data=data))
            if self.sink:
                try:
                    self.sink(data)
                except Exception:
                    logger.exception("Terminal output sink failed on %s", self.session_id)

    def _write_loop(self) -> None:
        while True:
            try:
                data = self._outgoing.get(timeout=TERMINAL_POLL_INTERVAL)
            except queue.Empty:
                if self._stop.is_set():
                    return
                continue
            if data is _STOP:
                return
            try:
                self.backend.write(self.channel, data)
            except Exception as e:
                if not self._stop.is_set():
                    self._fail(e)
                return

    def _fail(self, error: Exception) -> None:
        logger.warning("Terminal on %s failed: %s", self.session_id, error)
        self._stop.set()
        self._outgoing.put(_STOP)
        if self.on_error:
            self.on_error(self, error)
