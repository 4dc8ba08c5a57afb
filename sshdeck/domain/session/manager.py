"""
Multi-session connection manager
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from ...core.constants import (
    DEFAULT_SSH_TIMEOUT,
    DEFAULT_TERM_COLS,
    DEFAULT_TERM_ROWS,
    THREAD_JOIN_TIMEOUT,
)
from ...core.events import EventBus, SessionStateChanged
from ...core.exceptions import (
    ChannelBusy,
    ConnectError,
    InvalidRecord,
    InvalidStateTransition,
    RemoteClosed,
    SessionBusy,
    SessionNotFound,
    VaultError,
    user_message,
)
from ...core.interfaces import ProtocolBackend
from ...core.logging import get_logger, log_event
from ..vault.models import ConnectionRecord, Credential, PrivateKeyCredential
from ..vault.store import ConnectionStore
from .models import Session, SessionState, can_transition
from .terminal import OutputSink, TerminalChannel

logger = get_logger(__name__)

# How long close_session waits for a cancelled transfer to hand back the SFTP channel
TRANSFER_RELEASE_TIMEOUT = 10.0


class SessionManager:
    """
    Owns concurrent sessions (tabs), addressed by stable id.

    Each session has at most one live terminal channel and at most one
    SFTP borrower. Keystrokes are routed to the foregrounded session only.
    A session leaves the arena only after close_session has joined its
    background threads.
    """

    def __init__(
        self,
        backend: ProtocolBackend,
        bus: Optional[EventBus] = None,
        store: Optional[ConnectionStore] = None,
        connect_timeout: float = DEFAULT_SSH_TIMEOUT,
        term_cols: int = DEFAULT_TERM_COLS,
        term_rows: int = DEFAULT_TERM_ROWS,
        max_workers: int = 4,
    ):
        self.backend = backend
        self.bus = bus or EventBus()
        self.store = store
        self.connect_timeout = connect_timeout
        self.term_cols = term_cols
        self.term_rows = term_rows

        self._sessions: Dict[str, Session] = {}
        self._foreground: Optional[str] = None
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="Connect")

    # --------------------
    # Arena
    # --------------------
    def get(self, session_id: str) -> Session:
        """
        Get a session by id.

        Raises:
            SessionNotFound: If no such session exists
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def list_sessions(self) -> List[Session]:
        """Sessions in tab order"""
        with self._lock:
            return list(self._sessions.values())

    def create(self, record: ConnectionRecord) -> Session:
        """Add an idle session for a record; the first one is foregrounded"""
        session = Session(record=record)
        with self._lock:
            self._sessions[session.id] = session
            if self._foreground is None:
                self._foreground = session.id
        log_event(logger, "session.created", f"New session for {record.label}",
                  session_id=session.id, host=record.host)
        return session

    # --------------------
    # Foreground routing
    # --------------------
    @property
    def foreground_id(self) -> Optional[str]:
        with self._lock:
            return self._foreground

    def foreground(self, session_id: str) -> Session:
        """Route keystrokes to this session"""
        session = self.get(session_id)
        with self._lock:
            self._foreground = session_id
        return session

    def cycle_foreground(self, step: int = 1) -> Optional[Session]:
        """Move the foreground to the next (or previous) tab"""
        with self._lock:
            ids = list(self._sessions)
            if not ids:
                self._foreground = None
                return None
            if self._foreground in ids:
                index = (ids.index(self._foreground) + step) % len(ids)
            else:
                index = 0
            self._foreground = ids[index]
            return self._sessions[ids[index]]

    def send_keys(self, data: bytes) -> bool:
        """
        Deliver keystrokes to the foreground session's terminal.

        Returns:
            False if the foreground session has no live terminal
        """
        with self._lock:
            session = self._sessions.get(self._foreground) if self._foreground else None
        if session is None:
            return False
        with session.lock:
            terminal = session.terminal if session.has_terminal else None
        if terminal is None:
            return False
        terminal.send(data)
        return True

    # --------------------
    # State machine
    # --------------------
    def _set_state(self, session: Session, new: SessionState, reason: Optional[str] = None) -> None:
        with session.lock:
            if session.state is new:
                return
            if not can_transition(session.state, new):
                raise InvalidStateTransition(f"{session.state.value} -> {new.value}")
            old = session.state
            session.state = new
            if reason is not None:
                session.reason = reason
            # Publish under the session lock so per-session events keep order
            log_event(logger, "session.state", f"{session.label}: {old.value} -> {new.value}",
                      session_id=session.id, state=new.value, previous=old.value, reason=reason)
            self.bus.publish(SessionStateChanged(session_id=session.id, new_state=new.value, reason=reason))

    def _refresh(self, session: Session) -> None:
        """Recompute READY / TERMINAL / TRANSFERRING from channel usage"""
        with session.lock:
            if session.state.is_open:
                self._set_state(session, session.activity_state())

    def _fail(self, session: Session, error: BaseException) -> None:
        """Mark a session FAILED and release its terminal; no automatic retry"""
        with session.lock:
            if not can_transition(session.state, SessionState.FAILED):
                return
            self._set_state(session, SessionState.FAILED, reason=user_message(error))
            terminal, session.terminal = session.terminal, None
        if terminal is not None:
            terminal.close()

    # --------------------
    # Connect
    # --------------------
    def connect(self, record: ConnectionRecord, credential: Optional[Credential] = None) -> Session:
        """
        Open a new session and authenticate.

        A passphrase-protected private key is decrypted locally before the
        host is contacted.

        Raises:
            ConnectError: NetworkUnreachable, AuthRejected, HostKeyMismatch
                or ConnectTimeout; the session is left FAILED
        """
        session = self.create(record)
        self._connect(session, credential)
        return session

    def connect_in_background(
        self, record: ConnectionRecord, credential: Optional[Credential] = None
    ) -> Future:
        """Like connect(), on a worker thread; the future resolves to the session"""
        session = self.create(record)

        def run() -> Session:
            self._connect(session, credential)
            return session

        return self._executor.submit(run)

    def reconnect(self, session_id: str, credential: Optional[Credential] = None) -> Session:
        """Replace a failed or closed tab with a fresh session for the same record"""
        record = self.get(session_id).record
        self.close_session(session_id)
        return self.connect(record, credential)

    def _connect(self, session: Session, credential: Optional[Credential]) -> None:
        record = session.record
        credential = credential or record.credential
        password: Optional[str] = None
        pkey: Any = None

        try:
            if isinstance(credential, PrivateKeyCredential):
                pkey = self.backend.load_private_key(credential.path, credential.passphrase)
            else:
                password = credential.password

            self._set_state(session, SessionState.CONNECTING)
            conn = self.backend.open(
                record.host,
                record.port,
                record.user,
                password=password,
                pkey=pkey,
                timeout=self.connect_timeout,
                on_authenticating=lambda: self._enter_authenticating(session),
            )
        except ConnectError as e:
            log_event(logger, "session.connect", f"Connection to {record.target} failed: {e}",
                      session_id=session.id, host=record.host, outcome="failure", error=type(e).__name__)
            self._fail(session, e)
            self._record_attempt(record, success=False)
            raise

        with session.lock:
            if session.state is not SessionState.AUTHENTICATING and not can_transition(
                session.state, SessionState.AUTHENTICATING
            ):
                # Closed while connecting
                self._close_quietly(conn, "connection")
                raise InvalidStateTransition(f"Session {session.id} closed during connect")
            self._set_state(session, SessionState.AUTHENTICATING)
            session.conn = conn
            self._set_state(session, SessionState.READY)

        log_event(logger, "session.connect", f"Connected to {record.target}",
                  session_id=session.id, host=record.host, outcome="success")
        self._record_attempt(record, success=True)

    def _enter_authenticating(self, session: Session) -> None:
        with session.lock:
            if session.state is SessionState.CONNECTING:
                self._set_state(session, SessionState.AUTHENTICATING)

    def _record_attempt(self, record: ConnectionRecord, success: bool) -> None:
        if self.store is None:
            return
        try:
            if success:
                self.store.record_used(record.id)
            else:
                self.store.record_failure(record.id)
        except VaultError as e:
            # Connection outcome stands even if the store cannot be updated
            logger.warning("Could not update history for %s: %s", record.label, e)
        except InvalidRecord:
            logger.debug("Record %s is not in the store", record.id)

    # --------------------
    # Terminal
    # --------------------
    def open_terminal(
        self,
        session_id: str,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
        sink: Optional[OutputSink] = None,
    ) -> TerminalChannel:
        """
        Open a PTY channel and start its byte pump.

        Raises:
            ChannelBusy: If the session already has a live terminal
            InvalidStateTransition: If the session is not connected
        """
        session = self.get(session_id)
        cols = max(1, cols or self.term_cols)
        rows = max(1, rows or self.term_rows)

        with session.lock:
            if not session.state.is_open:
                raise InvalidStateTransition(f"Session {session.id} is {session.state.value}")
            if session.has_terminal:
                raise ChannelBusy(session.label)

            try:
                channel = self.backend.open_pty(session.conn, cols, rows)
            except RemoteClosed as e:
                self._fail(session, e)
                raise

            terminal = TerminalChannel(
                session.id,
                self.backend,
                channel,
                self.bus,
                sink=sink,
                on_eof=self._on_terminal_eof,
                on_error=self._on_terminal_error,
                cols=cols,
                rows=rows,
            )
            session.terminal = terminal
            terminal.start()
            self._refresh(session)

        log_event(logger, "terminal.open", f"Terminal opened on {session.label}",
                  session_id=session.id, cols=cols, rows=rows)
        return terminal

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Forward a window change; no-op without a live terminal"""
        session = self.get(session_id)
        with session.lock:
            terminal = session.terminal if session.has_terminal else None
        if terminal is not None:
            terminal.resize(cols, rows)

    def close_terminal(self, session_id: str) -> None:
        session = self.get(session_id)
        with session.lock:
            terminal, session.terminal = session.terminal, None
        if terminal is not None:
            terminal.close()
            log_event(logger, "terminal.close", f"Terminal closed on {session.label}", session_id=session.id)
        self._refresh(session)

    def _on_terminal_eof(self, terminal: TerminalChannel) -> None:
        session = self._find(terminal.session_id)
        if session is None:
            return
        with session.lock:
            if session.terminal is terminal:
                session.terminal = None
        terminal.close()
        log_event(logger, "terminal.eof", "Remote closed the terminal", session_id=session.id)
        self._refresh(session)

    def _on_terminal_error(self, terminal: TerminalChannel, error: Exception) -> None:
        session = self._find(terminal.session_id)
        if session is None:
            return
        with session.lock:
            if session.terminal is not terminal:
                return
        self._fail(session, error)

    # --------------------
    # SFTP borrowing
    # --------------------
    def acquire_sftp(
        self,
        session_id: str,
        owner: str,
        cancel: Optional[Callable[[], None]] = None,
    ) -> Any:
        """
        Borrow the session's SFTP channel exclusively.

        Args:
            session_id: Session to borrow from
            owner: Borrower id (job id, browser)
            cancel: Called by close_session to stop the borrower

        Raises:
            SessionBusy: If another borrower holds the channel
        """
        session = self.get(session_id)
        with session.lock:
            if not session.state.is_open:
                raise InvalidStateTransition(f"Session {session.id} is {session.state.value}")
            if session.is_busy:
                raise SessionBusy(f"{session.label} is used by {session.sftp_owner}")
            if session.sftp is None:
                try:
                    session.sftp = self.backend.sftp_open(session.conn)
                except RemoteClosed:
                    self.check_alive(session_id)
                    raise
            session.sftp_owner = owner
            session.sftp_cancel = cancel
            self._refresh(session)
            return session.sftp

    def release_sftp(self, session_id: str, owner: str) -> None:
        session = self._find(session_id)
        if session is None:
            return
        with session.lock:
            if session.sftp_owner != owner:
                return
            session.sftp_owner = None
            session.sftp_cancel = None
            session.sftp_released.notify_all()
            self._refresh(session)

    @contextmanager
    def borrow_sftp(self, session_id: str, owner: str) -> Iterator[Any]:
        sftp = self.acquire_sftp(session_id, owner)
        try:
            yield sftp
        finally:
            self.release_sftp(session_id, owner)

    def attach_thread(self, session_id: str, thread: threading.Thread) -> None:
        """Register a background thread that close_session must wait for"""
        session = self.get(session_id)
        with session.lock:
            session.threads = [t for t in session.threads if t.is_alive()]
            session.threads.append(thread)

    # --------------------
    # Health and teardown
    # --------------------
    def check_alive(self, session_id: str) -> bool:
        """Probe the connection; a dead one marks the session FAILED"""
        session = self._find(session_id)
        if session is None or session.conn is None:
            return False
        try:
            alive = self.backend.is_alive(session.conn)
        except Exception as e:
            logger.debug("Liveness probe failed on %s: %s", session_id, e)
            alive = False
        if not alive and session.state.is_open:
            self._fail(session, RemoteClosed("Connection lost"))
        return alive

    def close_session(self, session_id: str, wait: float = TRANSFER_RELEASE_TIMEOUT) -> None:
        """
        Close a session: cancel its transfer, then the terminal, then SFTP,
        then the connection.

        Always ends in CLOSED; teardown errors are logged only.
        """
        session = self._find(session_id)
        if session is None:
            return

        with session.lock:
            if session.state in (SessionState.CLOSING, SessionState.CLOSED):
                return
            if session.state is not SessionState.FAILED:
                self._set_state(session, SessionState.CLOSING)
            cancel = session.sftp_cancel

        if cancel is not None:
            cancel()
        with session.lock:
            if not session.sftp_released.wait_for(lambda: not session.is_busy, timeout=wait):
                logger.warning("Transfer on %s did not stop within %ss", session.label, wait)
            terminal, session.terminal = session.terminal, None
            sftp, session.sftp = session.sftp, None
            conn, session.conn = session.conn, None
            threads, session.threads = list(session.threads), []

        if terminal is not None:
            terminal.close()
        if sftp is not None:
            self._close_quietly(sftp, "SFTP channel")
        if conn is not None:
            self._close_quietly(conn, "connection")

        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout=THREAD_JOIN_TIMEOUT)

        self._set_state(session, SessionState.CLOSED)
        with self._lock:
            self._sessions.pop(session.id, None)
            if self._foreground == session.id:
                self._foreground = next(iter(self._sessions), None)

    def shutdown(self) -> None:
        """Close every session and stop background connects"""
        for session in self.list_sessions():
            self.close_session(session.id)
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _find(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def _close_quietly(self, handle: Any, what: str) -> None:
        try:
            self.backend.close(handle)
        except Exception as e:
            logger.warning("Error closing %s: %s", what, e)
