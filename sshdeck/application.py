"""
Application root: owns the vault key context and wires the services
"""
import dataclasses
import threading
from typing import Any, Optional

from .core.client import ParamikoBackend
from .core.config import AppConfig
from .core.events import EventBus
from .core.exceptions import ConnectError, InvalidRecord, VaultError
from .core.interfaces import ProtocolBackend
from .core.logging import get_logger
from .domain.session.manager import SessionManager
from .domain.session.models import SessionState
from .domain.transfer.engine import TransferEngine
from .domain.transfer.models import TransferConfig, TransferDirection, TransferJob, TransferRequest
from .domain.vault.crypto import KdfParams
from .domain.vault.models import ConnectionRecord
from .domain.vault.store import ConnectionStore
from .domain.vault.vault import CryptoVault, VaultSession

logger = get_logger(__name__)


class Application:
    """
    Composition root.

    The unlocked vault key lives in `vault_session`, created here and
    handed to the vault only. Locking (explicitly, on idle timeout or on
    shutdown) discards it.
    """

    def __init__(self, config: AppConfig, backend: Optional[ProtocolBackend] = None):
        self.config = config
        self.bus = EventBus()

        self.vault_session = VaultSession()
        self.vault = CryptoVault(
            config.vault_path,
            self.vault_session,
            KdfParams(log2_n=config.kdf_log2_n, r=config.kdf_r, p=config.kdf_p),
        )
        self.store = ConnectionStore(self.vault)

        self.backend = backend or ParamikoBackend(known_hosts_path=config.known_hosts_path)
        self.sessions = SessionManager(
            self.backend,
            bus=self.bus,
            store=self.store,
            connect_timeout=config.connect_timeout,
            term_cols=config.term_cols,
            term_rows=config.term_rows,
        )
        self.transfers = TransferEngine(
            self.sessions,
            bus=self.bus,
            config=TransferConfig(chunk=config.chunk_size, progress_interval=config.progress_interval),
        )

        self._idle_stop = threading.Event()
        self._idle_thread: Optional[threading.Thread] = None

    def __enter__(self) -> "Application":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # --------------------
    # Vault
    # --------------------
    @property
    def vault_exists(self) -> bool:
        return self.vault.exists()

    @property
    def is_unlocked(self) -> bool:
        return self.store.is_open

    def create_vault(self, password: str) -> None:
        self.store.create(password)
        self.start_idle_watch()

    def unlock(self, password: str) -> None:
        """Unlock the vault; raises WrongPassword so the caller can re-prompt"""
        self.store.open(password)
        self.start_idle_watch()

    def lock(self) -> None:
        if self.store.is_open:
            self.store.close()

    def change_password(self, old: str, new: str) -> None:
        self.store.change_password(old, new)

    # --------------------
    # Connections
    # --------------------
    def edit_connection(self, record_id: str, **changes: Any) -> ConnectionRecord:
        """
        Replace fields of a saved connection.

        Id, attempt history and recency carry over; the result is
        validated before it is persisted.
        """
        current = self.store.get(record_id)
        unknown = set(changes) - {"host", "user", "port", "name", "credential", "last_remote_dir"}
        if unknown:
            raise InvalidRecord(f"Cannot edit {', '.join(sorted(unknown))}")
        return self.store.update(dataclasses.replace(current, **changes))

    def check_connection(self, record: ConnectionRecord) -> None:
        """
        Connect and authenticate, then close again without a terminal.

        Works for records that are not saved yet.

        Raises:
            ConnectError: If the host cannot be reached or rejects the login
        """
        try:
            session = self.sessions.connect(record)
        except ConnectError:
            for failed in self.sessions.list_sessions():
                if failed.record is record and failed.state is SessionState.FAILED:
                    self.sessions.close_session(failed.id)
            raise
        self.sessions.close_session(session.id)

    # --------------------
    # Idle lock
    # --------------------
    def touch(self) -> None:
        """Record user activity"""
        self.vault_session.touch()

    def check_idle(self) -> bool:
        """Lock the vault if it has been idle too long; returns True if it locked"""
        timeout = self.config.idle_timeout
        if timeout <= 0 or not self.store.is_open:
            return False
        if self.vault_session.idle_seconds() < timeout:
            return False
        logger.info("Locking vault after %.0fs of inactivity", timeout)
        self.lock()
        return True

    def start_idle_watch(self) -> None:
        if self.config.idle_timeout <= 0 or (self._idle_thread and self._idle_thread.is_alive()):
            return
        self._idle_stop.clear()
        self._idle_thread = threading.Thread(target=self._idle_loop, daemon=True, name="Vault-IdleLock")
        self._idle_thread.start()

    def _idle_loop(self) -> None:
        interval = min(max(self.config.idle_timeout / 10, 1.0), 30.0)
        while not self._idle_stop.wait(interval):
            if self.check_idle():
                return

    # --------------------
    # Transfers
    # --------------------
    def start_transfer(self, request: TransferRequest) -> TransferJob:
        """Start a job and remember the directories it used for the next browse"""
        job = self.transfers.start(request)
        if self.store.is_open:
            record = self.sessions.get(request.session_id).record
            if request.direction is TransferDirection.UPLOAD:
                local_dir, remote_dir = None, request.target_dir
            else:
                local_dir, remote_dir = request.target_dir, None
            try:
                if remote_dir:
                    self.store.set_last_remote_dir(record.id, remote_dir)
                if local_dir:
                    self.store.set_last_local_dir(local_dir)
            except (VaultError, InvalidRecord) as e:
                logger.warning("Could not remember transfer directories: %s", e)
        return job

    # --------------------
    # Lifecycle
    # --------------------
    def shutdown(self) -> None:
        """Close every session and lock the vault"""
        self._idle_stop.set()
        self.sessions.shutdown()
        self.lock()
