"""
Shared fixtures: a fast vault, an unlocked store and an in-memory
protocol backend standing in for a remote host.
"""
import errno
import io
import posixpath
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from sshdeck.core.events import EventBus
from sshdeck.core.exceptions import AuthRejected, RemoteClosed
from sshdeck.core.interfaces import FileInfo, ProtocolBackend
from sshdeck.domain.session.manager import SessionManager
from sshdeck.domain.transfer.engine import TransferEngine
from sshdeck.domain.transfer.models import TransferConfig
from sshdeck.domain.vault.crypto import KdfParams
from sshdeck.domain.vault.models import ConnectionRecord, PasswordCredential
from sshdeck.domain.vault.store import ConnectionStore
from sshdeck.domain.vault.vault import CryptoVault, VaultSession

MASTER_PASSWORD = "correct horse"
REMOTE_HOME = "/home/alice"


# --- Fake remote host ---

class FakeConn:
    def __init__(self, host: str, user: str):
        self.host = host
        self.user = user
        self.alive = True
        self.closed = False


class FakeChannel:
    """PTY that echoes whatever is written to it"""

    def __init__(self, cols: int, rows: int, echo: bool = True):
        self.cols = cols
        self.rows = rows
        self.echo = echo
        self.inbox: "queue.Queue[bytes]" = queue.Queue()
        self.written: List[bytes] = []
        self.read_error: Optional[Exception] = None
        self.closed = False


class FakeSftp:
    def __init__(self, conn: FakeConn):
        self.conn = conn
        self.closed = False


class _RemoteWriter(io.BytesIO):
    """Remote file opened for writing; content lands on close"""

    def __init__(self, backend: "FakeBackend", path: str):
        super().__init__()
        self._backend = backend
        self._path = path

    def write(self, data) -> int:
        if self._backend.write_delay:
            time.sleep(self._backend.write_delay)
        return super().write(data)

    def close(self) -> None:
        if not self.closed:
            self._backend.files[self._path] = self.getvalue()
        super().close()


class FakeBackend(ProtocolBackend):
    """
    In-memory SSH/SFTP host.

    Remote files live in `files` (path -> bytes) and directories in
    `dirs`. Paths listed in `denied` refuse access with EACCES.
    """

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.dirs = {"/", "/home", REMOTE_HOME}
        self.denied: set = set()
        self.write_delay = 0.0

        self.connect_error: Optional[Exception] = None
        self.key_passphrases: Dict[str, Optional[str]] = {}
        self.opened: List[FakeConn] = []
        self.channels: List[FakeChannel] = []
        self.resizes: List[tuple] = []
        self.closed_kinds: List[str] = []
        self.sftp_opens = 0
        self._lock = threading.Lock()

    # Connections
    def load_private_key(self, path: str, passphrase: Optional[str] = None) -> Any:
        if path not in self.key_passphrases:
            raise AuthRejected(f"Private key not found at {path}")
        if self.key_passphrases[path] != passphrase:
            raise AuthRejected(f"Wrong passphrase for {path}")
        return ("pkey", path)

    def open(
        self,
        host: str,
        port: int,
        user: str,
        password: Optional[str] = None,
        pkey: Any = None,
        timeout: float = 10,
        on_authenticating: Optional[Callable[[], None]] = None,
    ) -> Any:
        if self.connect_error is not None:
            raise self.connect_error
        if on_authenticating:
            on_authenticating()
        conn = FakeConn(host, user)
        self.opened.append(conn)
        return conn

    def is_alive(self, conn: FakeConn) -> bool:
        return conn.alive and not conn.closed

    # Terminal
    def open_pty(self, conn: FakeConn, cols: int, rows: int) -> FakeChannel:
        if not self.is_alive(conn):
            raise RemoteClosed("Connection is gone")
        channel = FakeChannel(cols, rows)
        self.channels.append(channel)
        return channel

    def read(self, channel: FakeChannel, size: int) -> Optional[bytes]:
        if channel.read_error is not None:
            raise channel.read_error
        try:
            return channel.inbox.get(timeout=0.02)
        except queue.Empty:
            return b"" if channel.closed else None

    def write(self, channel: FakeChannel, data: bytes) -> None:
        if channel.closed:
            raise RemoteClosed("Channel closed")
        channel.written.append(data)
        if channel.echo:
            channel.inbox.put(data)

    def resize(self, channel: FakeChannel, cols: int, rows: int) -> None:
        channel.cols, channel.rows = cols, rows
        self.resizes.append((channel, cols, rows))

    def hangup(self, channel: FakeChannel) -> None:
        """Remote shell exits"""
        channel.inbox.put(b"")

    # SFTP
    def sftp_open(self, conn: FakeConn) -> FakeSftp:
        if not self.is_alive(conn):
            raise RemoteClosed("Connection is gone")
        self.sftp_opens += 1
        return FakeSftp(conn)

    def _guard(self, path: str) -> str:
        path = posixpath.normpath(path) if path != "/" else path
        if path.startswith("//"):
            path = path[1:]
        for denied in self.denied:
            if path == denied or path.startswith(denied.rstrip("/") + "/"):
                raise PermissionError(errno.EACCES, "Permission denied", path)
        return path

    def _missing(self, path: str) -> OSError:
        return FileNotFoundError(errno.ENOENT, "No such file", path)

    def list_dir(self, sftp: FakeSftp, path: str) -> List[FileInfo]:
        path = self._guard(path)
        if path not in self.dirs:
            raise self._missing(path)
        entries = []
        for d in self.dirs:
            if d != path and posixpath.dirname(d) == path:
                entries.append(FileInfo(name=posixpath.basename(d), path=d, is_dir=True))
        for f, content in self.files.items():
            if posixpath.dirname(f) == path:
                entries.append(FileInfo(name=posixpath.basename(f), path=f, is_dir=False, size=len(content)))
        return entries

    def stat(self, sftp: FakeSftp, path: str) -> FileInfo:
        path = posixpath.normpath(path) if path != "/" else path
        if path in self.dirs:
            return FileInfo(name=posixpath.basename(path) or "/", path=path, is_dir=True)
        if path in self.files:
            return FileInfo(name=posixpath.basename(path), path=path, is_dir=False,
                            size=len(self.files[path]))
        raise self._missing(path)

    def open_read(self, sftp: FakeSftp, path: str) -> io.BytesIO:
        path = self._guard(path)
        if path not in self.files:
            raise self._missing(path)
        return io.BytesIO(self.files[path])

    def open_write(self, sftp: FakeSftp, path: str) -> _RemoteWriter:
        path = self._guard(path)
        if posixpath.dirname(path) not in self.dirs:
            raise self._missing(path)
        if path in self.dirs:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", path)
        return _RemoteWriter(self, path)

    def mkdir(self, sftp: FakeSftp, path: str) -> None:
        path = self._guard(path)
        if path in self.dirs or path in self.files:
            raise FileExistsError(errno.EEXIST, "File exists", path)
        if posixpath.dirname(path) not in self.dirs:
            raise self._missing(path)
        self.dirs.add(path)

    def home_dir(self, sftp: FakeSftp) -> str:
        return REMOTE_HOME

    def close(self, handle: Any) -> None:
        handle.closed = True
        if isinstance(handle, FakeChannel):
            self.closed_kinds.append("terminal")
        elif isinstance(handle, FakeSftp):
            self.closed_kinds.append("sftp")
        elif isinstance(handle, FakeConn):
            self.closed_kinds.append("conn")


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until predicate holds or the timeout passes"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# --- Fixtures ---

@pytest.fixture
def fast_kdf():
    """Cheapest scrypt parameters the vault accepts."""
    return KdfParams(log2_n=10, r=8, p=1)


@pytest.fixture
def vault_path(tmp_path):
    return tmp_path / "vault" / "vault.bin"


@pytest.fixture
def vault(vault_path, fast_kdf):
    return CryptoVault(vault_path, VaultSession(), fast_kdf)


@pytest.fixture
def store(vault):
    """Unlocked store on a fresh vault."""
    s = ConnectionStore(vault)
    s.create(MASTER_PASSWORD)
    return s


@pytest.fixture
def record(store):
    return store.add(ConnectionRecord(
        host="web.example.org",
        user="alice",
        name="web",
        credential=PasswordCredential("s3cret"),
    ))


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def manager(backend, bus, store):
    m = SessionManager(backend, bus=bus, store=store)
    yield m
    m.shutdown()


@pytest.fixture
def session(manager, record):
    """Connected session on the fake host."""
    return manager.connect(record)


@pytest.fixture
def engine(manager, bus):
    return TransferEngine(manager, bus=bus, config=TransferConfig(chunk=64 * 1024, progress_interval=0.01))
