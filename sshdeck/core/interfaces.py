"""
Core interfaces for dependency injection
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, List, Optional


@dataclass(frozen=True)
class FileInfo:
    """Directory entry or stat result, local or remote"""
    name: str
    path: str
    is_dir: bool
    size: int = 0
    mtime: float = 0.0


class ProtocolBackend(ABC):
    """
    SSH/SFTP capability interface.

    Handles are opaque to callers. Every method may raise the connection,
    channel or transfer errors from core.exceptions; implementations map
    their library's exceptions onto those.
    """

    @abstractmethod
    def load_private_key(self, path: str, passphrase: Optional[str] = None) -> Any:
        """Load (and decrypt) a private key locally; raises AuthRejected on failure"""
        pass

    @abstractmethod
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
        """
        Connect and authenticate; returns a connection handle.

        on_authenticating is invoked once the transport is up and
        authentication is about to start.
        """
        pass

    @abstractmethod
    def is_alive(self, conn: Any) -> bool:
        """Whether the connection is still usable"""
        pass

    @abstractmethod
    def open_pty(self, conn: Any, cols: int, rows: int) -> Any:
        """Open an interactive shell on a pseudo-terminal; returns a channel handle"""
        pass

    @abstractmethod
    def read(self, channel: Any, size: int) -> Optional[bytes]:
        """
        Read from a channel.

        Returns data, b"" at end of stream, or None when nothing arrived
        within the backend's poll interval.
        """
        pass

    @abstractmethod
    def write(self, channel: Any, data: bytes) -> None:
        """Write all of data to a channel"""
        pass

    @abstractmethod
    def resize(self, channel: Any, cols: int, rows: int) -> None:
        """Send a window-change request"""
        pass

    @abstractmethod
    def sftp_open(self, conn: Any) -> Any:
        """Open the SFTP subsystem; returns an SFTP handle"""
        pass

    @abstractmethod
    def list_dir(self, sftp: Any, path: str) -> List[FileInfo]:
        """List a remote directory (without . and ..)"""
        pass

    @abstractmethod
    def stat(self, sftp: Any, path: str) -> FileInfo:
        """Stat a remote path"""
        pass

    @abstractmethod
    def open_read(self, sftp: Any, path: str) -> BinaryIO:
        """Open a remote file for streaming reads (get)"""
        pass

    @abstractmethod
    def open_write(self, sftp: Any, path: str) -> BinaryIO:
        """Create or truncate a remote file for streaming writes (put)"""
        pass

    @abstractmethod
    def mkdir(self, sftp: Any, path: str) -> None:
        """Create a remote directory"""
        pass

    @abstractmethod
    def home_dir(self, sftp: Any) -> str:
        """Remote home (initial working) directory"""
        pass

    @abstractmethod
    def close(self, handle: Any) -> None:
        """Close any connection, channel or SFTP handle"""
        pass


class PromptProvider(ABC):
    """User prompt interface"""

    @abstractmethod
    def prompt(self, message: str, default: Optional[str] = None, password: bool = False) -> str:
        """Prompt user for input"""
        pass

    @abstractmethod
    def confirm(self, message: str, default: bool = False) -> bool:
        """Prompt user for confirmation"""
        pass
