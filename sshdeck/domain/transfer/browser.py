"""
Direction-agnostic directory browsing, local or over SFTP
"""
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from ...core.exceptions import TransferError
from ...core.interfaces import FileInfo
from ...core.logging import get_logger
from ...core.utils import join_remote, map_os_error, parent_remote_dir
from .models import Side

if TYPE_CHECKING:
    from ..session.manager import SessionManager

logger = get_logger(__name__)


@dataclass
class Listing:
    """A directory and its (filtered, sorted) entries"""
    path: str
    entries: List[FileInfo] = field(default_factory=list)


def _sort_and_filter(entries: List[FileInfo], only_dirs: bool, show_hidden: bool) -> List[FileInfo]:
    kept = [
        e for e in entries
        if (show_hidden or not e.name.startswith(".")) and (e.is_dir or not only_dirs)
    ]
    return sorted(kept, key=lambda e: e.name.lower())


class DirectoryBrowser(ABC):
    """Browse one side of a transfer"""

    side: Side

    @abstractmethod
    def home(self) -> str:
        pass

    @abstractmethod
    def _list_raw(self, path: str) -> List[FileInfo]:
        pass

    @abstractmethod
    def stat(self, path: str) -> FileInfo:
        pass

    @abstractmethod
    def parent(self, path: str) -> str:
        pass

    @abstractmethod
    def join(self, base: str, name: str) -> str:
        pass

    @abstractmethod
    def root(self) -> str:
        pass

    def list(self, path: str, only_dirs: bool = False, show_hidden: bool = False) -> List[FileInfo]:
        """
        List a directory, sorted case-insensitively by name.

        Raises:
            PermissionDenied / TransferIOError: If the directory cannot be read
        """
        try:
            entries = self._list_raw(path)
        except OSError as e:
            raise map_os_error(e, path) from e
        return _sort_and_filter(entries, only_dirs, show_hidden)

    def open_at(
        self,
        path: Optional[str] = None,
        only_dirs: bool = False,
        show_hidden: bool = False,
    ) -> Listing:
        """
        List the first readable directory of: path, home, root.

        Raises:
            TransferError: If not even the root can be listed
        """
        candidates = ([path] if path else []) + [self.home(), self.root()]
        last_error: Optional[TransferError] = None
        for candidate in dict.fromkeys(candidates):
            try:
                return Listing(candidate, self.list(candidate, only_dirs, show_hidden))
            except TransferError as e:
                logger.debug("Cannot browse %s: %s", candidate, e)
                last_error = e
        raise last_error


class LocalBrowser(DirectoryBrowser):
    """Local filesystem"""

    side = Side.LOCAL

    def home(self) -> str:
        return str(Path.home())

    def root(self) -> str:
        return Path.home().anchor or os.sep

    def _list_raw(self, path: str) -> List[FileInfo]:
        entries = []
        with os.scandir(Path(path).expanduser()) as it:
            for entry in it:
                try:
                    is_dir = entry.is_dir()
                    st = entry.stat()
                except OSError:
                    # Dangling symlink or vanished entry
                    continue
                entries.append(FileInfo(
                    name=entry.name,
                    path=entry.path,
                    is_dir=is_dir,
                    size=0 if is_dir else st.st_size,
                    mtime=st.st_mtime,
                ))
        return entries

    def stat(self, path: str) -> FileInfo:
        p = Path(path).expanduser()
        try:
            st = p.stat()
        except OSError as e:
            raise map_os_error(e, path) from e
        is_dir = p.is_dir()
        return FileInfo(name=p.name or str(p), path=str(p), is_dir=is_dir,
                        size=0 if is_dir else st.st_size, mtime=st.st_mtime)

    def parent(self, path: str) -> str:
        return str(Path(path).expanduser().parent)

    def join(self, base: str, name: str) -> str:
        return str(Path(base).expanduser() / name)


class RemoteBrowser(DirectoryBrowser):
    """
    Remote filesystem over the session's SFTP channel.

    Each call borrows the channel briefly, so browsing a session whose
    channel is held by a transfer raises SessionBusy.
    """

    side = Side.REMOTE

    def __init__(self, manager: "SessionManager", session_id: str):
        self.manager = manager
        self.session_id = session_id
        self.owner = f"browser-{uuid.uuid4().hex[:6]}"
        self._home: Optional[str] = None

    def home(self) -> str:
        if self._home is None:
            with self.manager.borrow_sftp(self.session_id, self.owner) as sftp:
                try:
                    self._home = self.manager.backend.home_dir(sftp) or "/"
                except OSError as e:
                    logger.debug("Remote home unavailable: %s", e)
                    return "/"
        return self._home

    def root(self) -> str:
        return "/"

    def _list_raw(self, path: str) -> List[FileInfo]:
        with self.manager.borrow_sftp(self.session_id, self.owner) as sftp:
            return self.manager.backend.list_dir(sftp, path)

    def stat(self, path: str) -> FileInfo:
        with self.manager.borrow_sftp(self.session_id, self.owner) as sftp:
            try:
                return self.manager.backend.stat(sftp, path)
            except OSError as e:
                raise map_os_error(e, path) from e

    def parent(self, path: str) -> str:
        return parent_remote_dir(path)

    def join(self, base: str, name: str) -> str:
        return join_remote(base, name)


def browser_for(side: Side, manager: "SessionManager", session_id: str) -> DirectoryBrowser:
    """Browser for one side of a transfer on a session"""
    if side is Side.LOCAL:
        return LocalBrowser()
    return RemoteBrowser(manager, session_id)
