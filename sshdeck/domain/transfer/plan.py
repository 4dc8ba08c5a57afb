"""
Transfer planning: enumerate the source tree up front
"""
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from ...core.exceptions import TransferCancelled, TransferIOError
from ...core.interfaces import ProtocolBackend
from ...core.logging import get_logger
from ...core.utils import join_remote, map_os_error, remote_basename
from .models import CancellationToken

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanEntry:
    """One directory to create or file to copy"""
    source: str
    target: str
    is_dir: bool
    size: int = 0


@dataclass
class TransferPlan:
    """
    Ordered work list.

    Every directory precedes its contents; empty directories are kept.
    """
    entries: List[PlanEntry] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(e.size for e in self.entries if not e.is_dir)

    @property
    def files(self) -> List[PlanEntry]:
        return [e for e in self.entries if not e.is_dir]

    @property
    def directories(self) -> List[PlanEntry]:
        return [e for e in self.entries if e.is_dir]


def _root_name(name: str, source: str) -> str:
    """
    Name the target directory receives the source under.

    A filesystem root, "." or ".." has no usable name of its own and would
    place the tree at or above the target directory.
    """
    if name in ("", ".", "..") or "/" in name:
        raise TransferIOError(f"Cannot transfer {source}: it has no name to copy it under")
    return name


def _check(token: Optional[CancellationToken]) -> None:
    if token is not None and token.cancelled:
        raise TransferCancelled()


def plan_upload(
    source: str,
    target_dir: str,
    token: Optional[CancellationToken] = None,
) -> TransferPlan:
    """
    Plan copying a local file or directory into a remote directory.

    Args:
        source: Local file or directory
        target_dir: Remote directory receiving source under its own name
        token: Checked once per directory

    Returns:
        TransferPlan with remote target paths
    """
    root = Path(source).expanduser()
    try:
        st = root.stat()
    except OSError as e:
        raise map_os_error(e, source) from e

    remote_root = join_remote(target_dir, _root_name(Path(os.path.abspath(root)).name, source))
    if not root.is_dir():
        return TransferPlan([PlanEntry(str(root), remote_root, False, st.st_size)])

    plan = TransferPlan()

    def on_error(error: OSError) -> None:
        raise map_os_error(error)

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        _check(token)
        dirnames.sort(key=str.lower)
        rel = Path(dirpath).relative_to(root)
        remote_dir = remote_root if rel == Path(".") else join_remote(remote_root, rel.as_posix())
        plan.entries.append(PlanEntry(dirpath, remote_dir, True))

        # os.walk does not descend into symlinked directories
        for name in [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]:
            logger.warning("Skipping symlinked directory %s", os.path.join(dirpath, name))

        for name in sorted(filenames, key=str.lower):
            path = os.path.join(dirpath, name)
            try:
                size = os.stat(path).st_size
            except OSError as e:
                raise map_os_error(e, path) from e
            plan.entries.append(PlanEntry(path, join_remote(remote_dir, name), False, size))

    return plan


def plan_download(
    backend: ProtocolBackend,
    sftp: Any,
    source: str,
    target_dir: str,
    token: Optional[CancellationToken] = None,
) -> TransferPlan:
    """
    Plan copying a remote file or directory into a local directory.

    Args:
        backend: Protocol backend
        sftp: Borrowed SFTP handle
        source: Remote file or directory
        target_dir: Local directory receiving source under its own name
        token: Checked once per directory

    Returns:
        TransferPlan with local target paths
    """
    source = posixpath.normpath(source)
    try:
        info = backend.stat(sftp, source)
    except OSError as e:
        raise map_os_error(e, source) from e

    local_root = Path(target_dir).expanduser() / _root_name(remote_basename(source), source)
    if not info.is_dir:
        return TransferPlan([PlanEntry(source, str(local_root), False, info.size)])

    plan = TransferPlan()
    pending = [(source, local_root)]
    while pending:
        _check(token)
        remote_dir, local_dir = pending.pop(0)
        plan.entries.append(PlanEntry(remote_dir, str(local_dir), True))
        try:
            entries = sorted(backend.list_dir(sftp, remote_dir), key=lambda e: e.name.lower())
        except OSError as e:
            raise map_os_error(e, remote_dir) from e

        subdirs = []
        for entry in entries:
            # Listing names come from the server
            _root_name(entry.name, entry.path)
            if entry.is_dir:
                subdirs.append((entry.path, local_dir / entry.name))
            else:
                plan.entries.append(PlanEntry(entry.path, str(local_dir / entry.name), False, entry.size))
        # Depth-first, so a directory's subtree follows it directly
        pending[0:0] = subdirs

    return plan


def check_local_dir(path: str) -> None:
    """Target directory for a download must exist"""
    if not Path(path).expanduser().is_dir():
        raise TransferIOError(f"Target directory does not exist: {path}")


def check_remote_dir(backend: ProtocolBackend, sftp: Any, path: str) -> None:
    """Target directory for an upload must exist"""
    try:
        info = backend.stat(sftp, path)
    except OSError as e:
        raise map_os_error(e, path) from e
    if not info.is_dir:
        raise TransferIOError(f"Target is not a directory: {path}")
