"""
Core utility functions
"""
import errno
import posixpath
from typing import Optional

from .exceptions import PermissionDenied, TransferError, TransferIOError


# ============================================================
# Path Resolution Utilities
# ============================================================

def join_remote(base: str, name: str) -> str:
    """Join remote (POSIX) path components"""
    if not base:
        return name
    return posixpath.join(base, name)


def parent_remote_dir(path: str) -> str:
    """
    Parent of a remote path; the root is its own parent.

    Examples:
        "/home/alice/" -> "/home"
        "/etc" -> "/"
        "relative" -> "/"
    """
    base, sep, _ = path.rstrip("/").rpartition("/")
    if not sep or not base:
        return "/"
    return base


def remote_basename(path: str) -> str:
    return posixpath.basename(path.rstrip("/")) or "/"


# ============================================================
# Error Mapping
# ============================================================

_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM}


def map_os_error(error: OSError, path: Optional[str] = None) -> TransferError:
    """
    Map an OSError from local or SFTP I/O to a transfer error.

    Args:
        error: The original error
        path: Path involved, used in the message when the error has none

    Returns:
        PermissionDenied for EACCES/EPERM, TransferIOError otherwise
    """
    where = error.filename or path
    detail = error.strerror or str(error) or type(error).__name__
    message = f"{where}: {detail}" if where else detail
    if isinstance(error, PermissionError) or error.errno in _PERMISSION_ERRNOS:
        return PermissionDenied(message)
    return TransferIOError(message)


# ============================================================
# Formatting
# ============================================================

def format_size(size_bytes: int) -> str:
    """
    Format bytes to human-readable size string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string like "100 B", "1.5 GB", etc.
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
