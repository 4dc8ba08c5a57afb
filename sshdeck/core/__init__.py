"""
Core infrastructure layer
"""
from .client import ParamikoBackend
from .config import AppConfig
from .constants import *
from .events import (
    EventBus,
    SessionStateChanged,
    TerminalOutput,
    TransferFinished,
    TransferProgress,
)
from .exceptions import *
from .logging import setup_logging, get_logger, get_stdout_console, get_stderr_console, log_event
from .interfaces import FileInfo, ProtocolBackend, PromptProvider
from .utils import (
    join_remote,
    parent_remote_dir,
    remote_basename,
    map_os_error,
    format_size,
)

__all__ = [
    "ParamikoBackend",
    "AppConfig",
    "EventBus",
    "SessionStateChanged",
    "TerminalOutput",
    "TransferFinished",
    "TransferProgress",
    "setup_logging",
    "get_logger",
    "get_stdout_console",
    "get_stderr_console",
    "log_event",
    "FileInfo",
    "ProtocolBackend",
    "PromptProvider",
    "join_remote",
    "parent_remote_dir",
    "remote_basename",
    "map_os_error",
    "format_size",
]
