"""
sshdeck - terminal SSH client

- Saved connections in an encrypted vault behind one master password
- Multiple concurrent sessions shown as tabs, one terminal per session
- SFTP uploads and downloads of files and directory trees with
  progress and cancellation
"""

__version__ = "0.1.0"

from .application import Application
from .core import AppConfig, EventBus, ParamikoBackend, ProtocolBackend
from .domain.session import SessionManager, SessionState
from .domain.transfer import TransferDirection, TransferEngine, TransferRequest
from .domain.vault import ConnectionRecord, ConnectionStore, CryptoVault

__all__ = [
    "__version__",
    "Application",
    "AppConfig",
    "EventBus",
    "ParamikoBackend",
    "ProtocolBackend",
    "SessionManager",
    "SessionState",
    "TransferDirection",
    "TransferEngine",
    "TransferRequest",
    "ConnectionRecord",
    "ConnectionStore",
    "CryptoVault",
]
