"""
Encrypted connection vault
"""
from .crypto import KdfParams
from .models import (
    ConnectionRecord,
    Credential,
    HistoryEntry,
    PasswordCredential,
    PrivateKeyCredential,
)
from .store import ConnectionStore
from .vault import CryptoVault, VaultPayload, VaultSession

__all__ = [
    "KdfParams",
    "ConnectionRecord",
    "Credential",
    "HistoryEntry",
    "PasswordCredential",
    "PrivateKeyCredential",
    "ConnectionStore",
    "CryptoVault",
    "VaultPayload",
    "VaultSession",
]
