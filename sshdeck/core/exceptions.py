"""
Unified exception definitions
"""


class SshDeckError(Exception):
    """Base exception class"""
    summary = "Unexpected error"


class ConfigError(SshDeckError):
    """Configuration error"""
    summary = "Invalid configuration"


class InvalidRecord(ConfigError):
    """Connection record failed validation"""
    summary = "Invalid connection details"


# ============================================================
# Vault
# ============================================================

class VaultError(SshDeckError):
    """Vault error"""
    summary = "Vault error"


class VaultCorrupt(VaultError):
    """Vault file is damaged or cannot be decoded"""
    summary = "Vault file is damaged"


class WrongPassword(VaultCorrupt):
    """
    Authentication of the vault ciphertext failed.

    A wrong master password and a tampered file are indistinguishable to
    AES-GCM, so both surface as this error.
    """
    summary = "Wrong master password or damaged vault"


class VaultUnsupportedVersion(VaultError):
    """Vault file uses a format version this build cannot read"""
    summary = "Vault was written by a newer version"


class VaultLocked(VaultError):
    """Operation requires an unlocked vault"""
    summary = "Vault is locked"


# ============================================================
# Connections
# ============================================================

class ConnectError(SshDeckError):
    """Connection error"""
    summary = "Connection failed"


class NetworkUnreachable(ConnectError):
    """Host could not be reached"""
    summary = "Host unreachable"


class AuthRejected(ConnectError):
    """Server rejected the credentials, or the key could not be decrypted"""
    summary = "Authentication failed"


class HostKeyMismatch(ConnectError):
    """Server host key does not match the known key"""
    summary = "Host key mismatch"


class ConnectTimeout(ConnectError):
    """Connection attempt timed out"""
    summary = "Connection timed out"


# ============================================================
# Sessions and channels
# ============================================================

class SessionError(SshDeckError):
    """Session error"""
    summary = "Session error"


class SessionNotFound(SessionError):
    """No session with the given id"""
    summary = "No such session"


class InvalidStateTransition(SessionError):
    """Requested state change is not allowed"""
    summary = "Operation not allowed in the current state"


class ChannelError(SshDeckError):
    """Channel error"""
    summary = "Channel error"


class ChannelBusy(ChannelError):
    """Session already has a live terminal channel"""
    summary = "A terminal is already open on this session"


class RemoteClosed(ChannelError):
    """Remote side closed the channel"""
    summary = "Remote side closed the channel"


# ============================================================
# Transfers
# ============================================================

class TransferError(SshDeckError):
    """Transfer error"""
    summary = "Transfer failed"


class TransferIOError(TransferError):
    """Read or write failure during a transfer"""
    summary = "Transfer I/O error"


class PermissionDenied(TransferError):
    """Permission denied on source or target"""
    summary = "Permission denied"


class TransferCancelled(TransferError):
    """Transfer was cancelled"""
    summary = "Transfer cancelled"


class SessionBusy(TransferError):
    """Session's SFTP channel is in use by another operation"""
    summary = "Session is busy with another transfer"


class WizardError(TransferError):
    """Invalid transfer wizard action"""
    summary = "Invalid transfer selection"


def user_message(exc: BaseException) -> str:
    """
    Short, human-readable message for an exception.

    Full details belong in the log; this is what the user sees.
    """
    if isinstance(exc, SshDeckError):
        detail = str(exc)
        if detail and detail != exc.summary:
            return f"{exc.summary}: {detail}"
        return exc.summary
    return f"Unexpected error: {exc}"
