"""
Encrypted vault file and the in-memory key context
"""
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ...core.constants import VAULT_FILE_MODE
from ...core.exceptions import InvalidRecord, VaultCorrupt, VaultError, VaultLocked
from ...core.logging import get_logger, log_event
from .crypto import KdfParams, VaultHeader, derive_key, open_sealed, parse_vault, seal
from .models import ConnectionRecord

logger = get_logger(__name__)


@dataclass
class VaultPayload:
    """Decrypted vault contents"""
    records: List[ConnectionRecord] = field(default_factory=list)
    last_local_dir: Optional[str] = None

    def to_bytes(self) -> bytes:
        return json.dumps({
            "records": [r.to_dict() for r in self.records],
            "last_local_dir": self.last_local_dir,
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "VaultPayload":
        try:
            raw = json.loads(data.decode("utf-8"))
            return cls(
                records=[ConnectionRecord.from_dict(r) for r in raw["records"]],
                last_local_dir=raw.get("last_local_dir"),
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, InvalidRecord) as e:
            raise VaultCorrupt(f"Decrypted payload is malformed: {e}") from e


class VaultSession:
    """
    Holds the derived vault key in memory.

    Owned by the application root and handed to the vault only. The key is
    set on unlock and cleared on lock; every access goes through one
    re-entrant lock so unlock, persist and change_password never interleave.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self._key: Optional[bytes] = None
        self._header: Optional[VaultHeader] = None
        self._unlocked_at: Optional[float] = None
        self._last_activity: float = time.monotonic()

    @property
    def is_unlocked(self) -> bool:
        with self.lock:
            return self._key is not None

    @property
    def unlocked_at(self) -> Optional[float]:
        return self._unlocked_at

    @property
    def key(self) -> bytes:
        """Get the encryption key. Raises if locked."""
        with self.lock:
            if self._key is None:
                raise VaultLocked()
            return self._key

    @property
    def header(self) -> VaultHeader:
        with self.lock:
            if self._header is None:
                raise VaultLocked()
            return self._header

    def unlock(self, key: bytes, header: VaultHeader) -> None:
        """Store the encryption key in memory."""
        with self.lock:
            self._key = key
            self._header = header
            self._unlocked_at = time.time()
            self.touch()

    def lock_now(self) -> None:
        """Clear the encryption key from memory."""
        with self.lock:
            self._key = None
            self._header = None
            self._unlocked_at = None

    def touch(self) -> None:
        """Record user activity"""
        self._last_activity = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_activity


class CryptoVault:
    """
    Master-password protected vault file.

    Args:
        path: Vault file location
        session: Key context shared with the application root
        kdf: Cost parameters for newly derived keys
    """

    def __init__(self, path: Path, session: VaultSession, kdf: Optional[KdfParams] = None):
        self.path = Path(path)
        self.session = session
        self.kdf = kdf or KdfParams()
        if not self.kdf.is_valid():
            raise VaultError(f"Key derivation parameters out of range: {self.kdf}")

    def exists(self) -> bool:
        return self.path.exists()

    @property
    def is_unlocked(self) -> bool:
        return self.session.is_unlocked

    def initialize(self, password: str, payload: Optional[VaultPayload] = None) -> None:
        """
        Create a new vault and leave it unlocked.

        Raises:
            VaultError: If the vault already exists or the password is empty
        """
        if not password:
            raise VaultError("Master password must not be empty")
        with self.session.lock:
            if self.exists():
                raise VaultError(f"Vault already exists at {self.path}")
            header = VaultHeader.fresh(self.kdf)
            key = derive_key(password, header.salt, header.params)
            self._write(seal(key, header, (payload or VaultPayload()).to_bytes()))
            self.session.unlock(key, header)
        log_event(logger, "vault.init", f"Created vault at {self.path}", path=str(self.path))

    def unlock(self, password: str) -> VaultPayload:
        """
        Derive the key from the password and decrypt the vault.

        Raises:
            WrongPassword: Wrong password or tampered ciphertext
            VaultCorrupt: Damaged or malformed file
            VaultUnsupportedVersion: File written by a newer format
        """
        with self.session.lock:
            header, aad, ciphertext = parse_vault(self._read())
            key = derive_key(password, header.salt, header.params)
            try:
                plaintext = open_sealed(key, header, aad, ciphertext)
            except VaultCorrupt:
                log_event(logger, "vault.unlock_failed", "Vault unlock failed", level=logging.WARNING)
                raise
            payload = VaultPayload.from_bytes(plaintext)
            self.session.unlock(key, header)
        log_event(logger, "vault.unlock", "Vault unlocked", records=len(payload.records))
        return payload

    def persist(self, payload: VaultPayload) -> None:
        """
        Re-encrypt the payload under the held key and replace the file.

        Raises:
            VaultLocked: If the vault is not unlocked
        """
        with self.session.lock:
            key = self.session.key
            header = self.session.header.with_new_nonce()
            self._write(seal(key, header, payload.to_bytes()))
            self.session.unlock(key, header)
        logger.debug("Persisted %d records", len(payload.records))

    def change_password(self, old: str, new: str) -> None:
        """
        Re-encrypt the vault under a key derived from a new password.

        The old password is verified against the file. A fresh salt and
        nonce are used, and the new file is committed atomically.
        """
        if not new:
            raise VaultError("Master password must not be empty")
        with self.session.lock:
            header, aad, ciphertext = parse_vault(self._read())
            old_key = derive_key(old, header.salt, header.params)
            plaintext = open_sealed(old_key, header, aad, ciphertext)

            new_header = VaultHeader.fresh(self.kdf)
            new_key = derive_key(new, new_header.salt, new_header.params)
            self._write(seal(new_key, new_header, plaintext))
            self.session.unlock(new_key, new_header)
        log_event(logger, "vault.passwd", "Master password changed")

    def lock(self) -> None:
        """Discard the derived key"""
        self.session.lock_now()
        log_event(logger, "vault.lock", "Vault locked")

    def _read(self) -> bytes:
        try:
            return self.path.read_bytes()
        except FileNotFoundError as e:
            raise VaultError(f"No vault at {self.path}") from e
        except OSError as e:
            raise VaultError(f"Cannot read vault: {e}") from e

    def _write(self, data: bytes) -> None:
        """Write to a temp file beside the vault, fsync, then rename over it"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".vault-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, VAULT_FILE_MODE)
            os.replace(tmp_name, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise VaultError(f"Cannot write vault: {e}") from e
        self._fsync_dir()

    def _fsync_dir(self) -> None:
        # Not supported on every platform
        try:
            dir_fd = os.open(self.path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            logger.debug("Directory fsync unsupported for %s", self.path.parent)
        finally:
            os.close(dir_fd)
