"""
Connection store backed by the encrypted vault
"""
import copy
import threading
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional

from ...core.exceptions import InvalidRecord, VaultLocked
from ...core.logging import get_logger, log_event
from .models import ConnectionRecord
from .vault import CryptoVault, VaultPayload

logger = get_logger(__name__)


class ConnectionStore:
    """
    Ordered collection of connection records.

    Records are kept (and persisted) in insertion order; list() presents
    them most-recently-used first, with ties and never-used records in
    insertion order. Every mutation re-encrypts and persists the whole
    store; a failed persist leaves the in-memory state unchanged.
    """

    def __init__(self, vault: CryptoVault):
        self.vault = vault
        self._payload: Optional[VaultPayload] = None
        self._lock = threading.RLock()

    # --------------------
    # Lifecycle
    # --------------------
    @property
    def is_open(self) -> bool:
        return self._payload is not None and self.vault.is_unlocked

    def create(self, password: str) -> None:
        """Initialize a new, empty vault"""
        with self._lock:
            payload = VaultPayload()
            self.vault.initialize(password, payload)
            self._payload = payload

    def open(self, password: str) -> None:
        """Unlock the vault and load its records"""
        with self._lock:
            self._payload = self.vault.unlock(password)

    def close(self) -> None:
        """Drop decrypted records and lock the vault"""
        with self._lock:
            self._payload = None
            self.vault.lock()

    def change_password(self, old: str, new: str) -> None:
        with self._lock:
            self.vault.change_password(old, new)

    # --------------------
    # Queries
    # --------------------
    def list(self) -> List[ConnectionRecord]:
        """Records, most recently used first"""
        with self._lock:
            records = list(self._require().records)
        # sort is stable: equal keys keep insertion order
        return sorted(records, key=lambda r: -(r.last_used_at or float("-inf")))

    def get(self, record_id: str) -> ConnectionRecord:
        """
        Get a record by id.

        Raises:
            InvalidRecord: If no record has this id
        """
        with self._lock:
            for record in self._require().records:
                if record.id == record_id:
                    return record
        raise InvalidRecord(f"No connection with id {record_id!r}")

    def find(self, key: str) -> ConnectionRecord:
        """Look a record up by id, friendly name or user@host"""
        with self._lock:
            for record in self.list():
                if key in (record.id, record.name, record.target, f"{record.user}@{record.host}"):
                    return record
        raise InvalidRecord(f"No connection matches {key!r}")

    @property
    def last_local_dir(self) -> Optional[str]:
        with self._lock:
            return self._require().last_local_dir

    # --------------------
    # Mutations
    # --------------------
    def add(self, record: ConnectionRecord) -> ConnectionRecord:
        record.validate()
        with self._mutation() as payload:
            if any(r.id == record.id for r in payload.records):
                raise InvalidRecord(f"Duplicate record id {record.id!r}")
            payload.records.append(record)
        log_event(logger, "store.add", f"Added {record.label}", record_id=record.id)
        return record

    def update(self, record: ConnectionRecord) -> ConnectionRecord:
        record.validate()
        with self._mutation() as payload:
            payload.records[self._index(payload, record.id)] = record
        log_event(logger, "store.update", f"Updated {record.label}", record_id=record.id)
        return record

    def delete(self, record_id: str) -> None:
        with self._mutation() as payload:
            del payload.records[self._index(payload, record_id)]
        log_event(logger, "store.delete", "Deleted record", record_id=record_id)

    def record_used(self, record_id: str, timestamp: Optional[float] = None) -> None:
        """Mark a successful authentication; moves the record to the front"""
        now = timestamp or time.time()
        with self._mutation() as payload:
            record = payload.records[self._index(payload, record_id)]
            record.last_used_at = now
            record.add_history(True, now)

    def record_failure(self, record_id: str, timestamp: Optional[float] = None) -> None:
        """Append a failed attempt to the record's history"""
        with self._mutation() as payload:
            record = payload.records[self._index(payload, record_id)]
            record.add_history(False, timestamp)

    def set_last_remote_dir(self, record_id: str, path: str) -> None:
        with self._mutation() as payload:
            payload.records[self._index(payload, record_id)].last_remote_dir = path

    def set_last_local_dir(self, path: str) -> None:
        with self._mutation() as payload:
            payload.last_local_dir = path

    # --------------------
    # Internals
    # --------------------
    def _require(self) -> VaultPayload:
        if self._payload is None:
            raise VaultLocked()
        return self._payload

    @staticmethod
    def _index(payload: VaultPayload, record_id: str) -> int:
        for i, record in enumerate(payload.records):
            if record.id == record_id:
                return i
        raise InvalidRecord(f"No connection with id {record_id!r}")

    @contextmanager
    def _mutation(self) -> Iterator[VaultPayload]:
        """Apply a change to a copy, persist it, then publish it"""
        with self._lock:
            draft = copy.deepcopy(self._require())
            yield draft
            self.vault.persist(draft)
            self._payload = draft
