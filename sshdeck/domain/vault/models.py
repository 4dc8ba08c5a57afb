"""
Connection record data models
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ...core.constants import DEFAULT_SSH_PORT, HISTORY_MAX_ENTRIES
from ...core.exceptions import InvalidRecord


@dataclass
class PasswordCredential:
    """Password authentication"""
    password: str

    def is_complete(self) -> bool:
        return bool(self.password)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "password", "password": self.password}


@dataclass
class PrivateKeyCredential:
    """Private key authentication, optionally passphrase-protected"""
    path: str
    passphrase: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.path and self.path.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "key", "path": self.path, "passphrase": self.passphrase}


Credential = Union[PasswordCredential, PrivateKeyCredential]


def credential_from_dict(data: Dict[str, Any]) -> Credential:
    """Create a credential from its serialized form"""
    kind = data.get("type")
    if kind == "password":
        return PasswordCredential(password=data.get("password", ""))
    if kind == "key":
        return PrivateKeyCredential(path=data.get("path", ""), passphrase=data.get("passphrase"))
    raise InvalidRecord(f"Unknown credential type: {kind!r}")


@dataclass
class HistoryEntry:
    """One connection attempt"""
    timestamp: float
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "success": self.success}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(timestamp=float(data["timestamp"]), success=bool(data["success"]))


@dataclass
class ConnectionRecord:
    """
    A saved remote host.

    last_used_at is only set by a successful authentication; it drives
    the recency ordering of the store.
    """
    host: str
    user: str
    credential: Credential
    port: int = DEFAULT_SSH_PORT
    name: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    last_used_at: Optional[float] = None
    history: List[HistoryEntry] = field(default_factory=list)
    last_remote_dir: Optional[str] = None

    @property
    def label(self) -> str:
        """Display label: friendly name if set, otherwise host"""
        if self.name and self.name.strip():
            return self.name.strip()
        return self.host

    @property
    def target(self) -> str:
        port = "" if self.port == DEFAULT_SSH_PORT else f":{self.port}"
        return f"{self.user}@{self.host}{port}"

    def validate(self) -> None:
        """
        Check record shape.

        Raises:
            InvalidRecord: If any field is missing or out of range
        """
        if not self.id:
            raise InvalidRecord("Record id is empty")
        if not self.host or not self.host.strip():
            raise InvalidRecord("Host must not be empty")
        if any(c.isspace() for c in self.host):
            raise InvalidRecord(f"Host contains whitespace: {self.host!r}")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise InvalidRecord(f"Port out of range: {self.port!r}")
        if not self.user or not self.user.strip():
            raise InvalidRecord("User must not be empty")
        if not isinstance(self.credential, (PasswordCredential, PrivateKeyCredential)):
            raise InvalidRecord("Missing credential")
        if not self.credential.is_complete():
            if isinstance(self.credential, PasswordCredential):
                raise InvalidRecord("Password must not be empty")
            raise InvalidRecord("Private key path must not be empty")

    def add_history(self, success: bool, timestamp: Optional[float] = None) -> None:
        """Append a connection attempt, keeping the most recent entries"""
        self.history.append(HistoryEntry(timestamp=timestamp or time.time(), success=success))
        del self.history[:-HISTORY_MAX_ENTRIES]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "name": self.name,
            "credential": self.credential.to_dict(),
            "last_used_at": self.last_used_at,
            "history": [h.to_dict() for h in self.history],
            "last_remote_dir": self.last_remote_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionRecord":
        """Create from dictionary"""
        try:
            return cls(
                id=data["id"],
                host=data["host"],
                port=int(data.get("port", DEFAULT_SSH_PORT)),
                user=data["user"],
                name=data.get("name"),
                credential=credential_from_dict(data.get("credential") or {}),
                last_used_at=data.get("last_used_at"),
                history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
                last_remote_dir=data.get("last_remote_dir"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRecord(f"Malformed record: {e}") from e
