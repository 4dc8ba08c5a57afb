"""
Transfer data models
"""
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ...core.constants import DEFAULT_CHUNK_SIZE, DEFAULT_PROGRESS_INTERVAL


class TaskStatus(str, Enum):
    """Job outcome state"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TransferDirection(str, Enum):
    """Transfer direction"""
    DOWNLOAD = "download"  # remote → local
    UPLOAD = "upload"      # local → remote

    @property
    def source_side(self) -> "Side":
        return Side.LOCAL if self is TransferDirection.UPLOAD else Side.REMOTE

    @property
    def target_side(self) -> "Side":
        return Side.REMOTE if self is TransferDirection.UPLOAD else Side.LOCAL


class Side(str, Enum):
    """Which filesystem a path lives on"""
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class TransferConfig:
    """Transfer configuration"""
    chunk: int = DEFAULT_CHUNK_SIZE
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL


@dataclass(frozen=True)
class TransferRequest:
    """
    What to transfer.

    source is a file or directory on the source side; target_dir is a
    directory on the other side that receives it under its own name.
    """
    session_id: str
    direction: TransferDirection
    source: str
    target_dir: str


class CancellationToken:
    """Cooperative cancellation flag checked between chunks and files"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TransferJob:
    """One upload or download with tracked progress"""
    request: TransferRequest
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    status: TaskStatus = TaskStatus.PENDING
    total_bytes: int = 0
    bytes_done: int = 0
    current_file: Optional[str] = None
    files_total: int = 0
    files_done: int = 0
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def session_id(self) -> str:
        return self.request.session_id

    @property
    def direction(self) -> TransferDirection:
        return self.request.direction

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.finished_at or time.time()) - self.started_at

    @property
    def average_speed(self) -> float:
        """bytes/s"""
        duration = self.duration
        return self.bytes_done / duration if duration > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "direction": self.direction.value,
            "source": self.request.source,
            "target_dir": self.request.target_dir,
            "status": self.status.value,
            "total_bytes": self.total_bytes,
            "bytes_done": self.bytes_done,
            "current_file": self.current_file,
            "files_total": self.files_total,
            "files_done": self.files_done,
            "error": self.error,
            "duration": self.duration,
        }
