"""
SFTP transfer engine: one worker thread per job, one job per session
"""
import threading
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional

from ...core.events import Event, EventBus, SessionStateChanged, TransferFinished, TransferProgress
from ...core.exceptions import (
    SessionNotFound,
    TransferCancelled,
    TransferError,
    TransferIOError,
    user_message,
)
from ...core.logging import get_logger, log_event
from ...core.utils import map_os_error
from ..session.manager import SessionManager
from ..session.models import SessionState
from .models import TaskStatus, TransferConfig, TransferDirection, TransferJob, TransferRequest
from .plan import (
    PlanEntry,
    TransferPlan,
    check_local_dir,
    check_remote_dir,
    plan_download,
    plan_upload,
)
from .wizard import WizardState, to_request

logger = get_logger(__name__)


class ProgressReporter:
    """
    Coalesces per-chunk progress into events at a bounded rate.

    update() emits only when `interval` seconds have passed since the
    previous event; emit() always emits.
    """

    def __init__(
        self,
        bus: EventBus,
        job: TransferJob,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bus = bus
        self.job = job
        self.interval = interval
        self.clock = clock
        self._last: Optional[float] = None

    def update(self) -> None:
        now = self.clock()
        if self._last is None or now - self._last >= self.interval:
            self._publish(now)

    def emit(self) -> None:
        self._publish(self.clock())

    def _publish(self, now: float) -> None:
        self._last = now
        self.bus.publish(TransferProgress(
            job_id=self.job.id,
            bytes_done=self.job.bytes_done,
            total_bytes=self.job.total_bytes,
            current_file=self.job.current_file,
        ))


class TransferEngine:
    """
    Builds and runs upload/download jobs.

    A job borrows its session's SFTP channel from the SessionManager for
    its whole run. Jobs on different sessions run in parallel; a second job
    on a busy session is refused with SessionBusy.
    """

    def __init__(
        self,
        manager: SessionManager,
        bus: Optional[EventBus] = None,
        config: Optional[TransferConfig] = None,
    ):
        self.manager = manager
        self.backend = manager.backend
        self.bus = bus or manager.bus
        self.config = config or TransferConfig()
        self._jobs: Dict[str, TransferJob] = {}
        self._lock = threading.Lock()
        manager.bus.subscribe(self._on_event)

    # --------------------
    # Job control
    # --------------------
    def start(self, request: TransferRequest) -> TransferJob:
        """
        Start a job on a worker thread.

        Raises:
            SessionBusy: If the session's SFTP channel is in use
            SessionNotFound: If the session does not exist
        """
        job = TransferJob(request=request)
        sftp = self.manager.acquire_sftp(request.session_id, owner=job.id, cancel=job.token.cancel)
        with self._lock:
            self._jobs[job.id] = job

        worker = threading.Thread(
            target=self._run, args=(job, sftp), daemon=True, name=f"Transfer-{job.id}"
        )
        try:
            self.manager.attach_thread(request.session_id, worker)
        except SessionNotFound:
            self.manager.release_sftp(request.session_id, job.id)
            raise
        log_event(logger, "transfer.start",
                  f"{request.direction.value} {request.source} -> {request.target_dir}",
                  job_id=job.id, session_id=request.session_id, direction=request.direction.value)
        worker.start()
        return job

    def submit_wizard(self, state: WizardState) -> TransferJob:
        """Start the job described by a confirmed wizard"""
        return self.start(to_request(state))

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation; takes effect within one chunk.

        Returns:
            False if the job already finished
        """
        job = self.get(job_id)
        if job.status.is_final:
            return False
        job.token.cancel()
        return True

    def get(self, job_id: str) -> TransferJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"No transfer job {job_id}")
        return job

    def jobs(self, session_id: Optional[str] = None) -> List[TransferJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if session_id is not None:
            jobs = [j for j in jobs if j.session_id == session_id]
        return jobs

    def wait(self, job_id: str, timeout: Optional[float] = None) -> TransferJob:
        """Block until a job reaches its outcome (or the timeout passes)"""
        job = self.get(job_id)
        job.done.wait(timeout)
        return job

    def _on_event(self, event: Event) -> None:
        if isinstance(event, SessionStateChanged) and event.new_state == SessionState.CLOSED.value:
            self._forget(event.session_id)

    def _forget(self, session_id: str) -> None:
        """Drop finished jobs of a closed session"""
        with self._lock:
            for job_id in [j.id for j in self._jobs.values()
                           if j.session_id == session_id and j.status.is_final]:
                del self._jobs[job_id]

    # --------------------
    # Worker
    # --------------------
    def _run(self, job: TransferJob, sftp: Any) -> None:
        job.status = TaskStatus.RUNNING
        job.started_at = time.time()
        progress = ProgressReporter(self.bus, job, self.config.progress_interval)

        try:
            plan = self._plan(job, sftp)
            job.total_bytes = plan.total_bytes
            job.files_total = len(plan.files)
            progress.emit()

            for entry in plan.entries:
                self._check(job)
                if entry.is_dir:
                    self._make_dir(job, sftp, entry)
                else:
                    self._copy_file(job, sftp, entry, progress)
                    job.files_done += 1

            job.status = TaskStatus.COMPLETED
            progress.emit()
        except TransferCancelled:
            job.status = TaskStatus.CANCELLED
            progress.emit()
        except TransferError as e:
            job.status = TaskStatus.FAILED
            job.error = user_message(e)
            logger.debug("Transfer %s failed", job.id, exc_info=True)
        except Exception as e:
            job.status = TaskStatus.FAILED
            job.error = user_message(e)
            logger.exception("Unexpected error in transfer %s", job.id)
        finally:
            job.finished_at = time.time()
            self.manager.release_sftp(job.session_id, job.id)
            if job.status is TaskStatus.FAILED:
                self.manager.check_alive(job.session_id)
            self._finish(job)

    def _finish(self, job: TransferJob) -> None:
        log_event(
            logger,
            "transfer.outcome",
            f"Transfer {job.id} {job.status.value}",
            job_id=job.id,
            session_id=job.session_id,
            outcome=job.status.value,
            bytes_done=job.bytes_done,
            total_bytes=job.total_bytes,
            error=job.error,
        )
        self.bus.publish(TransferFinished(job_id=job.id, outcome=job.status.value, error=job.error))
        job.done.set()
        try:
            self.manager.get(job.session_id)
        except SessionNotFound:
            # Session closed while the job was winding down
            self._forget(job.session_id)

    def _plan(self, job: TransferJob, sftp: Any) -> TransferPlan:
        request = job.request
        if request.direction is TransferDirection.UPLOAD:
            check_remote_dir(self.backend, sftp, request.target_dir)
            return plan_upload(request.source, request.target_dir, job.token)
        check_local_dir(request.target_dir)
        return plan_download(self.backend, sftp, request.source, request.target_dir, job.token)

    @staticmethod
    def _check(job: TransferJob) -> None:
        if job.token.cancelled:
            raise TransferCancelled()

    def _make_dir(self, job: TransferJob, sftp: Any, entry: PlanEntry) -> None:
        if job.direction is TransferDirection.DOWNLOAD:
            try:
                Path(entry.target).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise map_os_error(e, entry.target) from e
            return

        try:
            self.backend.mkdir(sftp, entry.target)
        except OSError as e:
            # Fine if it already exists as a directory
            try:
                existing = self.backend.stat(sftp, entry.target)
            except OSError:
                raise map_os_error(e, entry.target) from e
            if not existing.is_dir:
                raise TransferIOError(f"{entry.target} exists and is not a directory") from e

    def _copy_file(self, job: TransferJob, sftp: Any, entry: PlanEntry, progress: ProgressReporter) -> None:
        job.current_file = entry.source
        try:
            if job.direction is TransferDirection.UPLOAD:
                with open(entry.source, "rb") as src, self.backend.open_write(sftp, entry.target) as dst:
                    self._stream(job, src, dst, entry.size, progress)
            else:
                with self.backend.open_read(sftp, entry.source) as src, open(entry.target, "wb") as dst:
                    self._stream(job, src, dst, entry.size, progress)
        except OSError as e:
            raise map_os_error(e, entry.source) from e

    def _stream(
        self,
        job: TransferJob,
        src: BinaryIO,
        dst: BinaryIO,
        expected: int,
        progress: ProgressReporter,
    ) -> None:
        """Copy in fixed-size chunks, checking for cancellation before each"""
        copied = 0
        while True:
            self._check(job)
            data = src.read(self.config.chunk)
            if not data:
                break
            dst.write(data)
            copied += len(data)
            if copied > expected:
                # Source grew since planning
                job.total_bytes += copied - expected
                expected = copied
            job.bytes_done += len(data)
            progress.update()

        if copied < expected:
            # Source shrank since planning
            job.total_bytes -= expected - copied
