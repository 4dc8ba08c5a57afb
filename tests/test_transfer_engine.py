"""Tests for SFTP transfer execution, progress and cancellation."""

import threading

import pytest

from sshdeck.core.events import EventBus, SessionStateChanged, TransferFinished, TransferProgress
from sshdeck.core.exceptions import SessionBusy, SessionNotFound
from sshdeck.domain.session.models import SessionState
from sshdeck.domain.transfer import wizard
from sshdeck.domain.transfer.engine import ProgressReporter, TransferEngine
from sshdeck.domain.transfer.models import (
    TaskStatus,
    TransferConfig,
    TransferDirection,
    TransferJob,
    TransferRequest,
)
from sshdeck.domain.vault.models import ConnectionRecord, PasswordCredential

from .conftest import REMOTE_HOME, wait_until

TEN_MB = 10_000_000


def _upload(session_id, source, target_dir=REMOTE_HOME):
    return TransferRequest(session_id, TransferDirection.UPLOAD, str(source), target_dir)


def _download(session_id, source, target_dir):
    return TransferRequest(session_id, TransferDirection.DOWNLOAD, source, str(target_dir))


def _progress(bus, job_id):
    return [e for e in bus.get_events(TransferProgress) if e.job_id == job_id]


def _finished(bus, job_id):
    return [e for e in bus.get_events(TransferFinished) if e.job_id == job_id]


@pytest.fixture
def big_file(tmp_path):
    path = tmp_path / "big.bin"
    path.write_bytes(bytes(range(256)) * (TEN_MB // 256) + b"\x00" * (TEN_MB % 256))
    return path


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "project"
    (root / "src" / "pkg").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "README").write_bytes(b"readme")
    (root / "src" / "main.py").write_bytes(b"print('hi')\n")
    (root / "src" / "pkg" / "data.bin").write_bytes(b"\x01" * 200_000)
    return root


class TestUpload:

    def test_single_file(self, engine, bus, session, backend, tmp_path):
        source = tmp_path / "hello.txt"
        source.write_bytes(b"hello world")

        job = engine.wait(engine.start(_upload(session.id, source)).id, timeout=10)

        assert job.status is TaskStatus.COMPLETED
        assert backend.files[f"{REMOTE_HOME}/hello.txt"] == b"hello world"
        assert job.bytes_done == job.total_bytes == 11
        assert _finished(bus, job.id)[0].outcome == "completed"

    def test_directory_tree(self, engine, session, backend, tree):
        job = engine.wait(engine.start(_upload(session.id, tree)).id, timeout=10)

        assert job.status is TaskStatus.COMPLETED
        base = f"{REMOTE_HOME}/project"
        assert {base, f"{base}/src", f"{base}/src/pkg", f"{base}/empty"} <= backend.dirs
        assert backend.files[f"{base}/README"] == b"readme"
        assert backend.files[f"{base}/src/pkg/data.bin"] == b"\x01" * 200_000
        assert job.files_total == job.files_done == 3

    def test_existing_target_directory_is_reused(self, engine, session, backend, tree):
        backend.dirs.add(f"{REMOTE_HOME}/project")
        job = engine.wait(engine.start(_upload(session.id, tree)).id, timeout=10)
        assert job.status is TaskStatus.COMPLETED

    def test_target_must_be_directory(self, engine, session, backend, tree):
        job = engine.wait(engine.start(_upload(session.id, tree, "/nowhere")).id, timeout=10)
        assert job.status is TaskStatus.FAILED
        assert "/nowhere" in job.error

    def test_permission_denied(self, engine, bus, session, backend, tmp_path):
        backend.dirs.add("/srv")
        backend.denied.add("/srv")
        source = tmp_path / "a.txt"
        source.write_bytes(b"a")

        job = engine.wait(engine.start(_upload(session.id, source, "/srv")).id, timeout=10)

        assert job.status is TaskStatus.FAILED
        assert job.error.startswith("Permission denied")
        assert _finished(bus, job.id)[0].error == job.error
        # Failure is fatal to the job only
        assert session.state is SessionState.READY


class TestDownload:

    def test_directory_tree(self, engine, session, backend, tmp_path):
        backend.dirs |= {"/data", "/data/logs", "/data/empty"}
        backend.files["/data/logs/app.log"] = b"line\n" * 1000
        backend.files["/data/config.ini"] = b"[x]\n"

        job = engine.wait(engine.start(_download(session.id, "/data", tmp_path)).id, timeout=10)

        assert job.status is TaskStatus.COMPLETED
        local = tmp_path / "data"
        assert (local / "logs" / "app.log").read_bytes() == b"line\n" * 1000
        assert (local / "config.ini").read_bytes() == b"[x]\n"
        assert (local / "empty").is_dir()
        assert job.bytes_done == job.total_bytes == 5004

    def test_missing_local_target(self, engine, session, backend, tmp_path):
        backend.files["/data.txt"] = b"x"
        job = engine.wait(engine.start(_download(session.id, "/data.txt", tmp_path / "nope")).id, timeout=10)
        assert job.status is TaskStatus.FAILED

    def test_missing_remote_source(self, engine, session, tmp_path):
        job = engine.wait(engine.start(_download(session.id, "/nothing", tmp_path)).id, timeout=10)
        assert job.status is TaskStatus.FAILED

    def test_remote_root_fails_without_writing(self, engine, session, backend, tmp_path):
        backend.files["/etc_passwd_like"] = b"root:x:0:0"
        target = tmp_path / "in"
        target.mkdir()

        job = engine.wait(engine.start(_download(session.id, "/", target)).id, timeout=10)

        assert job.status is TaskStatus.FAILED
        assert list(target.iterdir()) == []


class TestProgress:

    def test_ten_megabytes_over_slow_channel(self, engine, bus, session, backend, big_file):
        backend.write_delay = 0.002

        job = engine.wait(engine.start(_upload(session.id, big_file)).id, timeout=60)

        events = _progress(bus, job.id)
        finished = _finished(bus, job.id)
        assert len(events) >= 2
        assert [f.outcome for f in finished] == ["completed"]
        assert events[-1].timestamp <= finished[0].timestamp
        assert job.bytes_done == job.total_bytes == TEN_MB
        assert events[-1].bytes_done == TEN_MB
        assert len(backend.files[f"{REMOTE_HOME}/big.bin"]) == TEN_MB

    def test_bytes_done_never_decreases(self, engine, bus, session, tree):
        job = engine.wait(engine.start(_upload(session.id, tree)).id, timeout=10)

        done = [e.bytes_done for e in _progress(bus, job.id)]
        assert done == sorted(done)
        assert all(e.total_bytes == job.total_bytes for e in _progress(bus, job.id))

    def test_progress_is_coalesced(self, manager, bus, session, big_file):
        engine = TransferEngine(manager, bus=bus, config=TransferConfig(chunk=4096, progress_interval=60))
        job = engine.wait(engine.start(_upload(session.id, big_file)).id, timeout=60)

        assert job.status is TaskStatus.COMPLETED
        # Initial, first chunk and final event only; not one per chunk
        assert len(_progress(bus, job.id)) <= 3

    def test_reporter_rate(self):
        bus = EventBus()
        job = TransferJob(request=_upload("s", "/x"))
        ticks = iter([0.0, 0.4, 0.9, 1.0, 1.5, 2.1, 2.2])
        reporter = ProgressReporter(bus, job, interval=1.0, clock=lambda: next(ticks))

        for _ in range(6):
            reporter.update()
        reporter.emit()

        assert len(bus.get_events(TransferProgress)) == 4


class TestCancellation:

    def test_cancel_after_first_event(self, engine, bus, session, backend, big_file):
        backend.write_delay = 0.002

        def cancel_on_first(event):
            if isinstance(event, TransferProgress):
                engine.cancel(event.job_id)

        bus.subscribe(cancel_on_first)
        job = engine.wait(engine.start(_upload(session.id, big_file)).id, timeout=30)

        assert job.status is TaskStatus.CANCELLED
        assert [f.outcome for f in _finished(bus, job.id)] == ["cancelled"]
        assert job.bytes_done <= job.total_bytes
        assert not session.is_busy
        assert session.state is SessionState.READY

    def test_cancel_mid_transfer_leaves_partial_data(self, engine, bus, session, backend, big_file):
        backend.write_delay = 0.005
        job = engine.start(_upload(session.id, big_file))

        assert wait_until(lambda: job.bytes_done > 0)
        assert engine.cancel(job.id)
        engine.wait(job.id, timeout=10)

        assert job.status is TaskStatus.CANCELLED
        assert 0 < job.bytes_done < job.total_bytes
        done = [e.bytes_done for e in _progress(bus, job.id)]
        assert done == sorted(done)
        # No rollback
        assert 0 < len(backend.files[f"{REMOTE_HOME}/big.bin"]) < TEN_MB

    def test_cancel_finished_job(self, engine, session, tmp_path):
        source = tmp_path / "f"
        source.write_bytes(b"x")
        job = engine.wait(engine.start(_upload(session.id, source)).id, timeout=10)
        assert not engine.cancel(job.id)
        assert job.status is TaskStatus.COMPLETED

    def test_unknown_job(self, engine):
        with pytest.raises(KeyError):
            engine.cancel("missing")


class TestExclusivity:

    def test_one_job_per_session(self, engine, session, backend, big_file, tmp_path):
        backend.write_delay = 0.005
        first = engine.start(_upload(session.id, big_file))

        with pytest.raises(SessionBusy):
            engine.start(_upload(session.id, big_file))

        engine.cancel(first.id)
        engine.wait(first.id, timeout=10)
        small = tmp_path / "small"
        small.write_bytes(b"ok")
        retry = engine.wait(engine.start(_upload(session.id, small)).id, timeout=10)
        assert retry.status is TaskStatus.COMPLETED

    def test_sessions_transfer_in_parallel(self, engine, manager, bus, store, backend, tmp_path):
        sessions = [
            manager.connect(store.add(ConnectionRecord(
                host=f"{n}.example.com", user="alice", credential=PasswordCredential("pw"),
            )))
            for n in "ab"
        ]
        transferring = set()
        peak = []
        lock = threading.Lock()

        def track(event):
            if isinstance(event, SessionStateChanged):
                with lock:
                    if event.new_state == "transferring":
                        transferring.add(event.session_id)
                    else:
                        transferring.discard(event.session_id)
                    peak.append(len(transferring))

        bus.subscribe(track)
        backend.write_delay = 0.01
        jobs = []
        for i, s in enumerate(sessions):
            source = tmp_path / f"file{i}"
            source.write_bytes(b"z" * 1_000_000)
            jobs.append(engine.start(_upload(s.id, source)))

        for job in jobs:
            assert engine.wait(job.id, timeout=30).status is TaskStatus.COMPLETED
        assert max(peak) == 2

    def test_unknown_session(self, engine, tmp_path):
        with pytest.raises(SessionNotFound):
            engine.start(_upload("missing", tmp_path))


class TestSessionInteraction:

    def test_close_session_cancels_transfer(self, engine, manager, bus, session, backend, big_file):
        backend.write_delay = 0.005
        job = engine.start(_upload(session.id, big_file))
        assert wait_until(lambda: job.bytes_done > 0)

        manager.close_session(session.id)

        assert job.done.is_set()
        assert job.status is TaskStatus.CANCELLED
        assert session.state is SessionState.CLOSED
        assert backend.closed_kinds == ["sftp", "conn"]

    def test_dead_connection_after_failure_fails_session(self, engine, manager, session, backend, tmp_path):
        with manager.borrow_sftp(session.id, "warmup"):
            pass
        backend.opened[0].alive = False

        job = engine.wait(engine.start(_upload(session.id, tmp_path / "missing")).id, timeout=10)

        assert job.status is TaskStatus.FAILED
        assert session.state is SessionState.FAILED

    def test_jobs_by_session(self, engine, session, tmp_path):
        source = tmp_path / "f"
        source.write_bytes(b"x")
        job = engine.wait(engine.start(_upload(session.id, source)).id, timeout=10)
        assert engine.jobs(session.id) == [job]
        assert engine.jobs("other") == []

    def test_closed_session_jobs_are_forgotten(self, engine, manager, session, tmp_path):
        source = tmp_path / "f"
        source.write_bytes(b"x")
        job = engine.wait(engine.start(_upload(session.id, source)).id, timeout=10)

        manager.close_session(session.id)

        assert engine.jobs() == []
        with pytest.raises(KeyError):
            engine.get(job.id)

    def test_jobs_of_other_sessions_survive_close(self, engine, manager, store, session, tmp_path):
        other = manager.connect(store.add(ConnectionRecord(
            host="db.example.org", user="alice", credential=PasswordCredential("pw"),
        )))
        source = tmp_path / "f"
        source.write_bytes(b"x")
        kept = engine.wait(engine.start(_upload(other.id, source)).id, timeout=10)
        engine.wait(engine.start(_upload(session.id, source)).id, timeout=10)

        manager.close_session(session.id)

        assert engine.jobs() == [kept]

    def test_submit_confirmed_wizard(self, engine, session, backend, tmp_path):
        source = tmp_path / "w.txt"
        source.write_bytes(b"wizard")
        state = wizard.start(session.id)
        for action in (
            wizard.DirectionChosen(TransferDirection.UPLOAD),
            wizard.SourceChosen(str(source)),
            wizard.TargetChosen(REMOTE_HOME),
            wizard.Confirmed(),
        ):
            state = wizard.advance(state, action)

        job = engine.wait(engine.submit_wizard(state).id, timeout=10)
        assert job.status is TaskStatus.COMPLETED
        assert backend.files[f"{REMOTE_HOME}/w.txt"] == b"wizard"
