"""Tests for the multi-session connection manager."""

import pytest

from sshdeck.core.events import SessionStateChanged, TerminalOutput
from sshdeck.core.exceptions import (
    AuthRejected,
    ChannelBusy,
    InvalidStateTransition,
    NetworkUnreachable,
    RemoteClosed,
    SessionBusy,
    SessionNotFound,
)
from sshdeck.domain.session.manager import SessionManager
from sshdeck.domain.session.models import SessionState, can_transition
from sshdeck.domain.vault.models import ConnectionRecord, PasswordCredential, PrivateKeyCredential

from .conftest import FakeConn, wait_until


def _states(bus, session_id):
    return [e.new_state for e in bus.get_events(SessionStateChanged) if e.session_id == session_id]


def _output(bus, session_id) -> bytes:
    return b"".join(e.data for e in bus.get_events(TerminalOutput) if e.session_id == session_id)


def _add(store, host, **kwargs):
    return store.add(ConnectionRecord(
        host=host, user="alice", credential=kwargs.pop("credential", PasswordCredential("pw")), **kwargs
    ))


class TestStateMachine:

    def test_failed_only_leads_to_closed(self):
        for state in SessionState:
            assert can_transition(SessionState.FAILED, state) == (state is SessionState.CLOSED)

    def test_failed_reachable_before_closing(self):
        for state in (SessionState.IDLE, SessionState.CONNECTING, SessionState.AUTHENTICATING,
                      SessionState.READY, SessionState.TERMINAL, SessionState.TRANSFERRING):
            assert can_transition(state, SessionState.FAILED)
        assert not can_transition(SessionState.CLOSING, SessionState.FAILED)
        assert not can_transition(SessionState.CLOSED, SessionState.FAILED)

    def test_closed_is_final(self):
        assert SessionState.CLOSED.is_final
        assert not any(can_transition(SessionState.CLOSED, s) for s in SessionState)


class TestConnect:

    def test_connect_reaches_ready(self, manager, bus, record, backend):
        session = manager.connect(record)

        assert session.state is SessionState.READY
        assert _states(bus, session.id) == ["connecting", "authenticating", "ready"]
        assert backend.opened[0].host == "web.example.org"

    def test_success_updates_recency(self, manager, store, record):
        manager.connect(record)
        stored = store.get(record.id)
        assert stored.last_used_at is not None
        assert [h.success for h in stored.history] == [True]

    def test_most_recently_connected_first(self, manager, store):
        records = [_add(store, f"host{i}.example.com") for i in range(3)]
        for record in records:
            manager.connect(record)
        assert [r.id for r in store.list()] == [r.id for r in reversed(records)]

        manager.connect(records[0])
        assert store.list()[0].id == records[0].id

    def test_auth_failure(self, manager, bus, store, record, backend):
        backend.connect_error = AuthRejected("bad password")

        with pytest.raises(AuthRejected):
            manager.connect(record)

        session = manager.list_sessions()[0]
        assert session.state is SessionState.FAILED
        assert "Authentication failed" in session.reason
        assert _states(bus, session.id) == ["connecting", "failed"]
        stored = store.get(record.id)
        assert stored.last_used_at is None
        assert [h.success for h in stored.history] == [False]

    def test_network_failure_is_not_retried(self, manager, record, backend):
        backend.connect_error = NetworkUnreachable("no route")
        with pytest.raises(NetworkUnreachable):
            manager.connect(record)
        assert backend.opened == []

        backend.connect_error = None
        failed = manager.list_sessions()[0]
        assert failed.state is SessionState.FAILED
        fresh = manager.reconnect(failed.id)
        assert fresh.state is SessionState.READY
        assert [s.id for s in manager.list_sessions()] == [fresh.id]

    def test_key_passphrase_decrypted_before_contacting_host(self, manager, store, backend):
        backend.key_passphrases["/keys/id_ed25519"] = "opensesame"
        record = _add(store, "key.example.com",
                      credential=PrivateKeyCredential("/keys/id_ed25519", "opensesame"))

        assert manager.connect(record).state is SessionState.READY

    def test_wrong_key_passphrase_never_reaches_host(self, manager, bus, store, backend):
        backend.key_passphrases["/keys/id_ed25519"] = "opensesame"
        record = _add(store, "key.example.com",
                      credential=PrivateKeyCredential("/keys/id_ed25519", "nope"))

        with pytest.raises(AuthRejected):
            manager.connect(record)
        assert backend.opened == []
        session = manager.list_sessions()[0]
        assert _states(bus, session.id) == ["failed"]

    def test_credential_override(self, manager, record, backend):
        backend.key_passphrases["/keys/other"] = None
        session = manager.connect(record, PrivateKeyCredential("/keys/other"))
        assert session.state is SessionState.READY

    def test_connect_in_background(self, manager, store):
        records = [_add(store, f"bg{i}.example.com") for i in range(3)]
        futures = [manager.connect_in_background(r) for r in records]

        sessions = [f.result(timeout=5) for f in futures]
        assert all(s.state is SessionState.READY for s in sessions)
        assert len({s.id for s in sessions}) == 3

    def test_connect_without_store(self, backend, bus, record):
        manager = SessionManager(backend, bus=bus)
        try:
            assert manager.connect(record).state is SessionState.READY
        finally:
            manager.shutdown()


class TestTerminal:

    def test_duplex_pump(self, manager, bus, session, backend):
        terminal = manager.open_terminal(session.id, 100, 30)
        channel = backend.channels[0]
        assert (channel.cols, channel.rows) == (100, 30)
        assert session.state is SessionState.TERMINAL

        assert manager.send_keys(b"echo hi\r")
        assert wait_until(lambda: _output(bus, session.id) == b"echo hi\r")
        assert terminal.is_live

    def test_output_sink(self, manager, session):
        received = []
        manager.open_terminal(session.id, sink=received.append)
        manager.send_keys(b"x")
        assert wait_until(lambda: received == [b"x"])

    def test_keystrokes_keep_order(self, manager, bus, session, backend):
        manager.open_terminal(session.id)
        for i in range(200):
            manager.send_keys(str(i).encode() + b",")
        expected = b"".join(str(i).encode() + b"," for i in range(200))
        assert wait_until(lambda: b"".join(backend.channels[0].written) == expected)

    def test_second_terminal_is_busy(self, manager, bus, session, backend):
        first = manager.open_terminal(session.id)

        with pytest.raises(ChannelBusy):
            manager.open_terminal(session.id)

        assert len(backend.channels) == 1
        assert first.is_live
        manager.send_keys(b"still here")
        assert wait_until(lambda: _output(bus, session.id) == b"still here")

    def test_terminal_requires_connection(self, manager, record, backend):
        backend.connect_error = AuthRejected("no")
        with pytest.raises(AuthRejected):
            manager.connect(record)
        failed = manager.list_sessions()[0]
        with pytest.raises(InvalidStateTransition):
            manager.open_terminal(failed.id)

    def test_resize(self, manager, session, backend):
        manager.resize(session.id, 120, 40)
        assert backend.resizes == []

        manager.open_terminal(session.id)
        manager.resize(session.id, 120, 40)
        channel = backend.channels[0]
        assert backend.resizes == [(channel, 120, 40)]

    def test_remote_exit_returns_to_ready(self, manager, bus, session, backend):
        manager.open_terminal(session.id)
        backend.hangup(backend.channels[0])

        assert wait_until(lambda: session.state is SessionState.READY)
        assert not session.has_terminal
        # A new terminal may be opened afterwards
        manager.open_terminal(session.id)
        assert len(backend.channels) == 2

    def test_read_error_fails_session(self, manager, session, backend):
        manager.open_terminal(session.id)
        backend.channels[0].read_error = RemoteClosed("connection reset")

        assert wait_until(lambda: session.state is SessionState.FAILED)
        assert not session.has_terminal
        assert not manager.send_keys(b"lost")

    def test_close_terminal(self, manager, session, backend):
        manager.open_terminal(session.id)
        manager.close_terminal(session.id)
        assert session.state is SessionState.READY
        assert backend.closed_kinds == ["terminal"]


class TestForeground:

    def test_keys_only_reach_foreground(self, manager, store, backend):
        a = manager.connect(_add(store, "a.example.com"))
        b = manager.connect(_add(store, "b.example.com"))
        manager.open_terminal(a.id)
        manager.open_terminal(b.id)
        chan_a, chan_b = backend.channels

        assert manager.foreground_id == a.id
        manager.send_keys(b"to-a")
        manager.foreground(b.id)
        manager.send_keys(b"to-b")

        assert wait_until(lambda: chan_a.written == [b"to-a"] and chan_b.written == [b"to-b"])

    def test_no_foreground_terminal(self, manager, session):
        assert not manager.send_keys(b"ls")

    def test_cycle_foreground(self, manager, store):
        sessions = [manager.connect(_add(store, f"{n}.example.com")) for n in "abc"]
        assert manager.cycle_foreground().id == sessions[1].id
        assert manager.cycle_foreground().id == sessions[2].id
        assert manager.cycle_foreground().id == sessions[0].id
        assert manager.cycle_foreground(-1).id == sessions[2].id

    def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFound):
            manager.foreground("nope")


class TestSftpBorrowing:

    def test_exclusive(self, manager, session):
        manager.acquire_sftp(session.id, "job-1")
        assert session.state is SessionState.TRANSFERRING
        with pytest.raises(SessionBusy):
            manager.acquire_sftp(session.id, "job-2")

        manager.release_sftp(session.id, "job-1")
        assert session.state is SessionState.READY
        manager.acquire_sftp(session.id, "job-2")
        manager.release_sftp(session.id, "job-2")

    def test_release_by_other_owner_is_ignored(self, manager, session):
        manager.acquire_sftp(session.id, "job-1")
        manager.release_sftp(session.id, "job-2")
        assert session.is_busy
        manager.release_sftp(session.id, "job-1")

    def test_handle_is_reused(self, manager, session, backend):
        with manager.borrow_sftp(session.id, "a") as first:
            pass
        with manager.borrow_sftp(session.id, "b") as second:
            pass
        assert first is second
        assert backend.sftp_opens == 1

    def test_terminal_and_transfer_coexist(self, manager, session):
        manager.open_terminal(session.id)
        with manager.borrow_sftp(session.id, "job"):
            assert session.state is SessionState.TRANSFERRING
        assert session.state is SessionState.TERMINAL

    def test_dead_connection_fails_session(self, manager, session, backend):
        backend.opened[0].alive = False
        with pytest.raises(RemoteClosed):
            manager.acquire_sftp(session.id, "job")
        assert session.state is SessionState.FAILED


class TestClose:

    def test_teardown_order(self, manager, bus, session, backend):
        manager.open_terminal(session.id)
        with manager.borrow_sftp(session.id, "browser"):
            pass

        manager.close_session(session.id)

        assert backend.closed_kinds == ["terminal", "sftp", "conn"]
        assert session.state is SessionState.CLOSED
        assert _states(bus, session.id)[-2:] == ["closing", "closed"]
        assert manager.list_sessions() == []

    def test_teardown_errors_are_swallowed(self, manager, session, backend, monkeypatch):
        original = backend.close

        def failing_close(handle):
            if isinstance(handle, FakeConn):
                raise OSError("socket already gone")
            original(handle)

        monkeypatch.setattr(backend, "close", failing_close)
        manager.close_session(session.id)
        assert session.state is SessionState.CLOSED

    def test_close_failed_session(self, manager, bus, record, backend):
        backend.connect_error = AuthRejected("no")
        with pytest.raises(AuthRejected):
            manager.connect(record)
        failed = manager.list_sessions()[0]

        manager.close_session(failed.id)
        assert _states(bus, failed.id) == ["connecting", "failed", "closed"]

    def test_close_is_idempotent(self, manager, session):
        manager.close_session(session.id)
        manager.close_session(session.id)
        assert session.state is SessionState.CLOSED

    def test_foreground_moves_on_close(self, manager, store):
        a = manager.connect(_add(store, "a.example.com"))
        b = manager.connect(_add(store, "b.example.com"))
        manager.close_session(a.id)
        assert manager.foreground_id == b.id

    def test_other_sessions_unaffected(self, manager, bus, store, backend):
        a = manager.connect(_add(store, "a.example.com"))
        b = manager.connect(_add(store, "b.example.com"))
        manager.open_terminal(a.id)
        manager.open_terminal(b.id)
        backend.channels[0].read_error = RemoteClosed("reset")

        assert wait_until(lambda: a.state is SessionState.FAILED)
        assert b.state is SessionState.TERMINAL
        manager.foreground(b.id)
        manager.send_keys(b"ok")
        assert wait_until(lambda: _output(bus, b.id) == b"ok")
