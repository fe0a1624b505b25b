import threading
import time
from unittest import mock

import paramiko
import pytest

from sftpbridge.registry import RemoteTarget
from sftpbridge.sftp.connection import (
    ConnectionManager,
    ConnectionState,
    open_session,
    Session,
    UnsupportedAuthMethodError,
)


class FlakyFactory:
    """Session factory that fails a given number of times before succeeding."""

    def __init__(self, failures, error=ConnectionRefusedError("refused")):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.sessions = []

    def __call__(self):
        self.calls += 1

        if self.calls <= self.failures:
            raise self.error

        session = Session(mock.Mock())
        self.sessions.append(session)
        return session


def test_lazy_connection():
    factory = FlakyFactory(0)
    manager = ConnectionManager(factory)

    assert manager.state == ConnectionState.DISCONNECTED
    assert factory.calls == 0

    session = manager.get_session()

    assert manager.state == ConnectionState.CONNECTED
    assert session is factory.sessions[0]


def test_session_is_reused():
    factory = FlakyFactory(0)
    manager = ConnectionManager(factory)

    assert manager.get_session() is manager.get_session()
    assert factory.calls == 1


def test_retry_backoff_delays():
    factory = FlakyFactory(2)
    sleep = mock.Mock()
    manager = ConnectionManager(factory, initial_backoff=0.5, sleep=sleep)

    session = manager.get_session(max_attempts=3)

    assert session is factory.sessions[0]
    assert factory.calls == 3
    assert sleep.call_args_list == [mock.call(0.5), mock.call(1.0)]


def test_retry_backoff_elapsed():
    factory = FlakyFactory(2)
    manager = ConnectionManager(factory, initial_backoff=0.5)

    t0 = time.monotonic()
    manager.get_session(max_attempts=3)
    elapsed = time.monotonic() - t0

    assert elapsed >= 1.5
    assert manager.state == ConnectionState.CONNECTED


def test_retries_exhausted():
    error = ConnectionRefusedError("refused")
    factory = FlakyFactory(5, error)
    sleep = mock.Mock()
    manager = ConnectionManager(factory, initial_backoff=0.5, sleep=sleep)

    with pytest.raises(ConnectionRefusedError) as e:
        manager.get_session(max_attempts=3)

    assert e.value is error
    assert factory.calls == 3
    assert sleep.call_count == 2

    assert manager.state == ConnectionState.ERRORED
    assert manager.last_error == "refused"


def test_reconnect_after_failure():
    factory = FlakyFactory(1)
    manager = ConnectionManager(factory, sleep=mock.Mock())

    with pytest.raises(ConnectionRefusedError):
        manager.get_session(max_attempts=1)

    manager.get_session(max_attempts=1)

    assert manager.state == ConnectionState.CONNECTED
    assert manager.last_error is None


def test_single_attempt_for_concurrent_callers():
    release = threading.Event()
    calls = []

    def factory():
        calls.append(1)
        release.wait()
        return Session(mock.Mock())

    manager = ConnectionManager(factory)

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(manager.get_session()))
        for _ in range(8)
    ]

    for t in threads:
        t.start()

    # Give all callers the chance to queue up behind the first attempt
    time.sleep(0.2)
    assert manager.state == ConnectionState.CONNECTING

    release.set()

    for t in threads:
        t.join()

    assert len(calls) == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)


def test_concurrent_callers_share_failure():
    release = threading.Event()
    calls = []

    def factory():
        calls.append(1)
        release.wait()
        raise TimeoutError("timed out")

    manager = ConnectionManager(factory, sleep=mock.Mock())

    errors = []

    def call():
        try:
            manager.get_session(max_attempts=1)
        except TimeoutError as e:
            errors.append(e)

    threads = [threading.Thread(target=call) for _ in range(4)]

    for t in threads:
        t.start()

    time.sleep(0.2)
    release.set()

    for t in threads:
        t.join()

    assert len(calls) == 1
    assert len(errors) == 4


def test_inactive_session_is_replaced():
    factory = FlakyFactory(0)
    manager = ConnectionManager(factory)

    first = manager.get_session()
    first.close()

    second = manager.get_session()

    assert second is not first
    assert factory.calls == 2


def test_disconnect():
    factory = FlakyFactory(0)
    manager = ConnectionManager(factory)

    session = manager.get_session()
    manager.disconnect()

    assert manager.state == ConnectionState.DISCONNECTED
    assert not session.is_active()
    assert session.sftp.close.called

    # Idempotent
    manager.disconnect()

    assert manager.get_session() is not session


def test_session_activity_follows_transport():
    client = mock.Mock()
    session = Session(mock.Mock(), client)

    client.get_transport().is_active.return_value = True
    assert session.is_active()

    client.get_transport().is_active.return_value = False
    assert not session.is_active()

    client.get_transport.return_value = None
    assert not session.is_active()


def test_session_close_failure_nonfatal():
    sftp = mock.Mock()
    sftp.close.side_effect = EOFError()
    client = mock.Mock()

    session = Session(sftp, client)
    session.close()

    assert client.close.called
    assert not session.is_active()


def test_open_session_unsupported_auth():
    target = RemoteTarget(host="example.com", username="alice", auth_method="sshKey")

    with pytest.raises(UnsupportedAuthMethodError):
        open_session(target, "secret")


def test_open_session():
    target = RemoteTarget(host="example.com", port=2222, username="alice")

    with mock.patch("paramiko.SSHClient") as mock_client:
        session = open_session(target, "secret", operation_timeout=10)

    client = mock_client.return_value
    kwargs = client.connect.call_args[1]

    assert kwargs["hostname"] == "example.com"
    assert kwargs["port"] == 2222
    assert kwargs["username"] == "alice"
    assert kwargs["password"] == "secret"
    assert not kwargs["allow_agent"]
    assert not kwargs["look_for_keys"]

    assert session.sftp is client.open_sftp.return_value
    session.sftp.get_channel().settimeout.assert_called_with(10)


def test_open_session_failure_closes_client():
    target = RemoteTarget(host="example.com", username="alice")

    with mock.patch("paramiko.SSHClient") as mock_client:
        client = mock_client.return_value
        client.connect.side_effect = paramiko.AuthenticationException("denied")

        with pytest.raises(paramiko.AuthenticationException):
            open_session(target, "wrong")

    assert client.close.called


def test_interrupted_attempt_releases_waiters():
    started = threading.Event()
    release = threading.Event()
    calls = []

    def factory():
        calls.append(1)

        if len(calls) == 1:
            started.set()
            release.wait(5)
            raise KeyboardInterrupt()

        return Session(mock.Mock())

    manager = ConnectionManager(factory)

    interrupted = []
    waiter_errors = []

    def lead():
        try:
            manager.get_session()
        except KeyboardInterrupt:
            interrupted.append(True)

    def wait():
        try:
            manager.get_session()
        except KeyboardInterrupt as e:
            waiter_errors.append(e)

    leader = threading.Thread(target=lead)
    leader.start()
    started.wait(5)

    waiter = threading.Thread(target=wait)
    waiter.start()

    time.sleep(0.1)
    release.set()

    leader.join(5)
    waiter.join(5)

    assert not leader.is_alive()
    assert not waiter.is_alive()
    assert interrupted == [True]
    assert manager.state == ConnectionState.ERRORED

    # The next caller starts a new attempt instead of waiting forever
    assert manager.get_session() is not None
    assert manager.state == ConnectionState.CONNECTED
    assert len(calls) == 2


def test_disconnect_during_attempt():
    started = threading.Event()
    release = threading.Event()
    factory = FlakyFactory(0)

    def slow_factory():
        started.set()
        release.wait(5)
        return factory()

    manager = ConnectionManager(slow_factory)

    errors = []

    def call():
        try:
            manager.get_session()
        except ConnectionError as e:
            errors.append(e)

    t = threading.Thread(target=call)
    t.start()
    started.wait(5)

    manager.disconnect()
    release.set()
    t.join(5)

    assert len(errors) == 1
    assert manager.state == ConnectionState.DISCONNECTED

    # The session of the abandoned attempt is not adopted
    abandoned = factory.sessions[0]
    assert not abandoned.is_active()

    release.set()
    assert manager.get_session() is not abandoned
    assert manager.state == ConnectionState.CONNECTED
