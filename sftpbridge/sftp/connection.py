"""Module that owns the (re)connecting SFTP session of a single remote target."""

from __future__ import annotations

from concurrent.futures import Future
from enum import auto, Enum
import threading
import time
from typing import Callable, Optional

import paramiko

from sftpbridge.logger import log
from sftpbridge.registry import AuthMethod, RemoteTarget


class ConnectionState(Enum):
    """State of the session owned by a ConnectionManager."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERRORED = auto()


class UnsupportedAuthMethodError(paramiko.AuthenticationException):
    """Exception raised when a target uses an authentication method not implemented."""


class Session:
    """An authenticated SSH connection together with the SFTP channel opened on it."""

    def __init__(
        self, sftp: paramiko.SFTPClient, client: Optional[paramiko.SSHClient] = None
    ) -> None:
        """Wrap an SFTP client and the SSH client it was opened with."""
        self.sftp = sftp
        self.client = client

        self._closed = False

    def is_active(self) -> bool:
        """Check if the underlying transport still reports itself as connected."""
        if self._closed:
            return False
        elif self.client is None:
            return True

        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        """
        Close the SFTP channel and the SSH connection.

        Failures are logged and otherwise ignored since the session is discarded anyway.
        """
        self._closed = True

        try:
            self.sftp.close()
        except Exception as e:
            log.debug(f"failed to close sftp channel: {e}")

        if self.client is not None:
            try:
                self.client.close()
            except Exception as e:
                log.debug(f"failed to close ssh connection: {e}")


SessionFactory = Callable[[], Session]


def open_session(
    target: RemoteTarget,
    password: Optional[str],
    connect_timeout: Optional[float] = None,
    operation_timeout: Optional[float] = None,
) -> Session:
    """
    Connect and authenticate to a target and open an SFTP channel.

    Only password authentication is implemented. Host keys are accepted without
    verification.
    """
    if target.auth_method != AuthMethod.PASSWORD.value:
        raise UnsupportedAuthMethodError(
            f"authentication method {target.auth_method} is not supported"
        )

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        client.connect(
            hostname=target.host,
            port=target.port,
            username=target.username,
            password=password or "",
            timeout=connect_timeout,
            banner_timeout=connect_timeout,
            auth_timeout=connect_timeout,
            allow_agent=False,
            look_for_keys=False,
        )

        sftp = client.open_sftp()

        if operation_timeout is not None:
            sftp.get_channel().settimeout(operation_timeout)
    except Exception:
        client.close()
        raise

    return Session(sftp, client)


class ConnectionManager:
    """
    Lazily established, automatically reconnecting session to a single remote target.

    The cached session is handed out to any number of threads as long as it reports
    itself as active. Once it isn't, the next caller starts a connection attempt and any
    callers arriving in the meanwhile wait for the outcome of that same attempt instead
    of starting their own.

    Connection attempts are retried with exponential backoff. This is the only place
    where failures are retried automatically.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        initial_backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Instantiate a manager that opens sessions with the given factory."""
        self._session_factory = session_factory
        self._initial_backoff = initial_backoff
        self._sleep = sleep

        self._lock = threading.Lock()
        self._session: Optional[Session] = None
        self._attempt: Optional[Future] = None
        # Incremented by disconnect() to abandon attempts in flight
        self._generation = 0

        self._state = ConnectionState.DISCONNECTED
        self._last_error: Optional[str] = None

    @staticmethod
    def for_target(
        target: RemoteTarget,
        password: Optional[str],
        initial_backoff: float = 0.5,
        connect_timeout: Optional[float] = None,
        operation_timeout: Optional[float] = None,
    ) -> ConnectionManager:
        """Instantiate a manager that connects to the given target with paramiko."""

        def factory() -> Session:
            return open_session(target, password, connect_timeout, operation_timeout)

        return ConnectionManager(factory, initial_backoff)

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        with self._lock:
            return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Return the reason of the last failed connection attempt, if any."""
        with self._lock:
            return self._last_error

    def get_session(self, max_attempts: int = 3) -> Session:
        """
        Return a live session, connecting first if necessary.

        Raises the error of the last attempt if no session could be established within
        the given number of attempts.
        """
        with self._lock:
            if self._session is not None:
                if self._session.is_active():
                    return self._session

                log.info("sftp session is no longer active, reconnecting")
                self._discard_session()

            if self._attempt is not None:
                # Wait for the attempt that is already in flight
                attempt = self._attempt
                leader = False
            else:
                attempt = Future()
                self._attempt = attempt
                self._state = ConnectionState.CONNECTING
                leader = True

            generation = self._generation

        if leader:
            self._connect(attempt, generation, max_attempts)

        return attempt.result()

    def _connect(self, attempt: Future, generation: int, max_attempts: int) -> None:
        """
        Run a connection attempt and publish its outcome to everyone waiting on it.

        The outcome is only adopted if no disconnect() happened in the meanwhile.
        Otherwise the new session is closed again.
        """
        try:
            session = self._open_with_retries(max_attempts)
        except BaseException as e:
            with self._lock:
                if self._generation == generation:
                    self._attempt = None
                    self._state = ConnectionState.ERRORED
                    self._last_error = str(e) or type(e).__name__

            attempt.set_exception(e)

            # Interrupts propagate to the caller that ran the attempt
            if not isinstance(e, Exception):
                raise

            return

        with self._lock:
            current = self._generation == generation

            if current:
                self._session = session
                self._attempt = None
                self._state = ConnectionState.CONNECTED
                self._last_error = None

        if not current:
            log.info("discarding sftp session of an attempt that outlived a disconnect")
            session.close()
            attempt.set_exception(ConnectionError("disconnected while connecting"))
            return

        log.info("sftp session established")
        attempt.set_result(session)

    def _open_with_retries(self, max_attempts: int) -> Session:
        """Open a session, backing off exponentially between failed attempts."""
        last_error: Optional[Exception] = None

        for i in range(max_attempts):
            try:
                return self._session_factory()
            except Exception as e:
                last_error = e
                log.warning(f"connection attempt {i + 1}/{max_attempts} failed: {e}")

                if i < max_attempts - 1:
                    self._sleep(self._initial_backoff * 2 ** i)

        raise last_error or ConnectionError("no connection attempts were made")

    def disconnect(self) -> None:
        """
        Close and forget the current session, if any.

        A connection attempt in flight is abandoned: its callers fail with
        ConnectionError and the next caller starts a new attempt.
        """
        with self._lock:
            self._generation += 1
            self._attempt = None

            self._discard_session()
            self._state = ConnectionState.DISCONNECTED

    def _discard_session(self) -> None:
        """Close the cached session (caller must hold the lock)."""
        if self._session is not None:
            self._session.close()
            self._session = None
