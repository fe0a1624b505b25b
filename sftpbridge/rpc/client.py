"""Module with the RPC client that calls into a served service instance."""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

import zmq

from sftpbridge.logger import log, summarize_call
from sftpbridge.rpc.common import InvalidTokenError, Request, service_encoding, Status


class Client:
    """
    RPC client that forwards method calls to a service instance behind a Server.

    A client may be shared between threads. Every thread gets its own REQ socket, since
    a REQ socket has to alternate strictly between sending and receiving.

    Example:
    ```
    bridge = rpc.Client(FilesystemBridge, "tcp://127.0.0.1:31415", token)
    items = bridge.enumerate_items(ROOT_CONTAINER)
    ```
    """

    def __init__(
        self,
        service_type: type,
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = -1,
        exceptions: Iterable[type] = (),
    ) -> None:
        """
        Instantiate a client for the service type served at the given endpoint.

        The endpoint has the format of zmq_connect, e.g. "tcp://127.0.0.1:31415". A
        timeout of -1 waits for replies indefinitely.
        """
        self.endpoint = endpoint
        self.token = token
        self.timeout_ms = timeout_ms

        self._encoding = service_encoding(service_type, exceptions)
        self._context = zmq.Context()

        self._sockets: Dict[threading.Thread, zmq.Socket] = {}
        self._sockets_lock = threading.Lock()

    @property
    def socket_count(self) -> int:
        """Return the number of sockets currently opened by the client."""
        with self._sockets_lock:
            return len(self._sockets)

    def ping(self, timeout_ms: Optional[int] = None) -> None:
        """Check that the server responds, optionally within a different timeout."""
        sock = self._socket()

        if timeout_ms is not None:
            self._set_timeout(sock, timeout_ms)

        try:
            self._call(None)
        finally:
            # A socket that missed its reply has been closed already
            if timeout_ms is not None and not sock.closed:
                self._set_timeout(sock, self.timeout_ms)

    def close(self) -> None:
        """Close all sockets of the client."""
        with self._sockets_lock:
            for sock in self._sockets.values():
                sock.close(linger=0)

            self._sockets.clear()
            self._context.destroy(linger=0)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        """Return a function that calls the remote method with the given name."""
        if name.startswith("_"):
            raise AttributeError(name)

        def remote_method(*args: Any) -> Any:
            return self._call(name, *args)

        return remote_method

    def _call(self, method: Optional[str], *args: Any) -> Any:
        """
        Make a call and wait for its reply.

        Returns the result of the call or raises the exception it raised. A call that
        isn't answered within the timeout raises TimeoutError.
        """
        sock = self._socket()
        started = time.monotonic()

        try:
            sock.send(self._encoding.pack(Request(self.token, method, list(args))))
            status, result = self._encoding.unpack(sock.recv())
        except zmq.ZMQError:
            self._discard_socket()
            raise TimeoutError("rpc call timed out")

        # Summarizing arguments isn't free
        if log.isEnabledFor(logging.DEBUG):
            elapsed_ms = round((time.monotonic() - started) * 1000)
            log.debug(f"rpc::{summarize_call(method, args)} - {elapsed_ms} ms")

        if status == Status.OK:
            return result
        elif status == Status.ERROR:
            raise result
        elif status == Status.UNAUTHORIZED:
            raise InvalidTokenError("token mismatch between client and server")

        raise ValueError(f"unexpected reply status {status}")

    def _socket(self) -> zmq.Socket:
        thread = threading.current_thread()

        with self._sockets_lock:
            sock = self._sockets.get(thread)

            if sock is None:
                sock = self._context.socket(zmq.REQ)
                self._set_timeout(sock, self.timeout_ms)
                sock.connect(self.endpoint)

                self._sockets[thread] = sock

            return sock

    def _discard_socket(self) -> None:
        """Close the socket of the current thread, which can't be used after a miss."""
        with self._sockets_lock:
            sock = self._sockets.pop(threading.current_thread(), None)

        if sock is not None:
            sock.close(linger=0)

    @staticmethod
    def _set_timeout(sock: zmq.Socket, timeout_ms: int) -> None:
        sock.setsockopt(zmq.RCVTIMEO, timeout_ms)
        sock.setsockopt(zmq.SNDTIMEO, timeout_ms)
