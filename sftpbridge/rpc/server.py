"""Module with the RPC server that exposes a service instance."""

import threading
from typing import Any, Iterable, List, Optional

import zmq

from sftpbridge.logger import log
from sftpbridge.rpc.common import Request, Status, service_encoding


class Server:
    """
    RPC server that dispatches calls to the public methods of a service instance.

    Calls arrive on a ROUTER socket and are passed on to a pool of worker threads over
    an in-process DEALER socket, so up to worker_count calls are handled at the same
    time. Each worker handles its calls one by one.

    Example:
    ```
    server = rpc.Server(bridge, token, worker_count=4, exceptions=BRIDGE_ERRORS)
    server.serve("tcp://127.0.0.1:31415")
    ```
    """

    def __init__(
        self,
        service: Any,
        token: Optional[str] = None,
        worker_count: int = 1,
        exceptions: Iterable[type] = (),
    ):
        """
        Instantiate a server for the given service instance.

        Clients must present the same token with every call. Exceptions raised by the
        service are sent back to the client, where the given exception types are
        recreated as-is.
        """
        self.service = service
        self.token = token
        self.worker_count = worker_count

        self._encoding = service_encoding(type(service), exceptions)

        self._context = zmq.Context()
        self._workers_endpoint = f"inproc://workers-{id(self)}"
        self._control_endpoint = f"inproc://control-{id(self)}"

        self._workers: List[threading.Thread] = []
        self._stopped = threading.Event()

    def serve(self, endpoint: str) -> None:
        """
        Handle calls on the given endpoint until stop() is called.

        The endpoint has the format of zmq_bind, e.g. "tcp://127.0.0.1:31415".
        """
        frontend = self._context.socket(zmq.ROUTER)
        backend = self._context.socket(zmq.DEALER)
        control = self._context.socket(zmq.SUB)

        try:
            frontend.bind(endpoint)
            backend.bind(self._workers_endpoint)

            control.connect(self._control_endpoint)
            control.setsockopt(zmq.SUBSCRIBE, b"")

            for _ in range(self.worker_count):
                worker = threading.Thread(target=self._run_worker, daemon=True)
                worker.start()
                self._workers.append(worker)

            log.info(f"serving {type(self.service).__name__} on {endpoint}")

            zmq.proxy_steerable(frontend, backend, None, control)
        finally:
            frontend.close(linger=0)
            backend.close(linger=0)
            control.close(linger=0)

            self._shutdown()

    def stop(self) -> None:
        """Make serve() return, dropping calls that are still being handled."""
        publisher = self._context.socket(zmq.PUB)

        try:
            publisher.bind(self._control_endpoint)

            # Repeat until the subscription of serve() has been established
            while not self._stopped.wait(0.01):
                publisher.send(b"TERMINATE")
        finally:
            publisher.close(linger=0)

    def _shutdown(self) -> None:
        self._stopped.set()

        for worker in self._workers:
            worker.join(timeout=1.0)

        if any(worker.is_alive() for worker in self._workers):
            # The context can only be terminated once all sockets have been closed
            log.warning("rpc workers still busy after shutdown, leaving them behind")
        else:
            self._context.term()

    def _run_worker(self) -> None:
        """Receive, authenticate and dispatch calls until the server shuts down."""
        socket = self._context.socket(zmq.REP)
        socket.connect(self._workers_endpoint)

        poller = zmq.Poller()
        poller.register(socket, zmq.POLLIN)

        try:
            while not self._stopped.is_set():
                if poller.poll(100):
                    socket.send(self._handle(socket.recv()))
        finally:
            socket.close(linger=0)

    def _handle(self, message: bytes) -> bytes:
        """Turn a call message into a reply message."""
        try:
            request = Request(*self._encoding.unpack(message))
        except Exception as e:
            log.debug(f"rejected malformed rpc message: {e}")
            return self._encoding.pack([Status.ERROR, e])

        if request.token != self.token:
            return self._encoding.pack([Status.UNAUTHORIZED, None])

        try:
            return self._encoding.pack([Status.OK, self._invoke(request)])
        except Exception as e:
            log.debug(f"rpc::{request.method} raised {type(e).__name__}: {e}")
            return self._encoding.pack([Status.ERROR, e])

    def _invoke(self, request: Request) -> Any:
        if request.method is None:
            # Ping
            return None

        if request.method.startswith("_"):
            raise AttributeError(f"{request.method} is not exposed")

        return getattr(self.service, request.method)(*request.args)
