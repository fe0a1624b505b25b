"""Module with the message types shared by the RPC client and server."""

from enum import IntEnum
import typing
from typing import Any, Iterable, List, NamedTuple, Optional, Sequence

from sftpbridge.rpc.encoding import Encoding


class Status(IntEnum):
    """Outcome of a call, sent as the first element of every reply."""

    OK = 0
    ERROR = 1
    UNAUTHORIZED = 2


class Request(NamedTuple):
    """A call as it travels from client to server."""

    token: Optional[str]
    # None for a ping
    method: Optional[str]
    args: Sequence[Any] = ()


class InvalidTokenError(RuntimeError):
    """Exception raised when an RPC call is made with a wrong authentication token."""


def service_encoding(service_type: type, exceptions: Iterable[type] = ()) -> Encoding:
    """
    Create the encoding for calls to the given service class.

    Dataclasses used in the annotations of the public methods are registered, so that
    they can be passed as arguments and returned as results.
    """
    annotations: List[Any] = []

    for name in dir(service_type):
        member = getattr(service_type, name)

        if not name.startswith("_") and callable(member):
            annotations.extend(typing.get_type_hints(member).values())

    return Encoding(*annotations, exceptions=exceptions)
