"""
Module with the errors reported to the host and the classifier that produces them.

SSH and SFTP libraries report failures through a wide variety of exception types and
messages, most of which carry no structured error code. The host on the other hand only
needs to tell apart a handful of situations, so every failure is reduced to one of the
kinds below before it leaves the bridge. The matching is best effort: new and unknown
failures degrade to ServerUnreachable.
"""

from __future__ import annotations

from dataclasses import dataclass
import errno
import socket
from typing import Iterator, List, Optional, Tuple, Type

import paramiko

from sftpbridge.logger import log
from sftpbridge.sftp.common import LocalFileError, RemoteOperationError


class BridgeError(Exception):
    """Base class of the errors that the bridge reports to the host."""

    kind = "unknown"


class NotAuthenticated(BridgeError):
    """There is no valid session or credential, or no target is configured at all."""

    kind = "notAuthenticated"


class NoSuchItem(BridgeError):
    """The remote path does not exist."""

    kind = "noSuchItem"


class DirectoryNotEmpty(BridgeError):
    """A non-recursive delete was attempted on a directory with children."""

    kind = "directoryNotEmpty"


class ServerUnreachable(BridgeError):
    """Connection or transport failure, or any failure that wasn't recognized."""

    kind = "serverUnreachable"


BRIDGE_ERRORS: Tuple[Type[BridgeError], ...] = (
    NotAuthenticated,
    NoSuchItem,
    DirectoryNotEmpty,
    ServerUnreachable,
)


class MissingCredentialsError(Exception):
    """Exception raised when no target or password is available to connect with."""


@dataclass
class Rule:
    """
    Pattern that recognizes a failure.

    A rule matches an exception if it is an instance of one of the types, or if its
    lower-cased type name or message contains one of the substrings.
    """

    kind: Type[BridgeError]
    message: str
    types: Tuple[type, ...] = ()
    substrings: Tuple[str, ...] = ()
    errnos: Tuple[int, ...] = ()

    def matches(self, e: BaseException) -> bool:
        """Check if the exception matches this rule."""
        if self.types and isinstance(e, self.types):
            return True

        if self.errnos and isinstance(e, OSError) and e.errno in self.errnos:
            return True

        text = f"{type(e).__name__} {e}".lower()

        return any(s in text for s in self.substrings)


DEFAULT_RULES: List[Rule] = [
    Rule(
        ServerUnreachable,
        "A local file needed for the transfer could not be accessed.",
        types=(LocalFileError,),
    ),
    Rule(
        NotAuthenticated,
        "No configuration or password found. Please set up the server first.",
        types=(MissingCredentialsError,),
    ),
    Rule(
        NotAuthenticated,
        "Authentication failed. Please check your username and password.",
        types=(paramiko.AuthenticationException,),
        substrings=("authentication failed", "authenticationfailed", "unauthorized"),
    ),
    Rule(
        DirectoryNotEmpty,
        "The directory is not empty.",
        errnos=(errno.ENOTEMPTY,),
        substrings=("directory not empty",),
    ),
    Rule(
        NoSuchItem,
        "The requested file or directory does not exist.",
        types=(FileNotFoundError,),
        errnos=(errno.ENOENT,),
        substrings=("no such file", "nosuchfile"),
    ),
    Rule(
        ServerUnreachable,
        "Permission denied. Please check your access rights.",
        types=(PermissionError,),
        errnos=(errno.EACCES, errno.EPERM),
        substrings=("permission denied", "permissiondenied"),
    ),
    Rule(
        ServerUnreachable,
        "Could not resolve hostname. Please check the host address.",
        types=(socket.gaierror,),
        substrings=("could not resolve", "name or service not known", "nodename nor"),
    ),
    Rule(
        ServerUnreachable,
        "Connection timed out. The server may be unreachable.",
        types=(socket.timeout, TimeoutError),
        substrings=("timed out", "timeout"),
    ),
    Rule(
        ServerUnreachable,
        "Could not connect to the server. Please check the host and port.",
        types=(ConnectionRefusedError, paramiko.ssh_exception.NoValidConnectionsError),
        substrings=("connection refused", "unable to connect"),
    ),
    Rule(
        ServerUnreachable,
        "The connection was interrupted. Please try again.",
        types=(ConnectionResetError, BrokenPipeError),
        substrings=("reset by peer", "broken pipe"),
    ),
    Rule(
        ServerUnreachable,
        "The connection to the server was closed unexpectedly.",
        types=(EOFError,),
        substrings=("connection closed", "connection lost", "socket is closed"),
    ),
    Rule(
        ServerUnreachable,
        "The server is unreachable. Please check your network connection.",
        substrings=("no route to host", "network is unreachable"),
    ),
]

FALLBACK_MESSAGE = "An unexpected error occurred. Please try again."


def _chain(e: BaseException) -> Iterator[BaseException]:
    """Iterate over an exception and the exceptions it was caused by."""
    seen = set()
    current: Optional[BaseException] = e

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


class ErrorClassifier:
    """
    Maps arbitrary failures to the errors reported to the host.

    Rules are tried in order for every exception in the causal chain, starting with the
    outermost one. Additional rules can be inserted ahead of the defaults with
    add_rule().
    """

    def __init__(self, rules: Optional[List[Rule]] = None) -> None:
        """Instantiate a classifier with the given rules (or the defaults)."""
        self._rules = list(DEFAULT_RULES if rules is None else rules)

    def add_rule(self, rule: Rule) -> None:
        """Add a rule that takes precedence over the existing ones."""
        self._rules.insert(0, rule)

    def match(self, e: BaseException) -> Optional[Rule]:
        """Find the first rule that matches the exception or one of its causes."""
        for exc in _chain(e):
            # Wrappers only add the operation and path, which must not be matched
            if isinstance(exc, RemoteOperationError):
                continue

            for rule in self._rules:
                if rule.matches(exc):
                    return rule

        return None

    def classify(self, e: BaseException) -> Type[BridgeError]:
        """Determine the kind of error a failure should be reported as."""
        if isinstance(e, BridgeError):
            return type(e)

        rule = self.match(e)

        return rule.kind if rule is not None else ServerUnreachable

    def describe(self, e: BaseException) -> str:
        """Return a message describing the failure to the user."""
        if isinstance(e, BridgeError) and str(e):
            return str(e)

        rule = self.match(e)

        if rule is not None:
            return rule.message

        # Unrecognized failure, report the innermost error as concisely as possible
        root = list(_chain(e))[-1]
        if isinstance(root, RemoteOperationError):
            root = root.cause

        message = str(root).strip()

        return message or FALLBACK_MESSAGE

    def to_bridge_error(self, e: BaseException) -> BridgeError:
        """Turn a failure into the error reported to the host."""
        if isinstance(e, BridgeError):
            return e

        kind = self.classify(e)
        message = self.describe(e)

        log.debug(f"classified {type(e).__name__}: {e} as {kind.kind}")

        return kind(message)
