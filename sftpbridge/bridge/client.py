"""Module with the host side of the connection to a bridge served over RPC."""

from typing import Optional

import semver

from sftpbridge.bridge.bridge import FilesystemBridge
from sftpbridge.bridge.errors import BRIDGE_ERRORS
from sftpbridge.constants import PROTOCOL_VERSION
import sftpbridge.rpc as rpc
from sftpbridge.sftp.common import TransferCancelledError

# Exceptions that are recreated as-is when raised by the bridge
TRANSPORTED_EXCEPTIONS = (*BRIDGE_ERRORS, TransferCancelledError)


class IncompatibleProtocolError(RuntimeError):
    """Exception raised when the bridge speaks an incompatible protocol version."""


def check_protocol(remote_version: str, local_version: str = PROTOCOL_VERSION) -> None:
    """Check if a bridge protocol version is compatible with our own."""
    try:
        remote = semver.VersionInfo.parse(remote_version)
    except (ValueError, TypeError):
        raise IncompatibleProtocolError(f"invalid protocol version {remote_version!r}")

    local = semver.VersionInfo.parse(local_version)

    if remote.major != local.major:
        raise IncompatibleProtocolError(
            f"incompatible protocol ({remote_version} != {local_version})"
        )


def connect(
    endpoint: str,
    token: Optional[str] = None,
    timeout_ms: int = 5000,
    call_timeout_ms: int = -1,
) -> rpc.Client:
    """
    Connect to a bridge served at the given endpoint.

    The bridge has to respond within timeout_ms and speak a compatible protocol. Calls
    made afterwards use call_timeout_ms, which defaults to no timeout since transfers of
    large files can take arbitrarily long.
    """
    client = rpc.Client(
        FilesystemBridge,
        endpoint,
        token,
        timeout_ms=call_timeout_ms,
        exceptions=TRANSPORTED_EXCEPTIONS,
    )

    try:
        client.ping(timeout_ms)
        check_protocol(client.protocol_version())
    except Exception:
        client.close()
        raise

    return client
