"""
RPC client and server that expose the bridge to a host process over ZeroMQ.

The replicating host calls into the bridge for every request it receives. Those calls
map one-to-one onto methods of FilesystemBridge, so the bridge instance itself is
served rather than a separate protocol:

* Every public method of the service class can be called by name.
* Dataclasses in the annotations of those methods are encoded automatically.
* Exceptions travel back to the caller and are raised there.
* Every call carries a shared secret token.

Calls are encoded with MessagePack. The server hands them to a pool of worker threads,
so slow transfers don't hold up enumeration.
"""

from sftpbridge.rpc.client import Client
from sftpbridge.rpc.common import InvalidTokenError, Request, Status
from sftpbridge.rpc.encoding import Encoding
from sftpbridge.rpc.server import Server

__all__ = ["Client", "Encoding", "InvalidTokenError", "Request", "Server", "Status"]
