"""
Modules that implement the requests of a replicating host on top of SFTP.

A replicating host (a file provider, a sync client or a FUSE front-end) keeps a local
copy of a remote directory tree and asks the bridge for metadata and contents on demand.
It refers to items by opaque identifiers, which the bridge derives from remote paths,
and expects failures to be reported as one of a handful of error kinds.

SFTP offers no change notifications, so the bridge synthesizes a change feed by
listing directories in full every time the host asks for changes.
"""

from .bridge import FilesystemBridge
from .enumerator import ChangeSet, DirectoryEnumerator
from .errors import (
    BridgeError,
    DirectoryNotEmpty,
    ErrorClassifier,
    NoSuchItem,
    NotAuthenticated,
    ServerUnreachable,
)
from .identifiers import ROOT_CONTAINER, WORKING_SET
from .items import ItemField, ReplicatedChanges, ReplicatedItem

__all__ = [
    "FilesystemBridge",
    "ChangeSet",
    "DirectoryEnumerator",
    "BridgeError",
    "DirectoryNotEmpty",
    "ErrorClassifier",
    "NoSuchItem",
    "NotAuthenticated",
    "ServerUnreachable",
    "ROOT_CONTAINER",
    "WORKING_SET",
    "ItemField",
    "ReplicatedChanges",
    "ReplicatedItem",
]
