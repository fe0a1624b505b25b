"""
Module that lists directories and synthesizes a change feed for them.

SFTP has no way to ask for the changes since a point in time, so every request for
changes performs a full listing of the directory and reports all of its items as
updated. That is redundant for items that didn't change, but it guarantees that the
host converges to the state of the server on every poll.

Sync anchors are kept opaque to the host, so that a real change log could be used
instead in the future without breaking anything.
"""

from dataclasses import dataclass, field
import time
from typing import List

from sftpbridge.sftp.common import RemoteItem
from sftpbridge.sftp.operations import RemoteOperations


def make_anchor() -> bytes:
    """Return a sync anchor for the current time."""
    return str(time.time()).encode("utf-8")


@dataclass
class ChangeSet:
    """Result of a single change enumeration pass."""

    updated: List[RemoteItem] = field(default_factory=list)
    anchor: bytes = b""
    more_coming: bool = False


class DirectoryEnumerator:
    """Enumerates the items of a single remote directory."""

    def __init__(self, operations: RemoteOperations, container_path: str) -> None:
        """Instantiate an enumerator for the directory at the given path."""
        self._operations = operations
        self._container_path = container_path

    @property
    def container_path(self) -> str:
        return self._container_path

    def enumerate_items(self) -> List[RemoteItem]:
        """List all items of the directory in a single page."""
        return self._operations.list_directory(self._container_path)

    def enumerate_changes(self, since: bytes) -> ChangeSet:
        """Report every current item of the directory as updated since the anchor."""
        items = self._operations.list_directory(self._container_path)

        return ChangeSet(updated=items, anchor=make_anchor(), more_coming=False)

    def current_anchor(self) -> bytes:
        return make_anchor()
