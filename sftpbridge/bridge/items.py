"""Data structures that describe remote items to the host."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List

import sftpbridge.bridge.identifiers as identifiers
from sftpbridge.sftp.common import RemoteItem


class ItemField(str, Enum):
    """Fields of an item that the host can report as changed."""

    FILENAME = "filename"
    PARENT = "parent"
    CONTENTS = "contents"


class Capability(str, Enum):
    """Actions that the host may offer for an item."""

    READING = "reading"
    WRITING = "writing"
    CONTENT_ENUMERATING = "contentEnumerating"
    ADDING_SUB_ITEMS = "addingSubItems"
    RENAMING = "renaming"
    DELETING = "deleting"
    EVICTING = "evicting"


DIRECTORY_CAPABILITIES = [
    Capability.READING,
    Capability.CONTENT_ENUMERATING,
    Capability.ADDING_SUB_ITEMS,
    Capability.RENAMING,
    Capability.DELETING,
]

FILE_CAPABILITIES = [
    Capability.READING,
    Capability.WRITING,
    Capability.RENAMING,
    Capability.DELETING,
    Capability.EVICTING,
]


@dataclass
class ReplicatedItem:
    """
    A remote item as presented to the host.

    The version changes whenever the size or modification time of the item changes,
    which the host uses to decide whether its local copy is stale.
    """

    identifier: str
    parent_identifier: str
    item: RemoteItem
    capabilities: List[str] = field(default_factory=list)
    version: str = ""

    @staticmethod
    def from_remote(item: RemoteItem, base_path: str) -> ReplicatedItem:
        """Wrap a remote item of the target with the given base path."""
        if item.is_directory:
            capabilities = DIRECTORY_CAPABILITIES
        else:
            capabilities = FILE_CAPABILITIES

        return ReplicatedItem(
            identifier=identifiers.identifier_for(item.path, base_path),
            parent_identifier=identifiers.parent_identifier_for(item.path, base_path),
            item=item,
            capabilities=[c.value for c in capabilities],
            version=item.version,
        )

    @property
    def filename(self) -> str:
        return self.item.filename

    @property
    def is_directory(self) -> bool:
        return self.item.is_directory


@dataclass
class ReplicatedChanges:
    """Changes of a container as presented to the host, up to the given sync anchor."""

    updated: List[ReplicatedItem] = field(default_factory=list)
    anchor: bytes = b""
    more_coming: bool = False
