"""
Module that maps between remote paths and the item identifiers used by the host.

An identifier is the standard base64 encoding (with padding) of the UTF-8 bytes of the
absolute remote path. It is derived from nothing but the path, which keeps identifiers
stable across restarts of the bridge and the host. The flip side is that renaming or
moving an item changes its identifier.

Two sentinel identifiers exist outside of this encoding. They contain underscores,
which never occur in base64 output, and both resolve to the base path of the target.
"""

import base64
import binascii
from typing import Optional

from sftpbridge.logger import log
from sftpbridge.sftp.common import parent_of

# Identifier of the directory at the base path of the target
ROOT_CONTAINER = "__root__"

# Identifier used by the host to subscribe to changes anywhere in the target
WORKING_SET = "__working_set__"

SENTINELS = (ROOT_CONTAINER, WORKING_SET)


def encode(path: str) -> str:
    """Return the identifier of the item at the given path."""
    return base64.b64encode(path.encode("utf-8")).decode("ascii")


def decode(identifier: str) -> Optional[str]:
    """Return the path encoded in an identifier, or None if it is malformed."""
    try:
        path = base64.b64decode(identifier.encode("ascii"), validate=True).decode(
            "utf-8"
        )
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not path.startswith("/"):
        return None

    return path


def resolve(identifier: str, base_path: str) -> str:
    """
    Return the path of the item an identifier refers to.

    Sentinels resolve to the base path. So do malformed identifiers, since failing the
    whole request is worse than falling back to the top of the target.
    """
    if identifier in SENTINELS:
        return base_path

    path = decode(identifier)

    if path is None:
        log.debug(f"malformed identifier {identifier!r}, using {base_path}")
        return base_path

    return path


def identifier_for(path: str, base_path: str) -> str:
    """Return the identifier of the item at path, using the sentinel for the base."""
    if path == base_path:
        return ROOT_CONTAINER

    return encode(path)


def parent_identifier_for(path: str, base_path: str) -> str:
    """Return the identifier of the directory containing the item at path."""
    parent = parent_of(path)

    if parent == base_path or not is_within(parent, base_path):
        return ROOT_CONTAINER

    return encode(parent)


def is_within(path: str, base_path: str) -> bool:
    """Check if path is the base path or one of its descendants."""
    if base_path == "/":
        return path.startswith("/")

    return path == base_path or path.startswith(base_path + "/")
