"""Module that implements the requests of the host on top of SFTP operations."""

from __future__ import annotations

from contextlib import contextmanager
import os
import threading
from typing import Dict, Iterator, List, Optional, Set, Tuple

from sftpbridge.bridge.enumerator import DirectoryEnumerator, make_anchor
from sftpbridge.bridge.errors import (
    BridgeError,
    DirectoryNotEmpty,
    ErrorClassifier,
    MissingCredentialsError,
)
import sftpbridge.bridge.identifiers as identifiers
from sftpbridge.bridge.items import ItemField, ReplicatedChanges, ReplicatedItem
from sftpbridge.config import Config
from sftpbridge.constants import PROTOCOL_VERSION
from sftpbridge.logger import log
from sftpbridge.registry import AuthMethod, RemoteTarget
from sftpbridge.sftp.common import (
    child_path,
    filename_of,
    parent_of,
    Progress,
    RemoteItem,
    TransferCancelledError,
)
from sftpbridge.sftp.connection import ConnectionManager
from sftpbridge.sftp.operations import RemoteOperations


def _check_filename(filename: str) -> None:
    """Check that a filename is a single, regular path component."""
    if filename in ("", ".", "..") or "/" in filename or "\0" in filename:
        raise ValueError(f"invalid filename {filename!r}")


class FilesystemBridge:
    """
    Bridge between the requests of a replicating host and a single remote target.

    Every request is handled synchronously on the calling thread, so concurrent requests
    simply require concurrent callers. They share the single session of the target.

    Identifiers are derived from paths (see identifiers), which means that a rename or
    move changes the identifier of the item. modify_item() reports this explicitly so
    that the host can replace the old identifier with the new one.

    All failures are classified into BridgeError subclasses before they are raised to
    the host. Cancelled transfers raise TransferCancelledError instead, since they are
    the result of a request by the host itself.

    Transfers are named by the host with a transfer id of its choosing. While a
    transfer runs, its progress can be polled with transfer_progress() and it can be
    stopped with cancel_transfer(), from any other thread or RPC worker.
    """

    def __init__(
        self,
        base_path: str = "/",
        operations: Optional[RemoteOperations] = None,
        classifier: Optional[ErrorClassifier] = None,
    ) -> None:
        """
        Instantiate a bridge for the target directory at base_path.

        A bridge without operations has no way to connect and fails every request that
        needs the server with NotAuthenticated.
        """
        self._base_path = base_path
        self._operations = operations
        self._classifier = classifier or ErrorClassifier()

        self._transfers: Dict[str, Progress] = {}
        self._transfers_lock = threading.Lock()

    @staticmethod
    def for_target(
        target: Optional[RemoteTarget],
        password: Optional[str],
        config: Optional[Config] = None,
    ) -> FilesystemBridge:
        """Instantiate a bridge that connects to the given target with its password."""
        if config is None:
            config = Config()

        if target is None or not target.is_valid:
            log.error("no valid target configured")
            return FilesystemBridge()

        if password is None and target.auth_method == AuthMethod.PASSWORD.value:
            log.error(f"no password available for target {target.id}")
            return FilesystemBridge(target.base_path)

        connection = ConnectionManager.for_target(
            target,
            password,
            initial_backoff=config.connection.initial_backoff,
            connect_timeout=config.connection.connect_timeout,
            operation_timeout=config.connection.operation_timeout,
        )

        operations = RemoteOperations(
            connection,
            temp_dir=config.transfer.temp_dir,
            max_attempts=config.connection.max_attempts,
        )

        return FilesystemBridge(target.base_path, operations)

    @property
    def base_path(self) -> str:
        return self._base_path

    @staticmethod
    def protocol_version() -> str:
        """Return the version of the protocol spoken by the bridge."""
        return PROTOCOL_VERSION

    def connection_state(self) -> Tuple[str, Optional[str]]:
        """Return the name of the connection state and the last connection error."""
        if self._operations is None:
            return "DISCONNECTED", "no target or password configured"

        connection = self._operations.connection

        return connection.state.name, connection.last_error

    def invalidate(self) -> None:
        """Release the session to the server, e.g. when the mount goes away."""
        if self._operations is not None:
            self._operations.connection.disconnect()

    #
    # Helpers
    #

    def _require_operations(self) -> RemoteOperations:
        """Return the remote operations, which are missing without a password."""
        if self._operations is None:
            raise MissingCredentialsError("no target or password configured")

        return self._operations

    @contextmanager
    def _request(self, description: str) -> Iterator[RemoteOperations]:
        """Provide the remote operations and classify any failures of a request."""
        try:
            yield self._require_operations()
        except (BridgeError, TransferCancelledError):
            raise
        except Exception as e:
            error = self._classifier.to_bridge_error(e)
            log.error(f"{description} failed ({error.kind}): {e}")
            raise error from e

    def _resolve(self, identifier: str) -> str:
        return identifiers.resolve(identifier, self._base_path)

    def _replicate(self, item: RemoteItem) -> ReplicatedItem:
        return ReplicatedItem.from_remote(item, self._base_path)

    #
    # Enumeration
    #

    def enumerator(self, container_identifier: str) -> DirectoryEnumerator:
        """
        Return an enumerator for the container with the given identifier.

        Enumerators only work in-process, they can't be returned over RPC. Remote
        hosts use enumerate_items() and enumerate_changes() instead.
        """
        with self._request(f"enumerator for {container_identifier}") as ops:
            return DirectoryEnumerator(ops, self._resolve(container_identifier))

    def enumerate_items(self, container_identifier: str) -> List[ReplicatedItem]:
        """List all items in a container."""
        with self._request(f"enumerating {container_identifier}") as ops:
            path = self._resolve(container_identifier)
            items = DirectoryEnumerator(ops, path).enumerate_items()

        return [self._replicate(item) for item in items]

    def enumerate_changes(
        self, container_identifier: str, anchor: bytes
    ) -> ReplicatedChanges:
        """List the changes in a container since the given sync anchor."""
        with self._request(f"enumerating changes of {container_identifier}") as ops:
            path = self._resolve(container_identifier)
            changes = DirectoryEnumerator(ops, path).enumerate_changes(anchor)

        return ReplicatedChanges(
            updated=[self._replicate(item) for item in changes.updated],
            anchor=changes.anchor,
            more_coming=changes.more_coming,
        )

    @staticmethod
    def current_anchor(container_identifier: str) -> bytes:
        """Return the sync anchor to start tracking changes of a container from."""
        return make_anchor()

    #
    # Metadata
    #

    def item(self, identifier: str) -> ReplicatedItem:
        """Retrieve the current metadata of an item."""
        if identifier == identifiers.ROOT_CONTAINER:
            return self._replicate(RemoteItem.directory(self._base_path))

        with self._request(f"stat of {identifier}") as ops:
            return self._replicate(ops.get_attributes(self._resolve(identifier)))

    #
    # Transfers
    #

    def transfer_progress(self, transfer_id: str) -> Tuple[int, int]:
        """
        Return the number of bytes transferred so far and the total of a transfer.

        Raises KeyError if no transfer with the given id is running.
        """
        with self._transfers_lock:
            progress = self._transfers[transfer_id]

        return progress.completed, progress.total

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Request a running transfer to stop and return whether it was found."""
        with self._transfers_lock:
            progress = self._transfers.get(transfer_id)

        if progress is None:
            return False

        progress.cancel()
        log.info(f"cancelling transfer {transfer_id}")

        return True

    @contextmanager
    def _transfer(self, transfer_id: Optional[str]) -> Iterator[Progress]:
        """Track the progress of a transfer under its id while it runs."""
        progress = Progress()

        if transfer_id is None:
            yield progress
            return

        with self._transfers_lock:
            if transfer_id in self._transfers:
                raise ValueError(f"transfer {transfer_id} is already running")

            self._transfers[transfer_id] = progress

        try:
            yield progress
        finally:
            with self._transfers_lock:
                del self._transfers[transfer_id]

    #
    # Contents
    #

    def fetch_contents(
        self, identifier: str, transfer_id: Optional[str] = None
    ) -> Tuple[str, ReplicatedItem]:
        """
        Download the contents of an item to a local temporary file.

        The metadata is retrieved again after the download since the file may have
        changed in the meanwhile. The caller owns the returned file. The download can be
        followed and cancelled through its transfer_id.
        """
        with self._request(f"download of {identifier}") as ops:
            path = self._resolve(identifier)

            with self._transfer(transfer_id) as progress:
                local_path = ops.download_file(path, progress)

            try:
                item = ops.get_attributes(path)
            except BaseException:
                os.remove(local_path)
                raise

        return local_path, self._replicate(item)

    #
    # Structure
    #

    def create_item(
        self,
        parent_identifier: str,
        filename: str,
        is_directory: bool,
        contents: Optional[str] = None,
        transfer_id: Optional[str] = None,
    ) -> ReplicatedItem:
        """
        Create a directory or file in the given parent directory.

        Files are uploaded from the local file at contents. A file without contents is
        created empty. The created item is returned as reported by the server.
        """
        with self._request(f"creation of {filename}") as ops:
            _check_filename(filename)

            path = child_path(self._resolve(parent_identifier), filename)

            if is_directory:
                ops.create_directory(path)
            elif contents is not None:
                with self._transfer(transfer_id) as progress:
                    ops.upload_file(contents, path, progress)
            else:
                ops.create_file(path)

            return self._replicate(ops.get_attributes(path))

    def modify_item(
        self,
        identifier: str,
        changed_fields: List[str],
        filename: Optional[str] = None,
        parent_identifier: Optional[str] = None,
        contents: Optional[str] = None,
        transfer_id: Optional[str] = None,
    ) -> Tuple[ReplicatedItem, bool]:
        """
        Apply a rename, move and/or contents change to an item.

        Returns the updated item and whether its identifier changed, which is the case
        exactly when the item was renamed or moved. Changed fields other than the
        filename, parent and contents need no remote change and are ignored.
        """
        with self._request(f"modification of {identifier}") as ops:
            fields = self._known_fields(changed_fields)

            path = self._resolve(identifier)
            identifier_changed = False

            if ItemField.FILENAME in fields or ItemField.PARENT in fields:
                new_path = self._destination(path, filename, parent_identifier)

                if new_path != path:
                    if path == self._base_path:
                        raise PermissionError("the root container cannot be moved")

                    ops.rename(path, new_path)
                    log.info(f"renamed {path} to {new_path}")

                    path = new_path
                    identifier_changed = True

            # Upload after renaming so that the contents end up at the final path
            if ItemField.CONTENTS in fields and contents is not None:
                with self._transfer(transfer_id) as progress:
                    ops.upload_file(contents, path, progress)

            item = self._replicate(ops.get_attributes(path))

        return item, identifier_changed

    @staticmethod
    def _known_fields(changed_fields: List[str]) -> Set[ItemField]:
        known = {field.value for field in ItemField}

        return {ItemField(f) for f in changed_fields if f in known}

    def _destination(
        self, path: str, filename: Optional[str], parent_identifier: Optional[str]
    ) -> str:
        """Compute the new path of an item from its new filename and/or parent."""
        if parent_identifier is not None:
            parent = self._resolve(parent_identifier)
        else:
            parent = parent_of(path)

        if filename is not None:
            _check_filename(filename)
        else:
            filename = filename_of(path)

        return child_path(parent, filename)

    def delete_item(self, identifier: str, recursive: bool = False) -> None:
        """
        Delete a file or directory.

        Directories with children are only deleted if recursive is set. A recursive
        delete that fails halfway leaves the entries that were already deleted deleted.
        """
        with self._request(f"deletion of {identifier}") as ops:
            path = self._resolve(identifier)

            if path == self._base_path:
                raise PermissionError("the root container cannot be deleted")

            item = ops.get_attributes(path)

            if not item.is_directory:
                ops.delete_file(path)
            elif recursive:
                self._delete_recursively(ops, path)
            else:
                if len(ops.list_directory(path)) > 0:
                    raise DirectoryNotEmpty("The directory is not empty.")

                ops.delete_directory(path)

        log.info(f"deleted {path}")

    @classmethod
    def _delete_recursively(cls, ops: RemoteOperations, path: str) -> None:
        """Delete a directory tree, removing the children of a directory first."""
        for child in ops.list_directory(path):
            if child.is_directory:
                cls._delete_recursively(ops, child.path)
            else:
                ops.delete_file(child.path)

        ops.delete_directory(path)

