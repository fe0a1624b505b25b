"""Module that translates file system operations into SFTP calls."""

from contextlib import contextmanager
import os
import tempfile
from typing import Iterator, List, Optional

import paramiko

from sftpbridge.logger import log
from sftpbridge.sftp.common import (
    child_path,
    is_not_found,
    LocalFileError,
    Progress,
    RemoteItem,
    RemoteNotFoundError,
    RemoteOperationError,
    TransferCancelledError,
)
from sftpbridge.sftp.connection import ConnectionManager


class RemoteOperations:
    """
    Stateless translation of file system verbs into SFTP calls.

    Every operation borrows the session of the connection manager, so a dropped
    connection is transparently re-established before the call. Operations themselves
    are never retried because a retried write or rename could apply its side effects
    twice. Failures are raised as RemoteOperationError with the original exception as
    its cause.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        temp_dir: Optional[str] = None,
        max_attempts: int = 3,
    ) -> None:
        """Instantiate operations on top of the session of a connection manager."""
        self._connection = connection
        self._temp_dir = temp_dir
        self._max_attempts = max_attempts

        if temp_dir is not None:
            os.makedirs(temp_dir, exist_ok=True)

    @property
    def connection(self) -> ConnectionManager:
        """Return the connection manager that provides sessions."""
        return self._connection

    @contextmanager
    def _sftp(self, operation: str, path: str) -> Iterator[paramiko.SFTPClient]:
        """Provide the SFTP client of a live session and wrap any failures."""
        try:
            session = self._connection.get_session(self._max_attempts)
            yield session.sftp
        except (RemoteOperationError, TransferCancelledError):
            raise
        except Exception as e:
            if is_not_found(e):
                raise RemoteNotFoundError(operation, path, e) from e
            else:
                raise RemoteOperationError(operation, path, e) from e

    #
    # Metadata access
    #

    def list_directory(self, path: str) -> List[RemoteItem]:
        """List the immediate children of a remote directory."""
        with self._sftp("list", path) as sftp:
            entries = sftp.listdir_attr(path)

        return [
            RemoteItem.from_attributes(child_path(path, attrs.filename), attrs)
            for attrs in entries
            if attrs.filename not in (".", "..")
        ]

    def get_attributes(self, path: str) -> RemoteItem:
        """Retrieve the metadata of a single remote entry."""
        with self._sftp("stat", path) as sftp:
            attrs = sftp.stat(path)

        return RemoteItem.from_attributes(path, attrs)

    #
    # File contents
    #

    def download_file(self, path: str, progress: Optional[Progress] = None) -> str:
        """
        Download a remote file in full to a new local temporary file.

        The caller owns the returned file and is responsible for removing it. The local
        file is removed if the transfer fails or is cancelled.
        """
        if progress is None:
            progress = Progress()

        try:
            fd, local_path = tempfile.mkstemp(prefix="sftpbridge_", dir=self._temp_dir)
        except OSError as e:
            raise LocalFileError(f"failed to create temporary file: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                with self._sftp("download", path) as sftp:
                    progress.total = sftp.stat(path).st_size or 0
                    progress.check()

                    def callback(transferred: int, total: int) -> None:
                        progress.advance_to(transferred)
                        progress.check()

                    sftp.getfo(path, f, callback=callback)
        except BaseException:
            os.remove(local_path)
            raise

        progress.finish()
        log.debug(f"downloaded {path} ({progress.total} bytes) to {local_path}")

        return local_path

    def upload_file(
        self, local_path: str, remote_path: str, progress: Optional[Progress] = None
    ) -> None:
        """
        Upload a local file in full, creating or truncating the remote file.

        A cancelled upload raises TransferCancelledError, but may leave a truncated file
        behind on the server.
        """
        if progress is None:
            progress = Progress()

        try:
            f = open(local_path, "rb")
        except OSError as e:
            raise LocalFileError(f"failed to open {local_path}: {e}") from e

        with f:
            size = os.fstat(f.fileno()).st_size
            progress.total = size

            with self._sftp("upload", remote_path) as sftp:
                progress.check()

                def callback(transferred: int, total: int) -> None:
                    progress.advance_to(transferred)
                    progress.check()

                sftp.putfo(f, remote_path, file_size=size, callback=callback)

        progress.finish()
        log.debug(f"uploaded {local_path} ({size} bytes) to {remote_path}")

    #
    # File system structure
    #

    def create_file(self, path: str) -> None:
        """Create an empty remote file, truncating it if it already exists."""
        with self._sftp("create", path) as sftp:
            with sftp.open(path, "wb"):
                pass

    def create_directory(self, path: str) -> None:
        with self._sftp("mkdir", path) as sftp:
            sftp.mkdir(path)

    def delete_file(self, path: str) -> None:
        with self._sftp("remove", path) as sftp:
            sftp.remove(path)

    def delete_directory(self, path: str) -> None:
        """Delete a remote directory, which must be empty."""
        with self._sftp("rmdir", path) as sftp:
            sftp.rmdir(path)

    def rename(self, old_path: str, new_path: str) -> None:
        """Rename or move a remote entry."""
        with self._sftp("rename", old_path) as sftp:
            sftp.rename(old_path, new_path)
