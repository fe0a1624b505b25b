"""Data structures and helpers used by multiple SFTP components."""

from __future__ import annotations

from dataclasses import dataclass
import errno
import posixpath
import stat
import threading
from typing import Optional

import paramiko

# POSIX file type bits of a mode and the value they take for directories.
FILE_TYPE_MASK = 0o170000
DIRECTORY_TYPE = 0o040000


def normalize_path(path: str) -> str:
    """
    Normalize a remote path to an absolute POSIX path without trailing slash.

    Unlike posixpath.normpath, a doubled leading slash is collapsed as well.
    """
    return posixpath.normpath("/" + path.lstrip("/"))


def child_path(parent: str, name: str) -> str:
    """Compose the path of an entry named name within the directory parent."""
    if parent == "/":
        return "/" + name
    else:
        return parent + "/" + name


def filename_of(path: str) -> str:
    """Return the last component of a path, or an empty string for the root."""
    if path == "/":
        return ""

    return posixpath.basename(path)


def parent_of(path: str) -> str:
    """Return the path of the directory containing path (the root is its own parent)."""
    return posixpath.dirname(path) or "/"


def is_directory_mode(mode: Optional[int]) -> bool:
    """Check if the file type bits of a protocol mode denote a directory."""
    return mode is not None and (mode & FILE_TYPE_MASK) == DIRECTORY_TYPE


@dataclass
class RemoteItem:
    """
    A single remote file system entry.

    The path is always absolute and normalized, without a trailing slash unless it is
    the root itself. The filename is the last component of the path, or empty for the
    root.
    """

    path: str
    filename: str
    is_directory: bool
    size: int = 0
    modification_time: Optional[float] = None
    permissions: Optional[int] = None

    @staticmethod
    def from_attributes(path: str, attrs: paramiko.SFTPAttributes) -> RemoteItem:
        """Instantiate from the attributes of a stat or directory listing."""
        is_directory = is_directory_mode(attrs.st_mode)

        if attrs.st_mtime is not None:
            modification_time: Optional[float] = float(attrs.st_mtime)
        else:
            modification_time = None

        return RemoteItem(
            path=path,
            filename=filename_of(path),
            is_directory=is_directory,
            size=0 if is_directory else (attrs.st_size or 0),
            modification_time=modification_time,
            permissions=attrs.st_mode,
        )

    @staticmethod
    def directory(path: str) -> RemoteItem:
        """Instantiate a synthetic directory entry without any known metadata."""
        return RemoteItem(path=path, filename=filename_of(path), is_directory=True)

    @property
    def parent_path(self) -> str:
        """Return the path of the directory containing this entry."""
        return parent_of(self.path)

    @property
    def version(self) -> str:
        """Return a version string that changes when the size or contents change."""
        return f"{self.size}_{self.modification_time or 0}"


class RemoteOperationError(Exception):
    """Exception raised when an SFTP operation fails, wrapping the original failure."""

    def __init__(self, operation: str, path: str, cause: BaseException) -> None:
        """Instantiate the exception for the failed operation on the given path."""
        super().__init__(f"{operation} failed for {path}: {cause}")

        self.operation = operation
        self.path = path
        self.cause = cause


class RemoteNotFoundError(RemoteOperationError):
    """Exception raised when an SFTP operation fails because the path doesn't exist."""


class LocalFileError(Exception):
    """Exception raised when a local file involved in a transfer can't be accessed."""


class TransferCancelledError(Exception):
    """Exception raised when a transfer stops because its progress was cancelled."""


def is_not_found(e: BaseException) -> bool:
    """Check if an exception raised by an SFTP call means that a path doesn't exist."""
    return isinstance(e, FileNotFoundError) or (
        isinstance(e, OSError) and e.errno == errno.ENOENT
    )


class Progress:
    """
    Thread-safe progress of a single transfer, along with its cancellation state.

    The completed count only ever increases, so observers polling it from other threads
    see monotonic progress.
    """

    def __init__(self, total: int = 0) -> None:
        """Instantiate progress for a transfer of the given number of bytes."""
        self._lock = threading.Lock()

        self._total = total
        self._completed = 0
        self._finished = False
        self._cancelled = threading.Event()

    @property
    def total(self) -> int:
        """Return the total number of bytes to transfer."""
        with self._lock:
            return self._total

    @total.setter
    def total(self, total: int) -> None:
        with self._lock:
            self._total = total

    @property
    def completed(self) -> int:
        """Return the number of bytes transferred so far."""
        with self._lock:
            return self._completed

    def advance_to(self, completed: int) -> None:
        """Report that the given number of bytes has been transferred in total."""
        with self._lock:
            self._completed = max(self._completed, completed)

    def finish(self) -> None:
        """Report that the transfer has completed in full."""
        with self._lock:
            self._completed = max(self._completed, self._total)
            self._finished = True

    @property
    def fraction(self) -> float:
        """Return the completed fraction of the transfer between 0.0 and 1.0."""
        with self._lock:
            if self._total <= 0:
                return 1.0 if self._finished else 0.0
            return min(1.0, self._completed / self._total)

    def cancel(self) -> None:
        """Request the transfer to stop as soon as possible."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        """Return whether cancellation has been requested."""
        return self._cancelled.is_set()

    def check(self) -> None:
        """Raise TransferCancelledError if cancellation has been requested."""
        if self.cancelled:
            raise TransferCancelledError("transfer cancelled")
