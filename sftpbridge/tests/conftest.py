"""Module with shared fixtures and flags to enable tests against a live SFTP server."""

import os
import threading

import paramiko
import pytest

from sftpbridge.bridge import FilesystemBridge
from sftpbridge.sftp.connection import ConnectionManager, Session
from sftpbridge.sftp.operations import RemoteOperations


def pytest_addoption(parser):
    parser.addoption(
        "--sftp",
        action="store_true",
        default=False,
        help="Run tests against the SFTP server in SFTPBRIDGE_TEST_HOST",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "sftp: mark test as requiring an SFTP server")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--sftp"):
        skip_sftp = pytest.mark.skip(reason="only runs with --sftp option")

        for item in items:
            if "sftp" in item.keywords:
                item.add_marker(skip_sftp)


class LocalSFTP:
    """
    Stand-in for paramiko.SFTPClient that serves a local directory.

    Behaves like an sftp-server chrooted to the directory: paths are absolute, errors
    are raised as the same OSError subclasses and attributes are real SFTPAttributes.
    Transfers use a tiny chunk size so that progress is reported many times.
    """

    CHUNK_SIZE = 4

    def __init__(self, root):
        self.root = str(root)
        self.closed = False

    def _local(self, path):
        return os.path.join(self.root, path.lstrip("/"))

    def listdir_attr(self, path="."):
        local = self._local(path)

        entries = [
            paramiko.SFTPAttributes.from_stat(os.stat(local), "."),
            paramiko.SFTPAttributes.from_stat(os.stat(os.path.dirname(local)), ".."),
        ]

        for name in os.listdir(local):
            st = os.lstat(os.path.join(local, name))
            entries.append(paramiko.SFTPAttributes.from_stat(st, name))

        return entries

    def stat(self, path):
        return paramiko.SFTPAttributes.from_stat(os.stat(self._local(path)))

    def mkdir(self, path, mode=0o777):
        os.mkdir(self._local(path), mode)

    def rmdir(self, path):
        os.rmdir(self._local(path))

    def remove(self, path):
        os.remove(self._local(path))

    def rename(self, oldpath, newpath):
        # SFTP v3 rename refuses to replace existing entries
        if os.path.lexists(self._local(newpath)):
            raise IOError("Failure")

        os.rename(self._local(oldpath), self._local(newpath))

    def open(self, filename, mode="r", bufsize=-1):
        return open(self._local(filename), mode)

    def getfo(self, remotepath, fl, callback=None, prefetch=True):
        with open(self._local(remotepath), "rb") as f:
            size = os.fstat(f.fileno()).st_size
            transferred = 0

            while True:
                chunk = f.read(self.CHUNK_SIZE)
                if not chunk:
                    break

                fl.write(chunk)
                transferred += len(chunk)

                if callback is not None:
                    callback(transferred, size)

        return transferred

    def putfo(self, fl, remotepath, file_size=0, callback=None, confirm=True):
        with open(self._local(remotepath), "wb") as f:
            transferred = 0

            while True:
                chunk = fl.read(self.CHUNK_SIZE)
                if not chunk:
                    break

                f.write(chunk)
                transferred += len(chunk)

                if callback is not None:
                    callback(transferred, file_size)

        return self.stat(remotepath)

    def close(self):
        self.closed = True


class DownloadPause:
    """Holds downloads of a LocalSFTP before their first chunk until resumed."""

    def __init__(self, sftp):
        self.started = threading.Event()
        self.resume = threading.Event()

        self._getfo = sftp.getfo

    def getfo(self, remotepath, fl, callback=None, prefetch=True):
        def paused(transferred, total):
            if not self.started.is_set():
                self.started.set()
                self.resume.wait(5)

            if callback is not None:
                callback(transferred, total)

        return self._getfo(remotepath, fl, paused, prefetch)


@pytest.fixture
def remote_root(tmp_path):
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def sftp(remote_root):
    return LocalSFTP(remote_root)


@pytest.fixture
def connection(sftp):
    return ConnectionManager(lambda: Session(sftp), initial_backoff=0)


@pytest.fixture
def operations(connection, tmp_path):
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    return RemoteOperations(connection, temp_dir=str(temp_dir))


@pytest.fixture
def paused_download(sftp, monkeypatch):
    pause = DownloadPause(sftp)
    monkeypatch.setattr(sftp, "getfo", pause.getfo)
    return pause


@pytest.fixture
def bridge(operations):
    return FilesystemBridge("/", operations)
