"""Module that persists the configured remote targets and their mount bindings."""

from __future__ import annotations

from configparser import ConfigParser
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
import json
import os
from typing import Any, Dict, Iterator, List, Optional
import uuid

import fasteners

from sftpbridge.constants import DEFAULT_SFTP_PORT
from sftpbridge.credentials import CredentialStore
from sftpbridge.logger import log
from sftpbridge.sftp.common import normalize_path


class AuthMethod(Enum):
    """Ways to authenticate with a remote target."""

    PASSWORD = "password"
    SSH_KEY = "sshKey"


@dataclass
class RemoteTarget:
    """A remote SFTP server and the directory on it that is exposed."""

    host: str = ""
    port: int = DEFAULT_SFTP_PORT
    username: str = ""
    auth_method: str = AuthMethod.PASSWORD.value
    base_path: str = "/"
    display_name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        """Normalize the base path, which defaults to the root when empty."""
        self.base_path = normalize_path(self.base_path) if self.base_path else "/"

    @property
    def is_valid(self) -> bool:
        """Check if the target has enough information to connect to it."""
        return bool(self.host) and bool(self.username) and self.port > 0

    def to_record(self) -> Dict[str, Any]:
        """Turn the target into its persisted representation."""
        return {
            "id": self.id,
            "displayName": self.display_name,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "authMethod": self.auth_method,
            "basePath": self.base_path,
        }

    @staticmethod
    def from_record(record: Dict[str, Any]) -> RemoteTarget:
        """Reconstruct a target from its persisted representation."""
        auth_method = record.get("authMethod", AuthMethod.PASSWORD.value)

        # Validates the value
        AuthMethod(auth_method)

        return RemoteTarget(
            id=str(uuid.UUID(record["id"])),
            display_name=record.get("displayName", ""),
            host=record["host"],
            port=int(record["port"]),
            username=record["username"],
            auth_method=auth_method,
            base_path=record.get("basePath") or "/",
        )


@dataclass
class _Document:
    """In-memory representation of the registry file."""

    targets: List[RemoteTarget] = field(default_factory=list)
    mounts: Dict[str, str] = field(default_factory=dict)
    legacy_migrated: bool = False


class TargetRegistry:
    """
    Persistent collection of remote targets.

    The registry is stored as a single JSON file. Every operation re-reads the file
    under an inter-process lock before changing it, so that a settings process and
    running bridges can share the registry without overwriting each other's changes.

    A target may be bound to at most one mount at a time. Deleting a target also
    deletes its binding and, through the credential store, its stored password.
    """

    def __init__(
        self,
        path: str,
        credentials: CredentialStore,
        legacy_path: Optional[str] = None,
    ) -> None:
        """Instantiate the registry stored at the given path."""
        self._path = path
        self._credentials = credentials
        self._legacy_path = legacy_path

        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    @property
    def _lock_path(self) -> str:
        """Return the path to the registry lock file."""
        return self._path + ".lock"

    #
    # Targets
    #

    def load_all(self) -> List[RemoteTarget]:
        """Return all registered targets."""
        with self._locked() as doc:
            return list(doc.targets)

    def get(self, target_id: str) -> Optional[RemoteTarget]:
        """Return the target with the given id, if any."""
        return next((t for t in self.load_all() if t.id == target_id), None)

    def add(self, target: RemoteTarget) -> None:
        """Register a new target."""
        if not target.is_valid:
            raise ValueError(f"invalid target {target.display_name or target.id}")

        with self._locked(save=True) as doc:
            if any(t.id == target.id for t in doc.targets):
                raise ValueError(f"target {target.id} already exists")

            doc.targets.append(target)

        log.info(f"added target {target.id} ({target.host})")

    def update(self, target: RemoteTarget) -> None:
        """Replace the registered target with the same id."""
        if not target.is_valid:
            raise ValueError(f"invalid target {target.display_name or target.id}")

        with self._locked(save=True) as doc:
            for i, existing in enumerate(doc.targets):
                if existing.id == target.id:
                    doc.targets[i] = target
                    break
            else:
                raise KeyError(target.id)

    def delete(self, target_id: str) -> None:
        """Remove a target along with its mount binding and stored credential."""
        with self._locked(save=True) as doc:
            removed = [t for t in doc.targets if t.id == target_id]
            doc.targets = [t for t in doc.targets if t.id != target_id]
            doc.mounts.pop(target_id, None)

        for target in removed:
            self._credentials.delete_password(target)
            log.info(f"deleted target {target.id}")

    #
    # Mount bindings
    #

    def bind(self, target_id: str, mount_id: str) -> None:
        """Record that a target is mounted under the given mount id."""
        with self._locked(save=True) as doc:
            if not any(t.id == target_id for t in doc.targets):
                raise KeyError(target_id)

            bound = doc.mounts.get(target_id)

            if bound is not None and bound != mount_id:
                raise ValueError(f"target {target_id} is already mounted as {bound}")

            for other_target, other_mount in doc.mounts.items():
                if other_mount == mount_id and other_target != target_id:
                    raise ValueError(f"mount {mount_id} is already bound")

            doc.mounts[target_id] = mount_id

    def unbind(self, target_id: str) -> None:
        """Forget the mount binding of a target."""
        with self._locked(save=True) as doc:
            doc.mounts.pop(target_id, None)

    def mount_for(self, target_id: str) -> Optional[str]:
        """Return the mount id a target is bound to, if any."""
        with self._locked() as doc:
            return doc.mounts.get(target_id)

    def target_for_mount(self, mount_id: str) -> Optional[RemoteTarget]:
        """Return the target bound to the given mount id, if any."""
        with self._locked() as doc:
            for target_id, bound in doc.mounts.items():
                if bound == mount_id:
                    return next((t for t in doc.targets if t.id == target_id), None)

        return None

    #
    # Migration
    #

    def migrate_legacy(self) -> Optional[str]:
        """
        Convert the legacy single-target configuration into a registry entry.

        This happens at most once per installation: the migration is marked as done
        even if there was nothing to migrate. The legacy target is only imported into an
        empty registry. Returns the id of the migrated target, if any.
        """
        with self._locked(save=True) as doc:
            if doc.legacy_migrated:
                return None

            doc.legacy_migrated = True

            if doc.targets:
                return None

            legacy = self._load_legacy()

            if legacy is None:
                return None

            doc.targets.append(legacy)

        self._migrate_legacy_password(legacy)
        self._clear_legacy()

        log.info(f"migrated legacy target to {legacy.id}")

        return legacy.id

    def _load_legacy(self) -> Optional[RemoteTarget]:
        """Read the legacy single-target configuration file, if there is one."""
        if self._legacy_path is None:
            return None

        parser = ConfigParser()

        try:
            with open(self._legacy_path, "r") as f:
                parser.read_string(f.read(), self._legacy_path)
        except FileNotFoundError:
            log.debug(f"no legacy target at {self._legacy_path}")
            return None

        if "sftp" not in parser:
            return None

        section = parser["sftp"]

        host = section.get("host", fallback="")
        username = section.get("username", fallback="")

        if not host or not username:
            return None

        port = section.getint("port", fallback=DEFAULT_SFTP_PORT)
        auth_method = section.get("auth_method", fallback=AuthMethod.PASSWORD.value)

        if auth_method not in {m.value for m in AuthMethod}:
            auth_method = AuthMethod.PASSWORD.value

        return RemoteTarget(
            host=host,
            port=port if port > 0 else DEFAULT_SFTP_PORT,
            username=username,
            auth_method=auth_method,
            base_path=section.get("base_path", fallback="/"),
            display_name=host,
        )

    def _migrate_legacy_password(self, target: RemoteTarget) -> None:
        """Copy the legacy password of a migrated target to its per-target key."""
        password = self._credentials.load_legacy_password(target.username)

        if password is None:
            return

        try:
            self._credentials.save_password(target, password)
        except Exception as e:
            # The target itself has been migrated, the user will be asked for the
            # password again.
            log.warning(f"failed to migrate password of {target.id}: {e}")
        else:
            self._credentials.delete_legacy_password(target.username)

    def _clear_legacy(self) -> None:
        """Remove the legacy single-target configuration file."""
        if self._legacy_path is None:
            return

        try:
            os.remove(self._legacy_path)
        except FileNotFoundError:
            pass

    #
    # Storage
    #

    @contextmanager
    def _locked(self, save: bool = False) -> Iterator[_Document]:
        """Provide exclusive access to the registry and optionally save it after."""
        with fasteners.InterProcessLock(self._lock_path):
            doc = self._read()

            yield doc

            if save:
                self._write(doc)

    def _read(self) -> _Document:
        """Deserialize the registry file."""
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return _Document()

        return _Document(
            targets=[RemoteTarget.from_record(r) for r in data.get("targets", [])],
            mounts=dict(data.get("mounts", {})),
            legacy_migrated=bool(data.get("legacyMigrated", False)),
        )

    def _write(self, doc: _Document) -> None:
        """Serialize the registry file, replacing it atomically."""
        data = {
            "targets": [t.to_record() for t in doc.targets],
            "mounts": doc.mounts,
            "legacyMigrated": doc.legacy_migrated,
        }

        tmp_path = f"{self._path}.{os.getpid()}.tmp"

        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)

        os.replace(tmp_path, self._path)
