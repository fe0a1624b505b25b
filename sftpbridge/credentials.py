"""
Module defining the interface to the credential storage of remote targets.

Secure storage of passwords is the responsibility of the host platform (a keychain,
secret service or similar). sftpbridge only needs to be able to load the password of a
target, clean it up when the target is deleted and move a legacy credential over to the
per-target key during migration.
"""

from abc import ABC, abstractmethod
import os
import threading
from typing import Dict, Optional, TYPE_CHECKING

from sftpbridge.constants import PASSWORD_ENV_VAR

if TYPE_CHECKING:
    from sftpbridge.registry import RemoteTarget


def account_key(target: "RemoteTarget") -> str:
    """Return the storage key of the credential of a target."""
    return f"{target.id}-{target.username}"


class CredentialStore(ABC):
    """Storage of the passwords of remote targets."""

    @abstractmethod
    def load_password(self, target: "RemoteTarget") -> Optional[str]:
        """Return the password of a target, or None if there is none."""

    @abstractmethod
    def save_password(self, target: "RemoteTarget", password: str) -> None:
        """Store the password of a target, replacing any existing one."""

    @abstractmethod
    def delete_password(self, target: "RemoteTarget") -> None:
        """Delete the password of a target if it exists."""

    def load_legacy_password(self, username: str) -> Optional[str]:
        """Return the password stored under the legacy single-target key."""
        return None

    def delete_legacy_password(self, username: str) -> None:
        """Delete the password stored under the legacy single-target key."""


class MemoryCredentialStore(CredentialStore):
    """Credential store that keeps passwords in memory."""

    def __init__(self, passwords: Optional[Dict[str, str]] = None) -> None:
        """Instantiate the store with passwords by (account or legacy) key."""
        self._lock = threading.Lock()
        self._passwords: Dict[str, str] = dict(passwords or {})

    def load_password(self, target: "RemoteTarget") -> Optional[str]:
        with self._lock:
            return self._passwords.get(account_key(target))

    def save_password(self, target: "RemoteTarget", password: str) -> None:
        with self._lock:
            self._passwords[account_key(target)] = password

    def delete_password(self, target: "RemoteTarget") -> None:
        with self._lock:
            self._passwords.pop(account_key(target), None)

    def load_legacy_password(self, username: str) -> Optional[str]:
        with self._lock:
            return self._passwords.get(username)

    def delete_legacy_password(self, username: str) -> None:
        with self._lock:
            self._passwords.pop(username, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._passwords


class EnvironmentCredentialStore(CredentialStore):
    """
    Read-only credential store that takes the password from an environment variable.

    The same password is returned for any target, which is suitable for a bridge
    process that serves a single target.
    """

    def __init__(self, variable: str = PASSWORD_ENV_VAR) -> None:
        """Instantiate the store for the given environment variable."""
        self._variable = variable

    def load_password(self, target: "RemoteTarget") -> Optional[str]:
        return os.environ.get(self._variable)

    def save_password(self, target: "RemoteTarget", password: str) -> None:
        raise PermissionError("environment credentials are read-only")

    def delete_password(self, target: "RemoteTarget") -> None:
        # Nothing is stored per target
        pass

    def load_legacy_password(self, username: str) -> Optional[str]:
        return os.environ.get(self._variable)
