"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os
import tempfile
from typing import Optional

from sftpbridge.logger import log


@dataclass
class ConnectionConfig:
    """Configuration variables related to establishing and using SFTP sessions."""

    max_attempts: int = 3
    initial_backoff: float = 0.5

    connect_timeout: float = 30.0

    # No per-operation timeout by default since slow links may take a long time to
    # transfer large files.
    operation_timeout: Optional[float] = None

    @staticmethod
    def load(section: SectionProxy) -> ConnectionConfig:
        """Load overridden variables from a section within a config file."""
        config = ConnectionConfig()

        config.max_attempts = section.getint(
            "max_attempts", fallback=config.max_attempts
        )
        config.initial_backoff = section.getfloat(
            "initial_backoff", fallback=config.initial_backoff
        )
        config.connect_timeout = section.getfloat(
            "connect_timeout", fallback=config.connect_timeout
        )
        config.operation_timeout = section.getfloat(
            "operation_timeout", fallback=config.operation_timeout
        )

        if config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        return config


@dataclass
class TransferConfig:
    """Configuration variables related to file transfers."""

    temp_dir: str = tempfile.gettempdir()

    @staticmethod
    def load(section: SectionProxy) -> TransferConfig:
        """Load overridden variables from a section within a config file."""
        config = TransferConfig()

        config.temp_dir = os.path.expanduser(
            section.get("temp_dir", fallback=config.temp_dir)
        )

        return config


@dataclass
class RegistryConfig:
    """Configuration variables related to the registry of remote targets."""

    path: str = os.path.expanduser("~/.sftpbridge/targets.json")
    legacy_path: str = os.path.expanduser("~/.sftpbridge/legacy.ini")

    @staticmethod
    def load(section: SectionProxy) -> RegistryConfig:
        """Load overridden variables from a section within a config file."""
        config = RegistryConfig()

        config.path = os.path.expanduser(section.get("path", fallback=config.path))
        config.legacy_path = os.path.expanduser(
            section.get("legacy_path", fallback=config.legacy_path)
        )

        return config


@dataclass
class Config:
    """Configuration variables."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "connection" in parser:
                config.connection = ConnectionConfig.load(parser["connection"])
            if "transfer" in parser:
                config.transfer = TransferConfig.load(parser["transfer"])
            if "registry" in parser:
                config.registry = RegistryConfig.load(parser["registry"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
