"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

import semver

from sftpbridge.constants import PROTOCOL_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    action: str

    config: str
    debug: bool

    # serve
    target: str
    mount: Optional[str]
    port: int
    workers: int
    protocol: semver.VersionInfo

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Expose a remote directory over SFTP to a replicating host.",
            usage="sftpbridge [option...] {serve,targets} ...",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (protocol {PROTOCOL_VERSION})",
            help="show the program version and protocol version",
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.sftpbridge/config)",
            default="~/.sftpbridge/config",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        actions = parser.add_subparsers(dest="action", metavar="action")
        actions.required = True

        # Serve the bridge of a single target to the host
        serve = actions.add_parser("serve", help="serve the bridge of a target")
        serve.add_argument("target", type=str, help="id of the target to serve")
        serve.add_argument(
            "--mount", type=str, help="mount id to bind the target to while serving"
        )
        serve.add_argument(
            "--port",
            type=cls._parse_port,
            help="local port to serve the bridge on",
            default=31415,
        )
        serve.add_argument(
            "--workers",
            type=cls._parse_workers,
            help="number of concurrent requests to handle",
            default=4,
        )

        # Hidden flag to indicate the protocol version expected by the host
        serve.add_argument(
            "--protocol",
            type=cls._parse_version,
            default=semver.VersionInfo.parse(PROTOCOL_VERSION),
            help=argparse.SUPPRESS,
        )

        # List the registered targets
        actions.add_parser("targets", help="list the registered targets")

        return parser

    @staticmethod
    def _parse_version(arg: str) -> semver.VersionInfo:
        try:
            return semver.VersionInfo.parse(arg)
        except (ValueError, TypeError):
            raise argparse.ArgumentTypeError("expected semantic version string")

    @staticmethod
    def _parse_port(arg: str) -> int:
        try:
            val = int(arg)
            assert 0 < val < 65536
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected port number")

    @staticmethod
    def _parse_workers(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")
