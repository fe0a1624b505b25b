"""
Module implementing the command-line interface of sftpbridge.

The bridge runs as a separate process next to the replicating host. The host starts
`sftpbridge serve <target>` for every mounted target and talks to it over a local RPC
endpoint, authenticated with a token that is either taken from the environment or
generated and printed on the first line of stdout.
"""

import os
import secrets
import signal
import sys
from typing import List, NoReturn, Optional

from semver import VersionInfo

from sftpbridge.args import Arguments
from sftpbridge.bridge import FilesystemBridge
from sftpbridge.bridge.client import TRANSPORTED_EXCEPTIONS
from sftpbridge.config import Config
import sftpbridge.constants as constants
from sftpbridge.credentials import CredentialStore, EnvironmentCredentialStore
from sftpbridge.logger import log, set_verbosity
from sftpbridge.registry import TargetRegistry
import sftpbridge.rpc as rpc


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run the given action of sftpbridge.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    set_verbosity(args.debug)

    config = Config.load(os.path.expanduser(args.config))
    credentials = EnvironmentCredentialStore()

    try:
        registry = TargetRegistry(
            config.registry.path, credentials, config.registry.legacy_path
        )
        registry.migrate_legacy()

        if args.action == "serve":
            exit_code = serve(args, config, registry, credentials)
        else:
            exit_code = list_targets(registry)
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to {args.action}: {e}")
        exit_code = constants.BRIDGE_ERROR_CODE

    sys.exit(exit_code)


def serve(
    args: Arguments,
    config: Config,
    registry: TargetRegistry,
    credentials: CredentialStore,
) -> int:
    """Serve the bridge of a registered target until interrupted."""
    # Check if the host and the bridge use compatible protocols.
    if args.protocol.major != VersionInfo.parse(constants.PROTOCOL_VERSION).major:
        log.error(
            f"incompatible protocol ({args.protocol} != {constants.PROTOCOL_VERSION})"
        )
        return constants.BRIDGE_ERROR_CODE

    target = registry.get(args.target)

    if target is None:
        log.error(f"unknown target {args.target}")
        return constants.BRIDGE_ERROR_CODE

    bridge = FilesystemBridge.for_target(
        target, credentials.load_password(target), config
    )

    token = os.environ.get(constants.TOKEN_ENV_VAR)

    if not token:
        token = secrets.token_hex(16)

        # Hand the token to the host that started us
        sys.stdout.write(token + "\n")
        sys.stdout.flush()

    if args.mount:
        registry.bind(target.id, args.mount)

    try:
        server = rpc.Server(
            bridge, token, args.workers, exceptions=TRANSPORTED_EXCEPTIONS
        )
        server.serve(f"tcp://127.0.0.1:{args.port}")

        return 0
    finally:
        bridge.invalidate()

        if args.mount:
            registry.unbind(target.id)


def list_targets(registry: TargetRegistry) -> int:
    """Print the registered targets, one per line."""
    for target in registry.load_all():
        mount = registry.mount_for(target.id) or "-"

        print(
            f"{target.id}\t{target.display_name or target.host}\t"
            f"{target.username}@{target.host}:{target.port}{target.base_path}\t{mount}"
        )

    return 0


if __name__ == "__main__":
    main()
