"""Module defining various global constants."""

# sftpbridge version
VERSION = "1.0.0"

# Bridge RPC protocol
# The major version must be identical on the host and the bridge.
#
# Adding bridge operations or item fields can be done without a major version bump as
# long as existing calls keep their signatures.
PROTOCOL_VERSION = "1.0.0"

# Special exit code for when sftpbridge itself fails.
BRIDGE_ERROR_CODE = 254

# Port used for targets that don't specify one.
DEFAULT_SFTP_PORT = 22

# Name of the environment variable with the password for the served target.
PASSWORD_ENV_VAR = "SFTPBRIDGE_PASSWORD"

# Name of the environment variable with the RPC token for the bridge service.
TOKEN_ENV_VAR = "SFTPBRIDGE_TOKEN"
