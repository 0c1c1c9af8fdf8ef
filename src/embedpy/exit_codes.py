"""Exit codes for embedpy CLI commands."""

# Success
SUCCESS = 0

# Errors
GENERAL_ERROR = 1
INVALID_ARGS = 2
VERSION_INVALID = 3
PLATFORM_UNSUPPORTED = 4
ASSET_NOT_FOUND = 5
INSTALLATION_FAILED = 6
INSTANCE_NOT_FOUND = 7
ENVIRONMENT_CONFLICT = 8
ENVIRONMENT_NOT_FOUND = 9
NETWORK_ERROR = 10
