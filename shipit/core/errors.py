"""Process exit codes.

The CLI maps every fatal condition to one of these codes. Values are part of
the command-line contract and must stay stable.
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Exit codes for CLI commands; a clean run exits 0.

    - 2: Configuration error (config file missing or invalid)
    - 3: Environment error (gh, git or docker missing / not authenticated)
    - 4: Network error (GitHub unreachable on startup)
    """

    CONFIG_ERROR = 2
    ENV_ERROR = 3
    NETWORK_ERROR = 4

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")
