"""Process exit codes.

Each invocation ends with one of these. The values are part of the CLI
contract (schedulers and CI steps branch on them) and must stay stable:

- 0: success (including "nothing to do" and "already published")
- 1: user error (rejected repository URL or ref, bad CLI input)
- 2: environment error (gh missing or unauthenticated, invalid config)
- 3: build error (the remote build job did not succeed)
- 4: network error (remote unreachable after retries)
- 5: I/O error (version marker or state directory unusable)
- 6: publish error (release creation or artifact upload failed)
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Exit codes for CLI commands."""

    OK = 0
    USER_ERROR = 1
    ENV_ERROR = 2
    BUILD_ERROR = 3
    NETWORK_ERROR = 4
    IO_ERROR = 5
    PUBLISH_ERROR = 6

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")

    @property
    def is_success(self) -> bool:
        return self == ErrorCode.OK
