"""External task command execution."""

from remote_task.command.runner import (
    CommandRequest,
    CommandResult,
    CommandRunner,
    describe_failure,
)

__all__ = [
    "CommandRequest",
    "CommandResult",
    "CommandRunner",
    "describe_failure",
]
