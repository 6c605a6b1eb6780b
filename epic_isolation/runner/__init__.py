"""Safe external command execution (argument lists, no shell)."""

from epic_isolation.runner.executor import (
    CommandResult,
    GhRunner,
    GitRunner,
    run_command_safe,
)

__all__ = [
    "CommandResult",
    "GhRunner",
    "GitRunner",
    "run_command_safe",
]
