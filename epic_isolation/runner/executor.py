"""Safe command runner for git and gh.

Commands are always passed as argument lists and executed without a
shell, so user-controlled values (epic titles, branch names, paths)
can never be interpreted as shell syntax.
"""

import logging
import signal
import subprocess
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Prevent downstream memory issues from unbounded command output
MAX_OUTPUT_BYTES = 10 * 1024 * 1024


class CommandResult(BaseModel):
    """Result of a command run through the safe runner."""

    success: bool
    output: str = ""
    error: str | None = None


def _truncate_output(output: str, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def run_command_safe(
    tool: str,
    args: list[str],
    cwd: str | Path,
    timeout: float | None = None,
) -> CommandResult:
    """Run `tool` with an argument list in `cwd`.

    Never raises for command failures. The error text distinguishes a
    missing binary, a timeout and termination by signal; otherwise the
    command's stderr is preferred over a generic message.

    Args:
        tool: Executable name, e.g. "git"
        args: Arguments without the tool name
        cwd: Working directory (must be non-empty)
        timeout: Optional timeout in seconds (no default)
    """
    label = tool.capitalize()

    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        return CommandResult(
            success=False,
            error=f"Invalid arguments: expected list of {tool} command arguments",
        )

    if not cwd or not str(cwd).strip():
        return CommandResult(
            success=False,
            error="Invalid working directory: cwd must be a non-empty string",
        )

    command = [tool, *args]
    try:
        result = subprocess.run(
            command,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        # Raised both for a missing binary and a missing cwd
        if e.filename == tool:
            error = f"{label} is not installed or not in PATH"
        else:
            error = f"Working directory does not exist: {cwd}"
        logger.debug(f"{label} command failed: {' '.join(command)} in {cwd} - {error}")
        return CommandResult(success=False, error=error)
    except subprocess.TimeoutExpired:
        error = f"{label} command timed out after {timeout}s"
        logger.debug(f"{label} command failed: {' '.join(command)} in {cwd} - {error}")
        return CommandResult(success=False, error=error)
    except (NotADirectoryError, PermissionError) as e:
        error = f"Cannot run {tool} in {cwd}: {e.strerror or e}"
        logger.debug(f"{label} command failed: {' '.join(command)} in {cwd} - {error}")
        return CommandResult(success=False, error=error)

    if result.returncode == 0:
        return CommandResult(success=True, output=_truncate_output(result.stdout.strip()))

    stderr = (result.stderr or "").strip()
    if result.returncode < 0:
        error = f"{label} command was terminated by signal {_signal_name(-result.returncode)}"
        if stderr:
            error = f"{error}: {stderr}"
    elif stderr:
        error = _truncate_output(stderr)
    else:
        error = f"{label} command failed with exit code {result.returncode}"

    # Failed commands are logged for debugging and audit trail
    logger.debug(f"{label} command failed: {' '.join(command)} in {cwd} - {error}")
    return CommandResult(success=False, error=error)


class GitRunner:
    """Runs `git <args>` through the safe runner."""

    TOOL = "git"

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    def run(self, args: list[str], cwd: str | Path) -> CommandResult:
        return run_command_safe(self.TOOL, args, cwd, timeout=self.timeout)


class GhRunner(GitRunner):
    """Runs the GitHub CLI (`gh <args>`) through the safe runner."""

    TOOL = "gh"
