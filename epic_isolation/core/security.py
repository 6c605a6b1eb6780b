"""Path validation for worktree security.

Guards every filesystem mutation against:
- Path traversal ("..") used to escape the project area
- Symlink attacks (pre-placed links redirecting a create or delete)
- Relative paths that would be resolved against an unknown cwd
- Dangerous path components (separators, NUL, control characters)

All violations raise SecurityError. Callers catch it at the boundary
and convert it into a failure result of kind "security".
"""

import logging
import os
import re
import stat
from collections.abc import Iterable
from enum import Enum

from epic_isolation.core.errors import EpicIsolationError

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_WINDOWS_RESERVED = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])$", re.IGNORECASE)


class Violation(str, Enum):
    """Kind of security violation."""

    INVALID_INPUT = "invalid_input"
    RELATIVE_PATH = "relative_path"
    PATH_TRAVERSAL = "path_traversal"
    PATH_NOT_FOUND = "path_not_found"
    RESOLUTION_FAILED = "resolution_failed"
    INVALID_LOCATION = "invalid_location"
    SYMLINK_DETECTED = "symlink_detected"
    CHECK_FAILED = "check_failed"
    INVALID_CHARACTERS = "invalid_characters"
    RESERVED_NAME = "reserved_name"


class SecurityError(EpicIsolationError):
    """A path failed a security check."""

    def __init__(self, message: str, violation: Violation):
        self.violation = violation
        super().__init__(message)


def _has_traversal(path: str) -> bool:
    parts = re.split(r"[\\/]", path)
    return ".." in parts


def _is_within(path: str, root: str) -> bool:
    root = root.rstrip(os.sep) or os.sep
    if root == os.sep:
        return path.startswith(os.sep) and path != os.sep
    return path.startswith(root + os.sep)


def validate_project_path(input_path: str) -> str:
    """Validate a project path and return its canonical form.

    Checks, in order: non-empty string, absolute, no ".." component,
    exists. Symlinks are resolved so later boundary checks compare
    real locations.

    Raises:
        SecurityError: If any check fails
    """
    if not input_path or not isinstance(input_path, str):
        raise SecurityError(
            "Security: Project path must be a non-empty string", Violation.INVALID_INPUT
        )

    if not os.path.isabs(input_path):
        logger.warning(f"Path validation failed: relative path attempted: {input_path}")
        raise SecurityError("Security: Project path must be absolute", Violation.RELATIVE_PATH)

    # Reject suspicious input rather than normalizing it away
    if _has_traversal(input_path):
        logger.warning(f"Path validation failed: traversal detected in: {input_path}")
        raise SecurityError("Security: Path traversal detected", Violation.PATH_TRAVERSAL)

    if not os.path.exists(input_path):
        raise SecurityError("Security: Project path does not exist", Violation.PATH_NOT_FOUND)

    try:
        return os.path.realpath(input_path, strict=True)
    except OSError as e:
        logger.error(f"Failed to resolve real path for {input_path}: {e}")
        raise SecurityError(
            "Security: Failed to resolve path", Violation.RESOLUTION_FAILED
        ) from e


def validate_worktree_path(
    worktree_path: str,
    project_path: str,
    allowed_roots: Iterable[str] = (),
) -> None:
    """Validate a worktree path lies inside an allowed boundary.

    Allowed locations, compared after resolving symlinks:
    - a direct child of the project's parent directory (sibling)
    - anywhere inside the project directory (subfolder)
    - anywhere inside one of `allowed_roots` (custom base path)

    Args:
        worktree_path: Proposed worktree location
        project_path: Canonical project path from validate_project_path

    Raises:
        SecurityError: If the path is malformed or outside the boundary
    """
    if not worktree_path or not isinstance(worktree_path, str):
        raise SecurityError(
            "Security: Worktree path must be a non-empty string", Violation.INVALID_INPUT
        )

    if not project_path or not isinstance(project_path, str):
        raise SecurityError(
            "Security: Project path must be a non-empty string", Violation.INVALID_INPUT
        )

    if not os.path.isabs(worktree_path):
        logger.warning(f"Worktree path validation failed: relative path: {worktree_path}")
        raise SecurityError(
            "Security: Worktree path must be absolute", Violation.RELATIVE_PATH
        )

    if _has_traversal(worktree_path):
        logger.warning(f"Worktree path validation failed: traversal in: {worktree_path}")
        raise SecurityError(
            "Security: Path traversal detected in worktree path", Violation.PATH_TRAVERSAL
        )

    # realpath resolves symlinks in every existing ancestor, so a parent
    # swapped for a link to /etc is judged by where it really points
    resolved_worktree = os.path.realpath(worktree_path)
    resolved_project = os.path.realpath(project_path)

    is_sibling = os.path.dirname(resolved_worktree) == os.path.dirname(resolved_project)
    is_within_project = _is_within(resolved_worktree, resolved_project)
    is_within_allowed_root = any(
        _is_within(resolved_worktree, os.path.realpath(root))
        for root in allowed_roots
        if root and os.path.isabs(root)
    )

    if not (is_sibling or is_within_project or is_within_allowed_root):
        logger.warning(
            f"Worktree path validation failed: {worktree_path} is not a sibling of "
            f"or within {project_path}"
        )
        raise SecurityError(
            "Security: Worktree must be sibling or within project directory",
            Violation.INVALID_LOCATION,
        )


def ensure_not_symlink(target_path: str) -> None:
    """Refuse to operate on a path that is a symlink.

    A missing path is safe: there is no link to exploit yet.

    Raises:
        SecurityError: If the path is a symlink or cannot be inspected
    """
    if not target_path or not isinstance(target_path, str):
        raise SecurityError(
            "Security: Target path must be a non-empty string", Violation.INVALID_INPUT
        )

    try:
        # lstat inspects the path itself, not what it points to
        mode = os.lstat(target_path).st_mode
    except FileNotFoundError:
        return
    except OSError as e:
        logger.error(f"Failed to check symlink status for {target_path}: {e}")
        raise SecurityError(
            f"Security: Failed to verify path is not a symlink: {e.strerror or e}",
            Violation.CHECK_FAILED,
        ) from e

    if stat.S_ISLNK(mode):
        logger.warning(f"Security check failed: {target_path} is a symlink")
        raise SecurityError(
            "Security: Path is a symlink - refusing operation", Violation.SYMLINK_DETECTED
        )


def validate_path_component(name: str) -> None:
    """Validate a single directory or file name.

    Raises:
        SecurityError: If the name is empty or contains separators,
            NUL, control characters, or is a reserved device name
    """
    if not name or not isinstance(name, str):
        raise SecurityError(
            "Security: Path component must be a non-empty string", Violation.INVALID_INPUT
        )

    if "/" in name or "\\" in name:
        raise SecurityError(
            "Security: Path component cannot contain path separators",
            Violation.INVALID_CHARACTERS,
        )

    # NUL truncates strings in C-based APIs
    if "\x00" in name:
        raise SecurityError(
            "Security: Path component cannot contain null bytes",
            Violation.INVALID_CHARACTERS,
        )

    if _CONTROL_CHARS.search(name):
        raise SecurityError(
            "Security: Path component cannot contain control characters",
            Violation.INVALID_CHARACTERS,
        )

    if _WINDOWS_RESERVED.match(name):
        raise SecurityError(
            "Security: Path component uses reserved Windows name", Violation.RESERVED_NAME
        )
