"""Git worktree lifecycle for epic isolation.

Each epic in worktree mode gets its own git worktree. This module
lists, validates, creates and removes those worktrees. Every check
re-reads live state from git and the filesystem; nothing is cached.

Creation is a sequence of steps with a compensating-action stack: once
the worktree may exist on disk, any later failure unwinds it so the
target path never survives a failed call.
"""

import hashlib
import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from pathlib import Path

from filelock import FileLock, Timeout

from epic_isolation.core.config import WorktreeSettings
from epic_isolation.core.models import (
    CreateWorktreeResponse,
    CreateWorktreeResult,
    Epic,
    FailureKind,
    ListWorktreesResponse,
    ListWorktreesResult,
    Project,
    RemoveWorktreeResponse,
    RemoveWorktreeResult,
    WorktreeFailure,
    WorktreeInfo,
    WorktreeStatus,
    WorktreeValidationResult,
)
from epic_isolation.core.paths import derive_epic_path, generate_epic_branch_name
from epic_isolation.core.security import (
    SecurityError,
    ensure_not_symlink,
    validate_project_path,
    validate_worktree_path,
)
from epic_isolation.runner.executor import CommandResult, GitRunner

logger = logging.getLogger(__name__)

# Characters git rejects in ref names (see git-check-ref-format)
_INVALID_BRANCH_CHARS = frozenset("~^:?*[]\\")


def normalize_path(path: str) -> str:
    """Canonical form used for every path comparison.

    Both sides of a comparison are resolved through symlinks, so a
    project opened via a symlinked path still matches the real path git
    reports. Trailing slashes and "." segments are dropped as well.
    """
    return os.path.realpath(os.path.normpath(path))


def parse_worktree_list(output: str, project_path: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output.

    Format (blank line between entries):
        worktree /path/to/worktree
        HEAD abc123...
        branch refs/heads/main

    An entry is the main worktree if it is bare or its path equals the
    project path.
    """
    worktrees: list[WorktreeInfo] = []
    normalized_project = normalize_path(project_path)

    for block in output.strip().split("\n\n"):
        if not block.strip():
            continue

        path: str | None = None
        head = ""
        branch: str | None = None
        is_bare = False

        for line in block.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree ") :]
            elif line.startswith("HEAD "):
                head = line[len("HEAD ") :]
            elif line.startswith("branch "):
                branch = line[len("branch ") :].removeprefix("refs/heads/")
            elif line.strip() == "bare":
                is_bare = True

        if path:
            worktrees.append(
                WorktreeInfo(
                    path=path,
                    head=head,
                    branch=branch,
                    is_main_worktree=is_bare or normalize_path(path) == normalized_project,
                )
            )

    return worktrees


def validate_branch_name(branch_name: str) -> str | None:
    """Return an error message if branch_name is unusable, else None."""
    if not branch_name or not isinstance(branch_name, str) or not branch_name.strip():
        return "Branch name must be a non-empty string"

    has_control_chars = any(ord(char) < 32 or ord(char) == 127 for char in branch_name)
    if has_control_chars or any(char in _INVALID_BRANCH_CHARS for char in branch_name):
        return "Branch name contains invalid characters"

    return None


class _Rollback:
    """Stack of compensating actions, unwound in reverse on failure.

    Each action returns a warning string when it could not fully undo
    its step. Warnings are collected, never raised.
    """

    def __init__(self) -> None:
        self._actions: list[tuple[str, Callable[[], str | None]]] = []

    def push(self, description: str, action: Callable[[], str | None]) -> None:
        self._actions.append((description, action))

    def unwind(self) -> str | None:
        warnings: list[str] = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                warning = action()
            except OSError as e:
                logger.warning(f"Error during rollback ({description}): {e}")
                warning = f"Rollback error ({description}): {e}. Manual cleanup may be required."
            if warning:
                warnings.append(warning)
        return "; ".join(warnings) or None


def _security_failure(error: SecurityError) -> WorktreeFailure:
    return WorktreeFailure(error=str(error), kind=FailureKind.SECURITY)


class WorktreeManager:
    """Create, validate and remove epic worktrees.

    Usage:
        manager = WorktreeManager(settings=load_settings(config_path))
        result = manager.create_worktree(project, path, "feature/epic-abc12345")
        if not result.success:
            print(result.error)
    """

    LOCK_PREFIX = "epic-isolation-create"

    def __init__(
        self,
        runner: GitRunner | None = None,
        settings: WorktreeSettings | None = None,
    ):
        self.settings = settings or WorktreeSettings()
        self.runner = runner or GitRunner(timeout=self.settings.git_timeout)

    def _git(self, args: list[str], cwd: str) -> CommandResult:
        return self.runner.run(args, cwd)

    def _allowed_roots(self, base_path: str | None = None) -> tuple[str, ...]:
        return tuple(root for root in (base_path, self.settings.custom_base_path) if root)

    # --- Listing and validation ---

    def list_worktrees(self, project_path: str) -> ListWorktreesResponse:
        """List all git worktrees of the repository at project_path."""
        try:
            validate_project_path(project_path)
        except SecurityError as e:
            return _security_failure(e)

        result = self._git(["worktree", "list", "--porcelain"], project_path)
        if not result.success:
            return WorktreeFailure(
                error=f"Failed to list worktrees for {project_path}: "
                f"{result.error or 'Unknown error'}",
                kind=FailureKind.COMMAND,
            )

        worktrees = parse_worktree_list(result.output, project_path)
        logger.debug(f"Listed {len(worktrees)} worktree(s) for {project_path}")
        return ListWorktreesResult(worktrees=worktrees)

    def validate_worktree(
        self,
        worktree_path: str,
        project_path: str,
        expected_branch: str | None = None,
    ) -> WorktreeValidationResult:
        """Check an existing worktree before resuming work in it.

        Never raises. Problems are reported as CORRUPTED; a missing
        directory is MISSING_DIRECTORY regardless of other arguments.
        An empty expected_branch is still compared (only None skips it).
        """
        if not worktree_path or not isinstance(worktree_path, str):
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error="Worktree path must be a non-empty string",
            )

        if not project_path or not isinstance(project_path, str):
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error="Project path must be a non-empty string",
            )

        if not os.path.exists(worktree_path):
            return WorktreeValidationResult(status=WorktreeStatus.MISSING_DIRECTORY)

        try:
            return self._inspect_worktree(worktree_path, project_path, expected_branch)
        except OSError as e:
            logger.warning(f"Error validating worktree at {worktree_path}: {e}")
            return WorktreeValidationResult(status=WorktreeStatus.CORRUPTED, error=str(e))

    def _inspect_worktree(
        self,
        worktree_path: str,
        project_path: str,
        expected_branch: str | None,
    ) -> WorktreeValidationResult:
        if not os.path.isdir(worktree_path):
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error="Path exists but is not a directory",
            )

        # The main repository's list is authoritative
        listing = self._git(["worktree", "list", "--porcelain"], project_path)
        if not listing.success:
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error=f"Failed to list worktrees: {listing.error}",
            )

        normalized = normalize_path(worktree_path)
        worktrees = parse_worktree_list(listing.output, project_path)
        if not any(normalize_path(wt.path) == normalized for wt in worktrees):
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error="Directory exists but is not in worktree list",
            )

        branch_result = self._git(["branch", "--show-current"], worktree_path)
        if not branch_result.success:
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error=f"Failed to get current branch: {branch_result.error}",
            )
        current_branch = branch_result.output.strip()

        status_result = self._git(["status", "--porcelain"], worktree_path)
        if not status_result.success:
            return WorktreeValidationResult(
                status=WorktreeStatus.CORRUPTED,
                error=f"Failed to check git status: {status_result.error}",
            )
        has_uncommitted_changes = bool(status_result.output.strip())

        if expected_branch is not None and current_branch != expected_branch:
            return WorktreeValidationResult(
                status=WorktreeStatus.WRONG_BRANCH,
                branch=current_branch,
                expected_branch=expected_branch,
                has_uncommitted_changes=has_uncommitted_changes,
            )

        return WorktreeValidationResult(
            status=WorktreeStatus.VALID,
            branch=current_branch,
            has_uncommitted_changes=has_uncommitted_changes,
        )

    # --- Creation ---

    def _creation_lock(self, project_path: str) -> AbstractContextManager:
        """Per-project lock serializing the limit check and `worktree add`."""
        if not self.settings.serialize_creation:
            return nullcontext()
        digest = hashlib.sha256(project_path.encode("utf-8")).hexdigest()[:16]
        lock_path = Path(tempfile.gettempdir()) / f"{self.LOCK_PREFIX}-{digest}.lock"
        return FileLock(str(lock_path), timeout=self.settings.lock_timeout)

    def create_worktree(
        self,
        project_path: str,
        worktree_path: str,
        branch_name: str,
        max_worktrees: int | None = None,
        create_metadata_dir: bool = True,
        base_path: str | None = None,
    ) -> CreateWorktreeResponse:
        """Create a worktree on a new branch, rolling back on failure.

        Steps:
        1. Validate project path (security) -> canonical path
        2. Validate worktree path is inside an allowed boundary
        3. Enforce the worktree limit (main worktree not counted)
        4. Reject an existing target path
        5. Validate the branch name
        6. Create the parent directory (not rolled back)
        7. git worktree add <path> -b <branch>
        8. Verify the directory now exists
        9. Create the owner-only metadata directory

        base_path is a project-level custom root accepted by the boundary
        check in addition to settings.custom_base_path.
        """
        if max_worktrees is None:
            max_worktrees = self.settings.max_worktrees

        try:
            resolved_project = validate_project_path(project_path)
        except SecurityError as e:
            return _security_failure(e)

        try:
            validate_worktree_path(worktree_path, resolved_project, self._allowed_roots(base_path))
        except SecurityError as e:
            return _security_failure(e)

        try:
            with self._creation_lock(resolved_project):
                return self._create_locked(
                    resolved_project,
                    worktree_path,
                    branch_name,
                    max_worktrees,
                    create_metadata_dir,
                )
        except Timeout:
            logger.warning(f"Timed out waiting for worktree creation lock on {resolved_project}")
            return WorktreeFailure(
                error="Another worktree is being created for this project. Try again shortly.",
                kind=FailureKind.BUSY,
            )

    def create_epic_worktree(self, project: Project, epic: Epic) -> CreateWorktreeResponse:
        """Create the worktree for an epic from the project's own settings.

        The path comes from derive_epic_path and the branch from
        generate_epic_branch_name. The project's max_worktrees and custom
        base path apply to this creation.
        """
        derived = derive_epic_path(project, epic, self.settings)
        if not derived.success:
            return derived

        return self.create_worktree(
            project.path,
            derived.path,
            generate_epic_branch_name(epic.id, epic.title),
            max_worktrees=project.max_worktrees,
            base_path=project.worktree_base_path,
        )

    def _create_locked(
        self,
        project_path: str,
        worktree_path: str,
        branch_name: str,
        max_worktrees: int,
        create_metadata_dir: bool,
    ) -> CreateWorktreeResponse:
        listing = self.list_worktrees(project_path)
        if not listing.success:
            return listing

        linked = [wt for wt in listing.worktrees if not wt.is_main_worktree]
        if len(linked) >= max_worktrees:
            return WorktreeFailure(
                error=f"Worktree limit ({max_worktrees}) reached. Current count: {len(linked)}. "
                "Remove stale worktrees before creating new ones.",
                kind=FailureKind.LIMIT,
            )

        if os.path.lexists(worktree_path):
            return WorktreeFailure(
                error=f"Path already exists: {worktree_path}. "
                "Remove it first or use a different epic.",
                kind=FailureKind.COLLISION,
            )

        branch_error = validate_branch_name(branch_name)
        if branch_error:
            return WorktreeFailure(error=branch_error)

        # The parent directory is never rolled back
        parent_dir = os.path.dirname(os.path.normpath(worktree_path))
        if not os.path.isdir(parent_dir):
            try:
                os.makedirs(parent_dir, mode=0o755, exist_ok=True)
                logger.debug(f"Created parent directory: {parent_dir}")
            except OSError as e:
                return WorktreeFailure(error=f"Failed to create parent directory: {e}")

        rollback = _Rollback()
        try:
            return self._add_worktree(
                rollback, project_path, worktree_path, branch_name, create_metadata_dir
            )
        except Exception:
            logger.error(f"Unexpected error during worktree creation at {worktree_path}")
            rollback.unwind()
            raise

    def _add_worktree(
        self,
        rollback: _Rollback,
        project_path: str,
        worktree_path: str,
        branch_name: str,
        create_metadata_dir: bool,
    ) -> CreateWorktreeResponse:
        result = self._git(["worktree", "add", worktree_path, "-b", branch_name], project_path)

        # Step 4 guaranteed the path was free, so anything there now is ours
        if result.success or os.path.lexists(worktree_path):
            rollback.push(
                "remove worktree",
                lambda: self._discard_worktree(project_path, worktree_path),
            )

        if not result.success:
            if result.error and "already exists" in result.error:
                return self._rolled_back(
                    rollback,
                    f"Branch '{branch_name}' already exists. "
                    "Use a different branch name or delete the existing branch.",
                    FailureKind.COLLISION,
                )
            return self._rolled_back(
                rollback, result.error or "Failed to create worktree", FailureKind.COMMAND
            )

        # Guards against a command that reports success but produced nothing
        if not os.path.isdir(worktree_path):
            logger.error(
                f"Worktree creation reported success but directory does not exist: {worktree_path}"
            )
            return self._rolled_back(
                rollback,
                "Worktree creation succeeded but directory does not exist",
                FailureKind.COMMAND,
            )

        logger.info(f"Created worktree at {worktree_path} with branch {branch_name}")

        if create_metadata_dir:
            metadata_dir = os.path.join(worktree_path, self.settings.metadata_dir_name)
            try:
                ensure_not_symlink(metadata_dir)
            except SecurityError as e:
                return self._rolled_back(rollback, str(e), FailureKind.SECURITY)

            try:
                if not os.path.isdir(metadata_dir):
                    os.mkdir(metadata_dir, mode=0o700)
                    # mkdir's mode is filtered by the umask
                    os.chmod(metadata_dir, 0o700)
                    logger.debug(f"Created metadata directory (0o700): {metadata_dir}")
            except OSError as e:
                return self._rolled_back(
                    rollback,
                    f"Failed to create {self.settings.metadata_dir_name} directory: {e}",
                )

        return CreateWorktreeResult(worktree_path=worktree_path, branch_name=branch_name)

    def _rolled_back(
        self,
        rollback: _Rollback,
        error: str,
        kind: FailureKind = FailureKind.VALIDATION,
    ) -> WorktreeFailure:
        logger.debug(f"Rolling back worktree creation due to error: {error}")
        warning = rollback.unwind()
        return WorktreeFailure(error=error, kind=kind, rollback_warning=warning)

    def _discard_worktree(self, project_path: str, worktree_path: str) -> str | None:
        """Compensating action for `git worktree add`.

        Returns a warning if git could not remove the worktree. The
        directory is deleted directly in that case so the target path
        does not outlive the failed creation.
        """
        warning = None
        removed = self._git(["worktree", "remove", "--force", worktree_path], project_path)
        if not removed.success:
            logger.warning(f"Failed to remove worktree during rollback: {removed.error}")
            warning = f"Rollback failed: {removed.error}. Manual cleanup may be required."

        if os.path.islink(worktree_path):
            # Never follow a link while deleting
            os.unlink(worktree_path)
        elif os.path.isdir(worktree_path):
            shutil.rmtree(worktree_path)

        pruned = self._git(["worktree", "prune"], project_path)
        if not pruned.success:
            logger.error(f"Failed to prune worktrees during rollback: {pruned.error}")

        return warning

    # --- Removal ---

    def remove_worktree(
        self,
        worktree_path: str,
        project_path: str,
        force: bool = False,
        base_path: str | None = None,
    ) -> RemoveWorktreeResponse:
        """Remove a linked worktree and prune stale references.

        Refuses paths missing from git's worktree list and the main
        worktree. A prune failure after a successful removal is reported
        as a warning on a successful result.
        """
        if not worktree_path or not isinstance(worktree_path, str):
            return WorktreeFailure(error="Worktree path must be a non-empty string")

        if not project_path or not isinstance(project_path, str):
            return WorktreeFailure(error="Project path must be a non-empty string")

        try:
            resolved_project = validate_project_path(project_path)
        except SecurityError as e:
            return _security_failure(e)

        try:
            validate_worktree_path(worktree_path, resolved_project, self._allowed_roots(base_path))
        except SecurityError as e:
            return _security_failure(e)

        listing = self.list_worktrees(resolved_project)
        if not listing.success:
            return WorktreeFailure(
                error=f"Failed to list worktrees: {listing.error}", kind=listing.kind
            )

        normalized = normalize_path(worktree_path)
        found = next(
            (wt for wt in listing.worktrees if normalize_path(wt.path) == normalized), None
        )
        if found is None:
            return WorktreeFailure(
                error=f"Worktree not found in git worktree list: {worktree_path}. "
                "It may have already been removed or was never a valid worktree.",
                kind=FailureKind.NOT_FOUND,
            )

        if found.is_main_worktree:
            return WorktreeFailure(
                error="Cannot remove the main worktree. This is the primary repository directory."
            )

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(worktree_path)

        logger.debug(
            f"Removing worktree: {worktree_path} from project: {resolved_project}"
            f"{' (force)' if force else ''}"
        )
        removed = self._git(args, resolved_project)
        if not removed.success:
            if removed.error and "contains modified or untracked files" in removed.error:
                suggestion = (
                    "Commit or discard the changes first, or check if the worktree path is correct."
                    if force
                    else "Use force=True to remove anyway, or commit/discard changes first."
                )
                return WorktreeFailure(
                    error=f"Worktree has uncommitted changes. {suggestion}",
                    kind=FailureKind.COMMAND,
                )
            return WorktreeFailure(
                error=removed.error or "Failed to remove worktree", kind=FailureKind.COMMAND
            )

        pruned = self._git(["worktree", "prune"], resolved_project)
        if not pruned.success:
            logger.warning(f"Failed to prune worktrees after removal: {pruned.error}")
            return RemoveWorktreeResult(
                warning=f"Worktree removed but failed to prune stale references: {pruned.error}"
            )

        logger.info(f"Removed worktree: {worktree_path}")
        return RemoveWorktreeResult()
