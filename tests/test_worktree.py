"""Tests for the git worktree lifecycle manager.

Most tests drive WorktreeManager through the scripted runner so each git
answer can be controlled. Tests marked `git` run the real binary
against a temporary repository.
"""

from __future__ import annotations

import os
import stat
import subprocess
from pathlib import Path

import pytest

from epic_isolation.core.config import WorktreeSettings
from epic_isolation.core.models import Epic, FailureKind, Project, WorktreeLocation, WorktreeStatus
from epic_isolation.core.paths import derive_epic_path, derive_path, generate_epic_branch_name
from epic_isolation.core.worktree import (
    WorktreeManager,
    normalize_path,
    parse_worktree_list,
    validate_branch_name,
)
from epic_isolation.runner.executor import CommandResult

EPIC_ID = "abc12345-6789-4def-8123-456789abcdef"


def _fail(error: str) -> CommandResult:
    return CommandResult(success=False, error=error)


def _creates_dir(result: CommandResult):
    """`worktree add` stand-in that creates the target directory first."""

    def _run(args: list[str], cwd: str) -> CommandResult:
        Path(args[2]).mkdir(parents=True)
        return result

    return _run


@pytest.fixture
def sibling(project_dir: Path) -> Path:
    return project_dir.parent / "app-epic-abc12345-fix-login-bug"


@pytest.fixture
def manager(fake_runner, settings) -> WorktreeManager:
    return WorktreeManager(runner=fake_runner, settings=settings)


@pytest.fixture
def listed(fake_runner, worktree_list, project_dir: Path):
    """Script `worktree list` with the main worktree plus the given paths."""

    def _listed(*paths: Path) -> None:
        entries = [(os.path.realpath(project_dir), "main")]
        entries += [(str(p), f"feature/{p.name}") for p in paths]
        output = worktree_list(*entries)
        fake_runner.on(["worktree", "list"], CommandResult(success=True, output=output))

    return _listed


# =============================================================================
# Parsing Helpers
# =============================================================================


class TestParseWorktreeList:
    """Tests for parse_worktree_list."""

    def test_main_and_linked(self, project_dir: Path, worktree_list):
        output = worktree_list((str(project_dir), "main"), ("/x/app-epic-abc12345", "feature/x"))

        worktrees = parse_worktree_list(output, str(project_dir))

        assert [wt.is_main_worktree for wt in worktrees] == [True, False]
        assert worktrees[0].branch == "main"
        assert worktrees[1].branch == "feature/x"
        assert worktrees[1].head == "a" * 40

    def test_detached_head(self, project_dir: Path, worktree_list):
        output = worktree_list((str(project_dir), "main"), ("/x/wt", None))
        assert parse_worktree_list(output, str(project_dir))[1].branch is None

    def test_bare_entry_is_main(self, project_dir: Path, worktree_list):
        output = worktree_list(("/srv/app.git", None), ("/srv/app", "main"), bare_first=True)

        worktrees = parse_worktree_list(output, str(project_dir))

        assert worktrees[0].is_main_worktree
        assert not worktrees[1].is_main_worktree

    def test_symlinked_project_path_matches(self, project_dir: Path, tmp_path: Path, worktree_list):
        link = tmp_path / "app-link"
        link.symlink_to(project_dir)
        output = worktree_list((os.path.realpath(project_dir), "main"))

        assert parse_worktree_list(output, str(link))[0].is_main_worktree

    def test_empty_output(self, project_dir: Path):
        assert parse_worktree_list("", str(project_dir)) == []

    def test_normalize_path_drops_trailing_slash(self, project_dir: Path):
        assert normalize_path(f"{project_dir}/") == normalize_path(str(project_dir))


class TestValidateBranchName:
    """Tests for validate_branch_name."""

    @pytest.mark.parametrize("name", ["feature/epic-abc12345-fix", "main", "a.b_c-d"])
    def test_valid(self, name):
        assert validate_branch_name(name) is None

    @pytest.mark.parametrize("name", ["", "   "])
    def test_empty(self, name):
        assert validate_branch_name(name) == "Branch name must be a non-empty string"

    @pytest.mark.parametrize("name", ["a~1", "a^", "a:b", "a?", "a*", "a[b]", "a\\b", "a\nb"])
    def test_invalid_characters(self, name):
        assert validate_branch_name(name) == "Branch name contains invalid characters"


# =============================================================================
# Creation
# =============================================================================


class TestCreateWorktree:
    """Tests for create_worktree with a scripted runner."""

    def test_success_creates_metadata_dir(self, manager, fake_runner, listed, project_dir, sibling):
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/epic-abc12345")

        assert result.success
        assert result.worktree_path == str(sibling)
        assert result.branch_name == "feature/epic-abc12345"
        metadata = sibling / ".claude"
        assert metadata.is_dir()
        assert stat.S_IMODE(metadata.stat().st_mode) == 0o700
        add_args, add_cwd = next(c for c in fake_runner.calls if c[0][:2] == ["worktree", "add"])
        assert add_args == ["worktree", "add", str(sibling), "-b", "feature/epic-abc12345"]
        assert add_cwd == os.path.realpath(project_dir)

    def test_metadata_dir_optional(self, manager, fake_runner, listed, project_dir, sibling):
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        result = manager.create_worktree(
            str(project_dir), str(sibling), "feature/x", create_metadata_dir=False
        )

        assert result.success
        assert not (sibling / ".claude").exists()

    def test_creates_missing_parent(self, manager, fake_runner, listed, project_dir):
        target = project_dir / ".worktrees" / "epic-abc12345"
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        result = manager.create_worktree(str(project_dir), str(target), "feature/x")

        assert result.success
        assert (project_dir / ".worktrees").is_dir()

    def test_limit_reached_never_adds(self, manager, fake_runner, listed, project_dir, sibling):
        listed(*(project_dir.parent / f"wt-{n}" for n in range(5)))

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert not result.success
        assert result.kind is FailureKind.LIMIT
        assert "Worktree limit (5) reached. Current count: 5" in result.error
        assert not fake_runner.called("worktree", "add")
        assert not sibling.exists()

    def test_main_worktree_not_counted(self, manager, fake_runner, listed, project_dir, sibling):
        listed(*(project_dir.parent / f"wt-{n}" for n in range(4)))
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        assert manager.create_worktree(str(project_dir), str(sibling), "feature/x").success

    def test_explicit_limit_overrides_settings(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        listed(project_dir.parent / "wt-0")

        result = manager.create_worktree(
            str(project_dir), str(sibling), "feature/x", max_worktrees=1
        )

        assert result.kind is FailureKind.LIMIT
        assert not fake_runner.called("worktree", "add")

    def test_existing_path_is_collision(self, manager, fake_runner, listed, project_dir, sibling):
        listed()
        sibling.mkdir()

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.kind is FailureKind.COLLISION
        assert "Path already exists" in result.error
        assert not fake_runner.called("worktree", "add")

    def test_invalid_branch(self, manager, fake_runner, listed, project_dir, sibling):
        listed()

        result = manager.create_worktree(str(project_dir), str(sibling), "bad~branch")

        assert result.error == "Branch name contains invalid characters"
        assert not fake_runner.called("worktree", "add")

    def test_outside_boundary_is_security_failure(self, manager, fake_runner, project_dir):
        result = manager.create_worktree(str(project_dir), "/var/tmp/x/y/wt", "feature/x")

        assert result.kind is FailureKind.SECURITY
        assert fake_runner.calls == []

    def test_missing_project_is_security_failure(self, manager, fake_runner, tmp_path):
        result = manager.create_worktree(
            str(tmp_path / "gone"), str(tmp_path / "gone-epic-abc12345"), "feature/x"
        )

        assert result.kind is FailureKind.SECURITY
        assert fake_runner.calls == []

    def test_custom_base_path_allowed_by_settings(self, fake_runner, listed, project_dir, tmp_path):
        base = tmp_path / "trees"
        manager = WorktreeManager(
            runner=fake_runner, settings=WorktreeSettings(custom_base_path=str(base))
        )
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        result = manager.create_worktree(
            str(project_dir), str(base / "app-epic-abc12345"), "feature/x"
        )

        assert result.success

    def test_project_custom_base_path_allowed(self, manager, fake_runner, listed, project_dir, tmp_path):
        base = tmp_path / "elsewhere" / "wts"
        project = Project(
            id="p", name="app", path=str(project_dir),
            worktree_location=WorktreeLocation.CUSTOM, worktree_base_path=str(base),
        )
        derived = derive_epic_path(project, Epic(id=EPIC_ID, project_id="p", title="Fix Login Bug"))
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        result = manager.create_worktree(
            project.path, derived.path, "feature/x", base_path=project.worktree_base_path
        )

        assert derived.path == str(base / "app-epic-abc12345-fix-login-bug")
        assert result.success

    def test_project_custom_base_path_required(self, manager, fake_runner, project_dir, tmp_path):
        target = tmp_path / "elsewhere" / "wts" / "app-epic-abc12345"

        result = manager.create_worktree(str(project_dir), str(target), "feature/x")

        assert result.kind is FailureKind.SECURITY
        assert fake_runner.calls == []

    def test_epic_worktree_uses_derived_path_and_branch(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        project = Project(id="p", name="app", path=str(project_dir))
        epic = Epic(id=EPIC_ID, project_id="p", title="Fix Login Bug")
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        result = manager.create_epic_worktree(project, epic)

        assert result.success
        assert result.worktree_path == str(sibling)
        assert result.branch_name == "feature/epic-abc12345-fix-login-bug"

    def test_epic_worktree_applies_project_limit(
        self, manager, fake_runner, listed, project_dir
    ):
        project = Project(id="p", name="app", path=str(project_dir), max_worktrees=1)
        epic = Epic(id=EPIC_ID, project_id="p", title="Fix Login Bug")
        listed(project_dir.parent / "app-epic-00000000")

        result = manager.create_epic_worktree(project, epic)

        assert result.kind is FailureKind.LIMIT
        assert "Worktree limit (1) reached" in result.error
        assert not fake_runner.called("worktree", "add")

    def test_list_failure_returned(self, manager, fake_runner, project_dir, sibling):
        fake_runner.on(["worktree", "list"], _fail("fatal: not a git repository"))

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.kind is FailureKind.COMMAND
        assert "not a git repository" in result.error

    def test_existing_branch_is_collision(self, manager, fake_runner, listed, project_dir, sibling):
        listed()
        fake_runner.on(
            ["worktree", "add"], _fail("fatal: a branch named 'feature/x' already exists")
        )

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.kind is FailureKind.COLLISION
        assert result.error.startswith("Branch 'feature/x' already exists")
        assert not sibling.exists()


class TestCreateRollback:
    """After any failing create_worktree call the target path does not exist."""

    def test_add_failure_after_partial_checkout(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(_fail("fatal: checkout failed")))

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert not result.success
        assert result.kind is FailureKind.COMMAND
        assert result.error == "fatal: checkout failed"
        assert result.rollback_warning is None
        assert not sibling.exists()
        assert fake_runner.called("worktree", "remove", "--force")
        assert fake_runner.called("worktree", "prune")

    def test_reported_success_without_directory(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        listed()

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.error == "Worktree creation succeeded but directory does not exist"
        assert not sibling.exists()

    def test_symlinked_metadata_dir_rolled_back(
        self, manager, fake_runner, listed, project_dir, sibling, tmp_path
    ):
        outside = tmp_path / "outside"
        outside.mkdir()

        def _add(args: list[str], cwd: str) -> CommandResult:
            Path(args[2]).mkdir()
            (Path(args[2]) / ".claude").symlink_to(outside)
            return CommandResult(success=True)

        listed()
        fake_runner.on(["worktree", "add"], _add)

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.kind is FailureKind.SECURITY
        assert not sibling.exists()
        assert outside.is_dir()

    def test_compensation_failure_becomes_warning(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(_fail("fatal: checkout failed")))
        fake_runner.on(["worktree", "remove"], _fail("fatal: locked"))

        result = manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.error == "fatal: checkout failed"
        assert "Rollback failed: fatal: locked" in result.rollback_warning
        assert not sibling.exists()

    def test_unexpected_exception_unwinds_and_propagates(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))
        fake_runner.on(["worktree", "remove"], _fail("fatal: locked"))

        original_mkdir = os.mkdir

        def _mkdir(path, mode=0o777):
            if str(path).endswith(".claude"):
                raise RuntimeError("disk on fire")
            return original_mkdir(path, mode)

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("epic_isolation.core.worktree.os.mkdir", _mkdir)
            with pytest.raises(RuntimeError, match="disk on fire"):
                manager.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert not sibling.exists()

    def test_lock_timeout_is_busy(self, fake_runner, listed, project_dir, sibling):
        manager = WorktreeManager(
            runner=fake_runner, settings=WorktreeSettings(lock_timeout=0.1)
        )
        listed()

        with manager._creation_lock(os.path.realpath(project_dir)):
            other = WorktreeManager(
                runner=fake_runner, settings=WorktreeSettings(lock_timeout=0.1)
            )
            result = other.create_worktree(str(project_dir), str(sibling), "feature/x")

        assert result.kind is FailureKind.BUSY
        assert not fake_runner.called("worktree", "add")

    def test_serialization_can_be_disabled(self, fake_runner, listed, project_dir, sibling):
        manager = WorktreeManager(
            runner=fake_runner, settings=WorktreeSettings(serialize_creation=False)
        )
        listed()
        fake_runner.on(["worktree", "add"], _creates_dir(CommandResult(success=True)))

        assert manager.create_worktree(str(project_dir), str(sibling), "feature/x").success


# =============================================================================
# Validation
# =============================================================================


class TestValidateWorktree:
    """Tests for the validate_worktree state machine."""

    @pytest.mark.parametrize("expected_branch", [None, "", "main", "feature/x"])
    @pytest.mark.parametrize("project", ["/definitely/missing", "/"])
    def test_missing_directory(self, manager, fake_runner, tmp_path, expected_branch, project):
        result = manager.validate_worktree(str(tmp_path / "gone"), project, expected_branch)

        assert result.status is WorktreeStatus.MISSING_DIRECTORY
        assert fake_runner.calls == []

    @pytest.mark.parametrize("worktree, project", [("", "/repo"), ("/repo-wt", "")])
    def test_invalid_input_is_corrupted(self, manager, worktree, project):
        result = manager.validate_worktree(worktree, project)
        assert result.status is WorktreeStatus.CORRUPTED
        assert "non-empty string" in result.error

    def test_file_is_corrupted(self, manager, project_dir, sibling):
        sibling.write_text("not a dir")

        result = manager.validate_worktree(str(sibling), str(project_dir))

        assert result.status is WorktreeStatus.CORRUPTED
        assert result.error == "Path exists but is not a directory"

    def test_list_failure_is_corrupted(self, manager, fake_runner, project_dir, sibling):
        sibling.mkdir()
        fake_runner.on(["worktree", "list"], _fail("fatal: boom"))

        result = manager.validate_worktree(str(sibling), str(project_dir))

        assert result.status is WorktreeStatus.CORRUPTED
        assert "Failed to list worktrees" in result.error

    def test_unregistered_directory_is_corrupted(self, manager, listed, project_dir, sibling):
        sibling.mkdir()
        listed()

        result = manager.validate_worktree(str(sibling), str(project_dir))

        assert result.status is WorktreeStatus.CORRUPTED
        assert result.error == "Directory exists but is not in worktree list"

    def test_branch_failure_is_corrupted(self, manager, fake_runner, listed, project_dir, sibling):
        sibling.mkdir()
        listed(sibling)
        fake_runner.on(["branch"], _fail("fatal: bad HEAD"))

        result = manager.validate_worktree(str(sibling), str(project_dir))

        assert result.status is WorktreeStatus.CORRUPTED
        assert "Failed to get current branch" in result.error

    def test_status_failure_is_corrupted(self, manager, fake_runner, listed, project_dir, sibling):
        sibling.mkdir()
        listed(sibling)
        fake_runner.on(["status"], _fail("fatal: index corrupt"))

        result = manager.validate_worktree(str(sibling), str(project_dir))

        assert result.status is WorktreeStatus.CORRUPTED
        assert "Failed to check git status" in result.error

    def test_valid_with_changes(self, manager, fake_runner, listed, project_dir, sibling):
        sibling.mkdir()
        listed(sibling)
        fake_runner.on(["branch"], CommandResult(success=True, output="feature/x"))
        fake_runner.on(["status"], CommandResult(success=True, output="?? new.txt"))

        result = manager.validate_worktree(str(sibling), str(project_dir), "feature/x")

        assert result.status is WorktreeStatus.VALID
        assert result.branch == "feature/x"
        assert result.has_uncommitted_changes is True

    def test_wrong_branch(self, manager, fake_runner, listed, project_dir, sibling):
        sibling.mkdir()
        listed(sibling)
        fake_runner.on(["branch"], CommandResult(success=True, output="main"))

        result = manager.validate_worktree(str(sibling), str(project_dir), "feature/x")

        assert result.status is WorktreeStatus.WRONG_BRANCH
        assert result.branch == "main"
        assert result.expected_branch == "feature/x"
        assert result.has_uncommitted_changes is False

    def test_empty_expected_branch_is_compared(
        self, manager, fake_runner, listed, project_dir, sibling
    ):
        sibling.mkdir()
        listed(sibling)
        fake_runner.on(["branch"], CommandResult(success=True, output="main"))

        result = manager.validate_worktree(str(sibling), str(project_dir), "")

        assert result.status is WorktreeStatus.WRONG_BRANCH

    def test_os_error_is_corrupted(self, manager, fake_runner, listed, project_dir, sibling):
        sibling.mkdir()
        listed(sibling)
        def _io_error(args: list[str], cwd: str) -> CommandResult:
            raise OSError("EIO")

        fake_runner.on(["branch"], _io_error)

        result = manager.validate_worktree(str(sibling), str(project_dir))

        assert result.status is WorktreeStatus.CORRUPTED
        assert result.error == "EIO"


# =============================================================================
# Removal
# =============================================================================


class TestRemoveWorktree:
    """Tests for remove_worktree with a scripted runner."""

    def test_success_prunes(self, manager, fake_runner, listed, project_dir, sibling):
        listed(sibling)

        result = manager.remove_worktree(str(sibling), str(project_dir))

        assert result.success
        assert result.warning is None
        assert (["worktree", "remove", str(sibling)], os.path.realpath(project_dir)) in (
            fake_runner.calls
        )
        assert fake_runner.called("worktree", "prune")

    def test_force_flag(self, manager, fake_runner, listed, project_dir, sibling):
        listed(sibling)

        manager.remove_worktree(str(sibling), str(project_dir), force=True)

        assert fake_runner.called("worktree", "remove", "--force", str(sibling))

    def test_project_custom_base_path(self, manager, fake_runner, listed, project_dir, tmp_path):
        base = tmp_path / "elsewhere" / "wts"
        target = base / "app-epic-abc12345"
        target.mkdir(parents=True)
        listed(target)

        refused = manager.remove_worktree(str(target), str(project_dir))
        result = manager.remove_worktree(str(target), str(project_dir), base_path=str(base))

        assert refused.kind is FailureKind.SECURITY
        assert result.success
        assert fake_runner.called("worktree", "remove", str(target))

    def test_not_in_list(self, manager, listed, project_dir, sibling):
        listed()

        result = manager.remove_worktree(str(sibling), str(project_dir))

        assert result.kind is FailureKind.NOT_FOUND
        assert "Worktree not found in git worktree list" in result.error

    def test_refuses_main_worktree_path_equals_root(
        self, manager, fake_runner, listed, project_dir
    ):
        listed()

        result = manager.remove_worktree(str(project_dir), str(project_dir))

        assert not result.success
        assert "Cannot remove the main worktree" in result.error
        assert not fake_runner.called("worktree", "remove")

    def test_refuses_main_worktree_bare_shape(
        self, manager, fake_runner, worktree_list, project_dir
    ):
        bare = project_dir.parent / "app.git"
        output = worktree_list((str(bare), None), (str(project_dir), "main"), bare_first=True)
        fake_runner.on(["worktree", "list"], CommandResult(success=True, output=output))

        result = manager.remove_worktree(str(bare), str(project_dir))

        assert not result.success
        assert "Cannot remove the main worktree" in result.error
        assert not fake_runner.called("worktree", "remove")

    def test_uncommitted_changes_guidance(self, manager, fake_runner, listed, project_dir, sibling):
        listed(sibling)
        fake_runner.on(
            ["worktree", "remove"],
            _fail(f"fatal: '{sibling}' contains modified or untracked files, use --force"),
        )

        result = manager.remove_worktree(str(sibling), str(project_dir))

        assert result.kind is FailureKind.COMMAND
        assert result.error.startswith("Worktree has uncommitted changes.")
        assert "force=True" in result.error

    def test_prune_failure_is_warning(self, manager, fake_runner, listed, project_dir, sibling):
        listed(sibling)
        fake_runner.on(["worktree", "prune"], _fail("fatal: prune"))

        result = manager.remove_worktree(str(sibling), str(project_dir))

        assert result.success
        assert "failed to prune" in result.warning

    def test_outside_boundary(self, manager, fake_runner, project_dir):
        result = manager.remove_worktree("/var/tmp/x/y", str(project_dir))

        assert result.kind is FailureKind.SECURITY
        assert fake_runner.calls == []


# =============================================================================
# Real git
# =============================================================================


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    ).stdout


@pytest.mark.git
class TestWorktreeLifecycleWithGit:
    """End-to-end lifecycle against a real repository."""

    def test_create_validate_remove(self, repo_with_git: Path):
        manager = WorktreeManager()
        derived = derive_path(str(repo_with_git), EPIC_ID, "Fix Login Bug")
        branch = generate_epic_branch_name(EPIC_ID, "Fix Login Bug")

        created = manager.create_worktree(str(repo_with_git), derived.path, branch)
        assert created.success, created
        assert Path(derived.path, ".claude").is_dir()

        listing = manager.list_worktrees(str(repo_with_git))
        assert len(listing.worktrees) == 2
        linked = [wt for wt in listing.worktrees if not wt.is_main_worktree]
        assert linked[0].branch == branch

        validation = manager.validate_worktree(derived.path, str(repo_with_git), branch)
        assert validation.status is WorktreeStatus.VALID
        # git status does not report the empty metadata directory
        assert validation.has_uncommitted_changes is False

        removed = manager.remove_worktree(derived.path, str(repo_with_git), force=True)
        assert removed.success
        assert not Path(derived.path).exists()

    def test_uncommitted_changes_need_force(self, repo_with_git: Path):
        manager = WorktreeManager()
        path = str(repo_with_git.parent / "app-epic-abc12345")
        assert manager.create_worktree(
            str(repo_with_git), path, "feature/x", create_metadata_dir=False
        ).success
        Path(path, "scratch.txt").write_text("wip")

        refused = manager.remove_worktree(path, str(repo_with_git))
        assert not refused.success
        assert "uncommitted changes" in refused.error

        assert manager.remove_worktree(path, str(repo_with_git), force=True).success

    def test_existing_branch_leaves_no_directory(self, repo_with_git: Path):
        _git(repo_with_git, "branch", "feature/taken")
        path = repo_with_git.parent / "app-epic-abc12345"

        result = WorktreeManager().create_worktree(str(repo_with_git), str(path), "feature/taken")

        assert result.kind is FailureKind.COLLISION
        assert not path.exists()

    def test_limit_with_real_git(self, repo_with_git: Path):
        manager = WorktreeManager(settings=WorktreeSettings(max_worktrees=1))
        first = repo_with_git.parent / "app-epic-00000001"
        second = repo_with_git.parent / "app-epic-00000002"

        assert manager.create_worktree(str(repo_with_git), str(first), "feature/one").success
        result = manager.create_worktree(str(repo_with_git), str(second), "feature/two")

        assert result.kind is FailureKind.LIMIT
        assert not second.exists()

    def test_main_worktree_refused(self, repo_with_git: Path):
        result = WorktreeManager().remove_worktree(str(repo_with_git), str(repo_with_git))

        assert "Cannot remove the main worktree" in result.error
        assert repo_with_git.is_dir()

    def test_missing_directory_after_manual_delete(self, repo_with_git: Path):
        import shutil

        manager = WorktreeManager()
        path = repo_with_git.parent / "app-epic-abc12345"
        assert manager.create_worktree(str(repo_with_git), str(path), "feature/x").success
        shutil.rmtree(path)

        result = manager.validate_worktree(str(path), str(repo_with_git), "feature/x")

        assert result.status is WorktreeStatus.MISSING_DIRECTORY
