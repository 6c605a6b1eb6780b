# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the epic isolation test suite.

This module provides foundational fixtures used across all test modules:
- Project directories and real git repositories
- Fresh state databases, optionally seeded with a project and epic
- A scripted git runner that records every call

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from epic_isolation.core.config import WorktreeSettings
from epic_isolation.core.models import Epic, IsolationMode, Project
from epic_isolation.core.state import Database
from epic_isolation.runner.executor import CommandResult

EPIC_ID = "abc12345-6789-4def-8123-456789abcdef"
PROJECT_ID = "proj-1"


# =============================================================================
# Scripted Git Runner
# =============================================================================


Response = CommandResult | Callable[[list[str], str], CommandResult]


class FakeRunner:
    """Stand-in for GitRunner that answers from a script.

    Responses are matched on an argument prefix; the most recently
    scripted prefix wins. Unmatched commands succeed with no output.

    Example:
        fake_runner.on(["worktree", "add"], CommandResult(success=False, error="boom"))
        assert fake_runner.called("worktree", "add")
    """

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], str]] = []
        self._script: list[tuple[tuple[str, ...], Response]] = []

    def on(self, prefix: list[str], response: Response) -> None:
        self._script.insert(0, (tuple(prefix), response))

    def run(self, args: list[str], cwd: str | Path) -> CommandResult:
        self.calls.append((list(args), str(cwd)))
        for prefix, response in self._script:
            if tuple(args[: len(prefix)]) == prefix:
                if isinstance(response, CommandResult):
                    return response
                return response(list(args), str(cwd))
        return CommandResult(success=True)

    def called(self, *prefix: str) -> bool:
        return any(tuple(args[: len(prefix)]) == prefix for args, _ in self.calls)


def porcelain(*entries: tuple[str, str | None], bare_first: bool = False) -> str:
    """Build `git worktree list --porcelain` output from (path, branch) pairs."""
    blocks = []
    for index, (path, branch) in enumerate(entries):
        lines = [f"worktree {path}"]
        if index == 0 and bare_first:
            lines.append("bare")
        else:
            lines.append(f"HEAD {'a' * 40}")
            lines.append(f"branch refs/heads/{branch}" if branch else "detached")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


@pytest.fixture
def worktree_list() -> Callable[..., str]:
    """The porcelain builder, for tests that script `worktree list`."""
    return porcelain


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Scripted runner; every call is recorded in `calls`."""
    return FakeRunner()


@pytest.fixture
def settings() -> WorktreeSettings:
    """Settings with creation serialized and a short lock timeout."""
    return WorktreeSettings(lock_timeout=2.0)


# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a plain project directory (no git).

    The project lives one level below tmp_path so sibling worktrees are
    created inside the test's temporary directory.

    Returns:
        Path to the project directory.
    """
    project = tmp_path / "app"
    project.mkdir()
    (project / "README.md").write_text("# App\n")
    return project


@pytest.fixture
def repo_with_git(project_dir: Path) -> Path:
    """Turn project_dir into a real git repository with one commit.

    WARNING: Runs actual git commands. Slower than project_dir.
    Only use when you need real git operations (worktrees, commits, etc.).

    Returns:
        Path to git-initialized repository, on branch main.
    """
    commands = [
        ["git", "init"],
        ["git", "symbolic-ref", "HEAD", "refs/heads/main"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
        ["git", "config", "commit.gpgsign", "false"],
        ["git", "add", "."],
        ["git", "commit", "-m", "Initial commit"],
    ]
    if shutil.which("git") is None:
        pytest.skip("Git not available")
    try:
        for command in commands:
            subprocess.run(command, cwd=project_dir, check=True, capture_output=True)
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")
    return project_dir


# =============================================================================
# Database and State Management Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite state database in a temporary directory."""
    return Database(tmp_path / "state" / "test.db")


@pytest.fixture
def seeded_db(test_db: Database, project_dir: Path) -> Database:
    """Database holding one project (at project_dir) and one epic.

    Neither record expresses an isolation preference.
    """
    test_db.add_project(Project(id=PROJECT_ID, name="app", path=str(project_dir)))
    test_db.add_epic(Epic(id=EPIC_ID, project_id=PROJECT_ID, title="Fix Login Bug"))
    return test_db


@pytest.fixture
def make_epic(test_db: Database, project_dir: Path) -> Callable[..., Epic]:
    """Factory adding a project/epic pair with the given isolation modes."""
    counter = iter(range(1000))

    def _make(
        epic_mode: IsolationMode | None = None,
        project_mode: IsolationMode | None = None,
    ) -> Epic:
        n = next(counter)
        project = Project(
            id=f"proj-x{n}",
            name=f"app-{n}",
            path=str(project_dir / f"p{n}"),
            default_isolation_mode=project_mode,
        )
        epic = Epic(
            id=f"{n:08x}-0000-4000-8000-000000000000",
            project_id=project.id,
            title=f"Epic {n}",
            isolation_mode=epic_mode,
        )
        test_db.add_project(project)
        test_db.add_epic(epic)
        return epic

    return _make
