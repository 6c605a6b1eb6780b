"""Data models for epic worktree isolation.

Uses Pydantic for records read from the state store and for the tagged
success/failure results returned by every public operation.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class IsolationMode(str, Enum):
    """How an epic's work is kept apart from the main checkout."""

    NONE = "none"
    BRANCH = "branch"
    WORKTREE = "worktree"
    ASK = "ask"  # Project-level only: user decides when the epic starts


class WorktreeLocation(str, Enum):
    """Where new worktrees are placed relative to the project."""

    SIBLING = "sibling"
    SUBFOLDER = "subfolder"
    CUSTOM = "custom"


class TicketStatus(str, Enum):
    """Ticket status. Only DONE matters to worktree retirement."""

    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class WorktreeStatus(str, Enum):
    """Outcome of validating an existing worktree."""

    VALID = "valid"
    MISSING_DIRECTORY = "missing_directory"
    CORRUPTED = "corrupted"
    WRONG_BRANCH = "wrong_branch"


class FailureKind(str, Enum):
    """Why an operation failed. Retry logic branches on this, not on text."""

    VALIDATION = "validation"
    SECURITY = "security"
    COLLISION = "collision"
    LIMIT = "limit"
    COMMAND = "command"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    EXHAUSTED = "exhausted"


# --- Persistence records ---


class Project(BaseModel):
    """A repository registered with the board."""

    id: str
    name: str
    path: str
    default_isolation_mode: IsolationMode | None = None
    worktree_location: WorktreeLocation | None = None  # None: use the global default
    worktree_base_path: str | None = None
    max_worktrees: int = 5


class Epic(BaseModel):
    """A unit of work that may get its own worktree."""

    id: str
    project_id: str
    title: str
    isolation_mode: IsolationMode | None = None


class Ticket(BaseModel):
    """A ticket belonging to an epic."""

    id: str
    epic_id: str
    title: str = ""
    status: TicketStatus = TicketStatus.BACKLOG


class EpicWorkflowState(BaseModel):
    """Durable trace of an epic's branch, worktree and PR."""

    epic_id: str
    branch_name: str | None = None
    worktree_path: str | None = None
    worktree_status: str | None = None
    worktree_created_at: datetime | None = None
    pr_number: int | None = None
    pr_status: str | None = None
    tickets_total: int = 0
    tickets_done: int = 0
    updated_at: datetime = Field(default_factory=_utc_now)


class WorktreeRecord(BaseModel):
    """An epic with a recorded worktree, joined with its project."""

    epic_id: str
    epic_title: str
    project_id: str
    project_name: str
    project_path: str
    project_base_path: str | None = None
    worktree_path: str
    worktree_status: str | None = None
    pr_number: int | None = None
    pr_status: str | None = None


class TicketCounts(BaseModel):
    """Done/total ticket counters for one epic."""

    total: int = 0
    done: int = 0

    @property
    def all_done(self) -> bool:
        return self.total > 0 and self.done == self.total


# --- Live git state ---


class WorktreeInfo(BaseModel):
    """One entry of `git worktree list --porcelain`."""

    path: str
    head: str = ""
    branch: str | None = None  # None for detached HEAD
    is_main_worktree: bool = False


class WorktreeValidationResult(BaseModel):
    """Health of an existing worktree. A value, not an error."""

    status: WorktreeStatus
    branch: str | None = None
    expected_branch: str | None = None
    has_uncommitted_changes: bool | None = None
    error: str | None = None


# --- Operation results ---


class WorktreeFailure(BaseModel):
    """Failure result shared by every public operation."""

    success: Literal[False] = False
    error: str
    kind: FailureKind = FailureKind.VALIDATION
    rollback_warning: str | None = None


class WorktreePathResult(BaseModel):
    """A derived, currently unused worktree path."""

    success: Literal[True] = True
    path: str
    worktree_name: str
    suffix: int = 0


class ParsedWorktreePath(BaseModel):
    """Components recovered from a worktree directory name."""

    matched: bool = False
    project_name: str | None = None
    epic_short_id: str | None = None
    slug: str | None = None


class ListWorktreesResult(BaseModel):
    success: Literal[True] = True
    worktrees: list[WorktreeInfo] = Field(default_factory=list)


class CreateWorktreeResult(BaseModel):
    success: Literal[True] = True
    worktree_path: str
    branch_name: str


class RemoveWorktreeResult(BaseModel):
    success: Literal[True] = True
    warning: str | None = None


WorktreePathResponse = WorktreePathResult | WorktreeFailure
ListWorktreesResponse = ListWorktreesResult | WorktreeFailure
CreateWorktreeResponse = CreateWorktreeResult | WorktreeFailure
RemoveWorktreeResponse = RemoveWorktreeResult | WorktreeFailure


# --- Policy results ---


class SupportReason(str, Enum):
    """Which tier decided whether worktrees are enabled."""

    EPIC = "epic"
    PROJECT = "project"
    GLOBAL = "global"
    DISABLED = "disabled"


class ModeSource(str, Enum):
    """Where the effective isolation mode came from."""

    REQUESTED = "requested"
    EPIC = "epic"
    PROJECT = "project"
    DEFAULT = "default"


class WorktreeSupport(BaseModel):
    enabled: bool
    reason: SupportReason
    isolation_mode: IsolationMode | None = None


class EffectiveMode(BaseModel):
    mode: Literal[IsolationMode.BRANCH, IsolationMode.WORKTREE]
    source: ModeSource


# --- Retirement results ---


class RetirementCandidate(BaseModel):
    """Evaluation of one epic's worktree for removal."""

    epic_id: str
    epic_title: str
    project_name: str
    project_path: str
    worktree_path: str
    pr_number: int | None = None
    pr_status: str | None = None
    has_uncommitted_changes: bool = False
    orphaned: bool = False
    can_remove: bool = False
    reason: str = ""


class RetirementError(BaseModel):
    worktree_path: str
    error: str


class RetirementReport(BaseModel):
    """Outcome of a retirement pass (dry run or confirmed)."""

    dry_run: bool = True
    project_id: str | None = None
    evaluated: int = 0
    removed: list[RetirementCandidate] = Field(default_factory=list)
    skipped: list[RetirementCandidate] = Field(default_factory=list)
    errors: list[RetirementError] = Field(default_factory=list)
