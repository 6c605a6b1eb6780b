"""Core modules for epic worktree isolation."""

from epic_isolation.core.config import WorktreeSettings, load_settings
from epic_isolation.core.errors import ConfigError, EpicIsolationError, StoreError
from epic_isolation.core.models import (
    Epic,
    FailureKind,
    IsolationMode,
    Project,
    WorktreeFailure,
    WorktreeLocation,
    WorktreeStatus,
)
from epic_isolation.core.paths import (
    derive_epic_path,
    derive_path,
    parse_path,
    suggest_alternative,
)
from epic_isolation.core.policy import IsolationPolicyResolver
from epic_isolation.core.retirement import GhPRChecker, RetirementEvaluator
from epic_isolation.core.security import SecurityError
from epic_isolation.core.state import Database
from epic_isolation.core.worktree import WorktreeManager

__all__ = [
    "ConfigError",
    "Database",
    "Epic",
    "EpicIsolationError",
    "FailureKind",
    "GhPRChecker",
    "IsolationMode",
    "IsolationPolicyResolver",
    "Project",
    "RetirementEvaluator",
    "SecurityError",
    "StoreError",
    "WorktreeFailure",
    "WorktreeLocation",
    "WorktreeManager",
    "WorktreeSettings",
    "WorktreeStatus",
    "derive_epic_path",
    "derive_path",
    "load_settings",
    "parse_path",
    "suggest_alternative",
]
