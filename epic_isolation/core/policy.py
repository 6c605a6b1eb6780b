"""Isolation policy: should an epic work in a worktree or a branch?

Three tiers, each overriding the one below only when it expresses an
opinion:

    epic.isolation_mode  >  project.default_isolation_mode  >  global setting

The decision tables are pure functions of the records and the global
flag. IsolationPolicyResolver adds the store lookups and guarantees that
a lookup failure always resolves to the safe branch mode.
"""

import logging

from epic_isolation.core.config import WorktreeSettings
from epic_isolation.core.errors import StoreError
from epic_isolation.core.models import (
    EffectiveMode,
    Epic,
    IsolationMode,
    ModeSource,
    Project,
    SupportReason,
    WorktreeSupport,
)
from epic_isolation.core.state import Database

logger = logging.getLogger(__name__)

_PROJECT_OPT_IN = frozenset({IsolationMode.WORKTREE, IsolationMode.ASK})


def project_support(project: Project | None, global_enabled: bool) -> WorktreeSupport:
    """Decide worktree support from the project and global tiers."""
    mode = project.default_isolation_mode if project else None

    if mode in _PROJECT_OPT_IN:
        return WorktreeSupport(enabled=True, reason=SupportReason.PROJECT)
    # Explicit opt-out: do not fall through to the global tier
    if mode is IsolationMode.BRANCH:
        return WorktreeSupport(enabled=False, reason=SupportReason.DISABLED)

    if global_enabled:
        return WorktreeSupport(enabled=True, reason=SupportReason.GLOBAL)
    return WorktreeSupport(enabled=False, reason=SupportReason.DISABLED)


def epic_support(epic: Epic, project: Project | None, global_enabled: bool) -> WorktreeSupport:
    """Decide worktree support for an epic, falling back to its project.

    The epic's own isolation_mode is always reported, even when the
    decision came from a lower tier.
    """
    if epic.isolation_mode is IsolationMode.WORKTREE:
        return WorktreeSupport(
            enabled=True, reason=SupportReason.EPIC, isolation_mode=IsolationMode.WORKTREE
        )
    if epic.isolation_mode is IsolationMode.BRANCH:
        return WorktreeSupport(
            enabled=False, reason=SupportReason.DISABLED, isolation_mode=IsolationMode.BRANCH
        )

    support = project_support(project, global_enabled)
    return support.model_copy(update={"isolation_mode": epic.isolation_mode})


class IsolationPolicyResolver:
    """Resolve worktree support and the effective isolation mode.

    The global switch comes from `settings.enable_worktree_support`,
    passed in explicitly rather than read from ambient state.
    """

    def __init__(self, db: Database, settings: WorktreeSettings | None = None):
        self.db = db
        self.settings = settings or WorktreeSettings()

    @property
    def global_enabled(self) -> bool:
        return self.settings.enable_worktree_support

    def is_enabled_for_project(self, project_id: str) -> WorktreeSupport:
        project: Project | None = None
        if project_id:
            try:
                project = self.db.get_project(project_id)
            except StoreError as e:
                # Unreadable project setting: only the global tier applies
                logger.warning(f"Failed to check project worktree setting for {project_id}: {e}")

        support = project_support(project, self.global_enabled)
        logger.debug(
            f"Worktree support for project {project_id}: "
            f"enabled={support.enabled} reason={support.reason.value}"
        )
        return support

    def is_enabled_for_epic(self, epic_id: str) -> WorktreeSupport:
        """Any lookup failure resolves to disabled."""
        try:
            epic = self.db.get_epic(epic_id)
            if epic is None:
                logger.warning(f"Epic not found: {epic_id}")
                return WorktreeSupport(enabled=False, reason=SupportReason.DISABLED)
            project = None
            if epic.isolation_mode not in (IsolationMode.WORKTREE, IsolationMode.BRANCH):
                project = self.db.get_project(epic.project_id)
        except StoreError as e:
            logger.error(f"Failed to check epic worktree support for {epic_id}: {e}")
            return WorktreeSupport(enabled=False, reason=SupportReason.DISABLED)

        return epic_support(epic, project, self.global_enabled)

    def effective_mode(
        self,
        epic_id: str,
        requested_mode: IsolationMode | str | None = None,
    ) -> EffectiveMode:
        """Mode to use when starting work on an epic.

        Worktree mode is only ever returned when worktree support is
        enabled for the epic; every failure resolves to branch mode.
        """
        if requested_mode is not None:
            requested_mode = IsolationMode(requested_mode)

        if requested_mode is IsolationMode.WORKTREE:
            if self.is_enabled_for_epic(epic_id).enabled:
                return EffectiveMode(mode=IsolationMode.WORKTREE, source=ModeSource.REQUESTED)
            logger.info(f"Worktree requested but not enabled, using branch for epic {epic_id}")
            return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.DEFAULT)

        if requested_mode is IsolationMode.BRANCH:
            return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.REQUESTED)

        try:
            epic = self.db.get_epic(epic_id)
            if epic is None:
                return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.DEFAULT)
            project = self.db.get_project(epic.project_id)
        except StoreError as e:
            logger.error(f"Failed to get effective isolation mode for epic {epic_id}: {e}")
            return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.DEFAULT)

        if epic.isolation_mode is IsolationMode.WORKTREE:
            if epic_support(epic, project, self.global_enabled).enabled:
                return EffectiveMode(mode=IsolationMode.WORKTREE, source=ModeSource.EPIC)
        if epic.isolation_mode is IsolationMode.BRANCH:
            return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.EPIC)

        project_mode = project.default_isolation_mode if project else None
        if project_mode is IsolationMode.WORKTREE:
            if project_support(project, self.global_enabled).enabled:
                return EffectiveMode(mode=IsolationMode.WORKTREE, source=ModeSource.PROJECT)
        if project_mode is IsolationMode.BRANCH:
            return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.PROJECT)

        # Branches need no special setup
        return EffectiveMode(mode=IsolationMode.BRANCH, source=ModeSource.DEFAULT)
