"""Retirement of worktrees whose epics are finished.

A worktree is eligible for removal when its epic's tickets are all done
and its PR (if any) is merged. Corrupted worktrees and references to
directories that no longer exist are always eligible. Evaluation is a
dry run unless explicitly confirmed.
"""

import json
import logging
import os
from typing import Protocol

from pydantic import BaseModel

from epic_isolation.core.errors import StoreError
from epic_isolation.core.models import (
    RetirementCandidate,
    RetirementError,
    RetirementReport,
    WorktreeRecord,
    WorktreeStatus,
)
from epic_isolation.core.state import Database
from epic_isolation.core.worktree import WorktreeManager
from epic_isolation.runner.executor import GhRunner

logger = logging.getLogger(__name__)

PR_MERGED = "merged"


class PRCheck(BaseModel):
    """Live state of a pull request."""

    is_merged: bool = False
    state: str | None = None
    error: str | None = None


class PRChecker(Protocol):
    def check(self, pr_number: int, project_path: str) -> PRCheck: ...


class GhPRChecker:
    """Query a pull request's state with the GitHub CLI."""

    def __init__(self, runner: GhRunner | None = None):
        self.runner = runner or GhRunner()

    def check(self, pr_number: int, project_path: str) -> PRCheck:
        result = self.runner.run(
            ["pr", "view", str(pr_number), "--json", "state,mergedAt"], project_path
        )
        if not result.success:
            logger.debug(f"gh pr view {pr_number} failed: {result.error}")
            return PRCheck(error="gh command failed")

        try:
            data = json.loads(result.output)
        except json.JSONDecodeError as e:
            return PRCheck(error=f"Failed to parse PR data: {e}")
        if not isinstance(data, dict):
            return PRCheck(error="Failed to parse PR data: expected a JSON object")

        state = data.get("state")
        return PRCheck(is_merged=state == "MERGED" or bool(data.get("mergedAt")), state=state)


class RetirementEvaluator:
    """Decide which epic worktrees can be removed, and remove them.

    Usage:
        evaluator = RetirementEvaluator(db, WorktreeManager(settings=settings))
        report = evaluator.evaluate(project_id)                  # preview
        report = evaluator.evaluate(project_id, dry_run=False)   # remove
    """

    def __init__(
        self,
        db: Database,
        manager: WorktreeManager | None = None,
        pr_checker: PRChecker | None = None,
    ):
        self.db = db
        self.manager = manager or WorktreeManager()
        self.pr_checker = pr_checker

    def evaluate(
        self,
        project_id: str | None = None,
        force: bool = False,
        dry_run: bool = True,
    ) -> RetirementReport:
        """Classify every recorded worktree; remove eligible ones unless dry_run.

        Raises:
            StoreError: If the worktree records cannot be read
        """
        records = self.db.list_worktree_records(project_id)
        report = RetirementReport(dry_run=dry_run, project_id=project_id, evaluated=len(records))
        logger.info(f"Found {len(records)} worktree(s) to evaluate for retirement")

        for record in records:
            try:
                self._process(record, report, force, dry_run)
            except StoreError as e:
                logger.error(f"State store failure while evaluating {record.worktree_path}: {e}")
                report.errors.append(
                    RetirementError(
                        worktree_path=record.worktree_path,
                        error=f"Database update failed: {e}",
                    )
                )

        return report

    def _process(
        self,
        record: WorktreeRecord,
        report: RetirementReport,
        force: bool,
        dry_run: bool,
    ) -> None:
        candidate = RetirementCandidate(
            epic_id=record.epic_id,
            epic_title=record.epic_title,
            project_name=record.project_name,
            project_path=record.project_path,
            worktree_path=record.worktree_path,
            pr_number=record.pr_number,
            pr_status=record.pr_status,
        )

        if not os.path.exists(record.project_path):
            candidate.reason = "Project path does not exist"
            report.skipped.append(candidate)
            return

        if not os.path.exists(record.worktree_path):
            candidate.orphaned = True
            candidate.can_remove = True
            candidate.reason = "Worktree directory no longer exists (cleaning up DB reference)"
            if not dry_run:
                self.db.clear_worktree_reference(record.epic_id)
                logger.info(f"Cleaned up orphaned worktree reference for epic {record.epic_id}")
            report.removed.append(candidate)
            return

        self._classify(record, candidate, force)

        if not candidate.can_remove:
            report.skipped.append(candidate)
        elif dry_run:
            report.removed.append(candidate)
        else:
            self._remove(record, candidate, report, force)

    def _classify(
        self,
        record: WorktreeRecord,
        candidate: RetirementCandidate,
        force: bool,
    ) -> None:
        validation = self.manager.validate_worktree(record.worktree_path, record.project_path)
        corrupted = validation.status is WorktreeStatus.CORRUPTED
        if not corrupted:
            candidate.has_uncommitted_changes = bool(validation.has_uncommitted_changes)

        counts = self.db.get_ticket_counts(record.epic_id)
        pr_merged = self._pr_merged(record, candidate)

        if corrupted:
            candidate.can_remove = True
            candidate.reason = "Worktree is corrupted and can be safely removed"
        elif not counts.all_done:
            candidate.reason = f"Not all tickets are done ({counts.done}/{counts.total} complete)"
        elif record.pr_number and not pr_merged:
            candidate.reason = (
                f"PR #{record.pr_number} is not merged "
                f"(status: {candidate.pr_status or 'unknown'})"
            )
        elif not record.pr_number:
            candidate.can_remove = True
            candidate.reason = "All tickets done, no PR linked - safe to remove"
        elif candidate.has_uncommitted_changes and not force:
            candidate.reason = "Has uncommitted changes (use force=true to override)"
        else:
            candidate.can_remove = True
            candidate.reason = "Epic complete and PR merged"

    def _pr_merged(self, record: WorktreeRecord, candidate: RetirementCandidate) -> bool:
        """Cached PR status, refreshed from the PR checker when not yet merged."""
        if record.pr_status == PR_MERGED:
            return True
        if not record.pr_number or self.pr_checker is None:
            return False

        check = self.pr_checker.check(record.pr_number, record.project_path)
        if check.error:
            logger.debug(f"Could not refresh PR #{record.pr_number}: {check.error}")
        candidate.pr_status = check.state or record.pr_status
        if not check.is_merged:
            return False

        candidate.pr_status = PR_MERGED
        try:
            self.db.update_pr_status(record.epic_id, PR_MERGED)
            logger.info(
                f"Updated PR #{record.pr_number} status to merged for epic {record.epic_id}"
            )
        except StoreError as e:
            # The PR is merged either way
            logger.error(f"Failed to update PR status in database: {e}")
        return True

    def _remove(
        self,
        record: WorktreeRecord,
        candidate: RetirementCandidate,
        report: RetirementReport,
        force: bool,
    ) -> None:
        result = self.manager.remove_worktree(
            record.worktree_path,
            record.project_path,
            force=force or candidate.has_uncommitted_changes,
            base_path=record.project_base_path,
        )
        if not result.success:
            report.errors.append(
                RetirementError(
                    worktree_path=record.worktree_path,
                    error=result.error or "Unknown error during removal",
                )
            )
            return

        if result.warning:
            logger.warning(result.warning)

        self.db.mark_worktree_removed(record.epic_id)
        logger.info(f"Removed worktree for epic {record.epic_id}: {record.worktree_path}")
        report.removed.append(candidate)
