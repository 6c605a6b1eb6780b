"""Rich terminal rendering for worktree isolation reports."""

from epic_isolation.cli_ui.retirement_view import RetirementView

__all__ = ["RetirementView"]
