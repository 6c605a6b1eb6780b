"""Rich rendering of worktree retirement reports."""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from epic_isolation.core.models import RetirementCandidate, RetirementReport


class RetirementView:
    """Terminal view of a RetirementReport.

    USAGE:
        view = RetirementView()
        view.show(evaluator.evaluate(project_id))
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def show(self, report: RetirementReport, project_name: str | None = None) -> None:
        """Display the report once."""
        title = "Worktree Cleanup (Dry Run)" if report.dry_run else "Worktree Cleanup"
        self.console.print()
        self.console.rule(f"[bold blue]{title}[/bold blue]")

        if report.evaluated == 0:
            self.console.print("[dim]No worktrees found to clean up.[/dim]")
            if report.project_id:
                self.console.print(f"[dim]Filtered by project: {escape(report.project_id)}[/dim]")
            return

        self._show_summary(report, project_name)
        self.console.print()

        if report.removed:
            verb = "Would Remove" if report.dry_run else "Removed"
            self._show_candidates(f"{verb} ({len(report.removed)})", report.removed, "green")
            self.console.print()

        if report.skipped:
            self._show_candidates(f"Skipped ({len(report.skipped)})", report.skipped, "yellow")
            self.console.print()

        self._show_errors(report)

        if report.dry_run and report.removed:
            self.console.print(
                "[dim]Run again with dry_run=False to remove these worktrees.[/dim]"
            )

    def _show_summary(self, report: RetirementReport, project_name: str | None) -> None:
        table = Table(title="Summary", show_header=False, box=None)
        table.add_column("Metric", style="dim")
        table.add_column("Value", style="bold")

        if report.project_id:
            table.add_row("Project", escape(project_name or report.project_id))
        table.add_row("Worktrees Evaluated", str(report.evaluated))
        table.add_row("Would Remove" if report.dry_run else "Removed", str(len(report.removed)))
        table.add_row("Skipped", str(len(report.skipped)))
        if report.errors:
            table.add_row("Errors", f"[red]{len(report.errors)}[/]")

        self.console.print(Panel(table))

    def _show_candidates(
        self, title: str, candidates: list[RetirementCandidate], style: str
    ) -> None:
        table = Table(title=title)
        table.add_column("Epic", style="cyan")
        table.add_column("Path", style="dim")
        table.add_column("PR", justify="right")
        table.add_column("Reason", style=style)

        for c in candidates:
            pr = f"#{c.pr_number} ({escape(c.pr_status or 'unknown')})" if c.pr_number else ""
            reason = escape(c.reason)
            if c.has_uncommitted_changes:
                reason += " [red](uncommitted changes)[/]"
            table.add_row(escape(c.epic_title), escape(c.worktree_path), pr, reason)

        self.console.print(table)

    def _show_errors(self, report: RetirementReport) -> None:
        if not report.errors:
            return

        table = Table(title=f"Errors ({len(report.errors)})")
        table.add_column("Path", style="dim")
        table.add_column("Error", style="red")

        for e in report.errors:
            table.add_row(escape(e.worktree_path), escape(e.error))

        self.console.print(table)
        self.console.print()
