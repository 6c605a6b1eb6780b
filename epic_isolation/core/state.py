"""SQLite state store for projects, epics, tickets and epic workflow state.

This subsystem only reads projects, epics and tickets. Its writes are
limited to the worktree and PR fields of epic_workflow_state. The
add_*/set_* helpers exist so callers and tests can seed the store.
"""

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from epic_isolation.core.errors import StoreError
from epic_isolation.core.models import (
    Epic,
    EpicWorkflowState,
    Project,
    Ticket,
    TicketCounts,
    TicketStatus,
    WorktreeRecord,
)

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    """Current UTC time as an ISO string (timezone-aware)."""
    return datetime.now(UTC).isoformat()


class Database:
    """SQLite database holding the records worktree isolation reads."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        path TEXT NOT NULL UNIQUE,
        default_isolation_mode TEXT,
        worktree_location TEXT,
        worktree_base_path TEXT,
        max_worktrees INTEGER NOT NULL DEFAULT 5,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS epics (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        title TEXT NOT NULL,
        isolation_mode TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        epic_id TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'backlog',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (epic_id) REFERENCES epics(id) ON DELETE CASCADE
    );

    -- One row per epic; the durable trace of its branch, worktree and PR
    CREATE TABLE IF NOT EXISTS epic_workflow_state (
        epic_id TEXT PRIMARY KEY,
        branch_name TEXT,
        worktree_path TEXT,
        worktree_status TEXT,
        worktree_created_at TIMESTAMP,
        pr_number INTEGER,
        pr_status TEXT,
        tickets_total INTEGER NOT NULL DEFAULT 0,
        tickets_done INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (epic_id) REFERENCES epics(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_epics_project ON epics(project_id);
    CREATE INDEX IF NOT EXISTS idx_tickets_epic ON tickets(epic_id);
    CREATE INDEX IF NOT EXISTS idx_ews_worktree ON epic_workflow_state(worktree_path)
        WHERE worktree_path IS NOT NULL;
    """

    def __init__(self, db_path: str | Path = ".epic-isolation/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode for concurrent readers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Commits on success, rolls back on any error. sqlite errors and rows
        that do not fit the record models (pydantic ValidationError, bad
        timestamps) are re-raised as StoreError so callers handle one
        exception type.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open state database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise StoreError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise StoreError(f"State database error: {e}") from e
        except ValueError as e:
            conn.rollback()
            raise StoreError(f"Malformed record in state database: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Seeding helpers ---

    def add_project(self, project: Project) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO projects (
                    id, name, path, default_isolation_mode,
                    worktree_location, worktree_base_path, max_worktrees
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    project.name,
                    project.path,
                    project.default_isolation_mode.value if project.default_isolation_mode else None,
                    project.worktree_location.value if project.worktree_location else None,
                    project.worktree_base_path,
                    project.max_worktrees,
                ),
            )

    def add_epic(self, epic: Epic) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO epics (id, project_id, title, isolation_mode) VALUES (?, ?, ?, ?)",
                (
                    epic.id,
                    epic.project_id,
                    epic.title,
                    epic.isolation_mode.value if epic.isolation_mode else None,
                ),
            )

    def add_ticket(self, ticket: Ticket) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tickets (id, epic_id, title, status) VALUES (?, ?, ?, ?)",
                (ticket.id, ticket.epic_id, ticket.title, ticket.status.value),
            )

    def set_ticket_status(self, ticket_id: str, status: TicketStatus) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE tickets SET status = ? WHERE id = ?", (status.value, ticket_id))

    def set_workflow_state(self, state: EpicWorkflowState) -> None:
        """Insert or replace the workflow state row of an epic."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO epic_workflow_state (
                    epic_id, branch_name, worktree_path, worktree_status,
                    worktree_created_at, pr_number, pr_status,
                    tickets_total, tickets_done, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.epic_id,
                    state.branch_name,
                    state.worktree_path,
                    state.worktree_status,
                    state.worktree_created_at.isoformat() if state.worktree_created_at else None,
                    state.pr_number,
                    state.pr_status,
                    state.tickets_total,
                    state.tickets_done,
                    state.updated_at.isoformat(),
                ),
            )

    # --- Reads ---

    def get_project(self, project_id: str) -> Project | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            if not row:
                return None
            return Project(
                id=row["id"],
                name=row["name"],
                path=row["path"],
                default_isolation_mode=row["default_isolation_mode"],
                worktree_location=row["worktree_location"],
                worktree_base_path=row["worktree_base_path"],
                max_worktrees=row["max_worktrees"],
            )

    def get_epic(self, epic_id: str) -> Epic | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM epics WHERE id = ?", (epic_id,)).fetchone()
            if not row:
                return None
            return Epic(
                id=row["id"],
                project_id=row["project_id"],
                title=row["title"],
                isolation_mode=row["isolation_mode"],
            )

    def get_workflow_state(self, epic_id: str) -> EpicWorkflowState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM epic_workflow_state WHERE epic_id = ?", (epic_id,)
            ).fetchone()
            if not row:
                return None
            return EpicWorkflowState(
                epic_id=row["epic_id"],
                branch_name=row["branch_name"],
                worktree_path=row["worktree_path"],
                worktree_status=row["worktree_status"],
                worktree_created_at=(
                    datetime.fromisoformat(row["worktree_created_at"])
                    if row["worktree_created_at"]
                    else None
                ),
                pr_number=row["pr_number"],
                pr_status=row["pr_status"],
                tickets_total=row["tickets_total"],
                tickets_done=row["tickets_done"],
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )

    def list_worktree_records(self, project_id: str | None = None) -> list[WorktreeRecord]:
        """Epics with a recorded worktree path, optionally for one project."""
        query = """
            SELECT
                e.id AS epic_id,
                e.title AS epic_title,
                p.id AS project_id,
                p.name AS project_name,
                p.path AS project_path,
                p.worktree_base_path AS project_base_path,
                ews.worktree_path,
                ews.worktree_status,
                ews.pr_number,
                ews.pr_status
            FROM epic_workflow_state ews
            JOIN epics e ON ews.epic_id = e.id
            JOIN projects p ON e.project_id = p.id
            WHERE ews.worktree_path IS NOT NULL
        """
        params: list[str] = []
        if project_id:
            query += " AND p.id = ?"
            params.append(project_id)
        query += " ORDER BY p.name, e.title"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [WorktreeRecord(**dict(row)) for row in rows]

    def get_ticket_counts(self, epic_id: str) -> TicketCounts:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END), 0) AS done
                FROM tickets WHERE epic_id = ?
                """,
                (epic_id,),
            ).fetchone()
            return TicketCounts(total=row["total"], done=row["done"])

    # --- Writes performed by worktree retirement ---

    def clear_worktree_reference(self, epic_id: str) -> None:
        """Forget an orphaned worktree whose directory is gone."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE epic_workflow_state
                SET worktree_path = NULL, worktree_status = NULL,
                    worktree_created_at = NULL, updated_at = ?
                WHERE epic_id = ?
                """,
                (_utc_now(), epic_id),
            )

    def mark_worktree_removed(self, epic_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE epic_workflow_state
                SET worktree_path = NULL, worktree_status = 'removed', updated_at = ?
                WHERE epic_id = ?
                """,
                (_utc_now(), epic_id),
            )

    def update_pr_status(self, epic_id: str, pr_status: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE epic_workflow_state SET pr_status = ?, updated_at = ? WHERE epic_id = ?",
                (pr_status, _utc_now(), epic_id),
            )
