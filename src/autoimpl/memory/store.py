"""Durable storage layer for implementation sessions, iterations, and feedback."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from .schema import (
    ACTIVE_STATUSES,
    ExecutionSession,
    Feedback,
    FeedbackType,
    FileChangeSummary,
    FileOperation,
    Iteration,
    LoopStage,
    ProgressInfo,
    Repo,
    SessionStatus,
    Task,
    TaskActivity,
    TaskStatus,
    VerificationResults,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/autoimpl.sqlite")

_SESSION_COLUMNS = {
    "status",
    "stage",
    "current_iteration",
    "max_iterations",
    "progress",
    "total_files_changed",
    "pr_number",
    "pr_url",
    "error_message",
    "stuck_reason",
    "started_at",
    "completed_at",
}
_ITERATION_COLUMNS = {
    "criteria_total",
    "criteria_passed",
    "prompt_sent",
    "response_received",
    "commit_sha",
    "commit_message",
    "changes_made",
    "verification_results",
    "blocked_reason",
    "needs_human_input",
    "completed_at",
}


class RecordNotFoundError(LookupError):
    """Raised when a referenced task, repository, session, or iteration is missing."""


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _to_column(value: Any) -> Any:
    """Convert a record value into something SQLite can bind."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _as_iso(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, (list, tuple)):
        return json.dumps(
            [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in value]
        )
    if isinstance(value, dict):
        return json.dumps(value)
    return value


class MemoryStore:
    """SQLite-backed persistence for implementation sessions."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        # Sessions run on their own threads with their own connections; the
        # timeout lets concurrent writers wait for the row lock.
        connection = sqlite3.connect(str(self.db_path), timeout=30.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MemoryStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "autoimpl.sqlite")

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                key TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS repos (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                default_branch TEXT NOT NULL,
                selected_branch TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                repo_id TEXT NOT NULL,
                created_by TEXT NOT NULL,
                status TEXT NOT NULL,
                stage TEXT NOT NULL,
                source_branch TEXT NOT NULL,
                implementation_branch TEXT NOT NULL,
                current_iteration INTEGER NOT NULL DEFAULT 0,
                max_iterations INTEGER NOT NULL DEFAULT 10,
                progress TEXT NOT NULL,
                total_files_changed INTEGER NOT NULL DEFAULT 0,
                pr_number INTEGER,
                pr_url TEXT,
                error_message TEXT,
                stuck_reason TEXT,
                started_at TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE,
                FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_task_status
                ON sessions(task_id, status);

            CREATE TABLE IF NOT EXISTS iterations (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                iteration_number INTEGER NOT NULL,
                criteria_total INTEGER NOT NULL DEFAULT 0,
                criteria_passed INTEGER NOT NULL DEFAULT 0,
                prompt_sent TEXT,
                response_received TEXT,
                commit_sha TEXT,
                commit_message TEXT,
                changes_made TEXT NOT NULL,
                verification_results TEXT,
                blocked_reason TEXT,
                needs_human_input INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                UNIQUE(session_id, iteration_number),
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS file_operations (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                iteration_id TEXT,
                file_path TEXT NOT NULL,
                operation TEXT NOT NULL,
                before_sha TEXT,
                before_content TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                FOREIGN KEY(iteration_id) REFERENCES iterations(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_file_operations_session
                ON file_operations(session_id);

            CREATE TABLE IF NOT EXISTS feedback (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                iteration_id TEXT,
                feedback_type TEXT NOT NULL,
                content TEXT NOT NULL,
                created_by TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                FOREIGN KEY(iteration_id) REFERENCES iterations(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_feedback_session
                ON feedback(session_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS task_activity (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                after_value TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_task_activity_task
                ON task_activity(task_id, created_at);
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # Task operations -----------------------------------------------------------------
    def save_task(self, task: Task) -> None:
        record = task.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO tasks (id, project_id, key, title, description, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    project_id = excluded.project_id,
                    key = excluded.key,
                    title = excluded.title,
                    description = excluded.description,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.project_id,
                    record.key,
                    record.title,
                    record.description,
                    record.status.value,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )

    def get_task(self, task_id: str) -> Optional[Task]:
        row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return Task(
            id=row["id"],
            project_id=row["project_id"],
            key=row["key"],
            title=row["title"],
            description=row["description"],
            status=TaskStatus(row["status"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        timestamp = _as_iso(utc_now())
        with self._transaction():
            self._conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, timestamp, task_id),
            )

    # Repository operations -----------------------------------------------------------
    def save_repo(self, repo: Repo) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO repos (id, project_id, owner, name, default_branch, selected_branch, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    project_id = excluded.project_id,
                    owner = excluded.owner,
                    name = excluded.name,
                    default_branch = excluded.default_branch,
                    selected_branch = excluded.selected_branch
                """,
                (
                    repo.id,
                    repo.project_id,
                    repo.owner,
                    repo.name,
                    repo.default_branch,
                    repo.selected_branch,
                    _as_iso(repo.created_at),
                ),
            )

    def get_repo(self, repo_id: str) -> Optional[Repo]:
        row = self._conn.execute("SELECT * FROM repos WHERE id = ?", (repo_id,)).fetchone()
        if not row:
            return None
        return Repo(
            id=row["id"],
            project_id=row["project_id"],
            owner=row["owner"],
            name=row["name"],
            default_branch=row["default_branch"],
            selected_branch=row["selected_branch"],
            created_at=_from_iso(row["created_at"]),
        )

    # Session operations --------------------------------------------------------------
    def create_session(self, session: ExecutionSession) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO sessions (
                    id, task_id, project_id, repo_id, created_by, status, stage,
                    source_branch, implementation_branch, current_iteration, max_iterations,
                    progress, total_files_changed, pr_number, pr_url, error_message,
                    stuck_reason, started_at, completed_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.task_id,
                    session.project_id,
                    session.repo_id,
                    session.created_by,
                    session.status.value,
                    session.stage.value,
                    session.source_branch,
                    session.implementation_branch,
                    session.current_iteration,
                    session.max_iterations,
                    session.progress.model_dump_json(),
                    session.total_files_changed,
                    session.pr_number,
                    session.pr_url,
                    session.error_message,
                    session.stuck_reason,
                    _to_column(session.started_at),
                    _to_column(session.completed_at),
                    _as_iso(session.created_at),
                    _as_iso(session.updated_at),
                ),
            )

    def get_session(self, session_id: str) -> Optional[ExecutionSession]:
        row = self._conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def require_session(self, session_id: str) -> ExecutionSession:
        session = self.get_session(session_id)
        if session is None:
            raise RecordNotFoundError(f"Session not found: {session_id}")
        return session

    def get_session_status(self, session_id: str) -> Optional[SessionStatus]:
        """Cheap status probe used by the controller's polling points."""
        row = self._conn.execute("SELECT status FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if not row:
            return None
        return SessionStatus(row["status"])

    def update_session(self, session_id: str, **fields: Any) -> None:
        unknown = set(fields) - _SESSION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        fields["updated_at"] = utc_now()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_column(value) for value in fields.values()]
        params.append(session_id)
        with self._transaction():
            self._conn.execute(f"UPDATE sessions SET {assignments} WHERE id = ?", params)

    def transition_session(
        self,
        session_id: str,
        expected: Sequence[SessionStatus],
        status: SessionStatus,
        **fields: Any,
    ) -> bool:
        """Move the session to ``status`` only while it is in one of ``expected``.

        Returns ``False`` when the row changed underneath the caller.
        """
        unknown = set(fields) - _SESSION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        fields["status"] = status
        fields["updated_at"] = utc_now()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_column(value) for value in fields.values()]
        placeholders = ",".join("?" for _ in expected)
        params.extend([session_id, *(item.value for item in expected)])
        with self._transaction():
            cursor = self._conn.execute(
                f"UPDATE sessions SET {assignments} WHERE id = ? AND status IN ({placeholders})",
                params,
            )
        return cursor.rowcount == 1

    def update_progress(self, session_id: str, progress: ProgressInfo) -> None:
        """Persist a stage transition together with its progress snapshot."""
        self.update_session(session_id, stage=progress.stage, progress=progress)

    def find_active_session(self, task_id: str) -> Optional[ExecutionSession]:
        placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
        row = self._conn.execute(
            f"""
            SELECT * FROM sessions
            WHERE task_id = ? AND status IN ({placeholders})
            ORDER BY created_at DESC LIMIT 1
            """,
            (task_id, *(status.value for status in ACTIVE_STATUSES)),
        ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def latest_session_for_task(self, task_id: str) -> Optional[ExecutionSession]:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE task_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (task_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    # Iteration operations ------------------------------------------------------------
    def create_iteration(self, iteration: Iteration) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO iterations (
                    id, session_id, iteration_number, criteria_total, criteria_passed,
                    prompt_sent, response_received, commit_sha, commit_message, changes_made,
                    verification_results, blocked_reason, needs_human_input, started_at,
                    completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    iteration.id,
                    iteration.session_id,
                    iteration.iteration_number,
                    iteration.criteria_total,
                    iteration.criteria_passed,
                    iteration.prompt_sent,
                    iteration.response_received,
                    iteration.commit_sha,
                    iteration.commit_message,
                    _to_column(iteration.changes_made),
                    _to_column(iteration.verification_results),
                    iteration.blocked_reason,
                    int(iteration.needs_human_input),
                    _as_iso(iteration.started_at),
                    _to_column(iteration.completed_at),
                ),
            )

    def update_iteration(self, iteration_id: str, **fields: Any) -> None:
        unknown = set(fields) - _ITERATION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown iteration fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_column(value) for value in fields.values()]
        params.append(iteration_id)
        with self._transaction():
            self._conn.execute(f"UPDATE iterations SET {assignments} WHERE id = ?", params)

    def complete_iteration(
        self,
        iteration: Iteration,
        *,
        files_changed: int = 0,
        **fields: Any,
    ) -> bool:
        """Close ``iteration`` and advance the session's rollup in one transaction.

        Returns ``False``, leaving the session untouched, when the iteration was
        already closed or has been removed by a rollback.
        """
        unknown = set(fields) - _ITERATION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown iteration fields: {', '.join(sorted(unknown))}")
        fields["completed_at"] = utc_now()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_column(value) for value in fields.values()]
        params.append(iteration.id)
        with self._transaction():
            cursor = self._conn.execute(
                f"UPDATE iterations SET {assignments} WHERE id = ? AND completed_at IS NULL", params
            )
            if cursor.rowcount != 1:
                return False
            self._conn.execute(
                """
                UPDATE sessions SET
                    current_iteration = ?,
                    total_files_changed = total_files_changed + ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    iteration.iteration_number,
                    files_changed,
                    _as_iso(utc_now()),
                    iteration.session_id,
                ),
            )
        return True

    def is_iteration_open(self, iteration_id: str) -> bool:
        """True while the iteration exists and has not been completed."""
        row = self._conn.execute(
            "SELECT 1 FROM iterations WHERE id = ? AND completed_at IS NULL", (iteration_id,)
        ).fetchone()
        return row is not None

    def get_iteration(self, iteration_id: str) -> Optional[Iteration]:
        row = self._conn.execute("SELECT * FROM iterations WHERE id = ?", (iteration_id,)).fetchone()
        if not row:
            return None
        return self._row_to_iteration(row)

    def list_iterations(
        self,
        session_id: str,
        *,
        before_number: Optional[int] = None,
    ) -> List[Iteration]:
        query = "SELECT * FROM iterations WHERE session_id = ?"
        params: List[Any] = [session_id]
        if before_number is not None:
            query += " AND iteration_number < ?"
            params.append(before_number)
        query += " ORDER BY iteration_number ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_iteration(row) for row in cursor.fetchall()]

    def latest_iteration(self, session_id: str) -> Optional[Iteration]:
        row = self._conn.execute(
            "SELECT * FROM iterations WHERE session_id = ? ORDER BY iteration_number DESC LIMIT 1",
            (session_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_iteration(row)

    def delete_incomplete_iterations(self, session_id: str) -> int:
        """Drop in-flight iterations left behind by an interrupted run."""
        with self._transaction():
            ids = [
                row["id"]
                for row in self._conn.execute(
                    "SELECT id FROM iterations WHERE session_id = ? AND completed_at IS NULL",
                    (session_id,),
                ).fetchall()
            ]
            self._delete_iterations(ids)
        return len(ids)

    def rollback_iterations(self, session_id: str, to_iteration_number: int) -> List[str]:
        """Remove iterations after ``to_iteration_number`` and resume the session there.

        File operations of the removed iterations are deleted with them, feedback
        that referenced them keeps its row but loses the iteration link.
        """
        with self._transaction():
            ids = [
                row["id"]
                for row in self._conn.execute(
                    "SELECT id FROM iterations WHERE session_id = ? AND iteration_number > ?",
                    (session_id, to_iteration_number),
                ).fetchall()
            ]
            self._delete_iterations(ids)
            self._conn.execute(
                """
                UPDATE sessions SET
                    current_iteration = ?,
                    status = ?,
                    error_message = NULL,
                    stuck_reason = NULL,
                    completed_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    to_iteration_number,
                    SessionStatus.RUNNING.value,
                    _as_iso(utc_now()),
                    session_id,
                ),
            )
        return ids

    def _delete_iterations(self, iteration_ids: Sequence[str]) -> None:
        if not iteration_ids:
            return
        placeholders = ",".join("?" for _ in iteration_ids)
        self._conn.execute(
            f"DELETE FROM file_operations WHERE iteration_id IN ({placeholders})",
            list(iteration_ids),
        )
        self._conn.execute(
            f"DELETE FROM iterations WHERE id IN ({placeholders})",
            list(iteration_ids),
        )

    # File operation records ----------------------------------------------------------
    def record_file_operation(self, operation: FileOperation) -> bool:
        """Insert ``operation`` unless its iteration has been removed.

        Returns ``False`` when nothing was written.
        """
        with self._transaction():
            cursor = self._conn.execute(
                """
                INSERT INTO file_operations (
                    id, session_id, iteration_id, file_path, operation, before_sha,
                    before_content, created_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?
                WHERE ? IS NULL OR EXISTS (SELECT 1 FROM iterations WHERE id = ?)
                """,
                (
                    operation.id,
                    operation.session_id,
                    operation.iteration_id,
                    operation.file_path,
                    operation.operation.value,
                    operation.before_sha,
                    operation.before_content,
                    _as_iso(operation.created_at),
                    operation.iteration_id,
                    operation.iteration_id,
                ),
            )
        return cursor.rowcount == 1

    def list_file_operations(
        self,
        session_id: str,
        *,
        iteration_ids: Optional[Sequence[str]] = None,
    ) -> List[FileOperation]:
        query = "SELECT * FROM file_operations WHERE session_id = ?"
        params: List[Any] = [session_id]
        if iteration_ids is not None:
            if not iteration_ids:
                return []
            placeholders = ",".join("?" for _ in iteration_ids)
            query += f" AND iteration_id IN ({placeholders})"
            params.extend(iteration_ids)
        query += " ORDER BY created_at ASC, rowid ASC"
        cursor = self._conn.execute(query, params)
        return [
            FileOperation(
                id=row["id"],
                session_id=row["session_id"],
                iteration_id=row["iteration_id"],
                file_path=row["file_path"],
                operation=row["operation"],
                before_sha=row["before_sha"],
                before_content=row["before_content"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    # Feedback operations -------------------------------------------------------------
    def add_feedback(self, feedback: Feedback) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO feedback (
                    id, session_id, iteration_id, feedback_type, content, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feedback.id,
                    feedback.session_id,
                    feedback.iteration_id,
                    feedback.feedback_type.value,
                    feedback.content,
                    feedback.created_by,
                    _as_iso(feedback.created_at),
                ),
            )

    def latest_feedback(
        self,
        session_id: str,
        *,
        feedback_types: Optional[Sequence[FeedbackType]] = None,
    ) -> Optional[Feedback]:
        query = "SELECT * FROM feedback WHERE session_id = ?"
        params: List[Any] = [session_id]
        if feedback_types:
            placeholders = ",".join("?" for _ in feedback_types)
            query += f" AND feedback_type IN ({placeholders})"
            params.extend(item.value for item in feedback_types)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        row = self._conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._row_to_feedback(row)

    def list_feedback(self, session_id: str) -> List[Feedback]:
        cursor = self._conn.execute(
            "SELECT * FROM feedback WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
            (session_id,),
        )
        return [self._row_to_feedback(row) for row in cursor.fetchall()]

    # Activity log --------------------------------------------------------------------
    def append_activity(self, activity: TaskActivity) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO task_activity (id, task_id, project_id, actor_id, kind, after_value, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    activity.id,
                    activity.task_id,
                    activity.project_id,
                    activity.actor_id,
                    activity.kind.value,
                    json.dumps(activity.after_value),
                    _as_iso(activity.created_at),
                ),
            )

    def list_activity(self, task_id: str) -> List[TaskActivity]:
        cursor = self._conn.execute(
            "SELECT * FROM task_activity WHERE task_id = ? ORDER BY created_at ASC, rowid ASC",
            (task_id,),
        )
        return [
            TaskActivity(
                id=row["id"],
                task_id=row["task_id"],
                project_id=row["project_id"],
                actor_id=row["actor_id"],
                kind=row["kind"],
                after_value=_load_json(row["after_value"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    # Row mappers ---------------------------------------------------------------------
    def _row_to_session(self, row: sqlite3.Row) -> ExecutionSession:
        return ExecutionSession(
            id=row["id"],
            task_id=row["task_id"],
            project_id=row["project_id"],
            repo_id=row["repo_id"],
            created_by=row["created_by"],
            status=SessionStatus(row["status"]),
            stage=LoopStage(row["stage"]),
            source_branch=row["source_branch"],
            implementation_branch=row["implementation_branch"],
            current_iteration=row["current_iteration"],
            max_iterations=row["max_iterations"],
            progress=ProgressInfo.model_validate(_load_json(row["progress"], default={})),
            total_files_changed=row["total_files_changed"],
            pr_number=row["pr_number"],
            pr_url=row["pr_url"],
            error_message=row["error_message"],
            stuck_reason=row["stuck_reason"],
            started_at=_from_iso(row["started_at"]),
            completed_at=_from_iso(row["completed_at"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_iteration(self, row: sqlite3.Row) -> Iteration:
        verification = _load_json(row["verification_results"], default=None)
        return Iteration(
            id=row["id"],
            session_id=row["session_id"],
            iteration_number=row["iteration_number"],
            criteria_total=row["criteria_total"],
            criteria_passed=row["criteria_passed"],
            prompt_sent=row["prompt_sent"],
            response_received=row["response_received"],
            commit_sha=row["commit_sha"],
            commit_message=row["commit_message"],
            changes_made=[
                FileChangeSummary.model_validate(item)
                for item in _load_json(row["changes_made"], default=[])
            ],
            verification_results=(
                VerificationResults.model_validate(verification) if verification else None
            ),
            blocked_reason=row["blocked_reason"],
            needs_human_input=bool(row["needs_human_input"]),
            started_at=_from_iso(row["started_at"]),
            completed_at=_from_iso(row["completed_at"]),
        )

    def _row_to_feedback(self, row: sqlite3.Row) -> Feedback:
        return Feedback(
            id=row["id"],
            session_id=row["session_id"],
            iteration_id=row["iteration_id"],
            feedback_type=FeedbackType(row["feedback_type"]),
            content=row["content"],
            created_by=row["created_by"],
            created_at=_from_iso(row["created_at"]),
        )
