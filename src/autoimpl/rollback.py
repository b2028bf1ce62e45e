"""Rollback manager: undo iterations or cancel a session outright."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .engine import MAX_SNAPSHOT_CHARS
from .memory.schema import (
    ActivityKind,
    ExecutionSession,
    Feedback,
    FeedbackType,
    FileOperation,
    FileOperationType,
    Repo,
    SessionStatus,
    TaskActivity,
    utc_now,
)
from .memory.store import MemoryStore, RecordNotFoundError
from .tools.vcs import CommitFile, VcsError, VcsHost

__all__ = [
    "ELEVATED_ROLES",
    "RollbackError",
    "RollbackManager",
    "RollbackPermissionError",
    "RollbackResult",
]

LOGGER = logging.getLogger(__name__)

ELEVATED_ROLES = frozenset({"owner", "maintainer", "admin"})


class RollbackError(RuntimeError):
    """Raised when a rollback request cannot be applied."""


class RollbackPermissionError(RollbackError):
    """Raised when the caller's project role may not roll back sessions."""


@dataclass(slots=True)
class RollbackResult:
    message: str
    branch_deleted: bool
    session_cancelled: bool
    removed_iterations: int = 0
    restore_commit: Optional[str] = None


class RollbackManager:
    """Applies partial (to an iteration) or full (cancel) rollbacks.

    Partial rollback keeps the implementation branch history intact. With
    ``restore_branch`` enabled it also adds one forward commit that puts the
    touched files back to their recorded pre-change snapshots.
    """

    def __init__(self, store: MemoryStore, host: VcsHost, *, restore_branch: bool = False) -> None:
        self.store = store
        self.host = host
        self.restore_branch = restore_branch

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        store: MemoryStore,
        host: VcsHost,
    ) -> "RollbackManager":
        rollback_cfg = config.get("rollback") or {}
        return cls(store, host, restore_branch=bool(rollback_cfg.get("restore_branch", False)))

    def rollback(
        self,
        session_id: str,
        reason: str,
        *,
        user_id: str,
        role: str,
        to_iteration_number: Optional[int] = None,
    ) -> RollbackResult:
        if (role or "").strip().lower() not in ELEVATED_ROLES:
            raise RollbackPermissionError("Only maintainers and admins can rollback sessions")
        if not reason or not reason.strip():
            raise RollbackError("A rollback reason is required.")
        reason = reason.strip()

        session = self.store.require_session(session_id)
        if session.status is SessionStatus.CANCELLED:
            raise RollbackError(f"Cannot rollback session with status: {session.status.value}")
        repo = self.store.get_repo(session.repo_id)
        if repo is None:
            raise RecordNotFoundError(f"Repository not found: {session.repo_id}")

        if to_iteration_number is not None:
            return self._partial(session, repo, reason, user_id, to_iteration_number)
        return self._full(session, repo, reason, user_id)

    # ------------------------------------------------------------- partial
    def _partial(
        self,
        session: ExecutionSession,
        repo: Repo,
        reason: str,
        user_id: str,
        target: int,
    ) -> RollbackResult:
        if target < 0 or target > session.current_iteration:
            raise RollbackError(
                f"Iteration {target} is outside the session's range 0..{session.current_iteration}"
            )

        restore_commit: Optional[str] = None
        if self.restore_branch:
            restore_commit = self._restore_files(session, repo, reason, target)

        removed = self.store.rollback_iterations(session.id, target)
        self.store.add_feedback(
            Feedback(
                session_id=session.id,
                feedback_type=FeedbackType.GUIDANCE,
                content=f"Rolled back to iteration {target}. Reason: {reason}",
                created_by=user_id,
            )
        )
        LOGGER.info(
            "[%s] Rolled back to iteration %d (%d iteration(s) removed)",
            session.id[:8],
            target,
            len(removed),
        )
        return RollbackResult(
            message=f"Rolled back to iteration {target}",
            branch_deleted=False,
            session_cancelled=False,
            removed_iterations=len(removed),
            restore_commit=restore_commit,
        )

    def _restore_files(
        self,
        session: ExecutionSession,
        repo: Repo,
        reason: str,
        target: int,
    ) -> Optional[str]:
        """Commit the pre-change snapshots of files touched after ``target``."""
        later_ids = [
            item.id for item in self.store.list_iterations(session.id) if item.iteration_number > target
        ]
        operations = self.store.list_file_operations(session.id, iteration_ids=later_ids)

        # The first recorded operation per path holds its state as of ``target``.
        earliest: Dict[str, FileOperation] = {}
        for operation in operations:
            earliest.setdefault(operation.file_path, operation)

        files: List[CommitFile] = []
        for path, operation in earliest.items():
            snapshot = operation.before_content
            if snapshot is None or operation.operation is FileOperationType.CREATE:
                files.append(CommitFile(path=path, content=None))
            elif len(snapshot) >= MAX_SNAPSHOT_CHARS:
                LOGGER.warning("Snapshot of %s is truncated; leaving the file as is", path)
            else:
                files.append(CommitFile(path=path, content=snapshot))
        if not files:
            return None

        try:
            commit = self.host.create_commit(
                repo.owner,
                repo.name,
                session.implementation_branch,
                f"revert: restore iteration {target} state\n\n{reason}",
                files,
            )
        except VcsError as error:
            LOGGER.warning("[%s] Branch restore failed: %s", session.id[:8], error)
            return None
        return commit.sha

    # ---------------------------------------------------------------- full
    def _full(self, session: ExecutionSession, repo: Repo, reason: str, user_id: str) -> RollbackResult:
        branch_deleted = False
        try:
            if self.host.branch_exists(repo.owner, repo.name, session.implementation_branch):
                self.host.delete_branch(repo.owner, repo.name, session.implementation_branch)
                branch_deleted = True
        except VcsError as error:
            LOGGER.warning("[%s] Error deleting branch: %s", session.id[:8], error)

        self.store.update_session(
            session.id,
            status=SessionStatus.CANCELLED,
            error_message=f"Rolled back by user: {reason}",
            completed_at=utc_now(),
        )
        self.store.add_feedback(
            Feedback(
                session_id=session.id,
                feedback_type=FeedbackType.ABORT,
                content=f"Full rollback. Reason: {reason}",
                created_by=user_id,
            )
        )
        self.store.append_activity(
            TaskActivity(
                task_id=session.task_id,
                project_id=session.project_id,
                actor_id=user_id,
                kind=ActivityKind.AGENT_IMPLEMENTATION_FAILED,
                after_value={"session_id": session.id, "reason": "rollback", "message": reason},
            )
        )
        LOGGER.info("[%s] Session cancelled by full rollback", session.id[:8])
        return RollbackResult(
            message="Session cancelled" + (" and branch deleted" if branch_deleted else ""),
            branch_deleted=branch_deleted,
            session_cancelled=True,
        )
