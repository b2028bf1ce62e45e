"""Session controller: the top-level implementation state machine."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from .context_builder import ContextBuilder
from .criteria import extract_acceptance_criteria, generate_branch_name
from .engine import (
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_SUCCESS_CONFIDENCE,
    IterationEngine,
    OutcomeKind,
    StalledCallError,
)
from .memory.schema import (
    ActivityKind,
    ExecutionSession,
    FeedbackType,
    Iteration,
    LoopStage,
    ProgressInfo,
    Repo,
    SessionStatus,
    Task,
    TaskActivity,
    TaskStatus,
    TERMINAL_STATUSES,
    utc_now,
)
from .memory.store import MemoryStore, RecordNotFoundError
from .models.llm_client import LLMClient
from .prompts import build_pr_description, build_pr_title
from .tools.vcs import VcsError, VcsHost

__all__ = [
    "MAX_ITERATIONS_LIMIT",
    "RunnerConfig",
    "SessionConflictError",
    "SessionController",
    "SessionStartError",
    "launch_session",
    "start_session",
]

LOGGER = logging.getLogger(__name__)

MAX_ITERATIONS_LIMIT = 20
FEEDBACK_TIMEOUT_REASON = "Session timed out waiting for human feedback"

_UNFINISHED_STATUSES = tuple(status for status in SessionStatus if status not in TERMINAL_STATUSES)


class SessionStartError(ValueError):
    """Raised when a session cannot be started for the requested task."""


class SessionConflictError(SessionStartError):
    """Raised when the task already has an active session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"An implementation session is already active for this task: {session_id}")


@dataclass(slots=True)
class RunnerConfig:
    """Timing and budget knobs for the implementation loop."""

    max_iterations: int = 10
    pause_between_iterations: float = 2.0
    feedback_timeout: float = 3600.0
    feedback_poll_interval: float = 5.0
    call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT
    success_confidence: float = DEFAULT_SUCCESS_CONFIDENCE

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RunnerConfig":
        runner_cfg = config.get("runner") or {}
        defaults = cls()

        def _number(key: str, default: float, *, allow_zero: bool = True) -> float:
            value = runner_cfg.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return default
            if value < 0 or (value == 0 and not allow_zero):
                return default
            return float(value)

        call_timeout = runner_cfg.get("call_timeout", defaults.call_timeout)
        if not isinstance(call_timeout, (int, float)) or isinstance(call_timeout, bool) or call_timeout <= 0:
            call_timeout = None

        return cls(
            max_iterations=int(_number("max_iterations", defaults.max_iterations, allow_zero=False)),
            pause_between_iterations=_number("pause_between_iterations", defaults.pause_between_iterations),
            feedback_timeout=_number("feedback_timeout", defaults.feedback_timeout),
            feedback_poll_interval=_number(
                "feedback_poll_interval", defaults.feedback_poll_interval, allow_zero=False
            ),
            call_timeout=float(call_timeout) if call_timeout is not None else None,
            success_confidence=min(_number("success_confidence", defaults.success_confidence), 1.0),
        )


def start_session(
    store: MemoryStore,
    task_id: str,
    repo_id: str,
    user_id: str,
    *,
    max_iterations: int = 10,
    source_branch: Optional[str] = None,
) -> str:
    """Validate the request, persist a new session, and return its id.

    The session is left INITIALIZING; running it is the caller's job (see
    :func:`launch_session`).
    """
    if not 1 <= max_iterations <= MAX_ITERATIONS_LIMIT:
        raise SessionStartError(f"max_iterations must be between 1 and {MAX_ITERATIONS_LIMIT}")

    task = store.get_task(task_id)
    if task is None:
        raise RecordNotFoundError(f"Task not found: {task_id}")
    repo = store.get_repo(repo_id)
    if repo is None:
        raise RecordNotFoundError(f"Repository not found: {repo_id}")

    active = store.find_active_session(task_id)
    if active is not None:
        raise SessionConflictError(active.id)

    criteria = extract_acceptance_criteria(task.description)
    if not criteria:
        raise SessionStartError(
            "Task has no acceptance criteria. Add criteria to the task description before implementing."
        )

    branch = source_branch or repo.selected_branch or repo.default_branch
    session = ExecutionSession(
        task_id=task.id,
        project_id=task.project_id,
        repo_id=repo.id,
        created_by=user_id,
        source_branch=branch,
        implementation_branch=generate_branch_name(task.key, task.title),
        max_iterations=max_iterations,
        progress=ProgressInfo(message="Session created", criteria_total=len(criteria)),
    )
    store.create_session(session)
    store.update_task_status(task.id, TaskStatus.IN_PROGRESS)
    store.append_activity(
        TaskActivity(
            task_id=task.id,
            project_id=task.project_id,
            actor_id=user_id,
            kind=ActivityKind.AGENT_IMPLEMENTATION_STARTED,
            after_value={
                "session_id": session.id,
                "repo": repo.full_name,
                "implementation_branch": session.implementation_branch,
                "max_iterations": max_iterations,
            },
        )
    )
    LOGGER.info("[%s] Session created for %s on %s", session.id[:8], task.key, repo.full_name)
    return session.id


class _Exit(str, Enum):
    SUCCEEDED = "succeeded"
    APPROVED = "approved"
    STUCK = "stuck"
    CANCELLED = "cancelled"
    DETACHED = "detached"


class SessionController:
    """Drives one session's iterations until success, stuck, cancel, or failure.

    Status is re-read from the store at every pass boundary; the feedback
    gateway and rollback manager change it from other threads or processes.
    """

    def __init__(
        self,
        store: MemoryStore,
        llm: LLMClient,
        host: VcsHost,
        session_id: str,
        *,
        config: Optional[RunnerConfig] = None,
        context_builder: Optional[ContextBuilder] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.host = host
        self.session_id = session_id
        self.config = config or RunnerConfig()
        self.engine = IterationEngine(
            store,
            llm,
            host,
            context_builder=context_builder,
            success_confidence=self.config.success_confidence,
            call_timeout=self.config.call_timeout,
        )
        self._sleep = sleep
        self._clock = clock
        self._prefix = session_id[:8]
        self._task: Optional[Task] = None
        self._repo: Optional[Repo] = None
        self._criteria: List[str] = []

    # ------------------------------------------------------------- helpers
    def _log(self, level: int, message: str, *args: Any) -> None:
        LOGGER.log(level, f"[{self._prefix}] {message}", *args)

    def _progress(self, stage: LoopStage, message: str, **counts: Any) -> None:
        self.store.update_progress(
            self.session_id, ProgressInfo(stage=stage, message=message, **counts)
        )

    def _activity(self, kind: ActivityKind, **after_value: Any) -> None:
        task = self._task
        if task is None:
            return
        session = self.store.require_session(self.session_id)
        self.store.append_activity(
            TaskActivity(
                task_id=task.id,
                project_id=task.project_id,
                actor_id=session.created_by,
                kind=kind,
                after_value={"session_id": self.session_id, **after_value},
            )
        )

    # ----------------------------------------------------------------- run
    def run(self) -> Optional[SessionStatus]:
        """Run the session to an exit point and return the persisted status."""
        try:
            if self._initialise():
                exit_kind, reason = self._loop()
                self._finalise(exit_kind, reason)
        except Exception as error:  # noqa: BLE001 - single outermost handler
            LOGGER.exception("[%s] Fatal error: %s", self._prefix, error)
            self._fail(str(error) or error.__class__.__name__)
        return self.store.get_session_status(self.session_id)

    def publish(self) -> Optional[SessionStatus]:
        """Open the pull request for a session approved while no loop was running."""
        session = self.store.require_session(self.session_id)
        if session.status is not SessionStatus.SUCCEEDED or session.pr_number is not None:
            return session.status
        self._task = self.store.get_task(session.task_id)
        self._repo = self.store.get_repo(session.repo_id)
        if self._task is None or self._repo is None:
            raise RecordNotFoundError("Task or repository not found for session")
        self._criteria = extract_acceptance_criteria(self._task.description)
        self._open_pull_request()
        return self.store.get_session_status(self.session_id)

    def _initialise(self) -> bool:
        session = self.store.get_session(self.session_id)
        if session is None:
            self._log(logging.ERROR, "Session not found")
            return False
        if session.status.is_terminal or session.status is SessionStatus.STUCK:
            self._log(logging.INFO, "Session is %s; nothing to run", session.status.value)
            return False

        self._task = self.store.get_task(session.task_id)
        self._repo = self.store.get_repo(session.repo_id)
        if self._task is None or self._repo is None:
            raise RecordNotFoundError("Task or repository not found for session")

        if session.status is SessionStatus.INITIALIZING:
            self.store.transition_session(
                self.session_id,
                (SessionStatus.INITIALIZING,),
                SessionStatus.RUNNING,
                started_at=session.started_at or utc_now(),
            )

        self._criteria = extract_acceptance_criteria(self._task.description)
        if not self._criteria:
            raise ValueError("Task has no acceptance criteria")
        self._log(logging.INFO, "Found %d acceptance criteria", len(self._criteria))

        self._progress(LoopStage.INITIALIZING, "Creating implementation branch...")
        self._ensure_branch(session)

        discarded = self.store.delete_incomplete_iterations(self.session_id)
        if discarded:
            self._log(logging.WARNING, "Discarded %d abandoned in-flight iteration(s)", discarded)
        return True

    def _ensure_branch(self, session: ExecutionSession) -> None:
        repo = self._repo
        assert repo is not None
        branch = session.implementation_branch
        try:
            if self.engine.guarded(
                "branch check", self.host.branch_exists, repo.owner, repo.name, branch
            ):
                self._log(logging.INFO, "Branch already exists: %s", branch)
                return
            self.engine.guarded(
                "branch creation",
                self.host.create_branch,
                repo.owner,
                repo.name,
                branch,
                session.source_branch,
            )
            self._log(logging.INFO, "Created branch %s from %s", branch, session.source_branch)
        except VcsError as error:
            self._log(logging.WARNING, "Branch creation warning: %s", error)

    # ---------------------------------------------------------------- loop
    def _loop(self) -> tuple[_Exit, Optional[str]]:
        task, repo = self._task, self._repo
        assert task is not None and repo is not None

        while True:
            status = self.store.get_session_status(self.session_id)
            if status is None or status is SessionStatus.CANCELLED:
                self._log(logging.INFO, "Session cancelled, exiting loop")
                return _Exit.CANCELLED, None
            if status is SessionStatus.SUCCEEDED:
                return _Exit.APPROVED, None
            if status in (SessionStatus.FAILED, SessionStatus.STUCK):
                return _Exit.DETACHED, None
            if status is SessionStatus.WAITING_FEEDBACK:
                feedback = self.store.latest_feedback(self.session_id)
                if feedback is None or feedback.feedback_type is FeedbackType.ABORT:
                    self._log(logging.INFO, "No feedback or abort received, exiting")
                    return _Exit.DETACHED, None
                if not self.store.transition_session(
                    self.session_id,
                    (SessionStatus.WAITING_FEEDBACK,),
                    SessionStatus.RUNNING,
                    stuck_reason=None,
                ):
                    continue

            session = self.store.require_session(self.session_id)
            if session.current_iteration >= session.max_iterations:
                return _Exit.STUCK, self._budget_reason(session)

            number = session.current_iteration + 1
            self._log(logging.INFO, "Starting iteration %d", number)
            self._progress(
                LoopStage.ANALYZING_TASK,
                f"Starting iteration {number}...",
                criteria_total=len(self._criteria),
            )
            iteration = Iteration(
                session_id=self.session_id,
                iteration_number=number,
                criteria_total=len(self._criteria),
            )
            self.store.create_iteration(iteration)

            try:
                outcome = self.engine.run(
                    session, task, repo, self._criteria, iteration, progress=self._progress
                )
            except StalledCallError as error:
                self._log(logging.WARNING, "%s", error)
                return _Exit.STUCK, str(error)

            if outcome.kind is OutcomeKind.ABANDONED:
                continue
            if outcome.kind is OutcomeKind.MALFORMED:
                return _Exit.STUCK, outcome.reason

            if outcome.kind is OutcomeKind.NEEDS_HUMAN_INPUT:
                status = self._await_feedback(outcome.reason or "Awaiting human input")
                if status is None:
                    return _Exit.STUCK, FEEDBACK_TIMEOUT_REASON
                if status is SessionStatus.RUNNING:
                    self._log(logging.INFO, "Feedback received, continuing")
                    continue
                if status is SessionStatus.CANCELLED:
                    self._log(logging.INFO, "Session cancelled while waiting")
                    return _Exit.CANCELLED, None
                if status is SessionStatus.SUCCEEDED:
                    return _Exit.APPROVED, None
                return _Exit.DETACHED, None

            if outcome.all_passed:
                return _Exit.SUCCEEDED, None
            if number >= session.max_iterations:
                return _Exit.STUCK, self._budget_reason(session)

            self._sleep(self.config.pause_between_iterations)

    @staticmethod
    def _budget_reason(session: ExecutionSession) -> str:
        return f"Max iterations ({session.max_iterations}) reached without passing all criteria"

    def _await_feedback(self, reason: str) -> Optional[SessionStatus]:
        """Suspend until the session leaves WAITING_FEEDBACK or the wait times out.

        Returns the status that ended the wait, or ``None`` on timeout. A session
        that stopped being RUNNING during the pass is never moved back to waiting.
        """
        if not self.store.transition_session(
            self.session_id,
            (SessionStatus.RUNNING,),
            SessionStatus.WAITING_FEEDBACK,
            stuck_reason=reason,
        ):
            return self.store.get_session_status(self.session_id)
        self._progress(LoopStage.AWAITING_FEEDBACK, reason, criteria_total=len(self._criteria))
        self._log(logging.INFO, "Waiting for human feedback: %s", reason)

        deadline = self._clock() + self.config.feedback_timeout
        while self._clock() < deadline:
            self._sleep(self.config.feedback_poll_interval)
            status = self.store.get_session_status(self.session_id)
            if status is not None and status is not SessionStatus.WAITING_FEEDBACK:
                return status
        self._log(logging.WARNING, "Timed out waiting for human feedback")
        return None

    # ------------------------------------------------------------ finalise
    def _finalise(self, exit_kind: _Exit, reason: Optional[str]) -> None:
        if exit_kind in (_Exit.SUCCEEDED, _Exit.APPROVED):
            self._open_pull_request()
        elif exit_kind is _Exit.STUCK:
            self._mark_stuck(reason or "Session is stuck")

    def _open_pull_request(self) -> None:
        task, repo = self._task, self._repo
        assert task is not None and repo is not None
        session = self.store.require_session(self.session_id)
        if session.pr_number is not None:
            return
        # Claim SUCCEEDED first; a cancel or rollback that landed mid-pass wins.
        if not self.store.transition_session(
            self.session_id,
            (SessionStatus.RUNNING, SessionStatus.SUCCEEDED),
            SessionStatus.SUCCEEDED,
            completed_at=session.completed_at or utc_now(),
        ):
            self._log(
                logging.INFO,
                "Session is %s; not opening a pull request",
                self._status_label(),
            )
            return

        self._progress(LoopStage.CREATING_PR, "Creating pull request...", criteria_total=len(self._criteria))
        body = build_pr_description(
            task, self._criteria, session.current_iteration, session.total_files_changed
        )
        try:
            pr = self.engine.guarded(
                "pull request creation",
                self.host.create_pull_request,
                repo.owner,
                repo.name,
                title=build_pr_title(task),
                body=body,
                head=session.implementation_branch,
                base=session.source_branch,
                draft=True,
            )
        except (VcsError, StalledCallError) as error:
            self._log(logging.WARNING, "PR creation failed: %s", error)
            self.store.transition_session(
                self.session_id,
                (SessionStatus.SUCCEEDED,),
                SessionStatus.SUCCEEDED,
                error_message=f"PR creation failed: {error}",
            )
            return

        self._log(logging.INFO, "Created PR #%d: %s", pr.number, pr.html_url)
        if not self.store.transition_session(
            self.session_id,
            (SessionStatus.SUCCEEDED,),
            SessionStatus.SUCCEEDED,
            pr_number=pr.number,
            pr_url=pr.html_url,
        ):
            self._log(logging.WARNING, "Session changed while PR #%d was being opened", pr.number)
            return
        self._progress(
            LoopStage.FINALIZING,
            "Implementation complete!",
            criteria_total=len(self._criteria),
            criteria_passed=len(self._criteria),
        )
        self.store.update_task_status(task.id, TaskStatus.IN_REVIEW)
        self._activity(
            ActivityKind.AGENT_IMPLEMENTATION_COMPLETED,
            pr_number=pr.number,
            pr_url=pr.html_url,
            iterations=session.current_iteration,
        )

    def _mark_stuck(self, reason: str) -> None:
        if not self.store.transition_session(
            self.session_id,
            (SessionStatus.RUNNING, SessionStatus.WAITING_FEEDBACK),
            SessionStatus.STUCK,
            stuck_reason=reason,
            completed_at=utc_now(),
        ):
            status = self.store.get_session_status(self.session_id)
            self._log(logging.INFO, "Not marking stuck; session is %s", self._status_label(status))
            if status is SessionStatus.SUCCEEDED:
                self._open_pull_request()
            return
        self._log(logging.WARNING, "Stuck: %s", reason)
        self._progress(LoopStage.AWAITING_FEEDBACK, reason, criteria_total=len(self._criteria))
        session = self.store.require_session(self.session_id)
        self._activity(
            ActivityKind.AGENT_IMPLEMENTATION_FAILED,
            reason=reason,
            iterations=session.current_iteration,
        )

    def _fail(self, message: str) -> None:
        if not self.store.transition_session(
            self.session_id,
            _UNFINISHED_STATUSES,
            SessionStatus.FAILED,
            error_message=message,
            completed_at=utc_now(),
        ):
            return
        if self._task is None:
            session = self.store.get_session(self.session_id)
            self._task = self.store.get_task(session.task_id) if session else None
        self._activity(ActivityKind.AGENT_IMPLEMENTATION_FAILED, error=message)

    def _status_label(self, status: Optional[SessionStatus] = None) -> str:
        status = status or self.store.get_session_status(self.session_id)
        return status.value if status else "missing"


def launch_session(
    db_path: Path | str,
    session_id: str,
    *,
    llm_factory: Callable[[], LLMClient],
    host: VcsHost,
    config: Optional[RunnerConfig] = None,
    context_builder: Optional[ContextBuilder] = None,
) -> threading.Thread:
    """Run the session controller on a daemon thread with its own store connection."""

    def _target() -> None:
        with MemoryStore(db_path) as store:
            SessionController(
                store,
                llm_factory(),
                host,
                session_id,
                config=config,
                context_builder=context_builder,
            ).run()

    thread = threading.Thread(target=_target, name=f"autoimpl-session-{session_id[:8]}", daemon=True)
    thread.start()
    return thread
