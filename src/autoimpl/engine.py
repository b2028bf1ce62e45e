"""Single-iteration execution: prompt, model call, structured result, commit."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from .context_builder import ContextBuilder, ImplementationContext
from .memory.schema import (
    ActivityKind,
    CriterionVerification,
    ExecutionSession,
    FeedbackType,
    FileChangeSummary,
    FileOperation,
    FileOperationType,
    Iteration,
    LoopStage,
    Repo,
    Task,
    TaskActivity,
    VerificationResults,
)
from .memory.store import MemoryStore
from .models.llm_client import LLMClient
from .prompts import truncate_text
from .structured import ImplementationResult, MalformedResultError, parse_implementation_result
from .tools.vcs import CommitFile, VcsError, VcsHost

__all__ = [
    "IterationEngine",
    "IterationOutcome",
    "ABANDONED_REASON",
    "MALFORMED_RESULT_REASON",
    "OutcomeKind",
    "ProgressCallback",
    "StalledCallError",
]

LOGGER = logging.getLogger(__name__)

MALFORMED_RESULT_REASON = "AI response was not in expected format"
ABANDONED_REASON = "Iteration was rolled back while in flight"
MAX_TRANSCRIPT_CHARS = 50_000
MAX_SNAPSHOT_CHARS = 100_000
DEFAULT_CALL_TIMEOUT = 600.0
DEFAULT_SUCCESS_CONFIDENCE = 0.8

T = TypeVar("T")
ProgressCallback = Callable[..., None]


class StalledCallError(RuntimeError):
    """Raised when an external call does not return within the configured timeout."""

    def __init__(self, what: str, timeout: float) -> None:
        self.what = what
        self.timeout = timeout
        super().__init__(f"Stalled call: {what} did not return within {timeout:g}s")


class _IterationRemoved(Exception):
    """The in-flight iteration row no longer exists."""


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    NEEDS_HUMAN_INPUT = "needs_human_input"
    MALFORMED = "malformed"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class IterationOutcome:
    """What one iteration produced, as seen by the session controller."""

    kind: OutcomeKind
    reason: Optional[str] = None
    result: Optional[ImplementationResult] = None
    commit_sha: Optional[str] = None
    files_changed: int = 0
    all_passed: bool = False


def _no_progress(stage: LoopStage, message: str, **counts: Any) -> None:
    return None


class IterationEngine:
    """Runs exactly one iteration against the model and the implementation branch."""

    def __init__(
        self,
        store: MemoryStore,
        llm: LLMClient,
        host: VcsHost,
        *,
        context_builder: Optional[ContextBuilder] = None,
        success_confidence: float = DEFAULT_SUCCESS_CONFIDENCE,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        self.store = store
        self.llm = llm
        self.host = host
        self.context_builder = context_builder or ContextBuilder()
        self.success_confidence = success_confidence
        self.call_timeout = call_timeout if call_timeout and call_timeout > 0 else None

    # ------------------------------------------------------------ call guard
    def guarded(self, what: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` under the per-call timeout, raising :class:`StalledCallError`."""
        if self.call_timeout is None:
            return func(*args, **kwargs)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="autoimpl-call")
        try:
            future = executor.submit(func, *args, **kwargs)
            try:
                return future.result(timeout=self.call_timeout)
            except FutureTimeoutError as error:
                raise StalledCallError(what, self.call_timeout) from error
        finally:
            # A stalled worker is abandoned, never joined.
            executor.shutdown(wait=False)

    # ----------------------------------------------------------------- run
    def run(
        self,
        session: ExecutionSession,
        task: Task,
        repo: Repo,
        criteria: Sequence[str],
        iteration: Iteration,
        *,
        progress: ProgressCallback = _no_progress,
    ) -> IterationOutcome:
        """Execute ``iteration`` and persist its completed record.

        Malformed output and requests for human input finish the iteration
        without touching the branch; the controller decides what happens next.
        An iteration removed by a concurrent rollback is reported as ABANDONED
        and nothing further is written or committed for it.
        """
        try:
            return self._execute(session, task, repo, criteria, iteration, progress)
        except _IterationRemoved:
            LOGGER.warning(
                "Iteration %d was removed while in flight; discarding its result",
                iteration.iteration_number,
            )
            return IterationOutcome(kind=OutcomeKind.ABANDONED, reason=ABANDONED_REASON)

    def _execute(
        self,
        session: ExecutionSession,
        task: Task,
        repo: Repo,
        criteria: Sequence[str],
        iteration: Iteration,
        progress: ProgressCallback,
    ) -> IterationOutcome:
        criteria_total = len(criteria)
        progress(LoopStage.PLANNING, "Building implementation context...", criteria_total=criteria_total)
        context = self._gather_context(session, task, repo, criteria, iteration)
        package = self.context_builder.build(context)

        progress(LoopStage.IMPLEMENTING, "Generating implementation...", criteria_total=criteria_total)
        LOGGER.info(
            "Iteration %d: sending prompt (%d chars)", iteration.iteration_number, len(package.user_prompt)
        )
        response = self.guarded(
            "LLM completion",
            self.llm.complete,
            package.system_prompt,
            package.user_prompt,
            metadata=package.metadata,
        )
        transcript = {
            "prompt_sent": truncate_text(package.user_prompt, MAX_TRANSCRIPT_CHARS),
            "response_received": truncate_text(response, MAX_TRANSCRIPT_CHARS),
        }

        try:
            result = parse_implementation_result(response)
        except MalformedResultError as error:
            LOGGER.warning("Iteration %d: %s", iteration.iteration_number, error)
            self._finish(
                session,
                task,
                iteration,
                criteria_total=criteria_total,
                blocked_reason=f"Failed to parse AI response: {error}",
                **transcript,
            )
            return IterationOutcome(kind=OutcomeKind.MALFORMED, reason=MALFORMED_RESULT_REASON)

        if result.needs_human_input:
            reason = (result.human_input_reason or "").strip() or "AI requested human input"
            LOGGER.info("Iteration %d: model needs human input: %s", iteration.iteration_number, reason)
            self._finish(
                session,
                task,
                iteration,
                criteria_total=criteria_total,
                needs_human_input=True,
                blocked_reason=reason,
                **transcript,
            )
            return IterationOutcome(kind=OutcomeKind.NEEDS_HUMAN_INPUT, reason=reason, result=result)

        commit_sha, summaries, blocked_reason = self._apply_changes(
            session, repo, iteration, result, criteria_total, progress
        )
        files_changed = len(summaries) if commit_sha else 0

        verification = result.verification
        passed_count = verification.passed_count
        progress(
            LoopStage.VERIFYING,
            "Checking acceptance criteria...",
            criteria_total=criteria_total,
            criteria_checked=len(verification.self_check),
            criteria_passed=passed_count,
            files_modified=len(summaries),
        )
        all_passed = verification.all_passed and verification.confidence >= self.success_confidence
        self._finish(
            session,
            task,
            iteration,
            files_changed=files_changed,
            criteria_total=criteria_total,
            criteria_passed=passed_count,
            commit_sha=commit_sha,
            commit_message=result.commit_message if commit_sha else None,
            changes_made=summaries,
            blocked_reason=blocked_reason,
            verification_results=VerificationResults(
                passed=verification.all_passed,
                score=verification.confidence,
                items=[
                    CriterionVerification(
                        criterion=item.criterion,
                        passed=item.passed,
                        reason=item.reason,
                        evidence=list(item.evidence),
                    )
                    for item in verification.self_check
                ],
                summary="All criteria passed" if verification.all_passed else "Some criteria not met",
            ),
            **transcript,
        )
        LOGGER.info(
            "Iteration %d complete: %d/%d criteria passed, confidence %.2f",
            iteration.iteration_number,
            passed_count,
            len(verification.self_check),
            verification.confidence,
        )
        return IterationOutcome(
            kind=OutcomeKind.COMPLETED,
            result=result,
            commit_sha=commit_sha,
            files_changed=files_changed,
            all_passed=all_passed,
        )

    # ------------------------------------------------------------- helpers
    def _gather_context(
        self,
        session: ExecutionSession,
        task: Task,
        repo: Repo,
        criteria: Sequence[str],
        iteration: Iteration,
    ) -> ImplementationContext:
        branch = session.implementation_branch
        previous = self.store.list_iterations(session.id, before_number=iteration.iteration_number)
        feedback = self.store.latest_feedback(
            session.id, feedback_types=(FeedbackType.GUIDANCE, FeedbackType.REJECTION)
        )
        paths = self.guarded("tree listing", self.host.get_tree, repo.owner, repo.name, branch)

        def _read(path: str) -> str:
            remote = self.guarded(
                f"read of {path}", self.host.get_file_content, repo.owner, repo.name, path, branch
            )
            return remote.text()

        key_paths = self.context_builder.select_key_files(task, paths)
        return ImplementationContext(
            task=task,
            repo=repo,
            acceptance_criteria=list(criteria),
            repo_structure=list(paths),
            key_files=self.context_builder.load_key_files(key_paths, _read),
            previous_iterations=previous,
            human_feedback=feedback.content if feedback else None,
        )

    def _apply_changes(
        self,
        session: ExecutionSession,
        repo: Repo,
        iteration: Iteration,
        result: ImplementationResult,
        criteria_total: int,
        progress: ProgressCallback,
    ) -> tuple[Optional[str], List[FileChangeSummary], Optional[str]]:
        """Snapshot, record, and commit the declared changes as one commit."""
        if not result.file_changes:
            return None, [], None

        branch = session.implementation_branch
        progress(
            LoopStage.IMPLEMENTING,
            "Applying file changes...",
            criteria_total=criteria_total,
            files_modified=len(result.file_changes),
        )
        commit_files: List[CommitFile] = []
        summaries: List[FileChangeSummary] = []
        for change in result.file_changes:
            operation = FileOperationType(change.operation)
            before_sha: Optional[str] = None
            before_content: Optional[str] = None
            if operation in (FileOperationType.UPDATE, FileOperationType.DELETE):
                try:
                    existing = self.guarded(
                        f"read of {change.path}",
                        self.host.get_file_content,
                        repo.owner,
                        repo.name,
                        change.path,
                        branch,
                    )
                except VcsError as error:
                    LOGGER.info("No prior content for %s %s: %s", operation.value, change.path, error)
                else:
                    before_sha = existing.sha
                    before_content = existing.text()[:MAX_SNAPSHOT_CHARS]

            recorded = self.store.record_file_operation(
                FileOperation(
                    session_id=session.id,
                    iteration_id=iteration.id,
                    file_path=change.path,
                    operation=operation,
                    before_sha=before_sha,
                    before_content=before_content,
                )
            )
            if not recorded:
                raise _IterationRemoved(iteration.id)
            content = None if operation is FileOperationType.DELETE else change.content
            commit_files.append(CommitFile(path=change.path, content=content))
            summaries.append(FileChangeSummary(file=change.path, operation=operation, summary=change.reason))

        progress(
            LoopStage.COMMITTING,
            "Creating commit...",
            criteria_total=criteria_total,
            files_modified=len(commit_files),
        )
        if not self.store.is_iteration_open(iteration.id):
            raise _IterationRemoved(iteration.id)
        try:
            commit = self.guarded(
                "commit",
                self.host.create_commit,
                repo.owner,
                repo.name,
                branch,
                result.commit_message,
                commit_files,
            )
        except VcsError as error:
            LOGGER.warning("Iteration %d: commit failed: %s", iteration.iteration_number, error)
            return None, summaries, f"Commit failed: {error}"
        LOGGER.info("Iteration %d: created commit %s", iteration.iteration_number, commit.sha)
        return commit.sha, summaries, None

    def _finish(
        self,
        session: ExecutionSession,
        task: Task,
        iteration: Iteration,
        *,
        files_changed: int = 0,
        **fields: Any,
    ) -> None:
        if not self.store.complete_iteration(iteration, files_changed=files_changed, **fields):
            raise _IterationRemoved(iteration.id)
        self.store.append_activity(
            TaskActivity(
                task_id=task.id,
                project_id=task.project_id,
                actor_id=session.created_by,
                kind=ActivityKind.AGENT_ITERATION_COMPLETED,
                after_value={
                    "session_id": session.id,
                    "iteration": iteration.iteration_number,
                    "criteria_passed": fields.get("criteria_passed", 0),
                    "criteria_total": fields.get("criteria_total", 0),
                    "needs_human_input": bool(fields.get("needs_human_input", False)),
                },
            )
        )
