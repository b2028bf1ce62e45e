"""Typed records tracked by the implementation session store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a project task."""

    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    DONE = "DONE"


class SessionStatus(str, Enum):
    """Lifecycle states for an implementation session."""

    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    WAITING_FEEDBACK = "WAITING_FEEDBACK"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    STUCK = "STUCK"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)
ACTIVE_STATUSES = (
    SessionStatus.INITIALIZING,
    SessionStatus.RUNNING,
    SessionStatus.WAITING_FEEDBACK,
)


class LoopStage(str, Enum):
    """Fine-grained progress markers written alongside every status change."""

    INITIALIZING = "INITIALIZING"
    ANALYZING_TASK = "ANALYZING_TASK"
    PLANNING = "PLANNING"
    IMPLEMENTING = "IMPLEMENTING"
    VERIFYING = "VERIFYING"
    COMMITTING = "COMMITTING"
    CREATING_PR = "CREATING_PR"
    AWAITING_FEEDBACK = "AWAITING_FEEDBACK"
    ITERATING = "ITERATING"
    FINALIZING = "FINALIZING"


class FileOperationType(str, Enum):
    """File-level change kinds recorded for audit and rollback."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RENAME = "RENAME"


class FeedbackType(str, Enum):
    """Kinds of human input accepted by the feedback gateway."""

    GUIDANCE = "guidance"
    APPROVAL = "approval"
    REJECTION = "rejection"
    ABORT = "abort"


class ActivityKind(str, Enum):
    """Task-level activity entries emitted by the implementation loop."""

    AGENT_IMPLEMENTATION_STARTED = "AGENT_IMPLEMENTATION_STARTED"
    AGENT_IMPLEMENTATION_COMPLETED = "AGENT_IMPLEMENTATION_COMPLETED"
    AGENT_IMPLEMENTATION_FAILED = "AGENT_IMPLEMENTATION_FAILED"
    AGENT_ITERATION_COMPLETED = "AGENT_ITERATION_COMPLETED"


class Task(RecordModel):
    """Project task that an implementation session works on."""

    id: str
    project_id: str
    key: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Repo(RecordModel):
    """Repository registered with a project."""

    id: str
    project_id: str
    owner: str
    name: str
    default_branch: str = "main"
    selected_branch: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class ProgressInfo(RecordModel):
    """Progress snapshot polled by callers while a session runs."""

    stage: LoopStage = LoopStage.INITIALIZING
    message: str = ""
    files_modified: int = 0
    criteria_checked: int = 0
    criteria_passed: int = 0
    criteria_total: int = 0
    current_file: Optional[str] = None
    last_updated: datetime = Field(default_factory=utc_now)


class CriterionVerification(RecordModel):
    """Self-reported outcome for a single acceptance criterion."""

    criterion: str
    passed: bool
    reason: str = ""
    evidence: List[str] = Field(default_factory=list)


class VerificationResults(RecordModel):
    """Verification summary stored on a completed iteration."""

    passed: bool
    score: float
    items: List[CriterionVerification] = Field(default_factory=list)
    summary: str = ""


class FileChangeSummary(RecordModel):
    """Display summary of one file change made within an iteration."""

    file: str
    operation: FileOperationType
    summary: str = ""


class ExecutionSession(RecordModel):
    """One implementation effort for a (task, repository) pair."""

    id: str = Field(default_factory=new_id)
    task_id: str
    project_id: str
    repo_id: str
    created_by: str
    status: SessionStatus = SessionStatus.INITIALIZING
    stage: LoopStage = LoopStage.INITIALIZING
    source_branch: str
    implementation_branch: str
    current_iteration: int = 0
    max_iterations: int = 10
    progress: ProgressInfo = Field(default_factory=ProgressInfo)
    total_files_changed: int = 0
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    error_message: Optional[str] = None
    stuck_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Iteration(RecordModel):
    """One LLM-driven attempt within a session."""

    id: str = Field(default_factory=new_id)
    session_id: str
    iteration_number: int
    criteria_total: int = 0
    criteria_passed: int = 0
    prompt_sent: Optional[str] = None
    response_received: Optional[str] = None
    commit_sha: Optional[str] = None
    commit_message: Optional[str] = None
    changes_made: List[FileChangeSummary] = Field(default_factory=list)
    verification_results: Optional[VerificationResults] = None
    blocked_reason: Optional[str] = None
    needs_human_input: bool = False
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class FileOperation(RecordModel):
    """Pre-change snapshot of a file touched by an iteration."""

    id: str = Field(default_factory=new_id)
    session_id: str
    iteration_id: Optional[str] = None
    file_path: str
    operation: FileOperationType
    before_sha: Optional[str] = None
    before_content: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Feedback(RecordModel):
    """Human-submitted message attached to a session."""

    id: str = Field(default_factory=new_id)
    session_id: str
    iteration_id: Optional[str] = None
    feedback_type: FeedbackType
    content: str
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)


class TaskActivity(RecordModel):
    """Append-only task activity entry."""

    id: str = Field(default_factory=new_id)
    task_id: str
    project_id: str
    actor_id: str
    kind: ActivityKind
    after_value: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
