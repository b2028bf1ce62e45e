"""Feedback gateway: human input that pauses, resumes, approves, or aborts a session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .memory.schema import Feedback, FeedbackType, SessionStatus, utc_now
from .memory.store import MemoryStore

__all__ = [
    "ACCEPTING_STATUSES",
    "FeedbackError",
    "FeedbackGateway",
    "FeedbackRejectedError",
    "FeedbackResult",
]

LOGGER = logging.getLogger(__name__)

ACCEPTING_STATUSES = (
    SessionStatus.WAITING_FEEDBACK,
    SessionStatus.STUCK,
    SessionStatus.RUNNING,
)
_PAUSED_STATUSES = (SessionStatus.WAITING_FEEDBACK, SessionStatus.STUCK)


class FeedbackError(ValueError):
    """Raised when a feedback submission is invalid."""


class FeedbackRejectedError(FeedbackError):
    """Raised when the session is not in a state that accepts feedback."""

    def __init__(self, status: SessionStatus) -> None:
        self.status = status
        accepted = ", ".join(item.value for item in ACCEPTING_STATUSES)
        super().__init__(
            f"Cannot submit feedback for session in {status.value} status. "
            f"Feedback is only accepted when status is: {accepted}"
        )


@dataclass(slots=True)
class FeedbackResult:
    feedback: Feedback
    previous_status: SessionStatus
    status: SessionStatus

    @property
    def resume_required(self) -> bool:
        """True when a STUCK session was reopened and no loop is alive to pick it up."""
        return self.previous_status is SessionStatus.STUCK and self.status is SessionStatus.RUNNING

    @property
    def publish_required(self) -> bool:
        """True when a STUCK session was approved and still needs its pull request."""
        return self.previous_status is SessionStatus.STUCK and self.status is SessionStatus.SUCCEEDED


class FeedbackGateway:
    """Persists human feedback and applies its status effect."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def submit_feedback(
        self,
        session_id: str,
        feedback_type: Union[FeedbackType, str],
        content: str,
        *,
        user_id: str,
        iteration_id: Optional[str] = None,
    ) -> FeedbackResult:
        """Record feedback for ``session_id`` and transition the session.

        ``abort`` cancels from any accepting state. ``approval`` succeeds and
        ``guidance``/``rejection`` resume a session that is WAITING_FEEDBACK or
        STUCK; on a RUNNING session they are only stored for the next pass.
        """
        kind = self._coerce_type(feedback_type)
        if not content or not content.strip():
            raise FeedbackError("Feedback content is required.")

        session = self.store.require_session(session_id)
        if session.status not in ACCEPTING_STATUSES:
            raise FeedbackRejectedError(session.status)

        if iteration_id is None:
            latest = self.store.latest_iteration(session_id)
            iteration_id = latest.id if latest else None
        else:
            iteration = self.store.get_iteration(iteration_id)
            if iteration is None or iteration.session_id != session_id:
                raise FeedbackError(f"Iteration {iteration_id} does not belong to session {session_id}")

        feedback = Feedback(
            session_id=session_id,
            iteration_id=iteration_id,
            feedback_type=kind,
            content=content.strip(),
            created_by=user_id,
        )
        self.store.add_feedback(feedback)

        previous = session.status
        if kind is FeedbackType.ABORT:
            self.store.transition_session(
                session_id, ACCEPTING_STATUSES, SessionStatus.CANCELLED, completed_at=utc_now()
            )
        elif kind is FeedbackType.APPROVAL:
            self.store.transition_session(
                session_id, _PAUSED_STATUSES, SessionStatus.SUCCEEDED, completed_at=utc_now()
            )
        elif previous in _PAUSED_STATUSES:
            self.store.transition_session(
                session_id,
                _PAUSED_STATUSES,
                SessionStatus.RUNNING,
                stuck_reason=None,
                completed_at=None,
            )

        status = self.store.get_session_status(session_id) or previous
        LOGGER.info(
            "[%s] %s feedback recorded (%s -> %s)",
            session_id[:8],
            kind.value,
            previous.value,
            status.value,
        )
        return FeedbackResult(feedback=feedback, previous_status=previous, status=status)

    @staticmethod
    def _coerce_type(value: Union[FeedbackType, str]) -> FeedbackType:
        if isinstance(value, FeedbackType):
            return value
        try:
            return FeedbackType(str(value).strip().lower())
        except ValueError as error:
            valid = ", ".join(item.value for item in FeedbackType)
            raise FeedbackError(f"Invalid feedback type {value!r}. Must be one of: {valid}") from error
