from __future__ import annotations

import pytest

from autoimpl.controller import (
    MAX_ITERATIONS_LIMIT,
    SessionConflictError,
    SessionStartError,
    start_session,
)
from autoimpl.memory.schema import (
    ActivityKind,
    Feedback,
    FeedbackType,
    FileOperation,
    FileOperationType,
    Iteration,
    LoopStage,
    ProgressInfo,
    SessionStatus,
    TaskStatus,
)
from autoimpl.memory.store import MemoryStore, RecordNotFoundError


def test_start_session_persists_initial_state(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1", max_iterations=5)

    session = store.require_session(session_id)
    assert session.status is SessionStatus.INITIALIZING
    assert session.source_branch == "main"
    assert session.implementation_branch == "ai/LS-12-add-login-page"
    assert session.max_iterations == 5
    assert session.current_iteration == 0
    assert session.progress.criteria_total == 3
    assert store.get_task("task-1").status is TaskStatus.IN_PROGRESS
    started = store.list_activity("task-1")[0]
    assert started.kind is ActivityKind.AGENT_IMPLEMENTATION_STARTED
    assert started.after_value["session_id"] == session_id


def test_start_session_source_branch_precedence(store, seeded, repo) -> None:
    store.save_repo(repo.model_copy(update={"selected_branch": "develop"}))
    from_repo = start_session(store, "task-1", "repo-1", "user-1")
    store.update_session(from_repo, status=SessionStatus.FAILED)
    explicit = start_session(store, "task-1", "repo-1", "user-1", source_branch="release/1.2")

    assert store.require_session(from_repo).source_branch == "develop"
    assert store.require_session(explicit).source_branch == "release/1.2"


def test_start_session_rejects_second_active_session(store, seeded) -> None:
    first = start_session(store, "task-1", "repo-1", "user-1")

    with pytest.raises(SessionConflictError) as excinfo:
        start_session(store, "task-1", "repo-1", "user-2")

    assert excinfo.value.session_id == first
    store.update_session(first, status=SessionStatus.STUCK)
    assert start_session(store, "task-1", "repo-1", "user-2") != first


@pytest.mark.parametrize("budget", [0, MAX_ITERATIONS_LIMIT + 1])
def test_start_session_validates_budget(store, seeded, budget) -> None:
    with pytest.raises(SessionStartError, match="between 1 and 20"):
        start_session(store, "task-1", "repo-1", "user-1", max_iterations=budget)


def test_start_session_requires_criteria_and_records(store, seeded, task) -> None:
    store.save_task(task.model_copy(update={"id": "task-empty", "description": "   "}))

    with pytest.raises(SessionStartError, match="no acceptance criteria"):
        start_session(store, "task-empty", "repo-1", "user-1")
    with pytest.raises(RecordNotFoundError):
        start_session(store, "missing", "repo-1", "user-1")
    with pytest.raises(RecordNotFoundError):
        start_session(store, "task-1", "missing", "user-1")


def test_transition_session_is_compare_and_swap(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")

    assert store.transition_session(
        session_id, (SessionStatus.INITIALIZING,), SessionStatus.RUNNING
    ) is True
    assert store.transition_session(
        session_id, (SessionStatus.WAITING_FEEDBACK, SessionStatus.STUCK), SessionStatus.SUCCEEDED
    ) is False
    assert store.get_session_status(session_id) is SessionStatus.RUNNING


def test_update_session_rejects_unknown_fields(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")

    with pytest.raises(ValueError, match="Unknown session fields: task_id"):
        store.update_session(session_id, task_id="other")


def test_progress_roundtrip(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")

    store.update_progress(
        session_id,
        ProgressInfo(stage=LoopStage.VERIFYING, message="Checking", criteria_total=3, criteria_passed=2),
    )

    session = store.require_session(session_id)
    assert session.stage is LoopStage.VERIFYING
    assert session.progress.criteria_passed == 2
    assert session.progress.message == "Checking"


def test_complete_iteration_rolls_up_session(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")
    first = Iteration(session_id=session_id, iteration_number=1, criteria_total=3)
    store.create_iteration(first)

    store.complete_iteration(first, files_changed=2, criteria_passed=1, commit_sha="abc123")
    second = Iteration(session_id=session_id, iteration_number=2, criteria_total=3)
    store.create_iteration(second)
    store.complete_iteration(second, files_changed=1, criteria_passed=3)

    session = store.require_session(session_id)
    assert session.current_iteration == 2
    assert session.total_files_changed == 3
    loaded = store.get_iteration(first.id)
    assert loaded.completed_at is not None
    assert loaded.commit_sha == "abc123"
    assert [item.iteration_number for item in store.list_iterations(session_id, before_number=2)] == [1]


def test_complete_iteration_skips_closed_and_removed_rows(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")
    first = Iteration(session_id=session_id, iteration_number=1, criteria_total=3)
    store.create_iteration(first)

    assert store.complete_iteration(first, files_changed=1) is True
    assert store.complete_iteration(first, files_changed=5) is False

    second = Iteration(session_id=session_id, iteration_number=2, criteria_total=3)
    store.create_iteration(second)
    assert store.is_iteration_open(second.id) is True
    store.rollback_iterations(session_id, 1)

    assert store.is_iteration_open(second.id) is False
    assert store.record_file_operation(
        FileOperation(
            session_id=session_id,
            iteration_id=second.id,
            file_path="src/late.py",
            operation=FileOperationType.CREATE,
        )
    ) is False
    assert store.complete_iteration(second, files_changed=2) is False
    session = store.require_session(session_id)
    assert session.current_iteration == 1
    assert session.total_files_changed == 1
    assert store.list_file_operations(session_id) == []
    assert [item.iteration_number for item in store.list_iterations(session_id)] == [1]


def test_rollback_iterations_drops_operations_and_unlinks_feedback(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")
    iterations = []
    for number in (1, 2, 3):
        iteration = Iteration(session_id=session_id, iteration_number=number)
        store.create_iteration(iteration)
        store.complete_iteration(iteration, files_changed=1)
        store.record_file_operation(
            FileOperation(
                session_id=session_id,
                iteration_id=iteration.id,
                file_path=f"src/file{number}.py",
                operation=FileOperationType.CREATE,
            )
        )
        iterations.append(iteration)
    store.add_feedback(
        Feedback(
            session_id=session_id,
            iteration_id=iterations[2].id,
            feedback_type=FeedbackType.REJECTION,
            content="Wrong approach",
            created_by="user-2",
        )
    )
    store.update_session(session_id, status=SessionStatus.STUCK, stuck_reason="stuck")

    removed = store.rollback_iterations(session_id, 1)

    assert set(removed) == {iterations[1].id, iterations[2].id}
    session = store.require_session(session_id)
    assert session.current_iteration == 1
    assert session.status is SessionStatus.RUNNING
    assert session.stuck_reason is None
    assert [item.file_path for item in store.list_file_operations(session_id)] == ["src/file1.py"]
    feedback = store.list_feedback(session_id)
    assert feedback[0].content == "Wrong approach"
    assert feedback[0].iteration_id is None


def test_latest_feedback_filters_by_type(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")
    for kind, content in (
        (FeedbackType.GUIDANCE, "Use hooks"),
        (FeedbackType.REJECTION, "Not like that"),
        (FeedbackType.APPROVAL, "Ship"),
    ):
        store.add_feedback(
            Feedback(session_id=session_id, feedback_type=kind, content=content, created_by="user-2")
        )

    assert store.latest_feedback(session_id).content == "Ship"
    filtered = store.latest_feedback(
        session_id, feedback_types=(FeedbackType.GUIDANCE, FeedbackType.REJECTION)
    )
    assert filtered.content == "Not like that"


def test_delete_incomplete_iterations(store, seeded) -> None:
    session_id = start_session(store, "task-1", "repo-1", "user-1")
    done = Iteration(session_id=session_id, iteration_number=1)
    store.create_iteration(done)
    store.complete_iteration(done)
    store.create_iteration(Iteration(session_id=session_id, iteration_number=2))

    assert store.delete_incomplete_iterations(session_id) == 1
    assert [item.id for item in store.list_iterations(session_id)] == [done.id]


def test_store_from_config_uses_db_path(tmp_path) -> None:
    db_path = tmp_path / "state" / "sessions.sqlite"

    with MemoryStore.from_config({"paths": {"db_path": str(db_path)}}) as store:
        assert store.db_path == db_path.resolve()

    assert db_path.exists()
