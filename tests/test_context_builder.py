from __future__ import annotations

from autoimpl.context_builder import ContextBuilder, ImplementationContext, KeyFile
from autoimpl.memory.schema import (
    CriterionVerification,
    FileChangeSummary,
    FileOperationType,
    Iteration,
    VerificationResults,
)
from autoimpl.prompts import (
    IMPLEMENTATION_SYSTEM_PROMPT,
    TRUNCATION_MARKER,
    build_pr_description,
    render_repo_structure,
    truncate_text,
)
from autoimpl.tools.vcs import RemoteFileNotFoundError


def test_select_key_files_orders_priority_files_first(task) -> None:
    builder = ContextBuilder(max_key_files=3)
    paths = [
        "src/views/login.tsx",
        "docs/README.md",
        "src/auth/password.ts",
        "package.json",
        "src/unrelated.ts",
    ]

    selected = builder.select_key_files(task, paths)

    assert selected == ["docs/README.md", "package.json", "src/auth/password.ts"]


def test_load_key_files_skips_unreadable(task) -> None:
    def read(path: str) -> str:
        if path == "missing.py":
            raise RemoteFileNotFoundError(path)
        return "" if path == "empty.py" else f"# {path}\n"

    files = ContextBuilder().load_key_files(["a.py", "missing.py", "empty.py"], read)

    assert files == [KeyFile(path="a.py", content="# a.py\n")]


def test_build_renders_sections_in_order(task, repo, criteria) -> None:
    previous = Iteration(
        session_id="s1",
        iteration_number=2,
        criteria_total=3,
        criteria_passed=1,
        changes_made=[FileChangeSummary(file="src/login.py", operation=FileOperationType.CREATE)],
        verification_results=VerificationResults(
            passed=False,
            score=0.5,
            items=[CriterionVerification(criterion=criteria[0], passed=True, reason="form exists")],
        ),
    )
    context = ImplementationContext(
        task=task,
        repo=repo,
        acceptance_criteria=criteria,
        repo_structure=[f"src/file{index}.py" for index in range(5)],
        key_files=[KeyFile(path="README.md", content="x" * 50)],
        previous_iterations=[previous],
        human_feedback="Reuse the session helper",
    )
    builder = ContextBuilder(max_file_chars=10, max_tree_entries=3)

    package = builder.build(context)

    prompt = package.user_prompt
    headings = [
        "# Implementation Task: Add login page",
        "## Task Description",
        "## Acceptance Criteria",
        "## Repository Structure",
        "## Relevant Code Context",
        "## Previous Iteration Results",
        "## Human Feedback",
        "## Instructions",
    ]
    positions = [prompt.index(heading) for heading in headings]
    assert positions == sorted(positions)
    assert "... and 2 more files" in prompt
    assert "x" * 10 + TRUNCATION_MARKER in prompt
    assert "- [PASS] Login form renders email and password fields: form exists" in prompt
    assert "- CREATE: src/login.py" in prompt
    assert package.system_prompt == IMPLEMENTATION_SYSTEM_PROMPT
    assert package.metadata == {
        "task": "LS-12",
        "repo": "acme/webapp",
        "criteria": 3,
        "key_files": ["README.md"],
    }


def test_optional_sections_are_omitted(task, repo, criteria) -> None:
    context = ImplementationContext(
        task=task.model_copy(update={"description": ""}),
        repo=repo,
        acceptance_criteria=criteria,
        repo_structure=["README.md"],
    )

    prompt = ContextBuilder().build(context).user_prompt

    for heading in ("## Task Description", "## Relevant Code Context", "## Previous Iteration", "## Human Feedback"):
        assert heading not in prompt


def test_from_config_ignores_invalid_values() -> None:
    builder = ContextBuilder.from_config({"context": {"max_key_files": 4, "max_file_chars": -1}})

    assert builder.max_key_files == 4
    assert builder.max_file_chars == ContextBuilder.DEFAULT_MAX_FILE_CHARS


def test_render_helpers() -> None:
    assert truncate_text("abc", 3) == "abc"
    assert truncate_text("abcd", 3) == "abc" + TRUNCATION_MARKER
    assert "... and" not in render_repo_structure("acme/webapp", ["a", "b"], 2)


def test_pr_description_truncates_long_description(task, criteria) -> None:
    long_task = task.model_copy(update={"description": "d" * 600})

    body = build_pr_description(long_task, criteria, iterations=2, files_changed=5)

    assert "d" * 500 + "\n..." in body
    assert "d" * 501 not in body
    assert "- 5 file(s) changed" in body
    assert body.startswith("## Summary\nThis PR implements **LS-12: Add login page**")
