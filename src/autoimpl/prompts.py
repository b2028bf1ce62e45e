"""Prompt templates and helpers shared by the implementation loop."""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from .memory.schema import Iteration, Task

IMPLEMENTATION_SYSTEM_PROMPT = """You are an expert software engineer implementing features and fixing bugs for a codebase.

## Your Role
You receive tasks with acceptance criteria and must implement them by modifying code files.
You have access to the repository structure and key files for context.

## Output Format
You MUST respond with valid JSON in this exact structure:
{
  "analysis": {
    "understanding": "Brief summary of what needs to be done",
    "approach": "Your implementation approach",
    "risks": ["Potential issues to watch for"]
  },
  "fileChanges": [
    {
      "path": "path/to/file",
      "operation": "CREATE" | "UPDATE" | "DELETE",
      "content": "Full file content for CREATE/UPDATE (the entire file, not a diff)",
      "reason": "Why this change is needed"
    }
  ],
  "commitMessage": "Conventional commit message (e.g. feat: add user authentication)",
  "verification": {
    "selfCheck": [
      {
        "criterion": "The acceptance criterion text",
        "passed": true,
        "reason": "Why it passes or fails",
        "evidence": ["Code references showing it works"]
      }
    ],
    "allPassed": true,
    "confidence": 0.95
  },
  "needsHumanInput": false,
  "humanInputReason": "Only if needsHumanInput is true: explain what you need",
  "nextSteps": ["What to do in the next iteration if not complete"]
}

## Guidelines
1. Make minimal, focused changes and only modify what is necessary.
2. Follow the existing patterns and coding style of the repository.
3. For CREATE/UPDATE provide the ENTIRE file content.
4. Self-verify against EACH criterion and be honest about what passes.
5. Confidence is 0.0-1.0 where 1.0 means absolutely certain.
6. Request human input when truly stuck instead of guessing at unclear requirements.

## When to Request Human Input
- Unclear or ambiguous requirements
- Access needed to systems or APIs that are not in context
- Design decisions that could reasonably go multiple ways
- Security-sensitive changes that need approval"""

JSON_RESPONSE_INSTRUCTION = "Respond with the JSON format specified in your system prompt."

TRUNCATION_MARKER = "\n... (truncated)"

_INSTRUCTIONS = (
    "Analyze the task and acceptance criteria",
    "Plan your implementation approach",
    "Make the necessary file changes (provide COMPLETE file content)",
    "Self-verify against EACH acceptance criterion",
    "Provide a conventional commit message",
)


def render_task_section(title: str, description: str) -> str:
    lines = [f"# Implementation Task: {title}"]
    if description.strip():
        lines.extend(["", "## Task Description", description])
    return "\n".join(lines)


def render_criteria(criteria: Sequence[str]) -> str:
    """Number the acceptance criteria the model must satisfy."""
    lines = ["## Acceptance Criteria", "The implementation MUST satisfy ALL of these criteria:", ""]
    lines.extend(f"{index}. {criterion}" for index, criterion in enumerate(criteria, start=1))
    return "\n".join(lines)


def render_repo_structure(full_name: str, paths: Sequence[str], limit: int) -> str:
    """List at most ``limit`` paths and note how many were left out."""
    lines = [
        "## Repository Structure",
        f"Repository: {full_name}",
        "Key directories and files:",
        "```",
        *paths[:limit],
    ]
    if len(paths) > limit:
        lines.append(f"... and {len(paths) - limit} more files")
    lines.append("```")
    return "\n".join(lines)


def truncate_text(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + TRUNCATION_MARKER


def render_key_files(files: Sequence[Tuple[str, str]], *, limit: int, max_chars: int) -> str:
    if not files:
        return ""
    lines = ["## Relevant Code Context"]
    for path, content in files[:limit]:
        lines.extend([f"### `{path}`", "```", truncate_text(content, max_chars), "```", ""])
    return "\n".join(lines).rstrip()


def render_previous_iteration(iteration: Optional[Iteration]) -> str:
    """Summarise the most recent prior iteration for the next attempt."""
    if iteration is None:
        return ""
    lines = ["## Previous Iteration Results", f"Iteration {iteration.iteration_number} results:"]
    verification = iteration.verification_results
    if verification is not None:
        lines.append(f"- Criteria passed: {iteration.criteria_passed}/{iteration.criteria_total}")
        for item in verification.items:
            status = "PASS" if item.passed else "FAIL"
            lines.append(f"- [{status}] {item.criterion}: {item.reason}")
    if iteration.changes_made:
        lines.extend(["", "Files modified in previous iteration:"])
        lines.extend(f"- {change.operation.value}: {change.file}" for change in iteration.changes_made)
    if iteration.blocked_reason:
        lines.extend(["", f"Blocked reason: {iteration.blocked_reason}"])
    return "\n".join(lines)


def render_human_feedback(feedback: Optional[str]) -> str:
    if not feedback or not feedback.strip():
        return ""
    return "\n".join(
        ["## Human Feedback", "The user has provided the following guidance:", "", feedback.strip()]
    )


def render_instructions() -> str:
    lines = ["## Instructions"]
    lines.extend(f"{index}. {step}" for index, step in enumerate(_INSTRUCTIONS, start=1))
    lines.extend(["", JSON_RESPONSE_INSTRUCTION])
    return "\n".join(lines)


def build_pr_title(task: Task) -> str:
    return f"[AI] {task.key}: {task.title}"


def build_pr_description(
    task: Task,
    criteria: Sequence[str],
    iterations: int,
    files_changed: int,
) -> str:
    """Render the body of the draft pull request opened on success."""
    lines = ["## Summary", f"This PR implements **{task.key}: {task.title}**", ""]
    if task.description:
        lines.extend(["### Task Description", task.description[:500]])
        if len(task.description) > 500:
            lines.append("...")
        lines.append("")
    lines.append("### Acceptance Criteria")
    lines.extend(f"- [x] {criterion}" for criterion in criteria)
    lines.extend(
        [
            "",
            "### Implementation Notes",
            "- Generated by the autonomous implementation loop",
            f"- Completed in {iterations} iteration(s)",
            f"- {files_changed} file(s) changed",
            "- Please review carefully before merging",
        ]
    )
    return "\n".join(lines)


__all__ = [
    "IMPLEMENTATION_SYSTEM_PROMPT",
    "JSON_RESPONSE_INSTRUCTION",
    "TRUNCATION_MARKER",
    "build_pr_description",
    "build_pr_title",
    "render_criteria",
    "render_human_feedback",
    "render_instructions",
    "render_key_files",
    "render_previous_iteration",
    "render_repo_structure",
    "render_task_section",
    "truncate_text",
]
