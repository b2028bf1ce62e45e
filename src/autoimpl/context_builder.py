"""Build bounded prompt packages for implementation iterations."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Sequence

from . import prompts
from .criteria import extract_keywords
from .memory.schema import Iteration, Repo, Task
from .tools.vcs import VcsError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class KeyFile:
    path: str
    content: str


@dataclass(slots=True)
class ImplementationContext:
    """Everything the model sees for one iteration."""

    task: Task
    repo: Repo
    acceptance_criteria: List[str]
    repo_structure: List[str]
    key_files: List[KeyFile] = field(default_factory=list)
    previous_iterations: List[Iteration] = field(default_factory=list)
    human_feedback: Optional[str] = None


@dataclass(slots=True)
class ContextPackage:
    """Container for the system and user prompts supplied to the model."""

    system_prompt: str
    user_prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)


class ContextBuilder:
    """Selects key files and assembles the sectioned implementation prompt."""

    DEFAULT_MAX_KEY_FILES = 15
    DEFAULT_PROMPT_KEY_FILES = 10
    DEFAULT_MAX_FILE_CHARS = 3_000
    DEFAULT_MAX_TREE_ENTRIES = 100
    PRIORITY_PATTERNS = (
        re.compile(r"^readme\.md$", re.IGNORECASE),
        re.compile(r"^package\.json$"),
        re.compile(r"^tsconfig\.json$"),
        re.compile(r"^pyproject\.toml$"),
        re.compile(r"\.env\.example$"),
    )

    def __init__(
        self,
        *,
        max_key_files: int = DEFAULT_MAX_KEY_FILES,
        prompt_key_files: int = DEFAULT_PROMPT_KEY_FILES,
        max_file_chars: int = DEFAULT_MAX_FILE_CHARS,
        max_tree_entries: int = DEFAULT_MAX_TREE_ENTRIES,
    ) -> None:
        self.max_key_files = max_key_files
        self.prompt_key_files = prompt_key_files
        self.max_file_chars = max_file_chars
        self.max_tree_entries = max_tree_entries

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ContextBuilder":
        context_cfg = config.get("context") or {}

        def _positive(key: str, default: int) -> int:
            value = context_cfg.get(key)
            if isinstance(value, int) and value > 0:
                return value
            return default

        return cls(
            max_key_files=_positive("max_key_files", cls.DEFAULT_MAX_KEY_FILES),
            prompt_key_files=_positive("prompt_key_files", cls.DEFAULT_PROMPT_KEY_FILES),
            max_file_chars=_positive("max_file_chars", cls.DEFAULT_MAX_FILE_CHARS),
            max_tree_entries=_positive("max_tree_entries", cls.DEFAULT_MAX_TREE_ENTRIES),
        )

    # ---------------------------------------------------------------- key files
    def _is_priority(self, path: str) -> bool:
        filename = path.rsplit("/", 1)[-1]
        return any(pattern.search(filename) for pattern in self.PRIORITY_PATTERNS)

    def select_key_files(self, task: Task, paths: Sequence[str]) -> List[str]:
        """Return the paths worth reading for ``task``, priority files first.

        A path qualifies when its file name is a well-known project file or when
        it contains one of the task's keywords; the rest sort alphabetically.
        """
        keywords = extract_keywords(f"{task.title} {task.description or ''}")
        relevant = [
            path
            for path in paths
            if self._is_priority(path) or any(keyword in path.lower() for keyword in keywords)
        ]
        relevant.sort(key=lambda path: (not self._is_priority(path), path))
        return relevant[: self.max_key_files]

    def load_key_files(
        self,
        paths: Sequence[str],
        read_file: Callable[[str], str],
    ) -> List[KeyFile]:
        """Read ``paths`` through ``read_file``, skipping any that cannot be read."""
        key_files: List[KeyFile] = []
        for path in paths:
            try:
                content = read_file(path)
            except VcsError as error:
                LOGGER.debug("Skipping unreadable key file %s: %s", path, error)
                continue
            if content:
                key_files.append(KeyFile(path=path, content=content))
        return key_files

    # ------------------------------------------------------------------ prompt
    def build(self, context: ImplementationContext) -> ContextPackage:
        previous = context.previous_iterations[-1] if context.previous_iterations else None
        sections = [
            prompts.render_task_section(context.task.title, context.task.description or ""),
            prompts.render_criteria(context.acceptance_criteria),
            prompts.render_repo_structure(
                context.repo.full_name, context.repo_structure, self.max_tree_entries
            ),
            prompts.render_key_files(
                [(item.path, item.content) for item in context.key_files],
                limit=self.prompt_key_files,
                max_chars=self.max_file_chars,
            ),
            prompts.render_previous_iteration(previous),
            prompts.render_human_feedback(context.human_feedback),
            prompts.render_instructions(),
        ]
        user_prompt = "\n\n".join(section for section in sections if section)
        metadata = {
            "task": context.task.key,
            "repo": context.repo.full_name,
            "criteria": len(context.acceptance_criteria),
            "key_files": [item.path for item in context.key_files[: self.prompt_key_files]],
        }
        return ContextPackage(
            system_prompt=prompts.IMPLEMENTATION_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            metadata=metadata,
        )


__all__ = ["ContextBuilder", "ContextPackage", "ImplementationContext", "KeyFile"]
