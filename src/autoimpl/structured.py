"""Typed payloads that describe the structured result of one implementation turn."""

from __future__ import annotations

import json
import re
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

__all__ = [
    "CriterionCheck",
    "FileChange",
    "ImplementationAnalysis",
    "ImplementationResult",
    "MalformedResultError",
    "SelfVerification",
    "extract_json_object",
    "parse_implementation_result",
]

_OBJECT_START = re.compile(r"\{")


class MalformedResultError(ValueError):
    """Raised when model output cannot be read as an implementation result."""


class _ResultModel(BaseModel):
    # Strict: a string where a bool is expected is malformed, not "truthy".
    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore", frozen=True)


class ImplementationAnalysis(_ResultModel):
    understanding: str
    approach: str
    risks: List[str] = Field(default_factory=list)


class FileChange(_ResultModel):
    """One whole-file change proposed by the model."""

    path: str = Field(min_length=1)
    operation: Literal["CREATE", "UPDATE", "DELETE"]
    content: Optional[str] = None
    reason: str = ""

    @model_validator(mode="after")
    def _content_required_for_writes(self) -> "FileChange":
        if self.operation != "DELETE" and self.content is None:
            raise ValueError(f"{self.operation} of {self.path} must carry the full file content")
        return self


class CriterionCheck(_ResultModel):
    criterion: str
    passed: bool
    reason: str = ""
    evidence: List[str] = Field(default_factory=list)


class SelfVerification(_ResultModel):
    """The model's own report of which criteria it believes are satisfied."""

    self_check: List[CriterionCheck] = Field(alias="selfCheck")
    all_passed: bool = Field(alias="allPassed")
    confidence: float = Field(ge=0.0, le=1.0)

    @property
    def passed_count(self) -> int:
        return sum(1 for item in self.self_check if item.passed)


class ImplementationResult(_ResultModel):
    """Structured result returned by the model for one iteration."""

    analysis: ImplementationAnalysis
    file_changes: List[FileChange] = Field(alias="fileChanges")
    commit_message: str = Field(default="", alias="commitMessage")
    verification: SelfVerification
    needs_human_input: bool = Field(default=False, alias="needsHumanInput")
    human_input_reason: Optional[str] = Field(default=None, alias="humanInputReason")
    next_steps: List[str] = Field(default_factory=list, alias="nextSteps")

    @model_validator(mode="after")
    def _commit_message_required_for_changes(self) -> "ImplementationResult":
        if self.file_changes and not self.needs_human_input and not self.commit_message.strip():
            raise ValueError("commitMessage is required when fileChanges are present")
        return self


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object embedded in ``text``.

    Surrounding prose or a Markdown fence is skipped; the JSON itself is decoded
    verbatim.
    """
    stripped = (text or "").strip()
    if not stripped:
        raise MalformedResultError("Model returned an empty response.")

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        return data

    decoder = json.JSONDecoder()
    for match in _OBJECT_START.finditer(stripped):
        try:
            candidate, _ = decoder.raw_decode(stripped, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(candidate, dict):
            return candidate

    raise MalformedResultError(f"Model returned no JSON object: {stripped[:200]}")


def parse_implementation_result(text: str) -> ImplementationResult:
    """Deserialize model output into an :class:`ImplementationResult`."""
    payload = extract_json_object(text)
    try:
        return ImplementationResult.model_validate(payload)
    except ValidationError as error:
        raise MalformedResultError(
            f"Model response did not match the result schema: {error.error_count()} error(s); "
            f"{error.errors()[0]['msg']}"
        ) from error
