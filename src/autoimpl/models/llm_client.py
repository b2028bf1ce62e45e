"""Client base class shared by all language-model integrations."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMRetryError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)

METADATA_VALUE_LIMIT = 512


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated transport failures."""


@dataclass(slots=True)
class LLMRequest:
    """Single-shot completion request: one system prompt, one user prompt."""

    prompt: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_output_tokens: Optional[int] = None
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the Responses API."""
        turns = [("system", self.system_prompt), ("user", self.prompt)]
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": [_input_message(role, text) for role, text in turns if text or role == "user"],
        }
        if self.temperature:
            payload["temperature"] = self.temperature
        if self.max_output_tokens:
            payload["max_output_tokens"] = self.max_output_tokens
        if self.metadata:
            payload["metadata"] = {key: _metadata_value(value) for key, value in self.metadata.items()}
        return payload


def _input_message(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "content": [{"type": "input_text", "text": text}]}


def _metadata_value(value: Any) -> str:
    """Metadata values must be strings of at most ``METADATA_VALUE_LIMIT`` characters."""
    text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
    if len(text) > METADATA_VALUE_LIMIT:
        text = text[: METADATA_VALUE_LIMIT - 3] + "..."
    return text


class LLMClient:
    """Text-in/text-out completion client with transport retries.

    Only transport failures are retried here. Interpreting the returned text is
    the caller's job, and a response that cannot be interpreted is never retried.
    """

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(self, system_prompt: str, prompt: str, **options: Any) -> str:
        """Convenience wrapper around :meth:`invoke` for a single completion."""
        return self.invoke(LLMRequest(prompt=prompt, system_prompt=system_prompt, **options))

    def invoke(self, request: LLMRequest) -> str:
        """Invoke the underlying model and return its raw text output."""
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            payload = request.to_payload(self._model)
            try:
                return self._raw_invoke(payload)
            except LLMTransportError as error:
                last_error = error
                LOGGER.warning(
                    "LLM transport failure on attempt %d/%d: %s", attempt, attempts, error
                )
                if attempt >= attempts:
                    break
                time.sleep(self._retry_delay)

        error_message = (
            f"Failed to obtain a completion after {attempts} attempt(s) for model "
            f"{request.model or self._model}"
        )
        raise LLMRetryError(error_message) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")
