"""Production GPT-5 client that speaks the Responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMTransportError

__all__ = ["GPT5Client"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class GPT5Client(LLMClient):
    """Thin adapter around the GPT-5 Responses API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        timeout: float = 600.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("GPT5_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        self._timeout = _timeout_from_env(timeout)
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        return self._extract_output_text(raw_response)

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the OpenAI Responses API."""
        import urllib.error
        import urllib.request

        LOGGER.debug(
            "GPT-5 request for model %s (%d input item(s))",
            payload.get("model"),
            len(payload.get("input", [])),
        )

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "X-OpenAI-Client": "autoimpl/0.1",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("GPT-5 response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach GPT-5 endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")

    def _extract_output_text(self, raw_response: str) -> str:
        """Concatenate the assistant text returned by the Responses API.

        Payloads that are not a Responses envelope are returned unchanged.
        """
        if not raw_response:
            return ""

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if not isinstance(data, dict):
            return raw_response

        output_text = data.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text

        container = data.get("output")
        if container is None and isinstance(data.get("response"), dict):
            container = data["response"].get("output")
        if container is None:
            return raw_response

        chunks: list[str] = []
        for item in container if isinstance(container, list) else [container]:
            if not isinstance(item, dict) or item.get("type", "message") != "message":
                # Reasoning summaries and tool events carry no answer text.
                continue
            for content_item in item.get("content") or []:
                if not isinstance(content_item, dict):
                    continue
                text = content_item.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        if not chunks:
            raise LLMTransportError("GPT-5 response did not contain any output text.")
        return "".join(chunks)


def _timeout_from_env(default: float) -> float:
    """``GPT5_TIMEOUT`` overrides the configured timeout when it is a positive number."""
    raw = os.getenv("GPT5_TIMEOUT")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid GPT5_TIMEOUT value %r", raw)
        return default
    return value if value > 0 else default
