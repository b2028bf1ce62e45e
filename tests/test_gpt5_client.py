from __future__ import annotations

import json

import pytest

from autoimpl.models.gpt5 import GPT5Client
from autoimpl.models.llm_client import LLMRequest, LLMRetryError, LLMTransportError


def _response(text: str) -> str:
    response = {
        "id": "resp_mock",
        "object": "response",
        "status": "completed",
        "output": [
            {"id": "rs_1", "type": "reasoning", "summary": []},
            {
                "id": "msg_mock",
                "type": "message",
                "role": "assistant",
                "content": [
                    {
                        "type": "output_text",
                        "text": text,
                    }
                ],
            },
        ],
    }
    return json.dumps(response)


def test_gpt5_client_extracts_text_from_responses_api() -> None:
    seen = []

    def transport(payload: dict) -> str:
        seen.append(payload)
        return _response('{"analysis": {}}')

    client = GPT5Client(model="gpt-5-mini", transport=transport)
    text = client.complete("system rules", "do the task", metadata={"task": "LS-12", "criteria": 3})

    assert text == '{"analysis": {}}'
    payload = seen[0]
    assert payload["model"] == "gpt-5-mini"
    assert [item["role"] for item in payload["input"]] == ["system", "user"]
    assert payload["input"][1]["content"][0]["text"] == "do the task"
    assert payload["metadata"] == {"task": "LS-12", "criteria": "3"}


def test_gpt5_client_prefers_output_text_field() -> None:
    client = GPT5Client(transport=lambda _: json.dumps({"output_text": "plain answer"}))

    assert client.invoke(LLMRequest(prompt="hi")) == "plain answer"


def test_gpt5_client_passes_through_non_envelope_text() -> None:
    client = GPT5Client(transport=lambda _: "not json at all")

    assert client.invoke(LLMRequest(prompt="hi")) == "not json at all"


def test_transport_failures_are_retried_then_raised() -> None:
    calls = []

    def transport(_: dict) -> str:
        calls.append(1)
        raise LLMTransportError("connection reset")

    client = GPT5Client(transport=transport, max_attempts=3, retry_delay=0.0)

    with pytest.raises(LLMRetryError):
        client.invoke(LLMRequest(prompt="hi"))
    assert len(calls) == 3


def test_transient_failure_recovers() -> None:
    replies = iter([RuntimeError("socket closed"), _response("ok")])

    def transport(_: dict) -> str:
        reply = next(replies)
        if isinstance(reply, Exception):
            raise reply
        return reply

    client = GPT5Client(transport=transport, max_attempts=2, retry_delay=0.0)

    assert client.invoke(LLMRequest(prompt="hi")) == "ok"


def test_gpt5_client_requires_api_key_without_transport(monkeypatch) -> None:
    monkeypatch.delenv("GPT5_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError, match="API key"):
        GPT5Client()
