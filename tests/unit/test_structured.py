from __future__ import annotations

import json

import pytest

from autoimpl.structured import MalformedResultError, extract_json_object, parse_implementation_result


def _payload(**overrides):
    payload = {
        "analysis": {"understanding": "u", "approach": "a"},
        "fileChanges": [{"path": "a.py", "operation": "CREATE", "content": "x = 1\n"}],
        "commitMessage": "feat: add a",
        "verification": {
            "selfCheck": [
                {"criterion": "one", "passed": True},
                {"criterion": "two", "passed": False, "reason": "not yet"},
            ],
            "allPassed": False,
            "confidence": 0.4,
        },
    }
    payload.update(overrides)
    return payload


def test_parses_result_wrapped_in_prose_and_fence() -> None:
    text = "Here is my answer:\n```json\n" + json.dumps(_payload()) + "\n```\nThanks!"

    result = parse_implementation_result(text)

    assert result.file_changes[0].path == "a.py"
    assert result.commit_message == "feat: add a"
    assert result.verification.passed_count == 1
    assert result.verification.all_passed is False
    assert result.needs_human_input is False
    assert result.next_steps == []


def test_extract_json_skips_non_object_prefix() -> None:
    assert extract_json_object('noise {not json} then {"ok": true}') == {"ok": True}


@pytest.mark.parametrize(
    "text",
    [
        "",
        "no json here",
        "[1, 2, 3]",
    ],
)
def test_missing_object_is_malformed(text) -> None:
    with pytest.raises(MalformedResultError):
        parse_implementation_result(text)


def test_string_booleans_are_rejected() -> None:
    payload = _payload()
    payload["verification"]["allPassed"] = "true"

    with pytest.raises(MalformedResultError, match="did not match the result schema"):
        parse_implementation_result(json.dumps(payload))


def test_writes_need_content_and_commit_message() -> None:
    missing_content = _payload(fileChanges=[{"path": "a.py", "operation": "UPDATE"}])
    missing_message = _payload(commitMessage="  ")

    with pytest.raises(MalformedResultError):
        parse_implementation_result(json.dumps(missing_content))
    with pytest.raises(MalformedResultError):
        parse_implementation_result(json.dumps(missing_message))


def test_delete_and_human_input_relax_requirements() -> None:
    payload = _payload(
        fileChanges=[{"path": "old.py", "operation": "DELETE"}],
        commitMessage="",
        needsHumanInput=True,
        humanInputReason="Which file?",
    )

    result = parse_implementation_result(json.dumps(payload))

    assert result.file_changes[0].content is None
    assert result.human_input_reason == "Which file?"


def test_unknown_operation_and_confidence_range() -> None:
    with pytest.raises(MalformedResultError):
        parse_implementation_result(
            json.dumps(_payload(fileChanges=[{"path": "a", "operation": "RENAME", "content": ""}]))
        )
    payload = _payload()
    payload["verification"]["confidence"] = 1.5
    with pytest.raises(MalformedResultError):
        parse_implementation_result(json.dumps(payload))
