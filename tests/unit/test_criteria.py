from __future__ import annotations

import textwrap

from autoimpl.criteria import extract_acceptance_criteria, extract_keywords, generate_branch_name
from autoimpl.utils.slug import slugify


def test_acceptance_criteria_section_wins_over_other_bullets() -> None:
    description = textwrap.dedent(
        """
        Background:
        - Users complain about the login flow

        Acceptance Criteria:
        - [ ] Form validates email
        - [x] Errors are shown inline
        1. Submit is disabled while loading

        Notes: - unrelated
        """
    )

    assert extract_acceptance_criteria(description) == [
        "Form validates email",
        "Errors are shown inline",
        "Submit is disabled while loading",
    ]


def test_ac_shorthand_section() -> None:
    description = "Some context.\n\nAC:\n* Button is blue\n* Button is round\n"

    assert extract_acceptance_criteria(description) == ["Button is blue", "Button is round"]


def test_checkbox_items_without_section() -> None:
    description = "Do the thing\n- [ ] First check\n  - [x] Second check\n"

    assert extract_acceptance_criteria(description) == ["First check", "Second check"]


def test_numbered_items_without_section() -> None:
    description = "Steps\n1. Add endpoint\n2) Document endpoint\n"

    assert extract_acceptance_criteria(description) == ["Add endpoint", "Document endpoint"]


def test_fallback_uses_substantive_lines() -> None:
    description = "# Heading line here\nshort\n" + "\n".join(
        f"Sentence number {index} is long enough" for index in range(7)
    )

    criteria = extract_acceptance_criteria(description)

    assert len(criteria) == 5
    assert criteria[0] == "Sentence number 0 is long enough"


def test_fallback_to_truncated_description() -> None:
    assert extract_acceptance_criteria("Fix it") == ["Fix it"]


def test_empty_description_has_no_criteria() -> None:
    assert extract_acceptance_criteria("") == []
    assert extract_acceptance_criteria(None) == []


def test_keywords_skip_stop_words_and_duplicates() -> None:
    keywords = extract_keywords("Add the Login page; login should show an error banner")

    assert keywords == ["login", "page", "show", "error", "banner"]


def test_branch_name_keeps_key_case() -> None:
    assert generate_branch_name("LS-12", "Add login page!") == "ai/LS-12-add-login-page"
    assert generate_branch_name("", "???") == "ai/task-change"


def test_slugify_truncates_and_trims() -> None:
    assert slugify("A" * 50, max_length=10) == "aaaaaaaaaa"
    assert slugify("hello world--", max_length=6) == "hello"
    assert slugify("Keep_Case.v2", lowercase=False) == "Keep_Case.v2"
