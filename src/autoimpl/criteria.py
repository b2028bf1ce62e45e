"""Acceptance criteria extraction and task keyword helpers."""

from __future__ import annotations

import re
from typing import List, Sequence

from .utils.slug import slugify

__all__ = [
    "extract_acceptance_criteria",
    "extract_keywords",
    "generate_branch_name",
]

_SECTION_HEADERS = (
    re.compile(r"acceptance\s*criteria[:\s]*\n", re.IGNORECASE),
    re.compile(r"\bAC[:\s]*\n", re.IGNORECASE),
)
_LIST_ITEM = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s*(.+)$")
_CHECKBOX_ITEM = re.compile(r"^\s*[-*]\s*\[[ xX]\]\s*(.+)$", re.MULTILINE)
_BULLET_ITEM = re.compile(r"^[-*]\s+(.+)$", re.MULTILINE)
_NUMBERED_ITEM = re.compile(r"^\d+[.)]\s+(.+)$", re.MULTILINE)
_CHECKBOX_PREFIX = re.compile(r"^\[[ xX]\]\s*")

_MAX_FALLBACK_LINES = 5
_MAX_FALLBACK_CHARS = 500
_MAX_KEYWORDS = 15

STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would could
    should may might must shall can need dare ought used to of in for on with at by
    from as into through during before after above below between under again further
    then once here there when where why how all each few more most other some such no
    nor not only own same so than too very just and but if or because until while this
    that these those task implement create add update feature
    """.split()
)


def _clean(items: Sequence[str]) -> List[str]:
    cleaned: List[str] = []
    for item in items:
        text = _CHECKBOX_PREFIX.sub("", item.strip()).strip()
        if text:
            cleaned.append(text)
    return cleaned


def _section_items(description: str, header: re.Pattern[str]) -> List[str]:
    """Collect the list items that directly follow a criteria heading."""
    match = header.search(description)
    if not match:
        return []
    items: List[str] = []
    for line in description[match.end():].splitlines():
        if not line.strip():
            if items:
                break
            continue
        item = _LIST_ITEM.match(line)
        if not item:
            break
        items.append(item.group(1))
    return _clean(items)


def extract_acceptance_criteria(description: str | None) -> List[str]:
    """Extract pass/fail conditions from a task description.

    Sources are tried in order and the first that yields anything wins: an
    "Acceptance Criteria" section, an "AC" section, checkbox items, bullet
    items, numbered items. Failing all of those, up to five substantive lines
    (or the first 500 characters) of the description are used.
    """
    if not description or not description.strip():
        return []

    for header in _SECTION_HEADERS:
        criteria = _section_items(description, header)
        if criteria:
            return criteria

    for pattern in (_CHECKBOX_ITEM, _BULLET_ITEM, _NUMBERED_ITEM):
        criteria = _clean(pattern.findall(description))
        if criteria:
            return criteria

    lines = [
        line.strip()
        for line in description.splitlines()
        if len(line.strip()) > 10 and not line.strip().startswith("#")
    ]
    if lines:
        return lines[:_MAX_FALLBACK_LINES]
    return [description.strip()[:_MAX_FALLBACK_CHARS]]


def extract_keywords(text: str) -> List[str]:
    """Return distinct lowercase keywords used to match task text against paths."""
    words = re.sub(r"[^a-z0-9\s]", " ", (text or "").lower()).split()
    keywords: List[str] = []
    for word in words:
        if len(word) <= 2 or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= _MAX_KEYWORDS:
            break
    return keywords


def generate_branch_name(task_key: str, title: str) -> str:
    """Return the implementation branch name, ``ai/<KEY>-<slug>``."""
    key = slugify(task_key, fallback="task", max_length=40, lowercase=False)
    return f"ai/{key}-{slugify(title, fallback='change', max_length=40)}"
