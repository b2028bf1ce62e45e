"""Utilities for generating consistent, length-limited slugs."""

from __future__ import annotations

import re
from typing import Pattern

_LOWERCASE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9]+")
_MIXED_CASE_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(
    value: str | None,
    *,
    fallback: str = "item",
    max_length: int = 40,
    lowercase: bool = True,
) -> str:
    """Normalize ``value`` into a ref- and filesystem-friendly slug.

    Lowercase slugs keep only ``[a-z0-9-]``; mixed-case slugs also keep ``_`` and
    ``.`` so that identifiers such as task keys survive unchanged.
    """
    source = (value or "").strip()
    if lowercase:
        source = source.lower()
    pattern = _LOWERCASE_PATTERN if lowercase else _MIXED_CASE_PATTERN

    slug = _normalize(source, pattern)
    if not slug:
        slug = _normalize(fallback.lower() if lowercase else fallback, pattern) or "item"

    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-.") or slug[:max_length]
    return slug


def _normalize(value: str, pattern: Pattern[str]) -> str:
    slug = pattern.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")
