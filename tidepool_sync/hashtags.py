"""Hashtag extraction from note text."""

from __future__ import annotations

import re

from .models import Hashtag

HASHTAG_PATTERN = re.compile(r"#\w+")


def extract_hashtags(text: str | None) -> list[str]:
    """Return the hashtag tokens in ``text``, in first-seen order, without duplicates."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for match in HASHTAG_PATTERN.finditer(text):
        seen.setdefault(match.group(0), None)
    return list(seen)


def parse_hashtags(text: str | None, owner_id: str) -> list[Hashtag]:
    """Extract hashtags from ``text`` as Hashtag records owned by ``owner_id``."""
    return [Hashtag(text=token, owner_id=owner_id) for token in extract_hashtags(text)]
