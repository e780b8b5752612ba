"""Text normalization helpers shared by key extraction and match verification."""

from __future__ import annotations

import re
import unicodedata

MAX_KEY_LENGTH = 200

_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_match_text(value: str | None) -> str:
    """Normalize text for distance comparisons.

    Case-folded NFKC text with punctuation turned into spaces and runs of
    whitespace collapsed, so "Tutki ja kirjoita!" and "TUTKI JA KIRJOITA"
    compare equal.
    """
    if value is None:
        return ""
    if value == "":
        return ""

    normalized = unicodedata.normalize("NFKC", value).casefold()
    return _collapse_non_alphanumeric(normalized)


def normalize_key(value: str | None) -> str:
    """Normalize text to a compact index key with no separators."""
    return normalize_match_text(value).replace(" ", "")


def normalize_identifier(value: str | None) -> str | None:
    """Light normalization for authoritative cross-reference identifiers."""
    if value is None:
        return None
    collapsed = _WHITESPACE_PATTERN.sub(" ", unicodedata.normalize("NFKC", value))
    stripped = collapsed.strip()
    if not stripped:
        return None
    return stripped[:MAX_KEY_LENGTH]


def _collapse_non_alphanumeric(value: str) -> str:
    collapsed_chars = [character if character.isalnum() else " " for character in value]
    return " ".join("".join(collapsed_chars).split())
