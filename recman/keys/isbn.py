"""ISBN normalization to canonical 13-digit form."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

ISBN10_LENGTH = 10
ISBN13_LENGTH = 13
ISBN10_PREFIX = "978"

_SEPARATOR_PATTERN = re.compile(r"[\s\-]")
_ISBN_PATTERN = re.compile(r"[0-9]{9,12}[0-9Xx]")


def normalize_isbn(value: str | None) -> str | None:
    """Return the checksum-valid ISBN-13 form of `value`, or None.

    Hyphens and spaces are ignored, trailing qualifiers such as "(nid.)" are
    skipped, and valid ISBN-10s are converted to the 978 prefix form.
    """
    if not value:
        return None
    compact = _SEPARATOR_PATTERN.sub("", value)
    match = _ISBN_PATTERN.search(compact)
    if match is None:
        return None
    candidate = match.group(0).upper()

    if len(candidate) == ISBN13_LENGTH:
        if "X" in candidate or not _is_valid_isbn13(candidate):
            return None
        return candidate
    if len(candidate) == ISBN10_LENGTH:
        if not _is_valid_isbn10(candidate):
            return None
        return _isbn10_to_isbn13(candidate)
    return None


def normalize_isbns(values: Iterable[str]) -> frozenset[str]:
    """Normalize many ISBNs, silently dropping invalid ones."""
    normalized = (normalize_isbn(value) for value in values)
    return frozenset(isbn for isbn in normalized if isbn is not None)


def _is_valid_isbn10(value: str) -> bool:
    if not value[:-1].isdigit():
        return False
    total = 0
    for position, character in enumerate(value):
        digit = 10 if character == "X" else int(character)
        total += (ISBN10_LENGTH - position) * digit
    return total % 11 == 0


def _is_valid_isbn13(value: str) -> bool:
    if not value.isdigit():
        return False
    total = sum(
        int(character) * (1 if position % 2 == 0 else 3)
        for position, character in enumerate(value)
    )
    return total % 10 == 0


def _isbn10_to_isbn13(value: str) -> str:
    body = ISBN10_PREFIX + value[:-1]
    total = sum(
        int(character) * (1 if position % 2 == 0 else 3)
        for position, character in enumerate(body)
    )
    check_digit = (10 - total % 10) % 10
    return f"{body}{check_digit}"
