"""Candidate key extraction for dedup lookups."""

from .extractor import EMPTY_CANDIDATE_KEYS, CandidateKeyExtractor, CandidateKeys
from .isbn import normalize_isbn, normalize_isbns
from .text_normalization import (
    MAX_KEY_LENGTH,
    normalize_identifier,
    normalize_key,
    normalize_match_text,
)
from .title_keys import author_surname_key, build_title_keys, create_title_key

__all__ = [
    "EMPTY_CANDIDATE_KEYS",
    "MAX_KEY_LENGTH",
    "CandidateKeyExtractor",
    "CandidateKeys",
    "author_surname_key",
    "build_title_keys",
    "create_title_key",
    "normalize_identifier",
    "normalize_isbn",
    "normalize_isbns",
    "normalize_key",
    "normalize_match_text",
]
