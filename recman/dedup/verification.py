"""Deterministic pairwise verification of candidate matches.

Key equality only nominates candidates; this chain decides whether two
records really describe the same work. Identifier evidence short-circuits
to DUPLICATE after the hard compatibility checks, otherwise title and
author distances must both stay under their thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from rapidfuzz.distance import Levenshtein

from recman.keys import normalize_identifier, normalize_isbns, normalize_match_text

from .match_contract import (
    MatchDecision,
    MatchResult,
    MatchStrategyChain,
    abstain,
    distinct,
    duplicate,
    execute_match_chain,
)

if TYPE_CHECKING:
    from recman.config.datasources import DedupSettings
    from recman.metadata import MetadataRecord

MATCH_TITLE_MAX_LENGTH = 255
AUTHOR_MIN_COMPARABLE_LENGTH = 6

ACCESS_RESTRICTIONS_DIFFER_REASON = "access_restrictions_differ"
FORMAT_FAMILY_MISMATCH_REASON = "format_family_mismatch"
SHARED_ISBN_REASON = "shared_isbn"
SHARED_IDENTIFIER_REASON = "shared_identifier"
ISSN_MISMATCH_REASON = "issn_mismatch"
PUBLICATION_YEAR_MISMATCH_REASON = "publication_year_mismatch"
PAGE_COUNT_MISMATCH_REASON = "page_count_mismatch"
SERIES_MISMATCH_REASON = "series_mismatch"
TITLE_MISSING_REASON = "title_missing"
TITLE_DISTANCE_REASON = "title_distance_exceeded"
AUTHOR_MISSING_ON_ONE_SIDE_REASON = "author_missing_on_one_side"
AUTHOR_DISTANCE_REASON = "author_distance_exceeded"
TITLE_AUTHOR_MATCH_REASON = "title_author_match"
NOT_APPLICABLE_REASON = "not_applicable"


@dataclass(frozen=True, slots=True)
class MatchProfile:
    """Normalized comparison fields of one record."""

    record_id: str
    title: str
    author: str
    isbns: frozenset[str]
    issns: frozenset[str]
    unique_ids: frozenset[str]
    publication_year: str | None
    page_count: int | None
    series_issn: str | None
    series_numbering: str | None
    formats: frozenset[str]
    access_restrictions: frozenset[str]


def build_match_profile(
    metadata_record: MetadataRecord,
    settings: DedupSettings,
) -> MatchProfile:
    """Extract normalized comparison fields from a metadata record."""
    unique_ids = frozenset(
        identifier
        for identifier in (
            normalize_identifier(value) for value in metadata_record.get_unique_ids()
        )
        if identifier is not None and identifier not in settings.ignored_ids
    )
    return MatchProfile(
        record_id=metadata_record.get_id(),
        title=normalize_match_text(metadata_record.get_title())[:MATCH_TITLE_MAX_LENGTH],
        author=normalize_match_text(metadata_record.get_main_author()),
        isbns=normalize_isbns(metadata_record.get_isbns()),
        issns=frozenset(
            _normalize_issn(value) for value in metadata_record.get_issns()
        ),
        unique_ids=unique_ids,
        publication_year=metadata_record.get_publication_year(),
        page_count=metadata_record.get_page_count(),
        series_issn=_optional_issn(metadata_record.get_series_issn()),
        series_numbering=_optional_text(metadata_record.get_series_numbering()),
        formats=frozenset(metadata_record.get_formats()),
        access_restrictions=frozenset(
            normalize_match_text(value)
            for value in metadata_record.get_access_restrictions()
        ),
    )


def check_access_restrictions(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    """Records with different access terms are never merged."""
    _ = settings
    if left.access_restrictions != right.access_restrictions:
        return distinct(reason=ACCESS_RESTRICTIONS_DIFFER_REASON)
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_format_family(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    """Formats must share a family, e.g. Book and eBook mapped to "book"."""
    if not left.formats or not right.formats:
        return abstain(reason=NOT_APPLICABLE_REASON)
    left_families = {settings.format_family(value) for value in left.formats}
    right_families = {settings.format_family(value) for value in right.formats}
    if left_families.isdisjoint(right_families):
        return distinct(
            reason=FORMAT_FAMILY_MISMATCH_REASON,
            metadata={
                "left_families": sorted(left_families),
                "right_families": sorted(right_families),
            },
        )
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_shared_isbn(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    _ = settings
    shared = left.isbns & right.isbns
    if shared:
        return duplicate(reason=SHARED_ISBN_REASON, metadata={"isbn": min(shared)})
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_shared_identifier(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    _ = settings
    shared = left.unique_ids & right.unique_ids
    if shared:
        return duplicate(
            reason=SHARED_IDENTIFIER_REASON,
            metadata={"identifier": min(shared)},
        )
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_issn(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    """Serials that both carry ISSNs must share one."""
    _ = settings
    if left.issns and right.issns and left.issns.isdisjoint(right.issns):
        return distinct(reason=ISSN_MISMATCH_REASON)
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_publication_year(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    _ = settings
    if (
        left.publication_year is not None
        and right.publication_year is not None
        and left.publication_year != right.publication_year
    ):
        return distinct(reason=PUBLICATION_YEAR_MISMATCH_REASON)
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_page_count(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    if (
        left.page_count is not None
        and right.page_count is not None
        and abs(left.page_count - right.page_count) > settings.page_count_tolerance
    ):
        return distinct(
            reason=PAGE_COUNT_MISMATCH_REASON,
            metadata={"left": left.page_count, "right": right.page_count},
        )
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_series(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    """Different volumes of one series share titles but not numbering."""
    _ = settings
    if (
        left.series_issn != right.series_issn
        or left.series_numbering != right.series_numbering
    ):
        return distinct(reason=SERIES_MISMATCH_REASON)
    return abstain(reason=NOT_APPLICABLE_REASON)


def check_title_distance(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    if not left.title or not right.title:
        return distinct(reason=TITLE_MISSING_REASON)
    percent = _distance_percent(left.title, right.title)
    if percent >= settings.title_distance_max_percent:
        return distinct(
            reason=TITLE_DISTANCE_REASON,
            metadata={"distance_percent": percent},
        )
    return abstain(reason=NOT_APPLICABLE_REASON, metadata={"distance_percent": percent})


def check_author(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    if bool(left.author) != bool(right.author):
        return distinct(reason=AUTHOR_MISSING_ON_ONE_SIDE_REASON)
    if not left.author or authors_match(left.author, right.author):
        return abstain(reason=NOT_APPLICABLE_REASON)
    percent = _distance_percent(left.author, right.author)
    if percent > settings.author_distance_max_percent:
        return distinct(
            reason=AUTHOR_DISTANCE_REASON,
            metadata={"distance_percent": percent},
        )
    return abstain(reason=NOT_APPLICABLE_REASON, metadata={"distance_percent": percent})


def accept_title_author_match(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchResult:
    """Everything above passed: same title, compatible author."""
    _ = (left, right, settings)
    return duplicate(reason=TITLE_AUTHOR_MATCH_REASON)


DEFAULT_MATCH_STRATEGIES: MatchStrategyChain = (
    ("access_restrictions", check_access_restrictions),
    ("format_family", check_format_family),
    ("shared_isbn", check_shared_isbn),
    ("shared_identifier", check_shared_identifier),
    ("issn", check_issn),
    ("publication_year", check_publication_year),
    ("page_count", check_page_count),
    ("series", check_series),
    ("title_distance", check_title_distance),
    ("author", check_author),
    ("title_author", accept_title_author_match),
)


def verify_match(
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
    *,
    strategies: MatchStrategyChain = DEFAULT_MATCH_STRATEGIES,
) -> MatchDecision:
    """Decide whether two profiles describe the same work."""
    return execute_match_chain(
        strategies=strategies,
        left=left,
        right=right,
        settings=settings,
    )


def authors_match(left: str, right: str) -> bool:
    """Loose author heading comparison tolerant of abbreviated forenames.

    "meikäläinen matti" matches "meikäläinen m" because the first word is
    equal and every later word agrees on its initial.
    """
    if left == right:
        return True
    if len(left) < AUTHOR_MIN_COMPARABLE_LENGTH or len(right) < AUTHOR_MIN_COMPARABLE_LENGTH:
        return False
    if left.startswith(right) or right.startswith(left):
        return True
    left_words = left.split()
    right_words = right.split()
    if not left_words or not right_words or left_words[0] != right_words[0]:
        return False
    return all(
        left_word[0] == right_word[0]
        for left_word, right_word in zip(left_words[1:], right_words[1:], strict=False)
    )


def _distance_percent(left: str, right: str) -> float:
    if not left:
        return 100.0
    return Levenshtein.distance(left, right) / len(left) * 100


def _normalize_issn(value: str) -> str:
    return value.replace("-", "").replace(" ", "").upper()


def _optional_issn(value: str | None) -> str | None:
    if not value:
        return None
    return _normalize_issn(value) or None


def _optional_text(value: str | None) -> str | None:
    normalized = normalize_match_text(value)
    return normalized or None
