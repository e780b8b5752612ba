"""Data source and matching configuration loaded from a TOML file."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

DEFAULT_MAX_CANDIDATES = 100
DEFAULT_TITLE_DISTANCE_MAX_PERCENT = 10.0
DEFAULT_AUTHOR_DISTANCE_MAX_PERCENT = 20.0
DEFAULT_PAGE_COUNT_TOLERANCE = 10
DEFAULT_MIN_TITLE_KEY_LENGTH = 3
DEFAULT_PROGRESS_INTERVAL = 1000
DEFAULT_TITLE_ARTICLES: tuple[str, ...] = (
    "a",
    "an",
    "the",
    "der",
    "die",
    "das",
    "le",
    "la",
    "les",
    "el",
    "los",
    "il",
)
DEFAULT_RECORD_FORMAT = "json"


class DataSourceConfigError(ValueError):
    """Raised when the data source configuration file is missing or invalid."""

    @classmethod
    def for_missing_file(cls, path: Path) -> DataSourceConfigError:
        """Build error for an absent configuration file."""
        message = f"Data source configuration not found: {path.as_posix()}."
        return cls(message)

    @classmethod
    def for_unparseable_file(cls, path: Path, *, details: str) -> DataSourceConfigError:
        """Build error for TOML syntax problems."""
        message = f"Invalid data source configuration {path.as_posix()}: {details}"
        return cls(message)

    @classmethod
    def for_invalid_value(
        cls,
        location: str,
        *,
        expected: str,
    ) -> DataSourceConfigError:
        """Build error for a value with the wrong type or range."""
        message = f"Invalid data source configuration value at {location}: expected {expected}."
        return cls(message)


@dataclass(frozen=True, slots=True)
class DataSourceSettings:
    """Per-source settings consulted by the dedup engine."""

    source_id: str
    record_format: str = DEFAULT_RECORD_FORMAT
    dedup: bool = False
    host_record_source_ids: tuple[str, ...] = ()

    def host_sources(self) -> tuple[str, ...]:
        """Return source ids that may host component parts of this source."""
        if self.host_record_source_ids:
            return self.host_record_source_ids
        return (self.source_id,)


@dataclass(frozen=True, slots=True)
class DedupSettings:
    """Matching thresholds and key extraction options."""

    max_candidates: int = DEFAULT_MAX_CANDIDATES
    title_distance_max_percent: float = DEFAULT_TITLE_DISTANCE_MAX_PERCENT
    author_distance_max_percent: float = DEFAULT_AUTHOR_DISTANCE_MAX_PERCENT
    page_count_tolerance: int = DEFAULT_PAGE_COUNT_TOLERANCE
    min_title_key_length: int = DEFAULT_MIN_TITLE_KEY_LENGTH
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL
    title_articles: tuple[str, ...] = DEFAULT_TITLE_ARTICLES
    ignored_ids: frozenset[str] = frozenset()
    format_families: Mapping[str, str] = field(default_factory=dict)

    def format_family(self, record_format: str) -> str:
        """Map a record format to its comparable family."""
        return self.format_families.get(record_format, record_format)


@dataclass(frozen=True, slots=True)
class RecmanConfig:
    """Immutable configuration passed to dedup components at construction."""

    sources: Mapping[str, DataSourceSettings] = field(default_factory=dict)
    dedup: DedupSettings = field(default_factory=DedupSettings)

    def source(self, source_id: str) -> DataSourceSettings | None:
        """Return settings for one source id, or None when unconfigured."""
        return self.sources.get(source_id)

    def is_dedup_source(self, source_id: str) -> bool:
        """Return true when records of `source_id` participate in dedup."""
        settings = self.sources.get(source_id)
        return settings is not None and settings.dedup

    def dedup_source_ids(self) -> tuple[str, ...]:
        """Return dedup-enabled source ids in deterministic order."""
        return tuple(
            source_id
            for source_id in sorted(self.sources)
            if self.sources[source_id].dedup
        )


def load_recman_config(path: Path) -> RecmanConfig:
    """Read and validate the TOML data source configuration file."""
    try:
        with path.expanduser().open("rb") as handle:
            document = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise DataSourceConfigError.for_missing_file(path) from exc
    except tomllib.TOMLDecodeError as exc:
        raise DataSourceConfigError.for_unparseable_file(path, details=str(exc)) from exc
    return parse_recman_config(document)


def parse_recman_config(document: Mapping[str, object]) -> RecmanConfig:
    """Build typed configuration from an already-parsed mapping."""
    dedup_table = _expect_table(document.get("dedup", {}), location="dedup")
    sources_table = _expect_table(document.get("sources", {}), location="sources")

    sources: dict[str, DataSourceSettings] = {}
    for source_id, raw_source in sources_table.items():
        location = f"sources.{source_id}"
        source_table = _expect_table(raw_source, location=location)
        sources[source_id] = DataSourceSettings(
            source_id=source_id,
            record_format=_read_str(
                source_table,
                "format",
                location=location,
                default=DEFAULT_RECORD_FORMAT,
            ),
            dedup=_read_bool(source_table, "dedup", location=location, default=False),
            host_record_source_ids=_read_str_tuple(
                source_table,
                "host_record_sources",
                location=location,
                default=(),
            ),
        )

    return RecmanConfig(sources=sources, dedup=_parse_dedup_settings(dedup_table))


def _parse_dedup_settings(table: Mapping[str, object]) -> DedupSettings:
    location = "dedup"
    families_table = _expect_table(
        table.get("format_families", {}),
        location="dedup.format_families",
    )
    format_families: dict[str, str] = {}
    for record_format, family in families_table.items():
        if not isinstance(family, str):
            raise DataSourceConfigError.for_invalid_value(
                f"dedup.format_families.{record_format}",
                expected="string",
            )
        format_families[record_format] = family

    return DedupSettings(
        max_candidates=_read_positive_int(
            table,
            "max_candidates",
            location=location,
            default=DEFAULT_MAX_CANDIDATES,
        ),
        title_distance_max_percent=_read_percent(
            table,
            "title_distance_max_percent",
            default=DEFAULT_TITLE_DISTANCE_MAX_PERCENT,
        ),
        author_distance_max_percent=_read_percent(
            table,
            "author_distance_max_percent",
            default=DEFAULT_AUTHOR_DISTANCE_MAX_PERCENT,
        ),
        page_count_tolerance=_read_positive_int(
            table,
            "page_count_tolerance",
            location=location,
            default=DEFAULT_PAGE_COUNT_TOLERANCE,
        ),
        min_title_key_length=_read_positive_int(
            table,
            "min_title_key_length",
            location=location,
            default=DEFAULT_MIN_TITLE_KEY_LENGTH,
        ),
        progress_interval=_read_positive_int(
            table,
            "progress_interval",
            location=location,
            default=DEFAULT_PROGRESS_INTERVAL,
        ),
        title_articles=tuple(
            article.casefold()
            for article in _read_str_tuple(
                table,
                "title_articles",
                location=location,
                default=DEFAULT_TITLE_ARTICLES,
            )
        ),
        ignored_ids=frozenset(
            _read_str_tuple(table, "ignored_ids", location=location, default=()),
        ),
        format_families=format_families,
    )


def _expect_table(value: object, *, location: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise DataSourceConfigError.for_invalid_value(location, expected="table")
    return cast("dict[str, object]", value)


def _read_str(
    table: Mapping[str, object],
    key: str,
    *,
    location: str,
    default: str,
) -> str:
    value = table.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise DataSourceConfigError.for_invalid_value(
            f"{location}.{key}",
            expected="non-empty string",
        )
    return value.strip()


def _read_bool(
    table: Mapping[str, object],
    key: str,
    *,
    location: str,
    default: bool,
) -> bool:
    value = table.get(key, default)
    if not isinstance(value, bool):
        raise DataSourceConfigError.for_invalid_value(
            f"{location}.{key}",
            expected="boolean",
        )
    return value


def _read_positive_int(
    table: Mapping[str, object],
    key: str,
    *,
    location: str,
    default: int,
) -> int:
    value = table.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise DataSourceConfigError.for_invalid_value(
            f"{location}.{key}",
            expected="positive integer",
        )
    return value


def _read_percent(table: Mapping[str, object], key: str, *, default: float) -> float:
    value = table.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise DataSourceConfigError.for_invalid_value(
            f"dedup.{key}",
            expected="number between 0 and 100",
        )
    percent = float(value)
    if not 0 <= percent <= 100:  # noqa: PLR2004
        raise DataSourceConfigError.for_invalid_value(
            f"dedup.{key}",
            expected="number between 0 and 100",
        )
    return percent


def _read_str_tuple(
    table: Mapping[str, object],
    key: str,
    *,
    location: str,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    value = table.get(key)
    if value is None:
        return default
    if not isinstance(value, list):
        raise DataSourceConfigError.for_invalid_value(
            f"{location}.{key}",
            expected="list of strings",
        )
    items = cast("list[object]", value)
    strings: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise DataSourceConfigError.for_invalid_value(
                f"{location}.{key}",
                expected="list of strings",
            )
        strings.append(item)
    return tuple(strings)
