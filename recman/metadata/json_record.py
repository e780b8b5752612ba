"""Metadata record variant for normalized JSON documents."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import cast

from .record import MetadataRecordError


@dataclass(frozen=True, slots=True)
class JsonMetadataRecord:
    """Normalized JSON document exposing the dedup capability accessors.

    Expected document shape (all keys optional)::

        {
            "title": "Tutki ja kirjoita",
            "author": "Hirsjärvi, Sirkka",
            "isbns": ["978-951-31-4836-2"],
            "issns": [],
            "unique_ids": ["(FI-MELINDA)000123"],
            "year": "2009",
            "pages": 464,
            "series_issn": null,
            "series_numbering": null,
            "formats": ["Book"],
            "access_restrictions": [],
            "host_record_ids": [],
            "linking_ids": ["000123"],
            "suppressed": false
        }
    """

    record_id: str
    title: str | None
    main_author: str | None
    isbns: tuple[str, ...]
    issns: tuple[str, ...]
    unique_ids: tuple[str, ...]
    publication_year: str | None
    page_count: int | None
    series_issn: str | None
    series_numbering: str | None
    formats: tuple[str, ...]
    access_restrictions: tuple[str, ...]
    host_record_ids: tuple[str, ...]
    linking_ids: tuple[str, ...]
    suppressed: bool

    @classmethod
    def from_document(cls, *, record_id: str, data: str) -> JsonMetadataRecord:
        """Parse and validate a JSON document."""
        try:
            raw = cast("object", json.loads(data))
        except json.JSONDecodeError as exc:
            raise MetadataRecordError.for_unparseable_document(
                record_id,
                details=str(exc),
            ) from exc
        if not isinstance(raw, dict):
            raise MetadataRecordError.for_unparseable_document(
                record_id,
                details="top-level value is not an object",
            )
        document = cast("dict[str, object]", raw)
        reader = _FieldReader(record_id=record_id, document=document)
        return cls(
            record_id=record_id,
            title=reader.optional_str("title"),
            main_author=reader.optional_str("author"),
            isbns=reader.str_tuple("isbns"),
            issns=reader.str_tuple("issns"),
            unique_ids=reader.str_tuple("unique_ids"),
            publication_year=reader.optional_year("year"),
            page_count=reader.optional_int("pages"),
            series_issn=reader.optional_str("series_issn"),
            series_numbering=reader.optional_str("series_numbering"),
            formats=reader.str_tuple("formats"),
            access_restrictions=reader.str_tuple("access_restrictions"),
            host_record_ids=reader.str_tuple("host_record_ids"),
            linking_ids=reader.str_tuple("linking_ids"),
            suppressed=reader.flag("suppressed"),
        )

    def get_id(self) -> str:
        return self.record_id

    def get_title(self) -> str | None:
        return self.title

    def get_main_author(self) -> str | None:
        return self.main_author

    def get_isbns(self) -> tuple[str, ...]:
        return self.isbns

    def get_issns(self) -> tuple[str, ...]:
        return self.issns

    def get_unique_ids(self) -> tuple[str, ...]:
        return self.unique_ids

    def get_publication_year(self) -> str | None:
        return self.publication_year

    def get_page_count(self) -> int | None:
        return self.page_count

    def get_series_issn(self) -> str | None:
        return self.series_issn

    def get_series_numbering(self) -> str | None:
        return self.series_numbering

    def get_formats(self) -> tuple[str, ...]:
        return self.formats

    def get_access_restrictions(self) -> tuple[str, ...]:
        return self.access_restrictions

    def get_host_record_ids(self) -> tuple[str, ...]:
        return self.host_record_ids

    def get_linking_ids(self) -> tuple[str, ...]:
        return self.linking_ids

    def get_suppressed(self) -> bool:
        return self.suppressed


@dataclass(frozen=True, slots=True)
class _FieldReader:
    record_id: str
    document: dict[str, object]

    def optional_str(self, name: str) -> str | None:
        value = self.document.get(name)
        if value is None:
            return None
        if not isinstance(value, str):
            raise self._invalid(name, expected="string")
        stripped = value.strip()
        return stripped or None

    def optional_year(self, name: str) -> str | None:
        value = self.document.get(name)
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return self.optional_str(name)

    def optional_int(self, name: str) -> int | None:
        value = self.document.get(name)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._invalid(name, expected="integer")
        return value

    def str_tuple(self, name: str) -> tuple[str, ...]:
        value = self.document.get(name)
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise self._invalid(name, expected="list of strings")
        items: list[str] = []
        for item in cast("list[object]", value):
            if not isinstance(item, str):
                raise self._invalid(name, expected="list of strings")
            stripped = item.strip()
            if stripped:
                items.append(stripped)
        return tuple(items)

    def flag(self, name: str) -> bool:
        value = self.document.get(name, False)
        if not isinstance(value, bool):
            raise self._invalid(name, expected="boolean")
        return value

    def _invalid(self, name: str, *, expected: str) -> ValueError:
        return MetadataRecordError.for_invalid_field(
            self.record_id,
            name,
            expected=expected,
        )
