"""Capability interface shared by all format-specific metadata records."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class MetadataRecordError(ValueError):
    """Raised when a stored metadata document cannot be interpreted."""

    @classmethod
    def for_unknown_format(cls, record_format: str) -> MetadataRecordError:
        """Build error for a format tag with no registered variant."""
        message = f"No metadata record variant registered for format {record_format!r}."
        return cls(message)

    @classmethod
    def for_unparseable_document(
        cls,
        record_id: str,
        *,
        details: str,
    ) -> MetadataRecordError:
        """Build error for documents that fail to decode."""
        message = f"Metadata of record {record_id!r} could not be parsed: {details}"
        return cls(message)

    @classmethod
    def for_invalid_field(
        cls,
        record_id: str,
        field_name: str,
        *,
        expected: str,
    ) -> MetadataRecordError:
        """Build error for a document field with the wrong shape."""
        message = (
            f"Metadata of record {record_id!r} has invalid `{field_name}`: "
            f"expected {expected}."
        )
        return cls(message)


@runtime_checkable
class MetadataRecord(Protocol):
    """Accessors the dedup engine needs from a parsed metadata record."""

    def get_id(self) -> str:
        """Return the record id."""
        ...

    def get_title(self) -> str | None:
        """Return the main title."""
        ...

    def get_main_author(self) -> str | None:
        """Return the main author as "Surname, Forename" when known."""
        ...

    def get_isbns(self) -> tuple[str, ...]:
        """Return raw ISBN-like identifiers."""
        ...

    def get_issns(self) -> tuple[str, ...]:
        """Return raw ISSNs."""
        ...

    def get_unique_ids(self) -> tuple[str, ...]:
        """Return authoritative cross-reference identifiers."""
        ...

    def get_publication_year(self) -> str | None:
        """Return the publication year."""
        ...

    def get_page_count(self) -> int | None:
        """Return the page count."""
        ...

    def get_series_issn(self) -> str | None:
        """Return the ISSN of the series the record belongs to."""
        ...

    def get_series_numbering(self) -> str | None:
        """Return the numbering within the series."""
        ...

    def get_formats(self) -> tuple[str, ...]:
        """Return record formats such as Book or eBook."""
        ...

    def get_access_restrictions(self) -> tuple[str, ...]:
        """Return access restriction statements."""
        ...

    def get_host_record_ids(self) -> tuple[str, ...]:
        """Return linking ids of host records for component parts."""
        ...

    def get_linking_ids(self) -> tuple[str, ...]:
        """Return ids that component parts use to point at this record."""
        ...

    def get_suppressed(self) -> bool:
        """Return true when the record should be hidden from indexing."""
        ...
