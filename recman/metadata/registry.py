"""Closed registry of metadata record variants keyed by format tag."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from .json_record import JsonMetadataRecord
from .record import MetadataRecord, MetadataRecordError

if TYPE_CHECKING:
    from recman.storage.records_repo import StoredRecord

MetadataRecordFactory = Callable[..., MetadataRecord]

JSON_FORMAT = "json"


class MetadataRecordRegistry:
    """Select the metadata variant for a stored record by its format tag.

    Factories are bound once when the registry is built; lookups never
    resolve classes dynamically.
    """

    _factories: Mapping[str, MetadataRecordFactory]

    def __init__(self, factories: Mapping[str, MetadataRecordFactory]) -> None:
        """Create registry from a fixed format-to-factory mapping."""
        self._factories = MappingProxyType(dict(factories))

    @property
    def formats(self) -> tuple[str, ...]:
        """Return registered format tags."""
        return tuple(sorted(self._factories))

    def create(self, *, record_format: str, record_id: str, data: str) -> MetadataRecord:
        """Build a metadata record from a stored document."""
        factory = self._factories.get(record_format)
        if factory is None:
            raise MetadataRecordError.for_unknown_format(record_format)
        return factory(record_id=record_id, data=data)

    def for_record(self, record: StoredRecord) -> MetadataRecord:
        """Build the metadata record for a stored record."""
        return self.create(
            record_format=record.record_format,
            record_id=record.record_id,
            data=record.data,
        )


def build_default_registry() -> MetadataRecordRegistry:
    """Return the registry with all built-in metadata variants."""
    return MetadataRecordRegistry({JSON_FORMAT: JsonMetadataRecord.from_document})
