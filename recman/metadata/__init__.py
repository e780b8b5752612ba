"""Format-specific metadata record variants behind one capability interface."""

from .json_record import JsonMetadataRecord
from .record import MetadataRecord, MetadataRecordError
from .registry import (
    JSON_FORMAT,
    MetadataRecordFactory,
    MetadataRecordRegistry,
    build_default_registry,
)

__all__ = [
    "JSON_FORMAT",
    "JsonMetadataRecord",
    "MetadataRecord",
    "MetadataRecordError",
    "MetadataRecordFactory",
    "MetadataRecordRegistry",
    "build_default_registry",
]
