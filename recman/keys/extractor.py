"""Candidate key extraction from parsed metadata records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from recman.config.datasources import DedupSettings
from recman.metadata import MetadataRecordError

from .isbn import normalize_isbns
from .text_normalization import normalize_identifier
from .title_keys import build_title_keys

if TYPE_CHECKING:
    from recman.metadata import MetadataRecord
    from recman.storage.records_repo import StoredRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CandidateKeys:
    """The three normalized key sets used for candidate lookup."""

    title_keys: frozenset[str] = frozenset()
    isbn_keys: frozenset[str] = frozenset()
    id_keys: frozenset[str] = frozenset()

    @property
    def is_matchable(self) -> bool:
        """Return false when no key set has any value."""
        return bool(self.title_keys or self.isbn_keys or self.id_keys)


EMPTY_CANDIDATE_KEYS = CandidateKeys()


class CandidateKeyExtractor:
    """Derive title, ISBN and identifier keys from a metadata record."""

    _settings: DedupSettings

    def __init__(self, settings: DedupSettings | None = None) -> None:
        """Create extractor bound to matching settings."""
        self._settings = settings or DedupSettings()

    def extract(self, metadata_record: MetadataRecord) -> CandidateKeys:
        """Return key sets; structurally broken records yield no keys."""
        try:
            title_keys = build_title_keys(
                metadata_record.get_title(),
                metadata_record.get_main_author(),
                articles=self._settings.title_articles,
                min_length=self._settings.min_title_key_length,
            )
            isbn_keys = normalize_isbns(metadata_record.get_isbns())
            id_keys = self._identifier_keys(metadata_record.get_unique_ids())
        except MetadataRecordError as exc:
            logger.warning(
                "Metadata record is unmatchable: %s",
                exc,
                extra={"record_id": metadata_record.get_id()},
            )
            return EMPTY_CANDIDATE_KEYS
        return CandidateKeys(
            title_keys=title_keys,
            isbn_keys=isbn_keys,
            id_keys=id_keys,
        )

    def update_dedup_candidate_keys(
        self,
        record: StoredRecord,
        metadata_record: MetadataRecord,
    ) -> tuple[StoredRecord, bool]:
        """Recompute key sets on `record`.

        Returns the updated record and whether any key set changed, which is
        the signal that the record's dedup membership must be re-evaluated.
        """
        keys = self.extract(metadata_record)
        changed = (
            keys.title_keys != record.title_keys
            or keys.isbn_keys != record.isbn_keys
            or keys.id_keys != record.id_keys
        )
        if not changed:
            return record, False
        return (
            replace(
                record,
                title_keys=keys.title_keys,
                isbn_keys=keys.isbn_keys,
                id_keys=keys.id_keys,
            ),
            True,
        )

    def _identifier_keys(self, values: tuple[str, ...]) -> frozenset[str]:
        keys: set[str] = set()
        for value in values:
            normalized = normalize_identifier(value)
            if normalized is None or normalized in self._settings.ignored_ids:
                continue
            keys.add(normalized)
        return frozenset(keys)
