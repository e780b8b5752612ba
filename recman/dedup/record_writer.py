"""Write path for harvested records that keeps dedup bookkeeping current."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from recman.metadata import MetadataRecordError

if TYPE_CHECKING:
    from collections.abc import Callable

    from recman.config import RecmanConfig
    from recman.keys import CandidateKeyExtractor
    from recman.metadata import MetadataRecord, MetadataRecordRegistry
    from recman.storage import RecordsRepository, StoredRecord

    from .cluster_store import ClusterStore
    from .propagation import UpdatePropagator

logger = logging.getLogger(__name__)


class RecordWriter:
    """Store records coming from harvest or import.

    Link fields and the suppressed flag are taken from the parsed metadata,
    candidate keys are recomputed for dedup-enabled sources, and
    `update_needed` is raised whenever the record's match inputs changed.
    A changed component part flags its host records instead.
    """

    _records: RecordsRepository
    _clusters: ClusterStore
    _extractor: CandidateKeyExtractor
    _propagator: UpdatePropagator
    _registry: MetadataRecordRegistry
    _config: RecmanConfig
    _now_provider: Callable[[], datetime]

    def __init__(  # noqa: PLR0913
        self,
        *,
        records_repository: RecordsRepository,
        cluster_store: ClusterStore,
        extractor: CandidateKeyExtractor,
        propagator: UpdatePropagator,
        metadata_registry: MetadataRecordRegistry,
        config: RecmanConfig,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Create writer from its collaborators."""
        self._records = records_repository
        self._clusters = cluster_store
        self._extractor = extractor
        self._propagator = propagator
        self._registry = metadata_registry
        self._config = config
        self._now_provider = now_provider or _utc_now

    async def store_record(self, record: StoredRecord) -> StoredRecord:
        """Persist one incoming record and return the stored copy."""
        existing = await self._records.get_record(record.record_id)
        now = self._now_provider()
        record = replace(
            record,
            created=existing.created if existing is not None else now,
            updated=now,
            dedup_id=existing.dedup_id if existing is not None else None,
        )

        metadata_record = self._load_metadata(record)
        if metadata_record is not None:
            record = replace(
                record,
                host_record_ids=metadata_record.get_host_record_ids(),
                linking_ids=(
                    metadata_record.get_linking_ids()
                    or (_default_linking_id(record.record_id),)
                ),
                suppressed=record.suppressed or metadata_record.get_suppressed(),
            )
        elif not record.linking_ids:
            record = replace(
                record,
                linking_ids=(_default_linking_id(record.record_id),),
            )

        previous_dedup_id = record.dedup_id
        if (
            record.deleted
            or record.is_component_part
            or not self._config.is_dedup_source(record.source_id)
        ):
            record = _without_dedup_state(record)
        elif metadata_record is None:
            record = replace(
                _without_dedup_state(record),
                update_needed=True,
            )
        else:
            if existing is not None:
                record = replace(
                    record,
                    title_keys=existing.title_keys,
                    isbn_keys=existing.isbn_keys,
                    id_keys=existing.id_keys,
                )
            record, keys_changed = self._extractor.update_dedup_candidate_keys(
                record,
                metadata_record,
            )
            record = replace(
                record,
                update_needed=(
                    keys_changed
                    or existing is None
                    or existing.data != record.data
                    or existing.deleted != record.deleted
                    or existing.suppressed != record.suppressed
                    or record.update_needed
                ),
            )

        stored = await self._records.save_record(record)
        if previous_dedup_id is not None and stored.dedup_id is None:
            _ = await self._clusters.remove_member(
                dedup_id=previous_dedup_id,
                record_id=stored.record_id,
            )
        # A record that stopped being a component part still owes its old hosts.
        component = stored if stored.is_component_part else existing
        if component is not None and component.is_component_part:
            _ = await self._propagator.propagate(component)
        logger.debug(
            "Stored record %s",
            stored.record_id,
            extra={"source_id": stored.source_id, "update_needed": stored.update_needed},
        )
        return stored

    async def mark_record_deleted(self, record_id: str) -> StoredRecord | None:
        """Flag a record deleted and take it out of its cluster."""
        record = await self._records.get_record(record_id)
        if record is None:
            return None
        return await self.store_record(replace(record, deleted=True))

    def _load_metadata(self, record: StoredRecord) -> MetadataRecord | None:
        if record.deleted:
            return None
        try:
            return self._registry.for_record(record)
        except MetadataRecordError as exc:
            logger.warning(
                "Cannot parse record metadata: %s",
                exc,
                extra={"record_id": record.record_id, "source_id": record.source_id},
            )
            return None


def _without_dedup_state(record: StoredRecord) -> StoredRecord:
    return replace(
        record,
        title_keys=frozenset(),
        isbn_keys=frozenset(),
        id_keys=frozenset(),
        dedup_id=None,
        update_needed=False,
    )


def _default_linking_id(record_id: str) -> str:
    _, separator, local_id = record_id.partition(".")
    return local_id if separator else record_id


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)
