"""Facade exposing dedup operations to harvest, CLI and API callers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from recman.keys import CandidateKeyExtractor
from recman.metadata import build_default_registry
from recman.storage import DedupRecordsRepository, RecordsRepository

from .cluster_store import ClusterStore
from .consistency import ConsistencyChecker
from .controller import DedupController
from .engine import MatchEngine
from .propagation import UpdatePropagator
from .record_writer import RecordWriter

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from recman.config import RecmanConfig
    from recman.metadata import MetadataRecord, MetadataRecordRegistry
    from recman.storage import DedupRecord, StorageRuntime, StoredRecord


class DedupHandler:
    """The five dedup operations callers rely on."""

    _records: RecordsRepository
    _engine: MatchEngine
    _extractor: CandidateKeyExtractor
    _clusters: ClusterStore
    _checker: ConsistencyChecker

    def __init__(
        self,
        *,
        records_repository: RecordsRepository,
        engine: MatchEngine,
        extractor: CandidateKeyExtractor,
        cluster_store: ClusterStore,
        checker: ConsistencyChecker,
    ) -> None:
        """Create handler over already wired components."""
        self._records = records_repository
        self._engine = engine
        self._extractor = extractor
        self._clusters = cluster_store
        self._checker = checker

    async def dedup_record(self, record: StoredRecord) -> bool:
        """Evaluate one record; return true when it ended up clustered."""
        outcome = await self._engine.evaluate(record)
        return outcome.clustered

    def update_dedup_candidate_keys(
        self,
        record: StoredRecord,
        metadata_record: MetadataRecord,
    ) -> tuple[StoredRecord, bool]:
        """Recompute keys; the flag says whether `update_needed` should be set."""
        return self._extractor.update_dedup_candidate_keys(record, metadata_record)

    async def remove_from_dedup_record(self, dedup_id: str, record_id: str) -> bool:
        """Remove a record from a cluster, dissolving the cluster when needed.

        The record loses its back-reference and is flagged for re-evaluation
        unless it is deleted or suppressed.
        """
        unlinked = await self._clusters.unlink_record(
            record_id=record_id,
            dedup_id=dedup_id,
            update_needed=None,
        )
        if unlinked:
            _ = await self._records.mark_update_needed([record_id])
        removed = await self._clusters.remove_member(
            dedup_id=dedup_id,
            record_id=record_id,
        )
        return unlinked or removed

    async def check_dedup_record(
        self,
        dedup: DedupRecord,
        *,
        strict: bool = False,
    ) -> list[str]:
        """Repair one cluster and return the fixes made."""
        return await self._checker.check_dedup_record(dedup, strict=strict)

    async def check_record_links(self, record: StoredRecord) -> str | None:
        """Repair one record's cluster link and return the fix made, if any."""
        return await self._checker.check_record_links(record)


@dataclass(frozen=True, slots=True)
class DedupServices:
    """Every dedup component wired over one storage runtime."""

    records_repository: RecordsRepository
    dedup_records_repository: DedupRecordsRepository
    cluster_store: ClusterStore
    extractor: CandidateKeyExtractor
    engine: MatchEngine
    propagator: UpdatePropagator
    writer: RecordWriter
    checker: ConsistencyChecker
    controller: DedupController
    handler: DedupHandler


def build_dedup_services(
    runtime: StorageRuntime,
    config: RecmanConfig,
    *,
    metadata_registry: MetadataRecordRegistry | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> DedupServices:
    """Wire repositories and dedup components for one runtime."""
    registry = metadata_registry or build_default_registry()
    records_repository = RecordsRepository(
        read_session_factory=runtime.read_session_factory,
        write_session_factory=runtime.write_session_factory,
    )
    dedup_records_repository = DedupRecordsRepository(
        read_session_factory=runtime.read_session_factory,
        write_session_factory=runtime.write_session_factory,
    )
    cluster_store = ClusterStore(
        records_repository=records_repository,
        dedup_records_repository=dedup_records_repository,
        now_provider=now_provider,
    )
    extractor = CandidateKeyExtractor(config.dedup)
    engine = MatchEngine(
        records_repository=records_repository,
        cluster_store=cluster_store,
        metadata_registry=registry,
        config=config,
    )
    propagator = UpdatePropagator(
        records_repository=records_repository,
        config=config,
        now_provider=now_provider,
    )
    writer = RecordWriter(
        records_repository=records_repository,
        cluster_store=cluster_store,
        extractor=extractor,
        propagator=propagator,
        metadata_registry=registry,
        config=config,
        now_provider=now_provider,
    )
    checker = ConsistencyChecker(
        records_repository=records_repository,
        dedup_records_repository=dedup_records_repository,
        cluster_store=cluster_store,
        engine=engine,
        progress_interval=config.dedup.progress_interval,
    )
    controller = DedupController(
        records_repository=records_repository,
        engine=engine,
        config=config,
    )
    handler = DedupHandler(
        records_repository=records_repository,
        engine=engine,
        extractor=extractor,
        cluster_store=cluster_store,
        checker=checker,
    )
    return DedupServices(
        records_repository=records_repository,
        dedup_records_repository=dedup_records_repository,
        cluster_store=cluster_store,
        extractor=extractor,
        engine=engine,
        propagator=propagator,
        writer=writer,
        checker=checker,
        controller=controller,
        handler=handler,
    )
