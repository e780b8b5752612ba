"""Batch orchestration of dedup runs over flagged records."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from recman.cancellation import CancellationToken
from recman.config import RecmanConfig
from recman.config.logging import bind_source
from recman.storage import RecordFilter, RecordsRepository

from .engine import MatchEngine

logger = logging.getLogger(__name__)

RunStatus = Literal["completed", "cancelled", "failed"]
Clock = Callable[[], float]

ALL_SOURCES = "*"


@dataclass(slots=True)
class SourceRunStats:
    """Counters for one source within a run."""

    source_id: str
    processed: int = 0
    clustered: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class DedupRunSummary:
    """Final report of one controller run."""

    status: RunStatus
    marked: int
    processed: int
    clustered: int
    failed_records: int
    failed_sources: tuple[str, ...]
    sources: tuple[SourceRunStats, ...]


@dataclass(slots=True)
class DedupController:
    """Drive the match engine over every record flagged for re-evaluation.

    Sources are processed one after another. A record that fails is logged
    and counted without stopping its source; a source that fails is logged
    and the run moves on to the next one.
    """

    records_repository: RecordsRepository
    engine: MatchEngine
    config: RecmanConfig
    clock: Clock = time.monotonic
    _stats: list[SourceRunStats] = field(default_factory=list)

    async def run(  # noqa: C901
        self,
        source_id: str | None = None,
        *,
        all_records: bool = False,
        single_id: str | None = None,
        mark_only: bool = False,
        token: CancellationToken | None = None,
    ) -> DedupRunSummary:
        """Run one dedup pass and return its summary."""
        token = token or CancellationToken()
        self._stats = []
        if single_id is not None:
            return await self._run_single(single_id)

        source_ids = self._select_sources(source_id)
        marked = 0
        if all_records or mark_only:
            for current_source in source_ids:
                with bind_source(current_source):
                    count = await self.records_repository.mark_source_update_needed(
                        current_source,
                    )
                    logger.info("Marked %s records for dedup", count)
                marked += count
        if mark_only:
            return self._summary("completed", marked=marked, failed_sources=())

        failed_sources: list[str] = []
        cancelled = False
        for current_source in source_ids:
            if token.is_cancelled():
                cancelled = True
                break
            stats = SourceRunStats(source_id=current_source)
            self._stats.append(stats)
            try:
                with bind_source(current_source):
                    cancelled = await self._run_source(stats, token=token)
            except Exception as exc:
                if isinstance(exc, asyncio.CancelledError):
                    raise
                logger.critical(
                    "Dedup of source %s failed",
                    current_source,
                    exc_info=True,
                    extra={"source_id": current_source},
                )
                failed_sources.append(current_source)
                continue
            if cancelled:
                break

        if cancelled:
            status: RunStatus = "cancelled"
        elif source_ids and len(failed_sources) == len(source_ids):
            status = "failed"
        else:
            status = "completed"
        summary = self._summary(
            status,
            marked=marked,
            failed_sources=tuple(failed_sources),
        )
        logger.info(
            "Dedup run %s: %s records processed, %s clustered, %s failed",
            summary.status,
            summary.processed,
            summary.clustered,
            summary.failed_records,
        )
        return summary

    def _select_sources(self, source_id: str | None) -> tuple[str, ...]:
        if source_id is None or source_id == ALL_SOURCES:
            return self.config.dedup_source_ids()
        if not self.config.is_dedup_source(source_id):
            logger.warning(
                "Source %s is not enabled for dedup",
                source_id,
                extra={"source_id": source_id},
            )
            return ()
        return (source_id,)

    async def _run_single(self, record_id: str) -> DedupRunSummary:
        record = await self.records_repository.get_record(record_id)
        if record is None:
            logger.warning("Record %s not found", record_id)
            return self._summary("completed", marked=0, failed_sources=())
        stats = SourceRunStats(source_id=record.source_id)
        self._stats.append(stats)
        outcome = await self.engine.evaluate(record)
        stats.processed = 1
        stats.clustered = 1 if outcome.clustered else 0
        return self._summary("completed", marked=0, failed_sources=())

    async def _run_source(
        self,
        stats: SourceRunStats,
        *,
        token: CancellationToken,
    ) -> bool:
        source_id = stats.source_id
        total = await self.records_repository.count_records(
            RecordFilter(source_id=source_id, update_needed=True),
        )
        logger.info("Deduplicating %s records", total)
        progress_interval = self.config.dedup.progress_interval
        started = self.clock()
        async for record_id in self.records_repository.iter_record_ids(
            RecordFilter(source_id=source_id, update_needed=True),
        ):
            if token.is_cancelled():
                logger.info("Dedup cancelled after %s records", stats.processed)
                return True
            record = await self.records_repository.get_record(record_id)
            if record is None or not record.update_needed:
                continue
            try:
                outcome = await self.engine.evaluate(record)
            except Exception as exc:
                if isinstance(exc, asyncio.CancelledError):
                    raise
                logger.exception(
                    "Failed to deduplicate record %s",
                    record_id,
                    extra={"record_id": record_id},
                )
                stats.failed += 1
                continue
            stats.processed += 1
            if outcome.clustered:
                stats.clustered += 1
            if progress_interval > 0 and stats.processed % progress_interval == 0:
                elapsed = max(self.clock() - started, 1e-9)
                logger.info(
                    "%s/%s records processed, %.1f/sec",
                    stats.processed,
                    total,
                    stats.processed / elapsed,
                )
        logger.info(
            "Completed dedup with %s records processed, %s clustered",
            stats.processed,
            stats.clustered,
        )
        return False

    def _summary(
        self,
        status: RunStatus,
        *,
        marked: int,
        failed_sources: tuple[str, ...],
    ) -> DedupRunSummary:
        return DedupRunSummary(
            status=status,
            marked=marked,
            processed=sum(stats.processed for stats in self._stats),
            clustered=sum(stats.clustered for stats in self._stats),
            failed_records=sum(stats.failed for stats in self._stats),
            failed_sources=failed_sources,
            sources=tuple(self._stats),
        )
