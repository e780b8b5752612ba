"""Consistency checks that repair records and dedup records drifting apart.

Two passes converge the store: the cluster pass walks every dedup record and
removes members that no longer belong, the record pass walks every clustered
record and fixes its back-reference. Each fix is idempotent, so re-running a
check on a repaired store reports nothing.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from recman.storage import RecordFilter

from .cluster_store import MIN_CLUSTER_SIZE, find_member_from_source

if TYPE_CHECKING:
    from collections.abc import Callable

    from recman.cancellation import CancellationToken
    from recman.storage import (
        DedupRecord,
        DedupRecordsRepository,
        RecordsRepository,
        StoredRecord,
    )

    from .cluster_store import ClusterStore
    from .engine import MatchEngine

logger = logging.getLogger(__name__)

CheckStatus = Literal["completed", "cancelled"]

RECORD_MISSING_PROBLEM = "record does not exist"
SAME_SOURCE_PROBLEM = "already deduplicated with a record from same source"
DEDUP_DELETED_PROBLEM = "dedup record deleted"
RECORD_DELETED_PROBLEM = "record deleted"
COMPONENT_PART_PROBLEM = "record is a component part"
SINGLE_RECORD_PROBLEM = "single record in a dedup group"
MISSING_DEDUP_ID_PROBLEM = "record is missing dedup_id"


@dataclass(frozen=True, slots=True)
class ConsistencyRunSummary:
    """Counts reported at the end of a check run."""

    status: CheckStatus
    dedup_records_checked: int
    records_checked: int
    fixed: int


class ConsistencyChecker:
    """Detect and repair divergence between clusters and record links."""

    _records: RecordsRepository
    _dedups: DedupRecordsRepository
    _clusters: ClusterStore
    _engine: MatchEngine
    _progress_interval: int
    _clock: Callable[[], float]

    def __init__(  # noqa: PLR0913
        self,
        *,
        records_repository: RecordsRepository,
        dedup_records_repository: DedupRecordsRepository,
        cluster_store: ClusterStore,
        engine: MatchEngine,
        progress_interval: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create checker over the stores and the engine used for strict checks."""
        self._records = records_repository
        self._dedups = dedup_records_repository
        self._clusters = cluster_store
        self._engine = engine
        self._progress_interval = progress_interval
        self._clock = clock

    async def check_dedup_record(
        self,
        dedup: DedupRecord,
        *,
        strict: bool = False,
    ) -> list[str]:
        """Remove members that violate cluster invariants; return fix lines.

        With `strict` every member is also re-verified against the other
        members, which is slower and only done when nothing else is wrong.
        """
        if not dedup.deleted and not dedup.record_ids:
            _ = await self._clusters.retire_cluster(dedup.dedup_id)
            return [
                f"Marked dedup record '{dedup.dedup_id}' deleted "
                "(no records in non-deleted dedup record)",
            ]

        fixes: list[str] = []
        seen_sources: set[str] = set()
        removed: set[str] = set()
        for record_id in dedup.record_ids:
            current = await self._dedups.get_dedup(dedup.dedup_id)
            if current is None or record_id not in current.record_ids:
                continue
            record = await self._records.get_record(record_id)
            problem = await self._find_member_problem(
                current,
                record_id=record_id,
                record=record,
                seen_sources=seen_sources,
                removed=removed,
                strict=strict,
            )
            if problem is None:
                continue
            await self._detach_member(current, record_id=record_id, record=record)
            removed.add(record_id)
            fixes.append(
                f"Removed '{record_id}' from dedup record '{dedup.dedup_id}' ({problem})",
            )

        current = await self._dedups.get_dedup(dedup.dedup_id)
        if current is not None and current.deleted and current.record_ids:
            _ = await self._clusters.retire_cluster(dedup.dedup_id)
        return fixes

    async def check_record_links(self, record: StoredRecord) -> str | None:
        """Fix one record's back-reference; return a fix line or None."""
        dedup_id = record.dedup_id
        if dedup_id is None:
            return None
        dedup = await self._dedups.get_dedup(dedup_id)
        update_needed = _live_update_flag(record)

        if dedup is None or dedup.deleted:
            _ = await self._clusters.unlink_record(
                record_id=record.record_id,
                dedup_id=dedup_id,
                update_needed=update_needed,
            )
            reason = (
                "dedup record does not exist" if dedup is None else "dedup record deleted"
            )
            return f"Removed dedup_id {dedup_id} from record {record.record_id} ({reason})"

        if record.deleted:
            _ = await self._clusters.unlink_record(
                record_id=record.record_id,
                dedup_id=dedup_id,
                update_needed=None,
            )
            _ = await self._clusters.remove_member(
                dedup_id=dedup_id,
                record_id=record.record_id,
            )
            return (
                f"Removed deleted record {record.record_id} from dedup record {dedup_id}"
            )

        if record.is_component_part:
            _ = await self._clusters.unlink_record(
                record_id=record.record_id,
                dedup_id=dedup_id,
                update_needed=None,
            )
            if record.record_id in dedup.record_ids:
                _ = await self._clusters.remove_member(
                    dedup_id=dedup_id,
                    record_id=record.record_id,
                )
            return (
                f"Removed component part {record.record_id} "
                f"from dedup record {dedup_id}"
            )

        if record.record_id in dedup.record_ids:
            return None

        if dedup.record_ids and not record.suppressed:
            conflicting = find_member_from_source(
                dedup,
                record.source_id,
                exclude_record_id=record.record_id,
            )
            if conflicting is None and await self._clusters.add_member(
                dedup_id=dedup_id,
                record_id=record.record_id,
            ):
                _ = await self._records.mark_update_needed([record.record_id])
                return (
                    f"Re-linked record {record.record_id} to dedup record {dedup_id} "
                    "(dedup record did not contain the id)"
                )

        _ = await self._clusters.unlink_record(
            record_id=record.record_id,
            dedup_id=dedup_id,
            update_needed=update_needed,
        )
        return (
            f"Removed dedup_id {dedup_id} from record {record.record_id} "
            "(dedup record does not contain the id)"
        )

    async def run_cluster_pass(
        self,
        *,
        strict: bool = False,
        token: CancellationToken | None = None,
    ) -> tuple[int, int, bool]:
        """Check every dedup record; return (checked, fixed, cancelled)."""
        checked = 0
        fixed = 0
        started = self._clock()
        async for dedup_id in self._dedups.iter_dedup_ids():
            if token is not None and token.is_cancelled():
                return checked, fixed, True
            dedup = await self._dedups.get_dedup(dedup_id)
            if dedup is None:
                continue
            for fix in await self.check_dedup_record(dedup, strict=strict):
                logger.info(fix, extra={"dedup_id": dedup_id})
                fixed += 1
            checked += 1
            self._log_progress("dedup records", checked, started)
        return checked, fixed, False

    async def run_record_pass(
        self,
        *,
        token: CancellationToken | None = None,
    ) -> tuple[int, int, bool]:
        """Check every clustered record; return (checked, fixed, cancelled)."""
        checked = 0
        fixed = 0
        started = self._clock()
        async for record_id in self._records.iter_record_ids(
            RecordFilter(has_dedup_id=True),
        ):
            if token is not None and token.is_cancelled():
                return checked, fixed, True
            record = await self._records.get_record(record_id)
            if record is None:
                continue
            fix = await self.check_record_links(record)
            if fix is not None:
                logger.info(fix, extra={"record_id": record_id})
                fixed += 1
            checked += 1
            self._log_progress("records", checked, started)
        return checked, fixed, False

    async def run(
        self,
        *,
        single_record_id: str | None = None,
        strict: bool = False,
        token: CancellationToken | None = None,
    ) -> ConsistencyRunSummary:
        """Run both passes, or check one record and its cluster."""
        if single_record_id is not None:
            return await self._run_single(single_record_id, strict=strict)

        dedups_checked, dedups_fixed, cancelled = await self.run_cluster_pass(
            strict=strict,
            token=token,
        )
        records_checked = 0
        records_fixed = 0
        if not cancelled:
            records_checked, records_fixed, cancelled = await self.run_record_pass(
                token=token,
            )
        summary = ConsistencyRunSummary(
            status="cancelled" if cancelled else "completed",
            dedup_records_checked=dedups_checked,
            records_checked=records_checked,
            fixed=dedups_fixed + records_fixed,
        )
        logger.info(
            "Dedup check %s: %s dedup records and %s records checked, %s fixed",
            summary.status,
            summary.dedup_records_checked,
            summary.records_checked,
            summary.fixed,
        )
        return summary

    async def _run_single(self, record_id: str, *, strict: bool) -> ConsistencyRunSummary:
        fixes: list[str] = []
        dedups_checked = 0
        record = await self._records.get_record(record_id)
        if record is not None and record.dedup_id is not None:
            dedup = await self._dedups.get_dedup(record.dedup_id)
            if dedup is not None:
                fixes.extend(await self.check_dedup_record(dedup, strict=strict))
                dedups_checked = 1
            record = await self._records.get_record(record_id)
        if record is not None:
            fix = await self.check_record_links(record)
            if fix is not None:
                fixes.append(fix)
        for fix in fixes:
            logger.info(fix, extra={"record_id": record_id})
        return ConsistencyRunSummary(
            status="completed",
            dedup_records_checked=dedups_checked,
            records_checked=0 if record is None else 1,
            fixed=len(fixes),
        )

    async def _find_member_problem(  # noqa: PLR0913
        self,
        dedup: DedupRecord,
        *,
        record_id: str,
        record: StoredRecord | None,
        seen_sources: set[str],
        removed: set[str],
        strict: bool,
    ) -> str | None:
        if record is None:
            return RECORD_MISSING_PROBLEM
        source_seen = record.source_id in seen_sources
        seen_sources.add(record.source_id)
        if source_seen:
            return SAME_SOURCE_PROBLEM
        if dedup.deleted:
            return DEDUP_DELETED_PROBLEM
        if record.deleted:
            return RECORD_DELETED_PROBLEM
        if record.is_component_part:
            return COMPONENT_PART_PROBLEM
        if len(dedup.record_ids) < MIN_CLUSTER_SIZE:
            return SINGLE_RECORD_PROBLEM
        if record.dedup_id is None:
            return MISSING_DEDUP_ID_PROBLEM
        if record.dedup_id != dedup.dedup_id:
            return f"record linked with dedup record '{record.dedup_id}'"
        if not strict:
            return None
        for other_id in dedup.record_ids:
            if other_id == record_id or other_id in removed:
                continue
            other = await self._records.get_record(other_id)
            if other is None or other.deleted:
                continue
            if not self._engine.records_match(record, other):
                return f"record does not match '{other_id}' in dedup group"
        return None

    async def _detach_member(
        self,
        dedup: DedupRecord,
        *,
        record_id: str,
        record: StoredRecord | None,
    ) -> None:
        if record is not None and record.dedup_id == dedup.dedup_id:
            _ = await self._clusters.unlink_record(
                record_id=record_id,
                dedup_id=dedup.dedup_id,
                update_needed=_live_update_flag(record),
            )
        elif record is not None:
            _ = await self._records.mark_update_needed([record_id])
        _ = await self._clusters.remove_member(
            dedup_id=dedup.dedup_id,
            record_id=record_id,
        )

    def _log_progress(self, label: str, checked: int, started: float) -> None:
        if self._progress_interval <= 0 or checked % self._progress_interval:
            return
        elapsed = max(self._clock() - started, 1e-9)
        logger.info(
            "Checked %s %s, %.1f/sec",
            checked,
            label,
            checked / elapsed,
        )


def _live_update_flag(record: StoredRecord) -> bool | None:
    if record.deleted or record.suppressed or record.is_component_part:
        return None
    return True
