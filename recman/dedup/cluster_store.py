"""Cluster membership mutations that keep records and dedup records in step."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from recman.storage import (
        DedupRecord,
        DedupRecordsRepository,
        KeyType,
        RecordsRepository,
        StoredRecord,
    )

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5
MIN_CLUSTER_SIZE = 2


class ClusterConflictError(RuntimeError):
    """Raised when a cluster keeps changing underneath a compare-and-swap."""

    @classmethod
    def for_exhausted_retries(cls, dedup_id: str) -> ClusterConflictError:
        """Build error for a cluster that could not be saved after retries."""
        message = (
            f"Dedup record {dedup_id!r} changed concurrently "
            f"{MAX_CAS_ATTEMPTS} times in a row; giving up."
        )
        return cls(message)


class ClusterTooSmallError(ValueError):
    """Raised when asked to create a cluster with fewer than two records."""

    @classmethod
    def for_record_ids(cls, record_ids: tuple[str, ...]) -> ClusterTooSmallError:
        """Build error listing the offending ids."""
        message = f"A dedup record needs at least two members, got {list(record_ids)!r}."
        return cls(message)


def source_id_from_record_id(record_id: str) -> str:
    """Return the source prefix of a `<source>.<local-id>` record id."""
    source_id, _, _ = record_id.partition(".")
    return source_id


def find_member_from_source(
    dedup: DedupRecord,
    source_id: str,
    *,
    exclude_record_id: str | None = None,
) -> str | None:
    """Return a member of `dedup` from `source_id`, ignoring one record id."""
    for member_id in dedup.record_ids:
        if member_id == exclude_record_id:
            continue
        if source_id_from_record_id(member_id) == source_id:
            return member_id
    return None


class ClusterStore:
    """Idempotent cluster operations over the record and dedup repositories.

    Every cluster write is a compare-and-swap on the dedup record version;
    a lost race re-reads the cluster and applies the change again.
    """

    _records: RecordsRepository
    _dedups: DedupRecordsRepository
    _now_provider: Callable[[], datetime]

    def __init__(
        self,
        *,
        records_repository: RecordsRepository,
        dedup_records_repository: DedupRecordsRepository,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Create store over explicit repository dependencies."""
        self._records = records_repository
        self._dedups = dedup_records_repository
        self._now_provider = now_provider or _utc_now

    async def get_dedup(self, dedup_id: str) -> DedupRecord | None:
        """Return the current state of one cluster."""
        return await self._dedups.get_dedup(dedup_id)

    async def find_candidates_by_keys(
        self,
        *,
        record: StoredRecord,
        key_type: KeyType,
        keys: Iterable[str],
        clustered: bool,
        limit: int,
    ) -> list[StoredRecord]:
        """Indexed lookup of records from other sources sharing any key."""
        return await self._records.find_records_by_keys(
            key_type=key_type,
            keys=keys,
            exclude_record_id=record.record_id,
            exclude_source_id=record.source_id,
            clustered=clustered,
            limit=limit,
        )

    async def find_member_from_source(
        self,
        *,
        dedup_id: str,
        source_id: str,
        exclude_record_id: str | None = None,
    ) -> str | None:
        """Return a member of a live cluster that comes from `source_id`."""
        dedup = await self._dedups.get_dedup(dedup_id)
        if dedup is None or dedup.deleted:
            return None
        return find_member_from_source(
            dedup,
            source_id,
            exclude_record_id=exclude_record_id,
        )

    async def create_cluster(self, record_ids: Iterable[str]) -> DedupRecord:
        """Create a cluster and point every member at it."""
        members = tuple(sorted(set(record_ids)))
        if len(members) < MIN_CLUSTER_SIZE:
            raise ClusterTooSmallError.for_record_ids(members)
        now = self._now_provider()
        dedup = await self._dedups.create_dedup(record_ids=members, now=now)
        for member_id in members:
            _ = await self._records.set_dedup_id(
                record_id=member_id,
                dedup_id=dedup.dedup_id,
                update_needed=False,
                now=now,
            )
        logger.debug(
            "Created dedup record %s with %s",
            dedup.dedup_id,
            ", ".join(members),
        )
        return dedup

    async def add_member(self, *, dedup_id: str, record_id: str) -> bool:
        """Add a record to a live cluster and point the record at it.

        Refuses (returns False) when the cluster is missing or deleted, or
        already holds another record from the same source.
        """
        source_id = source_id_from_record_id(record_id)
        for _attempt in range(MAX_CAS_ATTEMPTS):
            dedup = await self._dedups.get_dedup(dedup_id)
            if dedup is None or dedup.deleted:
                logger.debug("Cannot join missing or deleted dedup record %s", dedup_id)
                return False
            conflicting = find_member_from_source(
                dedup,
                source_id,
                exclude_record_id=record_id,
            )
            if conflicting is not None:
                logger.debug(
                    "Dedup record %s already has %s from source %s",
                    dedup_id,
                    conflicting,
                    source_id,
                )
                return False
            now = self._now_provider()
            if record_id not in dedup.record_ids:
                saved = await self._dedups.save_dedup(
                    replace(
                        dedup,
                        record_ids=(*dedup.record_ids, record_id),
                        changed=now,
                    ),
                )
                if saved is None:
                    continue
            _ = await self._records.set_dedup_id(
                record_id=record_id,
                dedup_id=dedup_id,
                update_needed=False,
                now=now,
            )
            return True
        raise ClusterConflictError.for_exhausted_retries(dedup_id)

    async def remove_member(self, *, dedup_id: str, record_id: str) -> bool:
        """Remove a record id from a cluster; returns whether anything changed.

        A cluster left with one member is dissolved: the remaining record is
        unlinked and flagged for re-evaluation. An empty cluster is marked
        deleted. Members of a surviving cluster are flagged as well, since
        their group changed. The removed record itself is not modified.
        """
        for _attempt in range(MAX_CAS_ATTEMPTS):
            dedup = await self._dedups.get_dedup(dedup_id)
            if dedup is None:
                logger.warning(
                    "Dedup record %s not found when removing %s",
                    dedup_id,
                    record_id,
                )
                return False
            if dedup.deleted:
                logger.debug(
                    "Dedup record %s already deleted when removing %s",
                    dedup_id,
                    record_id,
                )
                return False
            if record_id not in dedup.record_ids and dedup.record_ids:
                return False

            remaining = tuple(
                member_id for member_id in dedup.record_ids if member_id != record_id
            )
            orphan_id: str | None = None
            if len(remaining) == 1:
                orphan_id = remaining[0]
                remaining = ()
            now = self._now_provider()
            saved = await self._dedups.save_dedup(
                replace(
                    dedup,
                    record_ids=remaining,
                    deleted=not remaining,
                    changed=now,
                ),
            )
            if saved is None:
                continue

            if orphan_id is not None:
                await self._release_orphan(
                    dedup_id=dedup_id,
                    record_id=orphan_id,
                    now=now,
                )
            if remaining:
                _ = await self._records.mark_update_needed(remaining)
            logger.debug("Removed %s from dedup record %s", record_id, dedup_id)
            return True
        raise ClusterConflictError.for_exhausted_retries(dedup_id)

    async def retire_cluster(self, dedup_id: str) -> bool:
        """Mark a cluster deleted and drop its member list.

        Member records are not touched; callers unlink them first.
        """
        for _attempt in range(MAX_CAS_ATTEMPTS):
            dedup = await self._dedups.get_dedup(dedup_id)
            if dedup is None:
                return False
            if dedup.deleted and not dedup.record_ids:
                return False
            saved = await self._dedups.save_dedup(
                replace(
                    dedup,
                    record_ids=(),
                    deleted=True,
                    changed=self._now_provider(),
                ),
            )
            if saved is not None:
                logger.debug("Retired dedup record %s", dedup_id)
                return True
        raise ClusterConflictError.for_exhausted_retries(dedup_id)

    async def unlink_record(
        self,
        *,
        record_id: str,
        dedup_id: str | None = None,
        update_needed: bool | None,
    ) -> bool:
        """Clear a record's back-reference, optionally only if it is `dedup_id`.

        `update_needed=None` leaves the record's flag untouched.
        """
        return await self._records.set_dedup_id(
            record_id=record_id,
            dedup_id=None,
            update_needed=update_needed,
            expected_dedup_id=dedup_id,
            now=self._now_provider(),
        )

    async def _release_orphan(
        self,
        *,
        dedup_id: str,
        record_id: str,
        now: datetime,
    ) -> None:
        record = await self._records.get_record(record_id)
        if record is None or record.dedup_id != dedup_id:
            return
        update_needed: bool | None = None
        if not (record.deleted or record.suppressed):
            update_needed = True
        _ = await self._records.set_dedup_id(
            record_id=record_id,
            dedup_id=None,
            update_needed=update_needed,
            expected_dedup_id=dedup_id,
            now=now,
        )


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)
