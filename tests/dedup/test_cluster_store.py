"""Tests for cluster membership mutations and their record side effects."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from recman.dedup import (
    ClusterConflictError,
    ClusterTooSmallError,
    find_member_from_source,
    source_id_from_record_id,
)

if TYPE_CHECKING:
    from conftest import RecordFactory

    from recman.dedup import DedupServices
    from recman.storage import DedupRecord

EXPECTED_THREE_MEMBERS = 3


def test_source_id_is_record_id_prefix() -> None:
    """Ensure the source prefix is taken up to the first dot."""
    if source_id_from_record_id("src1.a.b") != "src1":
        raise AssertionError
    if source_id_from_record_id("plain") != "plain":
        raise AssertionError


@pytest.mark.asyncio
async def test_create_cluster_links_every_member(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure a new cluster and its members point at each other."""
    _ = await record_factory.store("src1.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src2.1", title="Tutki ja kirjoita")

    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])

    for record_id in ("src1.1", "src2.1"):
        record = await services.records_repository.get_record(record_id)
        if record is None or record.dedup_id != dedup.dedup_id:
            raise AssertionError
        if record.update_needed:
            raise AssertionError
    if dedup.record_ids != ("src1.1", "src2.1"):
        raise AssertionError


@pytest.mark.asyncio
async def test_create_cluster_requires_two_members(services: DedupServices) -> None:
    """Ensure singleton clusters are never created."""
    with pytest.raises(ClusterTooSmallError):
        _ = await services.cluster_store.create_cluster(["src1.1", "src1.1"])


@pytest.mark.asyncio
async def test_add_member_refuses_second_record_from_same_source(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure a cluster never holds two records from one source."""
    for record_id in ("src1.1", "src2.1", "src1.2", "src3.1"):
        _ = await record_factory.store(record_id, title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])

    refused = await services.cluster_store.add_member(
        dedup_id=dedup.dedup_id,
        record_id="src1.2",
    )
    added = await services.cluster_store.add_member(
        dedup_id=dedup.dedup_id,
        record_id="src3.1",
    )

    if refused or not added:
        raise AssertionError
    stored = await services.cluster_store.get_dedup(dedup.dedup_id)
    if stored is None or len(stored.record_ids) != EXPECTED_THREE_MEMBERS:
        raise AssertionError
    if find_member_from_source(stored, "src1") != "src1.1":
        raise AssertionError
    joined = await services.records_repository.get_record("src3.1")
    if joined is None or joined.dedup_id != dedup.dedup_id:
        raise AssertionError
    rejected = await services.records_repository.get_record("src1.2")
    if rejected is None or rejected.dedup_id is not None:
        raise AssertionError


@pytest.mark.asyncio
async def test_add_member_is_idempotent(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure adding an existing member leaves the cluster unchanged."""
    _ = await record_factory.store("src1.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src2.1", title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])

    added = await services.cluster_store.add_member(
        dedup_id=dedup.dedup_id,
        record_id="src2.1",
    )
    stored = await services.cluster_store.get_dedup(dedup.dedup_id)
    if not added or stored is None:
        raise AssertionError
    if stored.version != dedup.version:
        raise AssertionError


@pytest.mark.asyncio
async def test_removing_second_to_last_member_dissolves_cluster(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure the remaining member is unlinked and flagged for re-evaluation."""
    _ = await record_factory.store("src1.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src2.1", title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])

    removed = await services.cluster_store.remove_member(
        dedup_id=dedup.dedup_id,
        record_id="src1.1",
    )

    stored = await services.cluster_store.get_dedup(dedup.dedup_id)
    if not removed or stored is None:
        raise AssertionError
    if not stored.deleted or stored.record_ids:
        raise AssertionError
    orphan = await services.records_repository.get_record("src2.1")
    if orphan is None or orphan.dedup_id is not None or not orphan.update_needed:
        raise AssertionError


@pytest.mark.asyncio
async def test_remove_member_from_larger_cluster_flags_the_rest(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure surviving members are re-evaluated after their group changed."""
    for record_id in ("src1.1", "src2.1", "src3.1"):
        _ = await record_factory.store(record_id, title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(
        ["src1.1", "src2.1", "src3.1"],
    )

    _ = await services.cluster_store.remove_member(
        dedup_id=dedup.dedup_id,
        record_id="src3.1",
    )

    stored = await services.cluster_store.get_dedup(dedup.dedup_id)
    if stored is None or stored.deleted or stored.record_ids != ("src1.1", "src2.1"):
        raise AssertionError
    for record_id in ("src1.1", "src2.1"):
        record = await services.records_repository.get_record(record_id)
        if record is None or not record.update_needed:
            raise AssertionError
        if record.dedup_id != dedup.dedup_id:
            raise AssertionError


@pytest.mark.asyncio
async def test_remove_member_ignores_unknown_or_dead_clusters(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure removal from absent or deleted clusters reports no change."""
    _ = await record_factory.store("src1.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src2.1", title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])

    if await services.cluster_store.remove_member(dedup_id="missing", record_id="x"):
        raise AssertionError
    if await services.cluster_store.remove_member(
        dedup_id=dedup.dedup_id,
        record_id="src3.9",
    ):
        raise AssertionError
    _ = await services.cluster_store.remove_member(
        dedup_id=dedup.dedup_id,
        record_id="src1.1",
    )
    if await services.cluster_store.remove_member(
        dedup_id=dedup.dedup_id,
        record_id="src2.1",
    ):
        raise AssertionError


@pytest.mark.asyncio
async def test_retire_cluster_marks_deleted_once(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure retiring empties the member list and is idempotent."""
    _ = await record_factory.store("src1.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src2.1", title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])

    if not await services.cluster_store.retire_cluster(dedup.dedup_id):
        raise AssertionError
    if await services.cluster_store.retire_cluster(dedup.dedup_id):
        raise AssertionError
    stored = await services.cluster_store.get_dedup(dedup.dedup_id)
    if stored is None or not stored.deleted or stored.record_ids:
        raise AssertionError


@pytest.mark.asyncio
async def test_persistent_version_conflicts_raise(
    services: DedupServices,
    record_factory: RecordFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Ensure a cluster that never stops changing fails loudly after retries."""
    _ = await record_factory.store("src1.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src2.1", title="Tutki ja kirjoita")
    _ = await record_factory.store("src3.1", title="Tutki ja kirjoita")
    dedup = await services.cluster_store.create_cluster(["src1.1", "src2.1"])
    repository = services.dedup_records_repository
    original_get = repository.get_dedup

    async def _stale_get(dedup_id: str) -> DedupRecord | None:
        current = await original_get(dedup_id)
        if current is None:
            return None
        return replace(current, version=current.version - 1)

    monkeypatch.setattr(repository, "get_dedup", _stale_get)

    with pytest.raises(ClusterConflictError, match=dedup.dedup_id):
        _ = await services.cluster_store.add_member(
            dedup_id=dedup.dedup_id,
            record_id="src3.1",
        )
