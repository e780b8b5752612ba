"""Generated mutation sequences must keep clusters and record links in agreement."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
from conftest import RECORD_STORE_DDL, TEST_CONFIG_DOCUMENT, RecordFactory, StepClock
from hypothesis import given, settings
from hypothesis import strategies as st

from recman.config import load_settings, parse_recman_config
from recman.dedup import (
    DedupServices,
    build_dedup_services,
    source_id_from_record_id,
)
from recman.storage import RecordFilter, create_storage_runtime, dispose_storage_runtime

if TYPE_CHECKING:
    from pathlib import Path

    from recman.dedup import ConsistencyRunSummary

WORKS: tuple[dict[str, object], ...] = (
    {
        "title": "Tutki ja kirjoita",
        "author": "Hirsjärvi, Sirkka",
        "isbns": ["9789513148362"],
        "year": "2009",
    },
    {
        "title": "Kalevala",
        "author": "Lönnrot, Elias",
        "isbns": ["9780306406157"],
        "year": "1849",
    },
    {
        "title": "Seitsemän veljestä",
        "author": "Kivi, Aleksis",
        "isbns": ["9781861972712"],
        "year": "1870",
    },
)
RECORD_IDS: tuple[str, ...] = tuple(
    f"{source_id}.{local_id}"
    for source_id in ("src1", "src2", "src3")
    for local_id in ("1", "2", "3")
)
OPERATIONS: tuple[str, ...] = ("store", "dedup", "delete", "remove")
MAX_STEPS = 30


@dataclass(frozen=True, slots=True)
class RecordVersion:
    """One stored version of a record: which work and how it is catalogued."""

    work: int
    without_isbn: bool
    upper_case_title: bool
    component_part: bool

    def fields(self) -> dict[str, object]:
        """Return keyword arguments for the record factory."""
        fields = dict(WORKS[self.work])
        if self.without_isbn:
            fields["isbns"] = []
        if self.upper_case_title:
            fields["title"] = str(fields["title"]).upper()
        if self.component_part:
            fields["host_record_ids"] = ["999"]
        return fields


@dataclass(frozen=True, slots=True)
class Step:
    """One mutation applied to the store."""

    operation: str
    record_id: str
    version: RecordVersion
    pick: int


record_versions = st.builds(
    RecordVersion,
    work=st.integers(min_value=0, max_value=len(WORKS) - 1),
    without_isbn=st.booleans(),
    upper_case_title=st.booleans(),
    component_part=st.sampled_from((False, False, False, True)),
)
steps = st.builds(
    Step,
    operation=st.sampled_from(OPERATIONS),
    record_id=st.sampled_from(RECORD_IDS),
    version=record_versions,
    pick=st.integers(min_value=0, max_value=len(RECORD_IDS)),
)
initial_versions = st.lists(
    record_versions,
    min_size=len(RECORD_IDS),
    max_size=len(RECORD_IDS),
)


async def _assert_invariants(services: DedupServices) -> None:
    records = {
        record.record_id: record
        async for record in services.records_repository.iter_records(RecordFilter())
    }
    dedups = {}
    async for dedup_id in services.dedup_records_repository.iter_dedup_ids():
        dedup = await services.dedup_records_repository.get_dedup(dedup_id)
        if dedup is None:
            raise AssertionError(dedup_id)
        dedups[dedup_id] = dedup

    for record in records.values():
        if record.dedup_id is None:
            continue
        if record.deleted or record.is_component_part:
            raise AssertionError(f"{record.record_id} keeps dedup_id {record.dedup_id}")
        dedup = dedups.get(record.dedup_id)
        if dedup is None or dedup.deleted:
            raise AssertionError(f"{record.record_id} points at missing cluster")
        if record.record_id not in dedup.record_ids:
            raise AssertionError(f"{record.record_id} not listed by {dedup.dedup_id}")

    for dedup in dedups.values():
        if dedup.deleted:
            if dedup.record_ids:
                raise AssertionError(f"deleted cluster {dedup.dedup_id} lists members")
            continue
        if len(dedup.record_ids) < 2:  # noqa: PLR2004
            raise AssertionError(f"cluster {dedup.dedup_id} is not dissolved")
        sources = [source_id_from_record_id(member) for member in dedup.record_ids]
        if len(set(sources)) != len(sources):
            raise AssertionError(f"cluster {dedup.dedup_id} repeats a source")
        for member_id in dedup.record_ids:
            record = records.get(member_id)
            if record is None or record.deleted:
                raise AssertionError(f"{dedup.dedup_id} lists gone {member_id}")
            if record.dedup_id != dedup.dedup_id:
                raise AssertionError(f"{member_id} does not point back")


async def _apply_step(
    step: Step,
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    if step.operation == "store":
        _ = await record_factory.store(step.record_id, **step.version.fields())
    elif step.operation == "dedup":
        record = await services.records_repository.get_record(step.record_id)
        if record is not None:
            _ = await services.handler.dedup_record(record)
    elif step.operation == "delete":
        _ = await services.writer.mark_record_deleted(step.record_id)
    else:
        live_ids = [
            dedup_id
            async for dedup_id in services.dedup_records_repository.iter_dedup_ids(
                include_deleted=False,
            )
        ]
        if not live_ids:
            return
        dedup_id = live_ids[step.pick % len(live_ids)]
        dedup = await services.dedup_records_repository.get_dedup(dedup_id)
        if dedup is None:
            raise AssertionError
        _ = await services.handler.remove_from_dedup_record(
            dedup.dedup_id,
            dedup.record_ids[step.pick % len(dedup.record_ids)],
        )


async def _run_sequence(
    db_path: Path,
    initial: list[RecordVersion],
    sequence: list[Step],
    *,
    check_each_step: bool,
) -> ConsistencyRunSummary:
    runtime = create_storage_runtime(load_settings({"RECMAN_DB_PATH": db_path.as_posix()}))
    try:
        async with runtime.write_engine.begin() as connection:
            for statement in RECORD_STORE_DDL:
                _ = await connection.exec_driver_sql(statement)
        services = build_dedup_services(
            runtime,
            parse_recman_config(TEST_CONFIG_DOCUMENT),
            now_provider=StepClock(),
        )
        record_factory = RecordFactory(services=services)

        for record_id, version in zip(RECORD_IDS, initial, strict=True):
            _ = await record_factory.store(record_id, **version.fields())
        await _assert_invariants(services)
        for step in sequence:
            await _apply_step(step, services, record_factory)
            if check_each_step:
                await _assert_invariants(services)
        return await services.checker.run()
    finally:
        await dispose_storage_runtime(runtime)


@given(
    initial=initial_versions,
    sequence=st.lists(steps, max_size=MAX_STEPS),
)
@settings(max_examples=25, deadline=None)
def test_mutation_sequences_preserve_cluster_invariants(
    tmp_path_factory: pytest.TempPathFactory,
    initial: list[RecordVersion],
    sequence: list[Step],
) -> None:
    """Ensure every step of a mutation sequence leaves a consistent store."""
    db_path = tmp_path_factory.mktemp("invariants") / "recman.sqlite3"
    _ = asyncio.run(_run_sequence(db_path, initial, sequence, check_each_step=True))


@given(
    initial=initial_versions,
    sequence=st.lists(steps, min_size=MAX_STEPS, max_size=MAX_STEPS),
)
@settings(max_examples=10, deadline=None)
def test_consistency_check_is_clean_after_mutations(
    tmp_path_factory: pytest.TempPathFactory,
    initial: list[RecordVersion],
    sequence: list[Step],
) -> None:
    """Ensure a store maintained by the engine needs no repairs."""
    db_path = tmp_path_factory.mktemp("clean-check") / "recman.sqlite3"
    summary = asyncio.run(
        _run_sequence(db_path, initial, sequence, check_each_step=False),
    )

    if summary.status != "completed" or summary.fixed != 0:
        raise AssertionError(summary)
