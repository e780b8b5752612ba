"""Batch dedup runs over flagged records."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, cast

import pytest

from recman.cancellation import CancellationToken
from recman.config.logging import init_logging
from recman.dedup import MatchEngine, MatchOutcome
from recman.storage import RecordFilter

if TYPE_CHECKING:
    from conftest import RecordFactory

    from recman.dedup import DedupServices
    from recman.storage import StoredRecord

ISBN = "9789513148362"
TITLE = "Tutki ja kirjoita"
EXPECTED_PROCESSED = 2


async def _seed(record_factory: RecordFactory) -> None:
    _ = await record_factory.store("src1.1", title=TITLE, isbns=[ISBN])
    _ = await record_factory.store("src2.1", title=TITLE, isbns=[ISBN])
    _ = await record_factory.store("src3.1", title="Kalevala")


@pytest.mark.asyncio
async def test_run_processes_flagged_records_of_every_source(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure one run clusters duplicates and clears every flag."""
    await _seed(record_factory)

    summary = await services.controller.run()

    if summary.status != "completed" or summary.failed_sources:
        raise AssertionError(summary)
    if summary.processed != EXPECTED_PROCESSED or summary.clustered != 1:
        raise AssertionError(summary)
    flagged = await services.records_repository.count_records(
        RecordFilter(update_needed=True),
    )
    if flagged != 0:
        raise AssertionError
    first = await services.records_repository.get_record("src1.1")
    second = await services.records_repository.get_record("src2.1")
    if first is None or second is None or first.dedup_id is None:
        raise AssertionError
    if first.dedup_id != second.dedup_id:
        raise AssertionError


@pytest.mark.asyncio
async def test_second_run_has_nothing_to_do(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure processed records are not picked up again."""
    await _seed(record_factory)
    _ = await services.controller.run()

    summary = await services.controller.run()

    if summary.processed != 0 or summary.status != "completed":
        raise AssertionError(summary)


@pytest.mark.asyncio
async def test_mark_only_flags_without_processing(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure mark mode only raises `update_needed` on the selected source."""
    await _seed(record_factory)
    _ = await services.controller.run()

    summary = await services.controller.run("src1", mark_only=True)

    if summary.marked != 1 or summary.processed != 0:
        raise AssertionError(summary)
    record = await services.records_repository.get_record("src1.1")
    if record is None or not record.update_needed:
        raise AssertionError


@pytest.mark.asyncio
async def test_all_records_reprocesses_the_source(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure `all_records` flags and then evaluates every record again."""
    await _seed(record_factory)
    _ = await services.controller.run()

    summary = await services.controller.run("src1", all_records=True)

    if summary.marked != 1 or summary.processed != 1 or summary.clustered != 1:
        raise AssertionError(summary)


@pytest.mark.asyncio
async def test_single_record_run(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure a single id is evaluated even when it is not flagged."""
    await _seed(record_factory)

    summary = await services.controller.run(single_id="src2.1")

    if summary.processed != 1 or summary.clustered != 1:
        raise AssertionError(summary)
    untouched = await services.records_repository.get_record("src3.1")
    if untouched is None or not untouched.update_needed:
        raise AssertionError


@pytest.mark.asyncio
async def test_single_unknown_record_completes_empty(
    services: DedupServices,
) -> None:
    """Ensure an unknown single id is reported, not raised."""
    summary = await services.controller.run(single_id="src1.missing")

    if summary.status != "completed" or summary.processed != 0:
        raise AssertionError(summary)


@pytest.mark.asyncio
async def test_cancelled_token_stops_run(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure a cancelled run leaves flagged records for the next run."""
    await _seed(record_factory)
    token = CancellationToken()
    token.cancel()

    summary = await services.controller.run(token=token)

    if summary.status != "cancelled" or summary.processed != 0:
        raise AssertionError(summary)
    flagged = await services.records_repository.count_records(
        RecordFilter(update_needed=True),
    )
    if flagged != 3:  # noqa: PLR2004
        raise AssertionError


@pytest.mark.asyncio
async def test_failing_record_does_not_stop_its_source(
    services: DedupServices,
    record_factory: RecordFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Ensure one broken record is counted and the rest are processed."""
    _ = await record_factory.store("src1.1", title=TITLE)
    _ = await record_factory.store("src1.2", title="Kalevala")
    original_evaluate = services.engine.evaluate

    async def _evaluate(record: StoredRecord) -> MatchOutcome:
        if record.record_id == "src1.1":
            message = "broken record"
            raise RuntimeError(message)
        return await original_evaluate(record)

    monkeypatch.setattr(services.engine, "evaluate", _evaluate)

    summary = await services.controller.run("src1")

    if summary.status != "completed" or summary.failed_records != 1:
        raise AssertionError(summary)
    if summary.processed != 1:
        raise AssertionError(summary)
    broken = await services.records_repository.get_record("src1.1")
    if broken is None or not broken.update_needed:
        raise AssertionError


@pytest.mark.asyncio
async def test_failing_source_is_reported_and_run_continues(
    services: DedupServices,
    record_factory: RecordFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Ensure a source-level failure only aborts that source."""
    await _seed(record_factory)
    repository = services.records_repository
    original_count = repository.count_records

    async def _count(record_filter: RecordFilter) -> int:
        if record_filter.source_id == "src3":
            message = "source unavailable"
            raise RuntimeError(message)
        return await original_count(record_filter)

    monkeypatch.setattr(repository, "count_records", _count)

    summary = await services.controller.run()

    if summary.status != "completed" or summary.failed_sources != ("src3",):
        raise AssertionError(summary)
    if summary.clustered != 1:
        raise AssertionError(summary)


@pytest.mark.asyncio
async def test_run_fails_when_every_source_fails(
    services: DedupServices,
    record_factory: RecordFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Ensure the run is reported failed when no source could be processed."""
    await _seed(record_factory)

    async def _count(record_filter: RecordFilter) -> int:
        message = f"source {record_filter.source_id} unavailable"
        raise RuntimeError(message)

    monkeypatch.setattr(services.records_repository, "count_records", _count)

    summary = await services.controller.run()

    if summary.status != "failed":
        raise AssertionError(summary)
    if summary.failed_sources != services.controller.config.dedup_source_ids():
        raise AssertionError(summary)


@pytest.mark.asyncio
async def test_source_outside_dedup_is_skipped(
    services: DedupServices,
    record_factory: RecordFactory,
) -> None:
    """Ensure naming a source that does not take part in dedup does nothing."""
    _ = await record_factory.store("local.1", title=TITLE)

    summary = await services.controller.run("local")

    if summary.status != "completed" or summary.sources:
        raise AssertionError(summary)


@pytest.mark.asyncio
async def test_progress_is_logged_at_interval(
    services: DedupServices,
    record_factory: RecordFactory,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Ensure batch progress is reported every configured number of records."""
    for index, title in enumerate(("Kalevala", "Kanteletar", "Nummisuutarit")):
        _ = await record_factory.store(f"src1.{index}", title=title)
    caplog.set_level(logging.INFO, logger="recman.dedup.controller")

    _ = await services.controller.run("src1")

    progress = [
        record.getMessage()
        for record in caplog.records
        if record.getMessage().endswith("/sec")
    ]
    if len(progress) != 1 or not progress[0].startswith("2/3 records processed"):
        raise AssertionError(progress)


def test_controller_uses_the_shared_engine(services: DedupServices) -> None:
    """Ensure the controller and handler drive one engine instance."""
    if not isinstance(services.controller.engine, MatchEngine):
        raise AssertionError
    if services.controller.engine is not services.engine:
        raise AssertionError


@pytest.mark.asyncio
async def test_source_lines_carry_source_id(
    services: DedupServices,
    record_factory: RecordFactory,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure every line logged while a source runs names that source."""
    await _seed(record_factory)
    init_logging("INFO")
    _ = capsys.readouterr()

    _ = await services.controller.run()

    lines = [
        cast("dict[str, object]", json.loads(line))
        for line in capsys.readouterr().out.strip().splitlines()
    ]
    started = {
        line.get("source_id")
        for line in lines
        if str(line["message"]).startswith("Deduplicating")
    }
    if started != {"src1", "src2", "src3", "art"}:
        raise AssertionError(started)
    summary = [line for line in lines if str(line["message"]).startswith("Dedup run")]
    if len(summary) != 1 or "source_id" in summary[0]:
        raise AssertionError(summary)
