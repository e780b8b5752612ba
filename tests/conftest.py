"""Shared pytest fixtures for record store and dedup tests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from recman.config import RecmanConfig, load_settings, parse_recman_config
from recman.dedup import DedupServices, build_dedup_services, source_id_from_record_id
from recman.storage import (
    StorageRuntime,
    StoredRecord,
    create_storage_runtime,
    dispose_storage_runtime,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

RECORD_STORE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS records (
        id VARCHAR(255) PRIMARY KEY,
        source_id VARCHAR(128) NOT NULL,
        oai_id VARCHAR(255) NULL,
        format VARCHAR(64) NOT NULL,
        data_json TEXT NOT NULL DEFAULT '{}',
        deleted BOOLEAN NOT NULL DEFAULT 0,
        suppressed BOOLEAN NOT NULL DEFAULT 0,
        dedup_id VARCHAR(64) NULL,
        update_needed BOOLEAN NOT NULL DEFAULT 0,
        created TEXT NOT NULL,
        updated TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS record_keys (
        record_id VARCHAR(255) NOT NULL,
        key_type VARCHAR(16) NOT NULL,
        key_value VARCHAR(255) NOT NULL,
        CONSTRAINT fk_record_keys_record_id
            FOREIGN KEY (record_id)
            REFERENCES records(id)
            ON DELETE CASCADE,
        CONSTRAINT pk_record_keys
            PRIMARY KEY (record_id, key_type, key_value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS record_links (
        record_id VARCHAR(255) NOT NULL,
        link_type VARCHAR(16) NOT NULL,
        link_value VARCHAR(255) NOT NULL,
        CONSTRAINT fk_record_links_record_id
            FOREIGN KEY (record_id)
            REFERENCES records(id)
            ON DELETE CASCADE,
        CONSTRAINT pk_record_links
            PRIMARY KEY (record_id, link_type, link_value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dedup_records (
        id VARCHAR(64) PRIMARY KEY,
        deleted BOOLEAN NOT NULL DEFAULT 0,
        created TEXT NOT NULL,
        changed TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dedup_members (
        dedup_id VARCHAR(64) NOT NULL,
        record_id VARCHAR(255) NOT NULL,
        CONSTRAINT fk_dedup_members_dedup_id
            FOREIGN KEY (dedup_id)
            REFERENCES dedup_records(id)
            ON DELETE CASCADE,
        CONSTRAINT pk_dedup_members
            PRIMARY KEY (dedup_id, record_id)
    )
    """,
)

TEST_CONFIG_DOCUMENT: dict[str, object] = {
    "dedup": {
        "format_families": {"Book": "book", "eBook": "book"},
        "ignored_ids": ["(IGNORED)1"],
        "progress_interval": 2,
    },
    "sources": {
        "src1": {"dedup": True},
        "src2": {"dedup": True},
        "src3": {"dedup": True},
        "local": {"dedup": False},
        "art": {"dedup": True, "host_record_sources": ["src2", "local"]},
    },
}

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


@dataclass(slots=True)
class StepClock:
    """Deterministic clock advancing one second per call."""

    current: datetime = BASE_TIME
    calls: int = 0

    def __call__(self) -> datetime:
        """Return the next timestamp."""
        self.calls += 1
        return self.current + timedelta(seconds=self.calls)


@dataclass(slots=True)
class RecordFactory:
    """Build and store JSON records through the dedup write path."""

    services: DedupServices
    documents: dict[str, dict[str, object]] = field(default_factory=dict)

    def build(  # noqa: PLR0913
        self,
        record_id: str,
        *,
        title: str | None = None,
        author: str | None = None,
        isbns: Sequence[str] = (),
        unique_ids: Sequence[str] = (),
        year: str | None = None,
        pages: int | None = None,
        formats: Sequence[str] = ("Book",),
        host_record_ids: Sequence[str] = (),
        linking_ids: Sequence[str] = (),
        access_restrictions: Sequence[str] = (),
        series_numbering: str | None = None,
        suppressed: bool = False,
        deleted: bool = False,
    ) -> StoredRecord:
        """Return an unsaved record with a JSON metadata document."""
        document: dict[str, object] = {
            "title": title,
            "author": author,
            "isbns": list(isbns),
            "unique_ids": list(unique_ids),
            "year": year,
            "pages": pages,
            "formats": list(formats),
            "host_record_ids": list(host_record_ids),
            "linking_ids": list(linking_ids),
            "access_restrictions": list(access_restrictions),
            "series_numbering": series_numbering,
            "suppressed": suppressed,
        }
        self.documents[record_id] = document
        return StoredRecord(
            record_id=record_id,
            source_id=source_id_from_record_id(record_id),
            record_format="json",
            data=json.dumps(document),
            created=BASE_TIME,
            updated=BASE_TIME,
            deleted=deleted,
        )

    async def store(self, record_id: str, **fields: object) -> StoredRecord:
        """Build a record and persist it through the record writer."""
        record = self.build(record_id, **fields)  # type: ignore[arg-type]
        return await self.services.writer.store_record(record)


@pytest.fixture
def recman_config() -> RecmanConfig:
    """Provide data source configuration with three dedup-enabled sources."""
    return parse_recman_config(TEST_CONFIG_DOCUMENT)


@pytest.fixture
async def storage_runtime(tmp_path: Path) -> AsyncIterator[StorageRuntime]:
    """Create an isolated record store with the full schema."""
    db_path = tmp_path / "recman.sqlite3"
    settings = load_settings({"RECMAN_DB_PATH": db_path.as_posix()})
    runtime = create_storage_runtime(settings)

    async with runtime.write_engine.begin() as connection:
        for statement in RECORD_STORE_DDL:
            _ = await connection.exec_driver_sql(statement)

    try:
        yield runtime
    finally:
        await dispose_storage_runtime(runtime)


@pytest.fixture
def step_clock() -> StepClock:
    """Provide a clock whose timestamps strictly increase."""
    return StepClock()


@pytest.fixture
def services(
    storage_runtime: StorageRuntime,
    recman_config: RecmanConfig,
    step_clock: StepClock,
) -> DedupServices:
    """Wire every dedup component over the test store."""
    return build_dedup_services(storage_runtime, recman_config, now_provider=step_clock)


@pytest.fixture
def record_factory(services: DedupServices) -> RecordFactory:
    """Provide a factory that stores records through the write path."""
    return RecordFactory(services=services)
