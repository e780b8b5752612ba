"""Repository for harvested records, their candidate keys and hierarchy links."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal, cast

from sqlalchemy import bindparam, text

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from recman.storage.db import SessionFactory

KeyType = Literal["title", "isbn", "id"]
KEY_TYPES: tuple[KeyType, ...] = ("title", "isbn", "id")
LINK_TYPE_HOST = "host"
LINK_TYPE_LINKING = "linking"
ITERATION_BATCH_SIZE = 500

_RECORD_COLUMNS = """
    id,
    source_id,
    oai_id,
    format,
    data_json,
    deleted,
    suppressed,
    dedup_id,
    update_needed,
    created,
    updated
"""


@dataclass(slots=True, frozen=True)
class StoredRecord:
    """One source's stored description of an item, with dedup bookkeeping."""

    record_id: str
    source_id: str
    record_format: str
    data: str
    created: datetime
    updated: datetime
    oai_id: str | None = None
    deleted: bool = False
    suppressed: bool = False
    host_record_ids: tuple[str, ...] = ()
    linking_ids: tuple[str, ...] = ()
    title_keys: frozenset[str] = frozenset()
    isbn_keys: frozenset[str] = frozenset()
    id_keys: frozenset[str] = frozenset()
    dedup_id: str | None = None
    update_needed: bool = False

    @property
    def is_component_part(self) -> bool:
        """Return true when the record hangs below one or more host records."""
        return bool(self.host_record_ids)

    def keys_of_type(self, key_type: KeyType) -> frozenset[str]:
        """Return the candidate key set for one key type."""
        if key_type == "title":
            return self.title_keys
        if key_type == "isbn":
            return self.isbn_keys
        return self.id_keys


@dataclass(slots=True, frozen=True)
class RecordFilter:
    """Selection criteria for record iteration and counting.

    `None` means "do not filter on this column".
    """

    source_id: str | None = None
    record_ids: tuple[str, ...] | None = None
    update_needed: bool | None = None
    deleted: bool | None = None
    has_dedup_id: bool | None = None
    component_part: bool | None = None


class RecordsRepositoryError(RuntimeError):
    """Base exception for record repository operations."""

    @classmethod
    def for_missing_field(cls, field_name: str) -> RecordsRepositoryError:
        """Build error for a required column missing from a decoded row."""
        message = f"missing `{field_name}`"
        return cls(message)

    @classmethod
    def for_invalid_field(cls, field_name: str) -> RecordsRepositoryError:
        """Build error for a column with an unexpected stored value."""
        message = f"invalid `{field_name}` value"
        return cls(message)


class RecordsRepository:
    """Read and write access to the `records` table and its side tables."""

    _read_session_factory: SessionFactory
    _write_session_factory: SessionFactory

    def __init__(
        self,
        *,
        read_session_factory: SessionFactory,
        write_session_factory: SessionFactory,
    ) -> None:
        """Create repository with explicit read/write session dependencies."""
        self._read_session_factory = read_session_factory
        self._write_session_factory = write_session_factory

    async def get_record(self, record_id: str) -> StoredRecord | None:
        """Return the freshest stored copy of one record, or None."""
        statement = text(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM records
            WHERE id = :record_id
            """,  # noqa: S608
        )
        async with self._read_session_factory() as session:
            row = (
                (await session.execute(statement, {"record_id": record_id}))
                .mappings()
                .one_or_none()
            )
            if row is None:
                return None
            records = await _attach_side_tables(session=session, rows=[row])
        return records[0]

    async def get_records(self, record_ids: Iterable[str]) -> list[StoredRecord]:
        """Return stored records for the given ids ordered by creation time."""
        unique_ids = sorted(set(record_ids))
        if not unique_ids:
            return []
        statement = text(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM records
            WHERE id IN :record_ids
            ORDER BY created ASC, id ASC
            """,  # noqa: S608
        ).bindparams(bindparam("record_ids", expanding=True))
        async with self._read_session_factory() as session:
            rows = (
                (await session.execute(statement, {"record_ids": unique_ids}))
                .mappings()
                .all()
            )
            return await _attach_side_tables(session=session, rows=list(rows))

    async def save_record(self, record: StoredRecord) -> StoredRecord:
        """Insert or replace one record with its candidate keys and links."""
        upsert_statement = text(
            """
            INSERT INTO records (
                id,
                source_id,
                oai_id,
                format,
                data_json,
                deleted,
                suppressed,
                dedup_id,
                update_needed,
                created,
                updated
            )
            VALUES (
                :id,
                :source_id,
                :oai_id,
                :format,
                :data_json,
                :deleted,
                :suppressed,
                :dedup_id,
                :update_needed,
                :created,
                :updated
            )
            ON CONFLICT(id)
            DO UPDATE SET
                source_id = excluded.source_id,
                oai_id = excluded.oai_id,
                format = excluded.format,
                data_json = excluded.data_json,
                deleted = excluded.deleted,
                suppressed = excluded.suppressed,
                dedup_id = excluded.dedup_id,
                update_needed = excluded.update_needed,
                updated = excluded.updated
            """,
        )
        delete_keys_statement = text(
            "DELETE FROM record_keys WHERE record_id = :record_id",
        )
        delete_links_statement = text(
            "DELETE FROM record_links WHERE record_id = :record_id",
        )
        insert_key_statement = text(
            """
            INSERT INTO record_keys (record_id, key_type, key_value)
            VALUES (:record_id, :key_type, :key_value)
            """,
        )
        insert_link_statement = text(
            """
            INSERT INTO record_links (record_id, link_type, link_value)
            VALUES (:record_id, :link_type, :link_value)
            """,
        )

        key_rows = [
            {"record_id": record.record_id, "key_type": key_type, "key_value": value}
            for key_type in KEY_TYPES
            for value in sorted(record.keys_of_type(key_type))
        ]
        link_rows = [
            {
                "record_id": record.record_id,
                "link_type": LINK_TYPE_HOST,
                "link_value": value,
            }
            for value in dict.fromkeys(record.host_record_ids)
        ] + [
            {
                "record_id": record.record_id,
                "link_type": LINK_TYPE_LINKING,
                "link_value": value,
            }
            for value in dict.fromkeys(record.linking_ids)
        ]

        async with self._write_session_factory() as session:
            _ = await session.execute(
                upsert_statement,
                {
                    "id": record.record_id,
                    "source_id": record.source_id,
                    "oai_id": record.oai_id,
                    "format": record.record_format,
                    "data_json": record.data,
                    "deleted": record.deleted,
                    "suppressed": record.suppressed,
                    "dedup_id": record.dedup_id,
                    "update_needed": record.update_needed,
                    "created": _format_datetime(record.created),
                    "updated": _format_datetime(record.updated),
                },
            )
            params = {"record_id": record.record_id}
            _ = await session.execute(delete_keys_statement, params)
            _ = await session.execute(delete_links_statement, params)
            if key_rows:
                _ = await session.execute(insert_key_statement, key_rows)
            if link_rows:
                _ = await session.execute(insert_link_statement, link_rows)
            await session.commit()
        return record

    async def set_dedup_id(
        self,
        *,
        record_id: str,
        dedup_id: str | None,
        update_needed: bool | None = None,
        expected_dedup_id: str | None = None,
        now: datetime,
    ) -> bool:
        """Point a record at a cluster (or none) without touching its content.

        When `expected_dedup_id` is given the update only applies while the
        record still references that cluster.
        """
        statement = text(
            """
            UPDATE records
            SET dedup_id = :dedup_id,
                update_needed = COALESCE(:update_needed, update_needed),
                updated = :updated
            WHERE id = :record_id
              AND (:expected_dedup_id IS NULL OR dedup_id = :expected_dedup_id)
            """,
        )
        async with self._write_session_factory() as session:
            result = await session.execute(
                statement,
                {
                    "record_id": record_id,
                    "dedup_id": dedup_id,
                    "update_needed": update_needed,
                    "expected_dedup_id": expected_dedup_id,
                    "updated": _format_datetime(now),
                },
            )
            await session.commit()
        return _rowcount(result) > 0

    async def set_update_needed(self, *, record_id: str, update_needed: bool) -> bool:
        """Set or clear the re-evaluation flag on one record."""
        statement = text(
            """
            UPDATE records
            SET update_needed = :update_needed
            WHERE id = :record_id
            """,
        )
        async with self._write_session_factory() as session:
            result = await session.execute(
                statement,
                {"record_id": record_id, "update_needed": update_needed},
            )
            await session.commit()
        return _rowcount(result) > 0

    async def mark_update_needed(self, record_ids: Sequence[str]) -> int:
        """Flag live records for re-evaluation and return the number flagged."""
        if not record_ids:
            return 0
        statement = text(
            """
            UPDATE records
            SET update_needed = 1
            WHERE id IN :record_ids
              AND deleted = 0
              AND suppressed = 0
            """,
        ).bindparams(bindparam("record_ids", expanding=True))
        async with self._write_session_factory() as session:
            result = await session.execute(
                statement,
                {"record_ids": sorted(set(record_ids))},
            )
            await session.commit()
        return _rowcount(result)

    async def mark_source_update_needed(self, source_id: str) -> int:
        """Flag every live host-level record of a source for re-evaluation."""
        statement = text(
            """
            UPDATE records
            SET update_needed = 1
            WHERE source_id = :source_id
              AND deleted = 0
              AND NOT EXISTS (
                  SELECT 1
                  FROM record_links
                  WHERE record_links.record_id = records.id
                    AND record_links.link_type = 'host'
              )
            """,
        )
        async with self._write_session_factory() as session:
            result = await session.execute(statement, {"source_id": source_id})
            await session.commit()
        return _rowcount(result)

    async def touch_records(self, record_ids: Sequence[str], *, now: datetime) -> int:
        """Bump the `updated` timestamp so downstream indexers pick records up."""
        if not record_ids:
            return 0
        statement = text(
            """
            UPDATE records
            SET updated = :updated
            WHERE id IN :record_ids
            """,
        ).bindparams(bindparam("record_ids", expanding=True))
        async with self._write_session_factory() as session:
            result = await session.execute(
                statement,
                {
                    "record_ids": sorted(set(record_ids)),
                    "updated": _format_datetime(now),
                },
            )
            await session.commit()
        return _rowcount(result)

    async def count_records(self, record_filter: RecordFilter) -> int:
        """Count records matching a filter."""
        where_clause, params = _build_filter_clause(record_filter)
        statement = text(
            f"SELECT COUNT(*) FROM records WHERE {where_clause}",  # noqa: S608
        )
        if record_filter.record_ids is not None:
            statement = statement.bindparams(
                bindparam("filter_record_ids", expanding=True),
            )
        async with self._read_session_factory() as session:
            count = (await session.execute(statement, params)).scalar_one()
        return int(cast("int", count))

    async def iter_record_ids(
        self,
        record_filter: RecordFilter,
        *,
        batch_size: int = ITERATION_BATCH_SIZE,
    ) -> AsyncIterator[str]:
        """Stream matching record ids in id order using keyset pagination.

        Each page is read in its own short session so callers may stop at any
        point, or mutate records between pages, without holding a cursor open.
        """
        where_clause, params = _build_filter_clause(record_filter)
        statement = text(
            f"""
            SELECT id
            FROM records
            WHERE {where_clause}
              AND id > :after_id
            ORDER BY id ASC
            LIMIT :batch_size
            """,  # noqa: S608
        )
        if record_filter.record_ids is not None:
            statement = statement.bindparams(
                bindparam("filter_record_ids", expanding=True),
            )
        after_id = ""
        while True:
            async with self._read_session_factory() as session:
                result = await session.execute(
                    statement,
                    {**params, "after_id": after_id, "batch_size": batch_size},
                )
                page = [cast("str", row.id) for row in result]
            for record_id in page:
                yield record_id
            if len(page) < batch_size:
                return
            after_id = page[-1]

    async def iter_records(
        self,
        record_filter: RecordFilter,
        *,
        batch_size: int = ITERATION_BATCH_SIZE,
    ) -> AsyncIterator[StoredRecord]:
        """Stream matching records, each read fresh when it is reached."""
        async for record_id in self.iter_record_ids(
            record_filter,
            batch_size=batch_size,
        ):
            record = await self.get_record(record_id)
            if record is not None:
                yield record

    async def find_records_by_keys(  # noqa: PLR0913
        self,
        *,
        key_type: KeyType,
        keys: Iterable[str],
        exclude_record_id: str,
        exclude_source_id: str,
        clustered: bool,
        limit: int,
    ) -> list[StoredRecord]:
        """Indexed candidate lookup over one key type.

        Only live host-level records from other sources are returned, ordered
        by creation time so the earliest description of a work wins ties.
        """
        key_values = sorted(set(keys))
        if not key_values or limit <= 0:
            return []
        dedup_condition = (
            "r.dedup_id IS NOT NULL" if clustered else "r.dedup_id IS NULL"
        )
        statement = text(
            f"""
            SELECT DISTINCT r.id AS id, r.created AS created
            FROM record_keys AS k
            JOIN records AS r ON r.id = k.record_id
            WHERE k.key_type = :key_type
              AND k.key_value IN :key_values
              AND r.id != :exclude_record_id
              AND r.source_id != :exclude_source_id
              AND r.deleted = 0
              AND r.suppressed = 0
              AND {dedup_condition}
              AND NOT EXISTS (
                  SELECT 1
                  FROM record_links AS l
                  WHERE l.record_id = r.id
                    AND l.link_type = 'host'
              )
            ORDER BY r.created ASC, r.id ASC
            LIMIT :limit
            """,  # noqa: S608
        ).bindparams(bindparam("key_values", expanding=True))
        async with self._read_session_factory() as session:
            result = await session.execute(
                statement,
                {
                    "key_type": key_type,
                    "key_values": key_values,
                    "exclude_record_id": exclude_record_id,
                    "exclude_source_id": exclude_source_id,
                    "limit": limit,
                },
            )
            candidate_ids = [cast("str", row.id) for row in result]
        return await self.get_records(candidate_ids)

    async def find_host_record_ids(
        self,
        *,
        source_ids: Sequence[str],
        linking_ids: Sequence[str],
    ) -> list[str]:
        """Return ids of live records in `source_ids` reachable by linking id."""
        if not source_ids or not linking_ids:
            return []
        statement = text(
            """
            SELECT DISTINCT r.id AS id
            FROM record_links AS l
            JOIN records AS r ON r.id = l.record_id
            WHERE l.link_type = 'linking'
              AND l.link_value IN :linking_ids
              AND r.source_id IN :source_ids
              AND r.deleted = 0
            ORDER BY r.id ASC
            """,
        ).bindparams(
            bindparam("linking_ids", expanding=True),
            bindparam("source_ids", expanding=True),
        )
        async with self._read_session_factory() as session:
            result = await session.execute(
                statement,
                {
                    "linking_ids": sorted(set(linking_ids)),
                    "source_ids": sorted(set(source_ids)),
                },
            )
            return [cast("str", row.id) for row in result]


def _build_filter_clause(
    record_filter: RecordFilter,
) -> tuple[str, dict[str, object]]:
    conditions: list[str] = ["1 = 1"]
    params: dict[str, object] = {}
    if record_filter.source_id is not None:
        conditions.append("source_id = :filter_source_id")
        params["filter_source_id"] = record_filter.source_id
    if record_filter.record_ids is not None:
        conditions.append("id IN :filter_record_ids")
        params["filter_record_ids"] = list(record_filter.record_ids)
    if record_filter.update_needed is not None:
        conditions.append("update_needed = :filter_update_needed")
        params["filter_update_needed"] = record_filter.update_needed
    if record_filter.deleted is not None:
        conditions.append("deleted = :filter_deleted")
        params["filter_deleted"] = record_filter.deleted
    if record_filter.has_dedup_id is True:
        conditions.append("dedup_id IS NOT NULL")
    elif record_filter.has_dedup_id is False:
        conditions.append("dedup_id IS NULL")
    if record_filter.component_part is not None:
        exists_clause = (
            "EXISTS (SELECT 1 FROM record_links "
            "WHERE record_links.record_id = records.id "
            "AND record_links.link_type = 'host')"
        )
        if record_filter.component_part:
            conditions.append(exists_clause)
        else:
            conditions.append(f"NOT {exists_clause}")
    return " AND ".join(conditions), params


async def _attach_side_tables(
    *,
    session: AsyncSession,
    rows: Sequence[object],
) -> list[StoredRecord]:
    """Decode record rows and load their key and link rows in two queries."""
    row_maps = [cast("dict[str, object]", row) for row in rows]
    record_ids = [
        _coerce_str(value=row_map.get("id"), field="id") for row_map in row_maps
    ]
    if not record_ids:
        return []

    keys_statement = text(
        """
        SELECT record_id, key_type, key_value
        FROM record_keys
        WHERE record_id IN :record_ids
        """,
    ).bindparams(bindparam("record_ids", expanding=True))
    links_statement = text(
        """
        SELECT record_id, link_type, link_value
        FROM record_links
        WHERE record_id IN :record_ids
        ORDER BY rowid ASC
        """,
    ).bindparams(bindparam("record_ids", expanding=True))

    keys: dict[tuple[str, str], set[str]] = {}
    for key_row in await session.execute(keys_statement, {"record_ids": record_ids}):
        keys.setdefault(
            (cast("str", key_row.record_id), cast("str", key_row.key_type)),
            set(),
        ).add(cast("str", key_row.key_value))

    links: dict[tuple[str, str], list[str]] = {}
    for link_row in await session.execute(
        links_statement,
        {"record_ids": record_ids},
    ):
        links.setdefault(
            (cast("str", link_row.record_id), cast("str", link_row.link_type)),
            [],
        ).append(cast("str", link_row.link_value))

    return [
        _decode_record_row(
            row_map,
            title_keys=frozenset(keys.get((record_id, "title"), ())),
            isbn_keys=frozenset(keys.get((record_id, "isbn"), ())),
            id_keys=frozenset(keys.get((record_id, "id"), ())),
            host_record_ids=tuple(links.get((record_id, LINK_TYPE_HOST), ())),
            linking_ids=tuple(links.get((record_id, LINK_TYPE_LINKING), ())),
        )
        for record_id, row_map in zip(record_ids, row_maps, strict=True)
    ]


def _decode_record_row(  # noqa: PLR0913
    row_map: dict[str, object],
    *,
    title_keys: frozenset[str],
    isbn_keys: frozenset[str],
    id_keys: frozenset[str],
    host_record_ids: tuple[str, ...],
    linking_ids: tuple[str, ...],
) -> StoredRecord:
    return StoredRecord(
        record_id=_coerce_str(value=row_map.get("id"), field="id"),
        source_id=_coerce_str(value=row_map.get("source_id"), field="source_id"),
        oai_id=_coerce_optional_str(value=row_map.get("oai_id"), field="oai_id"),
        record_format=_coerce_str(value=row_map.get("format"), field="format"),
        data=_coerce_str(value=row_map.get("data_json"), field="data_json"),
        deleted=_coerce_bool(value=row_map.get("deleted"), field="deleted"),
        suppressed=_coerce_bool(value=row_map.get("suppressed"), field="suppressed"),
        dedup_id=_coerce_optional_str(
            value=row_map.get("dedup_id"),
            field="dedup_id",
        ),
        update_needed=_coerce_bool(
            value=row_map.get("update_needed"),
            field="update_needed",
        ),
        created=_coerce_datetime(value=row_map.get("created"), field="created"),
        updated=_coerce_datetime(value=row_map.get("updated"), field="updated"),
        host_record_ids=host_record_ids,
        linking_ids=linking_ids,
        title_keys=title_keys,
        isbn_keys=isbn_keys,
        id_keys=id_keys,
    )


def _rowcount(result: object) -> int:
    rowcount = getattr(result, "rowcount", 0)
    if isinstance(rowcount, int) and rowcount > 0:
        return rowcount
    return 0


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _coerce_str(*, value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    raise RecordsRepositoryError.for_missing_field(field)


def _coerce_optional_str(*, value: object, field: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    raise RecordsRepositoryError.for_invalid_field(field)


def _coerce_bool(*, value: object, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in {0, 1}:
        return bool(value)
    raise RecordsRepositoryError.for_invalid_field(field)


def _coerce_datetime(*, value: object, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise RecordsRepositoryError.for_invalid_field(field) from exc
    else:
        raise RecordsRepositoryError.for_missing_field(field)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
