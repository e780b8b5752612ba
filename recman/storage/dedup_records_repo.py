"""Repository for dedup records (clusters) and their member lists."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, cast
from uuid import uuid4

from sqlalchemy import text

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from recman.storage.db import SessionFactory

ITERATION_BATCH_SIZE = 500


@dataclass(slots=True, frozen=True)
class DedupRecord:
    """A group of records believed to describe the same work.

    `version` increases on every successful save and is the compare-and-swap
    token for concurrent writers.
    """

    dedup_id: str
    record_ids: tuple[str, ...]
    deleted: bool
    created: datetime
    changed: datetime
    version: int


class DedupRecordsRepositoryError(RuntimeError):
    """Base exception for dedup record repository operations."""

    @classmethod
    def for_missing_field(cls, field_name: str) -> DedupRecordsRepositoryError:
        """Build error for a required column missing from a decoded row."""
        message = f"missing `{field_name}`"
        return cls(message)

    @classmethod
    def for_invalid_field(cls, field_name: str) -> DedupRecordsRepositoryError:
        """Build error for a column with an unexpected stored value."""
        message = f"invalid `{field_name}` value"
        return cls(message)


class DedupRecordsRepository:
    """Persistence flow for cluster rows and membership rows."""

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

    async def get_dedup(self, dedup_id: str) -> DedupRecord | None:
        """Return the current state of one cluster, or None when absent."""
        statement = text(
            """
            SELECT id, deleted, created, changed, version
            FROM dedup_records
            WHERE id = :dedup_id
            """,
        )
        async with self._read_session_factory() as session:
            row = (
                (await session.execute(statement, {"dedup_id": dedup_id}))
                .mappings()
                .one_or_none()
            )
            if row is None:
                return None
            member_ids = await _load_member_ids(session=session, dedup_id=dedup_id)
        return _decode_dedup_row(cast("dict[str, object]", row), member_ids)

    async def create_dedup(
        self,
        *,
        record_ids: Iterable[str],
        now: datetime,
    ) -> DedupRecord:
        """Insert a new live cluster with the given members."""
        dedup_id = uuid4().hex
        members = tuple(sorted(set(record_ids)))
        insert_statement = text(
            """
            INSERT INTO dedup_records (id, deleted, created, changed, version)
            VALUES (:dedup_id, 0, :now, :now, 1)
            """,
        )
        async with self._write_session_factory() as session:
            _ = await session.execute(
                insert_statement,
                {"dedup_id": dedup_id, "now": _format_datetime(now)},
            )
            await _insert_members(session=session, dedup_id=dedup_id, members=members)
            await session.commit()
        return DedupRecord(
            dedup_id=dedup_id,
            record_ids=members,
            deleted=False,
            created=now,
            changed=now,
            version=1,
        )

    async def save_dedup(self, dedup: DedupRecord) -> DedupRecord | None:
        """Persist cluster state if nobody saved it since `dedup.version` was read.

        Returns the stored cluster with its new version, or None when the
        version check failed and the caller must re-read and retry.
        """
        update_statement = text(
            """
            UPDATE dedup_records
            SET deleted = :deleted,
                changed = :changed,
                version = version + 1
            WHERE id = :dedup_id
              AND version = :expected_version
            RETURNING version
            """,
        )
        delete_members_statement = text(
            "DELETE FROM dedup_members WHERE dedup_id = :dedup_id",
        )
        members = tuple(sorted(set(dedup.record_ids)))
        async with self._write_session_factory() as session:
            row = (
                (
                    await session.execute(
                        update_statement,
                        {
                            "dedup_id": dedup.dedup_id,
                            "deleted": dedup.deleted,
                            "changed": _format_datetime(dedup.changed),
                            "expected_version": dedup.version,
                        },
                    )
                )
                .mappings()
                .one_or_none()
            )
            if row is None:
                await session.rollback()
                return None
            new_version = _coerce_int(value=row.get("version"), field="version")
            _ = await session.execute(
                delete_members_statement,
                {"dedup_id": dedup.dedup_id},
            )
            await _insert_members(
                session=session,
                dedup_id=dedup.dedup_id,
                members=members,
            )
            await session.commit()
        return DedupRecord(
            dedup_id=dedup.dedup_id,
            record_ids=members,
            deleted=dedup.deleted,
            created=dedup.created,
            changed=dedup.changed,
            version=new_version,
        )

    async def delete_dedup(self, dedup_id: str) -> bool:
        """Physically remove a cluster row; used by the purge collaborator."""
        statement = text("DELETE FROM dedup_records WHERE id = :dedup_id")
        async with self._write_session_factory() as session:
            result = await session.execute(statement, {"dedup_id": dedup_id})
            await session.commit()
        rowcount = getattr(result, "rowcount", 0)
        return isinstance(rowcount, int) and rowcount > 0

    async def count_dedups(self, *, include_deleted: bool = True) -> int:
        """Count cluster rows."""
        statement = text(
            """
            SELECT COUNT(*)
            FROM dedup_records
            WHERE :include_deleted OR deleted = 0
            """,
        )
        async with self._read_session_factory() as session:
            count = (
                await session.execute(statement, {"include_deleted": include_deleted})
            ).scalar_one()
        return int(cast("int", count))

    async def iter_dedup_ids(
        self,
        *,
        include_deleted: bool = True,
        batch_size: int = ITERATION_BATCH_SIZE,
    ) -> AsyncIterator[str]:
        """Stream cluster ids in id order using keyset pagination."""
        statement = text(
            """
            SELECT id
            FROM dedup_records
            WHERE (:include_deleted OR deleted = 0)
              AND id > :after_id
            ORDER BY id ASC
            LIMIT :batch_size
            """,
        )
        after_id = ""
        while True:
            async with self._read_session_factory() as session:
                result = await session.execute(
                    statement,
                    {
                        "include_deleted": include_deleted,
                        "after_id": after_id,
                        "batch_size": batch_size,
                    },
                )
                page = [cast("str", row.id) for row in result]
            for dedup_id in page:
                yield dedup_id
            if len(page) < batch_size:
                return
            after_id = page[-1]


async def _load_member_ids(*, session: AsyncSession, dedup_id: str) -> tuple[str, ...]:
    statement = text(
        """
        SELECT record_id
        FROM dedup_members
        WHERE dedup_id = :dedup_id
        ORDER BY record_id ASC
        """,
    )
    result = await session.execute(statement, {"dedup_id": dedup_id})
    return tuple(cast("str", row.record_id) for row in result)


async def _insert_members(
    *,
    session: AsyncSession,
    dedup_id: str,
    members: tuple[str, ...],
) -> None:
    if not members:
        return
    statement = text(
        """
        INSERT INTO dedup_members (dedup_id, record_id)
        VALUES (:dedup_id, :record_id)
        ON CONFLICT(dedup_id, record_id) DO NOTHING
        """,
    )
    _ = await session.execute(
        statement,
        [{"dedup_id": dedup_id, "record_id": record_id} for record_id in members],
    )


def _decode_dedup_row(
    row_map: dict[str, object],
    member_ids: tuple[str, ...],
) -> DedupRecord:
    return DedupRecord(
        dedup_id=_coerce_str(value=row_map.get("id"), field="id"),
        record_ids=member_ids,
        deleted=_coerce_bool(value=row_map.get("deleted"), field="deleted"),
        created=_coerce_datetime(value=row_map.get("created"), field="created"),
        changed=_coerce_datetime(value=row_map.get("changed"), field="changed"),
        version=_coerce_int(value=row_map.get("version"), field="version"),
    )


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _coerce_str(*, value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    raise DedupRecordsRepositoryError.for_missing_field(field)


def _coerce_int(*, value: object, field: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    raise DedupRecordsRepositoryError.for_missing_field(field)


def _coerce_bool(*, value: object, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in {0, 1}:
        return bool(value)
    raise DedupRecordsRepositoryError.for_invalid_field(field)


def _coerce_datetime(*, value: object, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise DedupRecordsRepositoryError.for_invalid_field(field) from exc
    else:
        raise DedupRecordsRepositoryError.for_missing_field(field)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
