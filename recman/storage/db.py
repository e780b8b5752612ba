"""Async SQLAlchemy engines over the SQLite record store.

Repositories get two session factories. Writes go through a normal engine;
reads go through an engine whose connections are switched to `query_only`,
so a repository that writes through the wrong factory fails loudly instead
of bypassing the write path.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Literal, cast

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from pathlib import Path
    from typing import Protocol

    from recman.config.settings import AppSettings

    class _DBAPICursor(Protocol):
        def execute(self, statement: str) -> object: ...

        def close(self) -> None: ...

    class _DBAPIConnection(Protocol):
        def cursor(self) -> _DBAPICursor: ...


SessionFactory = async_sessionmaker[AsyncSession]


@dataclass(frozen=True, slots=True)
class SQLitePragmas:
    """Per-connection SQLite settings, applied from a `connect` listener."""

    journal_mode: Literal["WAL", "DELETE"] = "WAL"
    synchronous: Literal["NORMAL", "FULL"] = "NORMAL"
    foreign_keys: bool = True
    busy_timeout_ms: int = 5000
    query_only: bool = False

    def statements(self) -> tuple[str, ...]:
        """Return the PRAGMA statements in application order."""
        return (
            f"PRAGMA journal_mode={self.journal_mode};",
            f"PRAGMA synchronous={self.synchronous};",
            f"PRAGMA foreign_keys={_on_off(self.foreign_keys)};",
            f"PRAGMA busy_timeout={self.busy_timeout_ms};",
            f"PRAGMA query_only={_on_off(self.query_only)};",
        )

    def apply(self, dbapi_connection: object, connection_record: object) -> None:
        """Run the statements on a freshly opened DBAPI connection."""
        _ = connection_record
        cursor = cast("_DBAPIConnection", dbapi_connection).cursor()
        try:
            for statement in self.statements():
                _ = cursor.execute(statement)
        finally:
            cursor.close()


WRITER_PRAGMAS = SQLitePragmas()
READER_PRAGMAS = replace(WRITER_PRAGMAS, query_only=True)


@dataclass(slots=True)
class StorageRuntime:
    """Reader and writer engines with their session factories."""

    read_engine: AsyncEngine
    write_engine: AsyncEngine
    read_session_factory: SessionFactory
    write_session_factory: SessionFactory


def build_sqlite_url(db_path: Path) -> str:
    """Return the aiosqlite URL for a database file, expanding `~`."""
    return f"sqlite+aiosqlite:///{db_path.expanduser().as_posix()}"


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create an async session factory that keeps objects usable after commit."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def create_storage_runtime(settings: AppSettings) -> StorageRuntime:
    """Open reader and writer engines for the configured database file."""
    read_engine = create_sqlite_engine(settings.db_path, pragmas=READER_PRAGMAS)
    write_engine = create_sqlite_engine(settings.db_path, pragmas=WRITER_PRAGMAS)
    return StorageRuntime(
        read_engine=read_engine,
        write_engine=write_engine,
        read_session_factory=create_session_factory(read_engine),
        write_session_factory=create_session_factory(write_engine),
    )


def create_sqlite_engine(db_path: Path, *, pragmas: SQLitePragmas) -> AsyncEngine:
    """Create one async engine whose connections all get `pragmas`."""
    engine = create_async_engine(build_sqlite_url(db_path), pool_pre_ping=True)
    event.listen(engine.sync_engine, "connect", pragmas.apply)
    return engine


async def dispose_storage_runtime(runtime: StorageRuntime) -> None:
    """Close both engines; used by CLI runs, app shutdown and test fixtures."""
    await runtime.read_engine.dispose()
    await runtime.write_engine.dispose()


def _on_off(value: bool) -> str:  # noqa: FBT001
    return "ON" if value else "OFF"
