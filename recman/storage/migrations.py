"""Schema migrations for the record store, driven through the Alembic CLI.

The batch CLI upgrades the store before every run and the admin API does
the same from its lifespan `db` dependency, so both entry points see the
same tables whatever state the SQLite file was left in.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, cast

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from recman.config.settings import ENV_DB_PATH, load_settings

if TYPE_CHECKING:
    from recman.config.settings import AppSettings

    from .db import SessionFactory

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ALEMBIC_CONFIG_PATH = PROJECT_ROOT / "alembic.ini"
ALEMBIC_EXECUTABLE = Path(sys.executable).with_name("alembic")
HEAD_REVISION = "head"


class MigrationStartupError(RuntimeError):
    """Raised when the record store schema cannot be brought up to date."""

    @classmethod
    def for_db_path_prepare_failure(
        cls,
        db_path: Path,
        *,
        details: str,
    ) -> MigrationStartupError:
        """Build error for a database directory that cannot be created."""
        message = (
            "Failed to prepare database path for migrations "
            f"(db={db_path.as_posix()}): {details}"
        )
        return cls(message)

    @classmethod
    def for_command_failure(
        cls,
        db_path: Path,
        *,
        command: tuple[str, ...],
        details: str,
    ) -> MigrationStartupError:
        """Build error for an Alembic command that did not succeed."""
        message = (
            f"Failed to run `alembic {' '.join(command)}` "
            f"(db={db_path.as_posix()}): {details}"
        )
        return cls(message)

    @classmethod
    def for_missing_executable(cls, executable: Path) -> MigrationStartupError:
        """Build error for an environment without the Alembic CLI."""
        message = f"Missing Alembic executable required for migrations: {executable}."
        return cls(message)


def run_startup_migrations(settings: AppSettings | None = None) -> None:
    """Upgrade the record store schema to the newest revision."""
    resolved = settings or load_settings()
    db_path = resolved.db_path.expanduser()
    _prepare_db_directory(db_path)
    logger.info("Upgrading record store schema (db=%s)", db_path)
    _ = _run_alembic(db_path, ("upgrade", HEAD_REVISION))
    logger.info("Record store schema is current (db=%s)", db_path)


async def read_schema_revision(session_factory: SessionFactory) -> str | None:
    """Return the applied schema revision, or None for an unmigrated store."""
    async with session_factory() as session:
        try:
            result = await session.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1"),
            )
        except OperationalError:
            logger.warning("Record store has no alembic_version table")
            return None
        value = result.scalar_one_or_none()
    return cast("str | None", value)


def _prepare_db_directory(db_path: Path) -> None:
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise MigrationStartupError.for_db_path_prepare_failure(
            db_path,
            details=str(exc),
        ) from exc


def _run_alembic(
    db_path: Path,
    command: tuple[str, ...],
) -> subprocess.CompletedProcess[str]:
    """Run one Alembic CLI command against `db_path` from the project root."""
    if not ALEMBIC_EXECUTABLE.exists():
        raise MigrationStartupError.for_missing_executable(ALEMBIC_EXECUTABLE)

    env = {**os.environ, ENV_DB_PATH: db_path.as_posix()}
    argv = [
        ALEMBIC_EXECUTABLE.as_posix(),
        "-c",
        ALEMBIC_CONFIG_PATH.as_posix(),
        *command,
    ]
    try:
        result = subprocess.run(  # noqa: S603
            argv,
            cwd=PROJECT_ROOT,
            check=False,
            capture_output=True,
            text=True,
            env=env,
        )
    except OSError as exc:
        raise MigrationStartupError.for_command_failure(
            db_path,
            command=command,
            details=str(exc),
        ) from exc
    if result.returncode != 0:
        output = result.stderr.strip() or result.stdout.strip() or "unknown error"
        raise MigrationStartupError.for_command_failure(
            db_path,
            command=command,
            details=output,
        )
    return result


class MigrationRunnerDependency:
    """Lifespan `db` dependency: the API serves nothing until the schema is current."""

    _settings: AppSettings | None

    def __init__(self, settings: AppSettings | None = None) -> None:
        """Bind to explicit settings, or read the environment at startup."""
        self._settings = settings

    async def startup(self) -> None:
        """Upgrade the schema off the event loop."""
        await asyncio.to_thread(run_startup_migrations, self._settings)

    async def shutdown(self) -> None:
        """Nothing to release."""
        return
