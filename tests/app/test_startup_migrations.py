"""Tests for schema upgrades run by the API lifespan and the batch CLI."""

from __future__ import annotations

import sqlite3
import subprocess
from http import HTTPStatus
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from recman.api.app import create_app
from recman.config.settings import load_settings
from recman.storage import MigrationStartupError, run_startup_migrations

HEAD_REVISION = "3a7c4e91b2d0"


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the app at a fresh database file and a one-source config."""
    path = tmp_path / "startup" / "records.sqlite3"
    datasources_path = tmp_path / "startup-datasources.toml"
    _ = datasources_path.write_text("[sources.src1]\ndedup = true\n", encoding="utf-8")
    monkeypatch.setenv("RECMAN_DB_PATH", path.as_posix())
    monkeypatch.setenv("RECMAN_DATASOURCES_PATH", datasources_path.as_posix())
    return path


def test_startup_creates_record_store_in_missing_directory(db_path: Path) -> None:
    """Ensure the first startup creates the directory, file and tables."""
    with TestClient(create_app()) as client:
        response = client.get("/health")

    if response.status_code != HTTPStatus.OK:
        raise AssertionError
    if response.json().get("schema_revision") != HEAD_REVISION:
        raise AssertionError
    if not {"records", "dedup_records"}.issubset(_table_names(db_path)):
        raise AssertionError


def test_restart_keeps_existing_records(db_path: Path) -> None:
    """Ensure a second startup on a current store is a no-op for data."""
    with TestClient(create_app()):
        pass
    with sqlite3.connect(db_path.as_posix()) as connection:
        _ = connection.execute(
            """
            INSERT INTO records (id, source_id, format, created, updated)
            VALUES ('src1.1', 'src1', 'json', '2024-01-01', '2024-01-01')
            """,
        )
        connection.commit()

    with TestClient(create_app()) as client:
        response = client.get("/records/src1.1")

    if response.status_code != HTTPStatus.OK:
        raise AssertionError
    if _alembic_versions(db_path) != [HEAD_REVISION]:
        raise AssertionError


def test_failed_upgrade_blocks_api_startup(db_path: Path) -> None:
    """Ensure the API refuses to start when the upgrade command fails."""
    failed_upgrade = subprocess.CompletedProcess(
        args=["alembic", "upgrade", "head"],
        returncode=1,
        stdout="",
        stderr="forced-migration-failure",
    )
    with (
        patch(
            "recman.storage.migrations.subprocess.run",
            return_value=failed_upgrade,
        ),
        pytest.raises(
            MigrationStartupError,
            match=r"alembic upgrade head.*forced-migration-failure",
        ),
        TestClient(create_app()),
    ):
        pass

    if db_path.exists():
        raise AssertionError


def test_unwritable_db_directory_raises_domain_error(db_path: Path) -> None:
    """Ensure directory creation failures surface as migration errors."""
    with (
        patch(
            "recman.storage.migrations.Path.mkdir",
            side_effect=PermissionError("forced-path-permission-denied"),
        ),
        pytest.raises(
            MigrationStartupError,
            match=r"Failed to prepare database path.*forced-path-permission-denied",
        ),
        TestClient(create_app()),
    ):
        pass


def test_missing_alembic_executable_is_reported(tmp_path: Path) -> None:
    """Ensure an environment without the Alembic CLI fails with a clear error."""
    settings = load_settings({"RECMAN_DB_PATH": (tmp_path / "no-cli.sqlite3").as_posix()})
    with (
        patch(
            "recman.storage.migrations.ALEMBIC_EXECUTABLE",
            tmp_path / "bin" / "alembic",
        ),
        pytest.raises(MigrationStartupError, match=r"Missing Alembic executable"),
    ):
        run_startup_migrations(settings)


def test_explicit_settings_override_environment(
    tmp_path: Path,
    db_path: Path,
) -> None:
    """Ensure the batch CLI path migrates the database named in its settings."""
    cli_db_path = tmp_path / "cli" / "records.sqlite3"
    run_startup_migrations(load_settings({"RECMAN_DB_PATH": cli_db_path.as_posix()}))

    if _alembic_versions(cli_db_path) != [HEAD_REVISION]:
        raise AssertionError
    if db_path.exists():
        raise AssertionError


def _table_names(path: Path) -> set[str]:
    with sqlite3.connect(path.as_posix()) as connection:
        rows = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'",
        ).fetchall()
    return {str(row[0]) for row in rows}


def _alembic_versions(path: Path) -> list[str]:
    with sqlite3.connect(path.as_posix()) as connection:
        rows = connection.execute("SELECT version_num FROM alembic_version").fetchall()
    return [str(row[0]) for row in rows]
