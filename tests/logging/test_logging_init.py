"""Tests for structured logging initialization and formatting."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, cast

from recman.config.logging import bind_source, current_source_id, init_logging, run_id

if TYPE_CHECKING:
    import pytest


def test_init_logging_sets_level() -> None:
    """Ensure init_logging sets the expected root logger level."""
    init_logging("DEBUG")
    assert logging.getLogger().level == logging.DEBUG  # noqa: S101

    init_logging("WARNING")
    assert logging.getLogger().level == logging.WARNING  # noqa: S101


def test_json_formatter_outputs_valid_json(capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure JSONFormatter produces parseable JSON with core fields."""
    init_logging("INFO")
    logger = logging.getLogger("test_logger")

    msg = "Test structured message"
    logger.info(msg)

    captured = capsys.readouterr()
    data = cast("dict[str, object]", json.loads(captured.out.strip()))
    assert data["message"] == msg  # noqa: S101
    assert data["level"] == "INFO"  # noqa: S101
    assert data["logger"] == "test_logger"  # noqa: S101
    assert "timestamp" in data  # noqa: S101
    assert data.get("run_id") is None  # noqa: S101


def test_json_formatter_includes_run_id(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure log output includes the current batch run id from context."""
    init_logging("INFO")
    logger = logging.getLogger("test_run")

    token = run_id.set("run-123")
    try:
        logger.info("Message inside a run")
    finally:
        run_id.reset(token)

    captured = capsys.readouterr()
    data = cast("dict[str, object]", json.loads(captured.out.strip()))
    assert data.get("run_id") == "run-123"  # noqa: S101


def test_json_formatter_includes_record_context(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure record and source ids passed via extra land in the JSON root."""
    init_logging("INFO")
    logger = logging.getLogger("test_extra")

    logger.info("Evaluated", extra={"record_id": "src1.1", "source_id": "src1"})

    captured = capsys.readouterr()
    data = cast("dict[str, object]", json.loads(captured.out.strip()))
    assert data.get("record_id") == "src1.1"  # noqa: S101
    assert data.get("source_id") == "src1"  # noqa: S101


def test_json_formatter_prefixes_colliding_extra_fields(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure extras cannot overwrite the core JSON fields."""
    init_logging("INFO")
    logger = logging.getLogger("test_collision")

    logger.info("Collision", extra={"level": "fake"})

    captured = capsys.readouterr()
    data = cast("dict[str, object]", json.loads(captured.out.strip()))
    assert data["level"] == "INFO"  # noqa: S101
    assert data.get("extra_level") == "fake"  # noqa: S101


def test_json_formatter_serializes_exceptions(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure logged exceptions carry their traceback text."""
    init_logging("INFO")
    logger = logging.getLogger("test_exception")

    try:
        message = "boom"
        raise ValueError(message)
    except ValueError:
        logger.exception("Failed")

    captured = capsys.readouterr()
    data = cast("dict[str, object]", json.loads(captured.out.strip()))
    assert "ValueError: boom" in str(data.get("exception"))  # noqa: S101


def test_bound_source_is_stamped_until_block_exits(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Ensure lines logged inside a source block carry its id, and only those."""
    init_logging("INFO")
    logger = logging.getLogger("test_source")

    with bind_source("src2"):
        logger.info("Inside source")
        logger.info("Explicit source", extra={"source_id": "src3"})
    logger.info("After source")

    lines = [
        cast("dict[str, object]", json.loads(line))
        for line in capsys.readouterr().out.strip().splitlines()
    ]
    assert [line.get("source_id") for line in lines] == ["src2", "src3", None]  # noqa: S101
    assert current_source_id.get() is None  # noqa: S101
