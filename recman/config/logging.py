"""Structured logging configuration and initialization.

Every line carries the batch `run_id` and, while a source is being
deduplicated, its `source_id`, so one run's output can be filtered per
source without each call site passing it.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, cast, override

if TYPE_CHECKING:
    from collections.abc import Iterator

    from recman.config.settings import LogLevel

run_id: ContextVar[str | None] = ContextVar("run_id", default=None)
current_source_id: ContextVar[str | None] = ContextVar("current_source_id", default=None)

# Fields a caller cannot override through `extra=`; clashes go to `extra_<name>`.
_CORE_FIELDS = frozenset(
    {"timestamp", "level", "message", "logger", "run_id", "exception", "stack_trace"},
)
_LOG_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)),
) | {"message", "asctime", "taskName"}


@contextmanager
def bind_source(source_id: str) -> Iterator[None]:
    """Stamp `source_id` on every line logged inside the block."""
    token = current_source_id.set(source_id)
    try:
        yield
    finally:
        current_source_id.reset(token)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON with the current run context."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "run_id": run_id.get(),
        }
        source_id = current_source_id.get()
        if source_id is not None:
            log_data["source_id"] = source_id
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_trace"] = self.formatStack(record.stack_info)

        for key, value in _extra_fields(record):
            if key in _CORE_FIELDS:
                log_data[f"extra_{key}"] = value
            else:
                log_data[key] = value
        return json.dumps(log_data, default=str)


def init_logging(level: LogLevel) -> None:
    """Send JSON lines for the root logger to stdout at `level`."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Keep pytest capture handlers so caplog still works after init.
    for existing in root_logger.handlers[:]:
        if type(existing).__name__ != "LogCaptureHandler":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)


def _extra_fields(record: logging.LogRecord) -> Iterator[tuple[str, object]]:
    record_dict = cast("dict[str, object]", record.__dict__)
    for key, value in record_dict.items():
        if key in _LOG_RECORD_ATTRS or key.startswith("_"):
            continue
        yield key, value
