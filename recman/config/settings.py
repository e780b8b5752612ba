"""Typed application settings loaded from static environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

LogLevel = str

ENV_DB_PATH = "RECMAN_DB_PATH"
ENV_LOG_LEVEL = "RECMAN_LOG_LEVEL"
ENV_DATASOURCES_PATH = "RECMAN_DATASOURCES_PATH"
ENV_BIND = "RECMAN_BIND"
ENV_PORT = "RECMAN_PORT"

DEFAULT_DB_PATH = Path("/data/recman.db")
DEFAULT_LOG_LEVEL: LogLevel = "INFO"
DEFAULT_DATASOURCES_PATH = Path("/etc/recman/datasources.toml")
DEFAULT_BIND = "127.0.0.1"
DEFAULT_PORT = 8787

MAX_PORT = 65535
VALID_LOG_LEVELS: frozenset[LogLevel] = frozenset(
    {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"},
)


class SettingsValidationError(ValueError):
    """Raised when static settings env vars contain invalid values."""

    @classmethod
    def for_empty_value(cls, env_var: str) -> SettingsValidationError:
        """Build error for empty non-optional env var values."""
        message = f"Invalid {env_var}: value cannot be empty."
        return cls(message)

    @classmethod
    def for_invalid_choice(
        cls,
        env_var: str,
        value: str,
        allowed_values: str,
    ) -> SettingsValidationError:
        """Build error for enum-like env vars with fixed allowlists."""
        message = f"Invalid {env_var}: {value!r}. Allowed values: {allowed_values}."
        return cls(message)

    @classmethod
    def for_invalid_port(cls, env_var: str, value: str) -> SettingsValidationError:
        """Build error for port values outside the TCP port range."""
        message = f"Invalid {env_var}: {value!r}. Expected an integer in 1..{MAX_PORT}."
        return cls(message)


@dataclass(frozen=True, slots=True)
class AppSettings:
    """Resolved static configuration values for process startup."""

    db_path: Path
    log_level: LogLevel
    datasources_path: Path
    bind: str
    port: int


def load_settings(environ: Mapping[str, str] | None = None) -> AppSettings:
    """Load and validate static settings from process environment."""
    env = os.environ if environ is None else environ

    return AppSettings(
        db_path=_read_path(env, ENV_DB_PATH, DEFAULT_DB_PATH),
        log_level=_read_log_level(env),
        datasources_path=_read_path(
            env,
            ENV_DATASOURCES_PATH,
            DEFAULT_DATASOURCES_PATH,
        ),
        bind=_read_bind(env),
        port=_read_port(env),
    )


def _read_path(environ: Mapping[str, str], env_var: str, default: Path) -> Path:
    raw = environ.get(env_var)
    if raw is None:
        return default
    value = raw.strip()
    if not value:
        raise SettingsValidationError.for_empty_value(env_var)
    return Path(value).expanduser()


def _read_log_level(environ: Mapping[str, str]) -> LogLevel:
    raw = environ.get(ENV_LOG_LEVEL)
    if raw is None:
        return DEFAULT_LOG_LEVEL
    value = raw.strip().upper()
    if value in VALID_LOG_LEVELS:
        return value
    allowed = ", ".join(sorted(VALID_LOG_LEVELS))
    raise SettingsValidationError.for_invalid_choice(ENV_LOG_LEVEL, raw, allowed)


def _read_bind(environ: Mapping[str, str]) -> str:
    raw = environ.get(ENV_BIND)
    if raw is None:
        return DEFAULT_BIND
    value = raw.strip()
    if not value:
        raise SettingsValidationError.for_empty_value(ENV_BIND)
    return value


def _read_port(environ: Mapping[str, str]) -> int:
    raw = environ.get(ENV_PORT)
    if raw is None:
        return DEFAULT_PORT
    value = raw.strip()
    if not value.isdigit():
        raise SettingsValidationError.for_invalid_port(ENV_PORT, raw)
    port = int(value)
    if not 1 <= port <= MAX_PORT:
        raise SettingsValidationError.for_invalid_port(ENV_PORT, raw)
    return port
