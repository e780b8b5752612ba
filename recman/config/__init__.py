"""Configuration module for recman."""

from .datasources import (
    DataSourceConfigError,
    DataSourceSettings,
    DedupSettings,
    RecmanConfig,
    load_recman_config,
    parse_recman_config,
)
from .settings import AppSettings, SettingsValidationError, load_settings

__all__ = [
    "AppSettings",
    "DataSourceConfigError",
    "DataSourceSettings",
    "DedupSettings",
    "RecmanConfig",
    "SettingsValidationError",
    "load_recman_config",
    "load_settings",
    "parse_recman_config",
]
