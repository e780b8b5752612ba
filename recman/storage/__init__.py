"""Storage module for recman."""

from .db import (
    SessionFactory,
    StorageRuntime,
    build_sqlite_url,
    create_session_factory,
    create_storage_runtime,
    dispose_storage_runtime,
)
from .dedup_records_repo import (
    DedupRecord,
    DedupRecordsRepository,
    DedupRecordsRepositoryError,
)
from .migrations import (
    MigrationRunnerDependency,
    MigrationStartupError,
    read_schema_revision,
    run_startup_migrations,
)
from .records_repo import (
    KEY_TYPES,
    KeyType,
    RecordFilter,
    RecordsRepository,
    RecordsRepositoryError,
    StoredRecord,
)

__all__ = [
    "KEY_TYPES",
    "DedupRecord",
    "DedupRecordsRepository",
    "DedupRecordsRepositoryError",
    "KeyType",
    "MigrationRunnerDependency",
    "MigrationStartupError",
    "RecordFilter",
    "RecordsRepository",
    "RecordsRepositoryError",
    "SessionFactory",
    "StorageRuntime",
    "StoredRecord",
    "build_sqlite_url",
    "create_session_factory",
    "create_storage_runtime",
    "dispose_storage_runtime",
    "read_schema_revision",
    "run_startup_migrations",
]
