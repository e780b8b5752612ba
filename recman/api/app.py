"""FastAPI admin application factory and lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, cast, runtime_checkable

from fastapi import FastAPI

from recman.api.routes.dedup_records import router as dedup_records_router
from recman.api.routes.health import router as health_router
from recman.api.routes.records import router as records_router
from recman.config import load_recman_config, load_settings
from recman.config.logging import init_logging
from recman.dedup import build_dedup_services
from recman.storage import (
    MigrationRunnerDependency,
    StorageRuntime,
    create_storage_runtime,
    dispose_storage_runtime,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


class StartupDependencyError(RuntimeError):
    """Raised when required startup dependencies are missing."""

    @classmethod
    def missing_container(cls) -> StartupDependencyError:
        """Build error for absent dependency container on app state."""
        message = "Missing startup dependency container: app.state.dependencies."
        return cls(message)

    @classmethod
    def missing_named_dependency(cls, name: str) -> StartupDependencyError:
        """Build error for absent named dependency in the container."""
        message = f"Missing startup dependency: {name}."
        return cls(message)


class StartupDependencyTypeError(TypeError):
    """Raised when a dependency lacks startup/shutdown lifecycle hooks."""

    @classmethod
    def invalid_dependency(cls, name: str) -> StartupDependencyTypeError:
        """Build error for dependency objects with wrong runtime type."""
        message = (
            f"Invalid startup dependency '{name}': expected startup/shutdown hooks."
        )
        return cls(message)


@runtime_checkable
class LifecycleDependency(Protocol):
    """Protocol for startup/shutdown-managed app dependencies."""

    async def startup(self) -> None:
        """Run dependency startup actions."""

    async def shutdown(self) -> None:
        """Run dependency shutdown actions."""


@dataclass(slots=True)
class StartupDependencies:
    """Container for dependency lifecycle hooks managed by app lifespan."""

    db: LifecycleDependency


def _resolve_startup_dependencies(app: FastAPI) -> StartupDependencies:
    """Resolve and validate dependency hooks required for app startup."""
    raw_state = cast("object", app.state)
    raw_dependencies = getattr(raw_state, "dependencies", None)
    if raw_dependencies is None:
        raise StartupDependencyError.missing_container()

    dependency = getattr(cast("object", raw_dependencies), "db", None)
    if dependency is None:
        raise StartupDependencyError.missing_named_dependency("db")
    if not isinstance(dependency, LifecycleDependency):
        raise StartupDependencyTypeError.invalid_dependency("db")
    return cast("StartupDependencies", raw_dependencies)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run migrations, wire dedup services and release them on shutdown."""
    dependencies = _resolve_startup_dependencies(app)
    settings = load_settings()
    config = load_recman_config(settings.datasources_path)
    storage_runtime: StorageRuntime | None = None
    db_started = False

    logger.info(
        "Starting recman admin API (bind=%s, db=%s, sources=%s)",
        settings.bind,
        settings.db_path,
        len(config.sources),
    )
    try:
        storage_runtime = create_storage_runtime(settings)
        await dependencies.db.startup()
        db_started = True
        app.state.storage_runtime = storage_runtime
        app.state.recman_config = config
        app.state.dedup_services = build_dedup_services(storage_runtime, config)
        yield
    finally:
        if db_started:
            await dependencies.db.shutdown()
        if storage_runtime is not None:
            await dispose_storage_runtime(storage_runtime)
        _clear_runtime_state(app)
        logger.info("Shutting down recman admin API")


def create_app() -> FastAPI:
    """Create and configure a new FastAPI application instance."""
    settings = load_settings()
    init_logging(settings.log_level)

    app = FastAPI(
        title="recman",
        description="Record deduplication admin API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.dependencies = StartupDependencies(db=MigrationRunnerDependency())
    app.include_router(health_router)
    app.include_router(records_router)
    app.include_router(dedup_records_router)
    return app


def _clear_runtime_state(app: FastAPI) -> None:
    """Remove runtime objects from app state after lifespan shutdown."""
    state = cast("object", app.state)
    for name in ("storage_runtime", "recman_config", "dedup_services"):
        if hasattr(state, name):
            delattr(state, name)
