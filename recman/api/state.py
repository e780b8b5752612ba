"""Typed access to runtime objects the lifespan places on app state."""

from __future__ import annotations

from typing import cast

from fastapi import Request

from recman.dedup import DedupServices
from recman.storage import StorageRuntime


def resolve_storage_runtime(request: Request) -> StorageRuntime:
    """Load app storage runtime from FastAPI state with explicit failure mode."""
    runtime_obj = getattr(_resolve_app_state(request), "storage_runtime", None)
    if not isinstance(runtime_obj, StorageRuntime):
        message = "Missing app storage runtime: app.state.storage_runtime."
        raise TypeError(message)
    return runtime_obj


def resolve_dedup_services(request: Request) -> DedupServices:
    """Load wired dedup services from FastAPI state."""
    services_obj = getattr(_resolve_app_state(request), "dedup_services", None)
    if not isinstance(services_obj, DedupServices):
        message = "Missing app dedup services: app.state.dedup_services."
        raise TypeError(message)
    return services_obj


def _resolve_app_state(request: Request) -> object:
    """Resolve request app state with explicit object typing for static analysis."""
    request_obj = cast("object", request)
    app_obj = cast("object", getattr(request_obj, "app", None))
    return cast("object", getattr(app_obj, "state", None))
