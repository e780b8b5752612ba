"""Health check endpoint for application monitoring."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel

from recman.api.state import resolve_storage_runtime
from recman.storage import read_schema_revision

router = APIRouter()


class HealthResponse(BaseModel):
    """Liveness payload with the store's applied schema revision."""

    status: Literal["ok"]
    database: Literal["ok"]
    schema_revision: str | None
    timestamp: datetime


@router.get("/health", tags=["monitoring"], response_model=HealthResponse)
async def get_health(request: Request) -> HealthResponse:
    """Return health status after reading the schema revision from the store."""
    runtime = resolve_storage_runtime(request)
    revision = await read_schema_revision(runtime.read_session_factory)
    return HealthResponse(
        status="ok",
        database="ok",
        schema_revision=revision,
        timestamp=datetime.now(tz=UTC),
    )
