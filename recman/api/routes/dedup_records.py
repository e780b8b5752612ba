"""Dedup record inspection and on-demand consistency check routes."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from recman.api.state import resolve_dedup_services
from recman.storage import DedupRecord  # noqa: TC001

router = APIRouter()


class DedupRecordResponse(BaseModel):
    """One cluster and its members."""

    dedup_id: str
    record_ids: list[str]
    deleted: bool
    created: datetime
    changed: datetime
    version: int


class DedupCheckResponse(BaseModel):
    """Fixes applied by a consistency check of one cluster."""

    dedup_id: str
    strict: bool
    fixes: list[str]
    dedup_record: DedupRecordResponse


@router.get(
    "/dedup-records/{dedup_id}",
    tags=["dedup"],
    response_model=DedupRecordResponse,
)
async def get_dedup_record(dedup_id: str, request: Request) -> DedupRecordResponse:
    """Return one cluster."""
    services = resolve_dedup_services(request)
    dedup = await services.dedup_records_repository.get_dedup(dedup_id)
    if dedup is None:
        raise _dedup_not_found(dedup_id)
    return _to_dedup_response(dedup=dedup)


@router.post(
    "/dedup-records/{dedup_id}/check",
    tags=["dedup"],
    response_model=DedupCheckResponse,
)
async def check_dedup_record(
    dedup_id: str,
    request: Request,
    strict: bool = False,  # noqa: FBT001, FBT002
) -> DedupCheckResponse:
    """Run the consistency check for one cluster and return its fixes."""
    services = resolve_dedup_services(request)
    dedup = await services.dedup_records_repository.get_dedup(dedup_id)
    if dedup is None:
        raise _dedup_not_found(dedup_id)
    fixes = await services.handler.check_dedup_record(dedup, strict=strict)
    refreshed = await services.dedup_records_repository.get_dedup(dedup_id)
    return DedupCheckResponse(
        dedup_id=dedup_id,
        strict=strict,
        fixes=fixes,
        dedup_record=_to_dedup_response(dedup=refreshed or dedup),
    )


def _dedup_not_found(dedup_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Dedup record '{dedup_id}' was not found.",
    )


def _to_dedup_response(*, dedup: DedupRecord) -> DedupRecordResponse:
    """Map repository cluster to API response schema."""
    return DedupRecordResponse(
        dedup_id=dedup.dedup_id,
        record_ids=list(dedup.record_ids),
        deleted=dedup.deleted,
        created=dedup.created,
        changed=dedup.changed,
        version=dedup.version,
    )
