"""Record inspection and single-record dedup routes."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from recman.api.state import resolve_dedup_services
from recman.dedup import MatchOutcome  # noqa: TC001
from recman.storage import StoredRecord  # noqa: TC001

router = APIRouter()


class RecordResponse(BaseModel):
    """Stored record with its dedup bookkeeping."""

    record_id: str
    source_id: str
    record_format: str
    oai_id: str | None
    deleted: bool
    suppressed: bool
    dedup_id: str | None
    update_needed: bool
    host_record_ids: list[str]
    linking_ids: list[str]
    title_keys: list[str]
    isbn_keys: list[str]
    id_keys: list[str]
    created: datetime
    updated: datetime


class DedupOutcomeResponse(BaseModel):
    """Result of evaluating one record."""

    record_id: str
    decision: str
    clustered: bool
    dedup_id: str | None
    matched_record_id: str | None
    rule: str | None
    reason: str | None


@router.get(
    "/records/{record_id}",
    tags=["records"],
    response_model=RecordResponse,
)
async def get_record(record_id: str, request: Request) -> RecordResponse:
    """Return one stored record."""
    services = resolve_dedup_services(request)
    record = await services.records_repository.get_record(record_id)
    if record is None:
        raise _record_not_found(record_id)
    return _to_record_response(record=record)


@router.post(
    "/records/{record_id}/dedup",
    tags=["records"],
    response_model=DedupOutcomeResponse,
)
async def dedup_record(record_id: str, request: Request) -> DedupOutcomeResponse:
    """Run the match engine for one record now."""
    services = resolve_dedup_services(request)
    record = await services.records_repository.get_record(record_id)
    if record is None:
        raise _record_not_found(record_id)
    outcome = await services.engine.evaluate(record)
    return _to_outcome_response(outcome=outcome)


def _record_not_found(record_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Record '{record_id}' was not found.",
    )


def _to_record_response(*, record: StoredRecord) -> RecordResponse:
    """Map repository record to API response schema."""
    return RecordResponse(
        record_id=record.record_id,
        source_id=record.source_id,
        record_format=record.record_format,
        oai_id=record.oai_id,
        deleted=record.deleted,
        suppressed=record.suppressed,
        dedup_id=record.dedup_id,
        update_needed=record.update_needed,
        host_record_ids=list(record.host_record_ids),
        linking_ids=list(record.linking_ids),
        title_keys=sorted(record.title_keys),
        isbn_keys=sorted(record.isbn_keys),
        id_keys=sorted(record.id_keys),
        created=record.created,
        updated=record.updated,
    )


def _to_outcome_response(*, outcome: MatchOutcome) -> DedupOutcomeResponse:
    """Map engine outcome to API response schema."""
    return DedupOutcomeResponse(
        record_id=outcome.record_id,
        decision=outcome.decision,
        clustered=outcome.clustered,
        dedup_id=outcome.dedup_id,
        matched_record_id=outcome.matched_record_id,
        rule=outcome.rule,
        reason=outcome.reason,
    )
