"""Committed ledger notifications."""

from __future__ import annotations

from fastapi import APIRouter, Request

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.core.state import get_app_state
from task_escrow_service.schemas import EventListResponse

router = APIRouter()


def _parse_query_int(raw: str | None, name: str, minimum: int) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc
    if value < minimum:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be >= {minimum}", 400, {})
    return value


@router.get("/events", response_model=EventListResponse)
async def list_events(request: Request) -> EventListResponse:
    """List committed events in emission order."""
    offset = _parse_query_int(request.query_params.get("offset"), "offset", 0)
    limit = _parse_query_int(request.query_params.get("limit"), "limit", 1)

    ledger = get_app_state().require_ledger()
    events = ledger.get_events(offset or 0, limit)
    return EventListResponse(events=[event.to_dict() for event in events])
