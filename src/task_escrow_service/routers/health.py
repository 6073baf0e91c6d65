"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_escrow_service.core.state import get_app_state
from task_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return ledger statistics."""
    state = get_app_state()
    total_tasks = 0
    tasks_by_status: dict[str, int] = {}
    custody_balance = 0
    if state.ledger is not None:
        stats = state.ledger.get_stats()
        total_tasks = stats["total_tasks"]
        tasks_by_status = stats["tasks_by_status"]
        custody_balance = state.ledger.custody_balance
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_status=tasks_by_status,
        custody_balance=custody_balance,
    )
