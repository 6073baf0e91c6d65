"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request

from task_escrow_service.core.exceptions import ServiceError, TaskNotFoundError
from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import extract_token, parse_json_body
from task_escrow_service.schemas import TaskIdListResponse, TaskResponse
from task_escrow_service.services.models import CallContext

if TYPE_CHECKING:
    from collections.abc import Callable

    from task_escrow_service.services.task_ledger import TaskLedger
    from task_escrow_service.services.transaction_verifier import VerifiedCall

router = APIRouter()


def _parse_task_id(raw: str) -> int:
    """Path ids that are not plain decimal integers name no task."""
    if not (raw.isascii() and raw.isdigit()):
        raise TaskNotFoundError(task_id=raw)
    return int(raw)


def _task_response(ledger: TaskLedger, task_id: int) -> TaskResponse:
    return TaskResponse(**ledger.get_task(task_id).to_dict())


async def _verify_call(request: Request, action: str) -> VerifiedCall:
    body = await request.body()
    data = parse_json_body(body)
    token = extract_token(data, "token")
    return get_app_state().require_verifier().verify(token, action)


def _require_payload_task_id(call: VerifiedCall, task_id: int) -> None:
    payload_task_id = call.payload.get("task_id")
    if (
        not isinstance(payload_task_id, int)
        or isinstance(payload_task_id, bool)
        or payload_task_id != task_id
    ):
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Payload task_id does not match URL",
            400,
            {"expected": task_id, "received": payload_task_id},
        )


async def _run_task_call(
    raw_task_id: str,
    request: Request,
    action: str,
    operation: Callable[[TaskLedger], Callable[[CallContext, int], None]],
) -> TaskResponse:
    """Verify the envelope for action, run the ledger operation and return the task."""
    call = await _verify_call(request, action)
    task_id = _parse_task_id(raw_task_id)
    _require_payload_task_id(call, task_id)

    ledger = get_app_state().require_ledger()
    operation(ledger)(CallContext(caller=call.caller), task_id)
    return _task_response(ledger, task_id)


# ---------------------------------------------------------------------------
# POST /tasks: post a task with its reward attached
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201, response_model=TaskResponse)
async def post_task(request: Request) -> TaskResponse:
    """Post a new task; the envelope's value is moved into custody as its reward."""
    call = await _verify_call(request, "post_task")

    if "description" not in call.payload:
        raise ServiceError("INVALID_PAYLOAD", "Missing required field: description", 400, {})
    value = call.payload.get("value")
    if not isinstance(value, int) or isinstance(value, bool):
        raise ServiceError("INVALID_PAYLOAD", "Field 'value' must be an integer", 400, {})

    state = get_app_state()
    ledger = state.require_ledger()
    with state.require_bank().attach_value(call.caller, value):
        task_id = ledger.post_task(
            CallContext(caller=call.caller, value=value),
            call.payload["description"],
        )

    return _task_response(ledger, task_id)


# ---------------------------------------------------------------------------
# GET /tasks/open (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks/open", response_model=TaskIdListResponse)
async def get_open_tasks() -> TaskIdListResponse:
    """List ids of tasks that are currently open."""
    return TaskIdListResponse(task_ids=get_app_state().require_ledger().get_open_tasks())


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> TaskResponse:
    """Get full task details."""
    ledger = get_app_state().require_ledger()
    return _task_response(ledger, _parse_task_id(task_id))


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept", response_model=TaskResponse)
async def accept_task(task_id: str, request: Request) -> TaskResponse:
    """Accept an open task as its worker."""
    return await _run_task_call(task_id, request, "accept_task", lambda ledger: ledger.accept_task)


@router.post("/tasks/{task_id}/complete", response_model=TaskResponse)
async def complete_task(task_id: str, request: Request) -> TaskResponse:
    """Mark an accepted task as completed."""
    return await _run_task_call(
        task_id, request, "complete_task", lambda ledger: ledger.complete_task
    )


@router.post("/tasks/{task_id}/confirm", response_model=TaskResponse)
async def confirm_completion(task_id: str, request: Request) -> TaskResponse:
    """Confirm a completed task and pay the worker."""
    return await _run_task_call(
        task_id, request, "confirm_completion", lambda ledger: ledger.confirm_completion
    )


@router.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: str, request: Request) -> TaskResponse:
    """Cancel an open task and refund the poster."""
    return await _run_task_call(task_id, request, "cancel_task", lambda ledger: ledger.cancel_task)


@router.post("/tasks/{task_id}/withdraw", response_model=TaskResponse)
async def withdraw_from_task(task_id: str, request: Request) -> TaskResponse:
    """Give up an accepted task; it reopens."""
    return await _run_task_call(
        task_id, request, "withdraw_from_task", lambda ledger: ledger.withdraw_from_task
    )


# ---------------------------------------------------------------------------
# Enumeration by participant
# ---------------------------------------------------------------------------


@router.get("/posters/{address}/tasks", response_model=TaskIdListResponse)
async def get_tasks_by_poster(address: str) -> TaskIdListResponse:
    """List ids of every task posted by address."""
    ledger = get_app_state().require_ledger()
    return TaskIdListResponse(task_ids=ledger.get_tasks_by_poster(address))


@router.get("/workers/{address}/tasks", response_model=TaskIdListResponse)
async def get_tasks_by_worker(address: str) -> TaskIdListResponse:
    """List ids of tasks whose current worker is address."""
    ledger = get_app_state().require_ledger()
    return TaskIdListResponse(task_ids=ledger.get_tasks_by_worker(address))
