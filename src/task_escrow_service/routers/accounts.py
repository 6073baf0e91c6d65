"""Native account endpoints: balance lookup and the one-shot faucet."""

from __future__ import annotations

from fastapi import APIRouter, Request

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import extract_token, parse_json_body
from task_escrow_service.schemas import AccountResponse

router = APIRouter()


def _account(address: str) -> AccountResponse:
    state = get_app_state()
    return AccountResponse(
        address=address,
        balance=state.require_bank().balance_of(address),
        nonce=state.require_verifier().next_nonce(address),
    )


@router.get("/accounts/{address}", response_model=AccountResponse)
async def get_account(address: str) -> AccountResponse:
    """Get the native balance and next call nonce of an address."""
    return _account(address)


@router.post("/faucet", response_model=AccountResponse)
async def claim_faucet(request: Request) -> AccountResponse:
    """Credit the signing caller with the configured faucet amount, once."""
    body = await request.body()
    data = parse_json_body(body)
    token = extract_token(data, "token")

    state = get_app_state()
    call = state.require_verifier().verify(token, "faucet")
    state.require_bank().claim_faucet(call.caller, state.faucet_amount)
    return _account(call.caller)
