"""Unit tests for NativeBank."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from task_escrow_service.core.exceptions import InsufficientFundsError, ServiceError
from task_escrow_service.services.native_bank import NativeBank

pytestmark = pytest.mark.unit

CUSTODY = "0xcustody"


@pytest.fixture
def bank() -> NativeBank:
    native_bank = NativeBank(custody_account=CUSTODY)
    native_bank.credit("0xalice", 1_000)
    return native_bank


def test_credit_and_balance(bank: NativeBank) -> None:
    assert bank.balance_of("0xalice") == 1_000
    assert bank.balance_of("0xnobody") == 0
    assert bank.credit("0xalice", 5) == 1_005


def test_credit_rejects_negative(bank: NativeBank) -> None:
    with pytest.raises(ServiceError) as exc_info:
        bank.credit("0xalice", -1)
    assert exc_info.value.error == "INVALID_AMOUNT"


def test_attach_value_moves_into_custody(bank: NativeBank) -> None:
    with bank.attach_value("0xalice", 300):
        assert bank.balance_of(CUSTODY) == 300
    assert bank.balance_of("0xalice") == 700
    assert bank.balance_of(CUSTODY) == 300


def test_attach_value_returns_funds_when_call_fails(bank: NativeBank) -> None:
    with pytest.raises(ValueError), bank.attach_value("0xalice", 300):
        raise ValueError("call failed")
    assert bank.balance_of("0xalice") == 1_000
    assert bank.balance_of(CUSTODY) == 0


def test_attach_value_insufficient_funds(bank: NativeBank) -> None:
    entered = False
    with pytest.raises(InsufficientFundsError) as exc_info, bank.attach_value("0xalice", 5_000):
        entered = True

    assert entered is False
    assert exc_info.value.status_code == 402
    assert exc_info.value.details == {"account": "0xalice", "required": 5_000, "available": 1_000}


def test_attach_zero_value_is_a_no_op(bank: NativeBank) -> None:
    with bank.attach_value("0xbroke", 0):
        pass
    assert bank.balance_of(CUSTODY) == 0


def test_transfer_pays_out_of_custody(bank: NativeBank) -> None:
    with bank.attach_value("0xalice", 400):
        pass

    assert bank.transfer("0xbob", 150) is True
    assert bank.balance_of("0xbob") == 150
    assert bank.balance_of(CUSTODY) == 250


@pytest.mark.parametrize("amount", [0, -3, 10_000])
def test_transfer_rejects_bad_amounts(bank: NativeBank, amount: int) -> None:
    with bank.attach_value("0xalice", 100):
        pass

    assert bank.transfer("0xbob", amount) is False
    assert bank.balance_of("0xbob") == 0
    assert bank.balance_of(CUSTODY) == 100


def test_receiver_hook_runs_after_credit(bank: NativeBank) -> None:
    with bank.attach_value("0xalice", 100):
        pass
    seen: list[tuple[str, int, int]] = []

    def record(sender: str, amount: int) -> None:
        seen.append((sender, amount, bank.balance_of("0xbob")))

    bank.register_receiver("0xbob", record)

    assert bank.transfer("0xbob", 60) is True
    assert seen == [(CUSTODY, 60, 60)]

    bank.unregister_receiver("0xbob")
    assert bank.transfer("0xbob", 40) is True
    assert len(seen) == 1


def test_failing_hook_restores_all_balances(bank: NativeBank) -> None:
    with bank.attach_value("0xalice", 500):
        pass

    def nested_then_fail(_sender: str, _amount: int) -> None:
        bank.transfer("0xcarol", 100)
        raise RuntimeError("rejected")

    bank.register_receiver("0xbob", nested_then_fail)

    assert bank.transfer("0xbob", 200) is False
    assert bank.balance_of("0xbob") == 0
    assert bank.balance_of("0xcarol") == 0
    assert bank.balance_of(CUSTODY) == 500


def test_faucet_claim_once(bank: NativeBank) -> None:
    assert bank.claim_faucet("0xnew", 250) == 250

    with pytest.raises(ServiceError) as exc_info:
        bank.claim_faucet("0xnew", 250)

    assert exc_info.value.error == "FAUCET_ALREADY_CLAIMED"
    assert exc_info.value.status_code == 409
    assert bank.balance_of("0xnew") == 250


def test_failing_hook_restores_faucet_claims(bank: NativeBank) -> None:
    with bank.attach_value("0xalice", 500):
        pass

    def claim_then_fail(_sender: str, _amount: int) -> None:
        bank.claim_faucet("0xbob", 250)
        raise RuntimeError("rejected")

    bank.register_receiver("0xbob", claim_then_fail)

    assert bank.transfer("0xbob", 200) is False
    assert bank.balance_of("0xbob") == 0
    assert bank.balance_of(CUSTODY) == 500

    bank.unregister_receiver("0xbob")
    assert bank.claim_faucet("0xbob", 250) == 250


def test_attach_value_lets_other_threads_use_the_bank(bank: NativeBank) -> None:
    with bank.attach_value("0xalice", 300), ThreadPoolExecutor(max_workers=1) as pool:
        assert pool.submit(bank.transfer, "0xbob", 100).result(timeout=10) is True

    assert bank.balance_of("0xbob") == 100
    assert bank.balance_of(CUSTODY) == 200
