"""Native value accounts and the transfer primitive the ledger pays out through."""

from __future__ import annotations

from contextlib import contextmanager
from threading import RLock
from typing import TYPE_CHECKING, Protocol

from task_escrow_service.core.exceptions import InsufficientFundsError, ServiceError
from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


class ValueTransfer(Protocol):
    """
    Moves native value out of the ledger's custody.

    Returns True when the recipient has been credited and False when the
    transfer failed. Implementations may run recipient code synchronously
    before returning, and that code may call back into the ledger.
    """

    def transfer(self, recipient: str, amount: int) -> bool: ...


class NativeBank:
    """
    In-process native value host.

    Keeps one balance per account. The custody account holds value that
    callers attach to ledger calls; transfer() pays out of it. Accounts may
    register a receiver hook that runs whenever they are paid, which is how
    a recipient contract gets control (and can re-enter the ledger) in the
    middle of a payout.
    """

    def __init__(self, custody_account: str) -> None:
        self._lock = RLock()
        self._custody_account = custody_account
        self._balances: dict[str, int] = {}
        self._receivers: dict[str, Callable[[str, int], None]] = {}
        self._faucet_claims: set[str] = set()
        self._logger = get_logger(__name__)

    @property
    def custody_account(self) -> str:
        return self._custody_account

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def credit(self, account: str, amount: int) -> int:
        """Mint amount into account. Used for genesis allocations and the faucet."""
        if amount < 0:
            raise ServiceError("INVALID_AMOUNT", "Amount must be non-negative", 400, {})
        with self._lock:
            balance = self._balances.get(account, 0) + amount
            self._balances[account] = balance
            return balance

    def claim_faucet(self, account: str, amount: int) -> int:
        """Credit account once with the faucet amount."""
        with self._lock:
            if account in self._faucet_claims:
                raise ServiceError(
                    "FAUCET_ALREADY_CLAIMED",
                    "Faucet already claimed for this account",
                    409,
                    {"account": account},
                )
            self._faucet_claims.add(account)
            return self.credit(account, amount)

    def register_receiver(self, account: str, hook: Callable[[str, int], None]) -> None:
        """Run hook(sender, amount) every time account receives a transfer."""
        with self._lock:
            self._receivers[account] = hook

    def unregister_receiver(self, account: str) -> None:
        with self._lock:
            self._receivers.pop(account, None)

    @contextmanager
    def attach_value(self, sender: str, amount: int) -> Iterator[None]:
        """
        Move amount from sender into custody for the duration of a call.

        If the enclosed call raises, the value goes back to the sender. The
        bank lock is not held while the call runs: the ledger takes its own
        lock first and then the bank's when it pays out.

        Raises:
            InsufficientFundsError: before the call runs, if sender is short.
        """
        if amount > 0:
            with self._lock:
                available = self._balances.get(sender, 0)
                if available < amount:
                    raise InsufficientFundsError(sender, amount, available)
                self._move(sender, self._custody_account, amount)
        try:
            yield
        except BaseException:
            if amount > 0:
                with self._lock:
                    self._move(self._custody_account, sender, amount)
            raise

    def transfer(self, recipient: str, amount: int) -> bool:
        """
        Pay amount from custody to recipient.

        The recipient's hook, if any, runs after it has been credited. If the
        hook raises, every balance change made since this transfer started
        (including nested transfers and faucet claims the hook triggered) is
        undone and the transfer reports failure.
        """
        with self._lock:
            if amount <= 0 or self._balances.get(self._custody_account, 0) < amount:
                self._logger.warning(
                    "Transfer rejected: custody cannot cover amount",
                    extra={"recipient": recipient, "amount": amount},
                )
                return False

            snapshot = dict(self._balances)
            claims_snapshot = set(self._faucet_claims)
            self._move(self._custody_account, recipient, amount)

            hook = self._receivers.get(recipient)
            if hook is None:
                return True
            try:
                hook(self._custody_account, amount)
            except Exception:
                self._balances = snapshot
                self._faucet_claims = claims_snapshot
                self._logger.warning(
                    "Receiver hook failed, transfer reverted",
                    exc_info=True,
                    extra={"recipient": recipient, "amount": amount},
                )
                return False
            return True

    def _move(self, source: str, destination: str, amount: int) -> None:
        self._balances[source] = self._balances.get(source, 0) - amount
        self._balances[destination] = self._balances.get(destination, 0) + amount
