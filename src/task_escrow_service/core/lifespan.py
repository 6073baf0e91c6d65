"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_escrow_service.config import get_settings
from task_escrow_service.core.state import init_app_state
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.native_bank import NativeBank
from task_escrow_service.services.task_ledger import TaskLedger
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.transaction_verifier import TransactionVerifier

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from task_escrow_service.services.events import LedgerEvent


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    # Native value host: custody account plus genesis allocations
    bank = NativeBank(custody_account=settings.ledger.custody_account)
    for account, amount in settings.bank.genesis_balances.items():
        bank.credit(account, amount)
    state.bank = bank
    state.faucet_amount = settings.bank.faucet_amount

    store = TaskStore(db_path=settings.database.path)
    # Custody held by a ledger reopened from disk is already backed by deposits
    bank.credit(bank.custody_account, store.custody_balance())

    ledger = TaskLedger(
        store=store,
        value_transfer=bank,
        max_description_length=settings.ledger.max_description_length,
    )

    event_logger = get_logger("task_escrow_service.events")

    def _log_event(event: LedgerEvent) -> None:
        event_logger.info(event.name, extra=event.fields())

    ledger.subscribe(_log_event)
    state.ledger = ledger
    state.verifier = TransactionVerifier()

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "custody_account": settings.ledger.custody_account,
            "task_count": ledger.task_count,
            "custody_balance": ledger.custody_balance,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    # Close ledger (closes SQLite database)
    ledger.close()
