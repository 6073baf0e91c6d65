"""Service layer components."""

from task_escrow_service.services.models import CallContext, Task, TaskStatus
from task_escrow_service.services.native_bank import NativeBank, ValueTransfer
from task_escrow_service.services.task_ledger import TaskLedger
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.transaction_verifier import TransactionVerifier

__all__ = [
    "CallContext",
    "NativeBank",
    "Task",
    "TaskLedger",
    "TaskStatus",
    "TaskStore",
    "TransactionVerifier",
    "ValueTransfer",
]
