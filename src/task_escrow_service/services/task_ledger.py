"""Task lifecycle state machine and the custody rules around it."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from threading import RLock
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import (
    CancelOnlyWhenOpenError,
    InvalidDescriptionError,
    InvalidRewardError,
    InvalidStateForCompleteError,
    InvalidStateForConfirmError,
    InvalidStateForWithdrawError,
    NotPosterError,
    NotWorkerError,
    SelfAcceptNotAllowedError,
    TaskNotFoundError,
    TaskNotOpenError,
    TransferFailedError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.services.events import (
    LedgerEvent,
    TaskAccepted,
    TaskCancelled,
    TaskCompleted,
    TaskConfirmed,
    TaskPosted,
    WorkerWithdrew,
)
from task_escrow_service.services.models import CallContext, Task, TaskStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from task_escrow_service.services.native_bank import ValueTransfer
    from task_escrow_service.services.task_store import TaskStore


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class TaskLedger:
    """
    Escrow ledger for posted tasks.

    Holds each task's reward in custody from post_task until the task
    reaches a terminal status, then pays it out exactly once: to the worker
    on confirm_completion, back to the poster on cancel_task.

    Every public mutating operation is atomic. Checks run first (existence,
    then authority, then status), then effects, then the payout. The
    terminal status and the zeroed reward are written before the payout is
    attempted, so a recipient that re-enters the ledger during the transfer
    finds the task already settled. If the payout fails, the whole call
    (including anything the recipient did through re-entry) is rolled back.
    """

    def __init__(
        self,
        store: TaskStore,
        value_transfer: ValueTransfer,
        *,
        max_description_length: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._value_transfer = value_transfer
        self._max_description_length = max_description_length
        self._clock = clock
        self._lock = RLock()
        self._subscribers: list[Callable[[LedgerEvent], None]] = []
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _call(self) -> Iterator[None]:
        """
        Scope of one ledger call.

        Serializes host threads, runs the call in a store transaction and,
        once the outermost call has committed, publishes the events it emitted.
        """
        with self._lock:
            outermost = not self._store.in_transaction
            event_mark = self._store.event_count() if outermost else 0
            with self._store.transaction():
                yield
            if outermost:
                self._publish(self._store.get_events(event_mark, None))

    def _require_task(self, task_id: object) -> Task:
        if not isinstance(task_id, int) or isinstance(task_id, bool):
            raise TaskNotFoundError(task_id=task_id)
        if task_id < 0 or task_id >= self._store.task_count():
            raise TaskNotFoundError(task_id=task_id)
        task = self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} missing below the task counter"
            raise RuntimeError(msg)
        return task

    def _transition(self, task: Task, target: TaskStatus, **changes: Any) -> Task:
        """Write task in target status; the move must be in the status table."""
        if not task.status.can_transition_to(target):
            msg = f"Illegal transition {task.status.value} -> {target.value}"
            raise RuntimeError(msg)
        updated = replace(task, status=target, **changes)
        self._store.update_task(updated)
        return updated

    def _settle(self, task: Task, target: TaskStatus) -> tuple[Task, int]:
        """Move task to a terminal status and release its reward from custody."""
        amount = task.reward
        if amount <= 0:
            msg = f"Task {task.task_id} has no reward left to settle"
            raise RuntimeError(msg)
        settled = self._transition(task, target, reward=0)
        self._store.adjust_custody(-amount)
        return settled, amount

    def _pay(self, recipient: str, amount: int, task_id: int) -> None:
        try:
            ok = self._value_transfer.transfer(recipient, amount)
        except Exception as exc:
            self._logger.warning(
                "Value transfer raised",
                extra={"task_id": task_id, "recipient": recipient, "amount": amount},
            )
            raise TransferFailedError(task_id=task_id, recipient=recipient) from exc
        if not ok:
            self._logger.warning(
                "Value transfer reported failure",
                extra={"task_id": task_id, "recipient": recipient, "amount": amount},
            )
            raise TransferFailedError(task_id=task_id, recipient=recipient)

    def _emit(self, event: LedgerEvent) -> None:
        self._store.append_event(event)

    def _publish(self, events: list[LedgerEvent]) -> None:
        for event in events:
            for subscriber in list(self._subscribers):
                try:
                    subscriber(event)
                except Exception:
                    self._logger.exception(
                        "Event subscriber failed",
                        extra={"event": event.name, "task_id": event.task_id},
                    )

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def post_task(self, ctx: CallContext, description: str) -> int:
        """
        Create an Open task holding ctx.value as its reward.

        Returns:
            The new task id.

        Raises:
            InvalidRewardError: ctx.value is zero or not a positive integer.
            InvalidDescriptionError: description is empty, not a string, not
                encodable as UTF-8, or longer than the configured maximum.
        """
        with self._call():
            if not _is_positive_int(ctx.value):
                raise InvalidRewardError(value=ctx.value)
            if not isinstance(description, str) or len(description) == 0:
                raise InvalidDescriptionError()
            try:
                description.encode("utf-8")
            except UnicodeEncodeError as exc:
                raise InvalidDescriptionError("Description must be valid UTF-8 text") from exc
            if (
                self._max_description_length is not None
                and len(description) > self._max_description_length
            ):
                raise InvalidDescriptionError(
                    f"Description must not exceed {self._max_description_length} characters",
                    max_length=self._max_description_length,
                )

            task = Task(
                task_id=self._store.task_count(),
                poster=ctx.caller,
                worker=None,
                description=description,
                reward=ctx.value,
                status=TaskStatus.OPEN,
                created_at=self._clock(),
                accepted_at=None,
                completed_at=None,
            )
            self._store.insert_task(task)
            self._store.adjust_custody(task.reward)
            self._emit(
                TaskPosted(
                    task_id=task.task_id,
                    poster=task.poster,
                    reward=task.reward,
                    description=task.description,
                )
            )
            return task.task_id

    def accept_task(self, ctx: CallContext, task_id: int) -> None:
        """Assign the caller as worker of an Open task."""
        with self._call():
            task = self._require_task(task_id)
            if task.status is not TaskStatus.OPEN:
                raise TaskNotOpenError(task_id=task_id, status=task.status.value)
            if ctx.caller == task.poster:
                raise SelfAcceptNotAllowedError(task_id=task_id)

            self._transition(
                task,
                TaskStatus.ACCEPTED,
                worker=ctx.caller,
                accepted_at=self._clock(),
            )
            self._emit(TaskAccepted(task_id=task_id, worker=ctx.caller))

    def complete_task(self, ctx: CallContext, task_id: int) -> None:
        """Mark an Accepted task as done; only its worker may call this."""
        with self._call():
            task = self._require_task(task_id)
            if task.worker is None or ctx.caller != task.worker:
                raise NotWorkerError(task_id=task_id)
            if task.status is not TaskStatus.ACCEPTED:
                raise InvalidStateForCompleteError(task_id=task_id, status=task.status.value)

            self._transition(task, TaskStatus.COMPLETED, completed_at=self._clock())
            self._emit(TaskCompleted(task_id=task_id, worker=ctx.caller))

    def confirm_completion(self, ctx: CallContext, task_id: int) -> None:
        """
        Confirm a Completed task and pay its reward to the worker.

        The task is Confirmed with reward 0 before the transfer runs.

        Raises:
            TaskNotFoundError, NotPosterError, InvalidStateForConfirmError,
            TransferFailedError (the whole call is rolled back).
        """
        with self._call():
            task = self._require_task(task_id)
            if ctx.caller != task.poster:
                raise NotPosterError(task_id=task_id)
            if task.status is not TaskStatus.COMPLETED:
                raise InvalidStateForConfirmError(task_id=task_id, status=task.status.value)
            worker = task.worker
            if worker is None:
                msg = f"Completed task {task_id} has no worker"
                raise RuntimeError(msg)

            _, amount = self._settle(task, TaskStatus.CONFIRMED)
            self._emit(
                TaskConfirmed(task_id=task_id, poster=task.poster, worker=worker, reward=amount)
            )
            self._pay(worker, amount, task_id)

    def cancel_task(self, ctx: CallContext, task_id: int) -> None:
        """
        Cancel an Open task and refund its reward to the poster.

        The task is Cancelled with reward 0 before the refund runs.
        """
        with self._call():
            task = self._require_task(task_id)
            if ctx.caller != task.poster:
                raise NotPosterError(task_id=task_id)
            if task.status is not TaskStatus.OPEN:
                raise CancelOnlyWhenOpenError(task_id=task_id, status=task.status.value)

            _, amount = self._settle(task, TaskStatus.CANCELLED)
            self._emit(TaskCancelled(task_id=task_id, canceller=ctx.caller))
            self._pay(task.poster, amount, task_id)

    def withdraw_from_task(self, ctx: CallContext, task_id: int) -> None:
        """Worker gives up an Accepted task; it returns to Open with no worker."""
        with self._call():
            task = self._require_task(task_id)
            if task.worker is None or ctx.caller != task.worker:
                raise NotWorkerError(task_id=task_id)
            if task.status is not TaskStatus.ACCEPTED:
                raise InvalidStateForWithdrawError(task_id=task_id, status=task.status.value)

            self._transition(task, TaskStatus.OPEN, worker=None, accepted_at=None)
            self._emit(WorkerWithdrew(task_id=task_id, worker=ctx.caller))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_task(self, task_id: int) -> Task:
        with self._lock:
            return self._require_task(task_id)

    def get_open_tasks(self) -> list[int]:
        with self._lock:
            return [t.task_id for t in self._store.iter_tasks() if t.status is TaskStatus.OPEN]

    def get_tasks_by_poster(self, poster: str) -> list[int]:
        with self._lock:
            return [t.task_id for t in self._store.iter_tasks() if t.poster == poster]

    def get_tasks_by_worker(self, worker: str) -> list[int]:
        with self._lock:
            return [t.task_id for t in self._store.iter_tasks() if t.worker == worker]

    @property
    def task_count(self) -> int:
        with self._lock:
            return self._store.task_count()

    @property
    def custody_balance(self) -> int:
        with self._lock:
            return self._store.custody_balance()

    def get_stats(self) -> dict[str, Any]:
        """Task totals for the health endpoint; every status is present."""
        with self._lock:
            counts = self._store.count_tasks_by_status()
            return {
                "total_tasks": self._store.task_count(),
                "tasks_by_status": {
                    status.value: counts.get(status.value, 0) for status in TaskStatus
                },
            }

    def get_events(self, offset: int = 0, limit: int | None = None) -> list[LedgerEvent]:
        with self._lock:
            return self._store.get_events(offset, limit)

    def subscribe(self, callback: Callable[[LedgerEvent], None]) -> None:
        """Call callback with each event once the outermost call that emitted it commits."""
        with self._lock:
            self._subscribers.append(callback)

    def close(self) -> None:
        with self._lock:
            self._store.close()

