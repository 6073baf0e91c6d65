"""Task record, lifecycle status and call context."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, assert_never

if TYPE_CHECKING:
    from datetime import datetime


class TaskStatus(StrEnum):
    """
    Lifecycle status of a task.

    Open -> Accepted -> Completed -> Confirmed, with Accepted -> Open on
    withdrawal and Open -> Cancelled. Confirmed and Cancelled are terminal.
    """

    OPEN = "open"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        match self:
            case TaskStatus.OPEN | TaskStatus.ACCEPTED | TaskStatus.COMPLETED:
                return False
            case TaskStatus.CONFIRMED | TaskStatus.CANCELLED:
                return True
            case _:
                assert_never(self)

    def allowed_transitions(self) -> frozenset[TaskStatus]:
        """Statuses reachable from this one in a single operation."""
        match self:
            case TaskStatus.OPEN:
                return frozenset({TaskStatus.ACCEPTED, TaskStatus.CANCELLED})
            case TaskStatus.ACCEPTED:
                return frozenset({TaskStatus.COMPLETED, TaskStatus.OPEN})
            case TaskStatus.COMPLETED:
                return frozenset({TaskStatus.CONFIRMED})
            case TaskStatus.CONFIRMED | TaskStatus.CANCELLED:
                return frozenset()
            case _:
                assert_never(self)

    def can_transition_to(self, target: TaskStatus) -> bool:
        return target in self.allowed_transitions()


@dataclass(frozen=True)
class CallContext:
    """
    Ambient context of a single ledger call.

    caller is the immediate caller's identity; value is the native value
    the caller attached to the call (only post_task accepts one).
    """

    caller: str
    value: int = 0


@dataclass(frozen=True)
class Task:
    """Immutable snapshot of a task record."""

    task_id: int
    poster: str
    worker: str | None
    description: str
    reward: int
    status: TaskStatus
    created_at: datetime
    accepted_at: datetime | None
    completed_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses (timestamps as ISO 8601 with Z suffix)."""
        return {
            "task_id": self.task_id,
            "poster": self.poster,
            "worker": self.worker,
            "description": self.description,
            "reward": self.reward,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "accepted_at": format_timestamp(self.accepted_at),
            "completed_at": format_timestamp(self.completed_at),
        }


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")
