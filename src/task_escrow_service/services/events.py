"""Structured notifications emitted by successful ledger operations."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar


@dataclass(frozen=True)
class LedgerEvent:
    """Base class; every mutating operation emits exactly one subclass instance."""

    name: ClassVar[str]

    task_id: int

    def fields(self) -> dict[str, Any]:
        return asdict(self)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.name, **self.fields()}


@dataclass(frozen=True)
class TaskPosted(LedgerEvent):
    name: ClassVar[str] = "TaskPosted"

    poster: str
    reward: int
    description: str


@dataclass(frozen=True)
class TaskAccepted(LedgerEvent):
    name: ClassVar[str] = "TaskAccepted"

    worker: str


@dataclass(frozen=True)
class TaskCompleted(LedgerEvent):
    name: ClassVar[str] = "TaskCompleted"

    worker: str


@dataclass(frozen=True)
class TaskConfirmed(LedgerEvent):
    """reward is the amount paid out, captured before the task's reward was zeroed."""

    name: ClassVar[str] = "TaskConfirmed"

    poster: str
    worker: str
    reward: int


@dataclass(frozen=True)
class TaskCancelled(LedgerEvent):
    name: ClassVar[str] = "TaskCancelled"

    canceller: str


@dataclass(frozen=True)
class WorkerWithdrew(LedgerEvent):
    name: ClassVar[str] = "WorkerWithdrew"

    worker: str


EVENT_TYPES: dict[str, type[LedgerEvent]] = {
    event_type.name: event_type
    for event_type in (
        TaskPosted,
        TaskAccepted,
        TaskCompleted,
        TaskConfirmed,
        TaskCancelled,
        WorkerWithdrew,
    )
}


def event_from_record(name: str, fields: dict[str, Any]) -> LedgerEvent:
    """Rebuild an event from its stored name and field mapping."""
    event_type = EVENT_TYPES.get(name)
    if event_type is None:
        msg = f"Unknown ledger event: {name}"
        raise ValueError(msg)
    return event_type(**fields)
