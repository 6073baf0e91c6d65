"""Pydantic request/response models for the API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    custody_balance: int


class TaskResponse(BaseModel):
    """Full task snapshot."""

    model_config = ConfigDict(extra="forbid")
    task_id: int
    poster: str
    worker: str | None
    description: str
    reward: int
    status: Literal["open", "accepted", "completed", "confirmed", "cancelled"]
    created_at: str
    accepted_at: str | None
    completed_at: str | None


class TaskIdListResponse(BaseModel):
    """Ascending task ids matching a view query."""

    model_config = ConfigDict(extra="forbid")
    task_ids: list[int]


class EventListResponse(BaseModel):
    """Response model for GET /events."""

    model_config = ConfigDict(extra="forbid")
    events: list[dict[str, Any]]


class AccountResponse(BaseModel):
    """Native balance and next call nonce of an address."""

    model_config = ConfigDict(extra="forbid")
    address: str
    balance: int
    nonce: int
