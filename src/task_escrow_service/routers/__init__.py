"""API routers."""

from task_escrow_service.routers import accounts, events, health, tasks

__all__ = ["accounts", "events", "health", "tasks"]
