"""Typed errors and the exception handlers that render them."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """Error carrying a machine-readable code, an HTTP status and details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any],
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details = details


# ---------------------------------------------------------------------------
# Ledger errors
# ---------------------------------------------------------------------------


class LedgerError(ServiceError):
    """
    Base class for errors raised by TaskLedger operations.

    Subclasses fix the code, status and default message; callers only
    supply details. Every LedgerError aborts the whole call.
    """

    code: ClassVar[str] = "LEDGER_ERROR"
    http_status: ClassVar[int] = 400
    default_message: ClassVar[str] = "Ledger operation failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(
            self.code,
            message if message is not None else self.default_message,
            self.http_status,
            details,
        )


class TaskNotFoundError(LedgerError):
    code = "TASK_NOT_FOUND"
    http_status = 404
    default_message = "Task not found"


class AuthorizationError(LedgerError):
    """Caller is not allowed to perform the operation on this task."""

    http_status = 403


class NotPosterError(AuthorizationError):
    code = "NOT_POSTER"
    default_message = "Only the poster can perform this operation"


class NotWorkerError(AuthorizationError):
    code = "NOT_WORKER"
    default_message = "Only the assigned worker can perform this operation"


class SelfAcceptNotAllowedError(AuthorizationError):
    code = "SELF_ACCEPT_NOT_ALLOWED"
    default_message = "Poster cannot accept their own task"


class InvalidStateError(LedgerError):
    """Task status does not permit the requested transition."""

    http_status = 409


class TaskNotOpenError(InvalidStateError):
    code = "TASK_NOT_OPEN"
    default_message = "Task is not open"


class InvalidStateForCompleteError(InvalidStateError):
    code = "INVALID_STATE_FOR_COMPLETE"
    default_message = "Task must be accepted to be completed"


class InvalidStateForConfirmError(InvalidStateError):
    code = "INVALID_STATE_FOR_CONFIRM"
    default_message = "Task must be completed to be confirmed"


class CancelOnlyWhenOpenError(InvalidStateError):
    code = "CANCEL_ONLY_WHEN_OPEN"
    default_message = "Task can only be cancelled while open"


class InvalidStateForWithdrawError(InvalidStateError):
    code = "INVALID_STATE_FOR_WITHDRAW"
    default_message = "Worker can only withdraw from an accepted task"


class InvalidInputError(LedgerError):
    """Call arguments failed validation."""

    http_status = 400


class InvalidRewardError(InvalidInputError):
    code = "INVALID_REWARD"
    default_message = "Reward must be a positive integer"


class InvalidDescriptionError(InvalidInputError):
    code = "INVALID_DESCRIPTION"
    default_message = "Description must be a non-empty string"


class TransferFailedError(LedgerError):
    code = "TRANSFER_FAILED"
    http_status = 502
    default_message = "Value transfer failed"


class InsufficientFundsError(ServiceError):
    """Raised by the host when a caller cannot cover the value attached to a call."""

    def __init__(self, account: str, required: int, available: int) -> None:
        super().__init__(
            "INSUFFICIENT_FUNDS",
            "Insufficient funds to cover the attached value",
            402,
            {"account": account, "required": required, "available": available},
        )


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
