"""Error taxonomy for Fanverse Studio.

Every domain error carries a stable ErrorCode and the HTTP status the API
layer maps it to. Services raise these; routes never catch them; the
handlers registered by register_exception_handlers() render them.

Two outcomes in the taxonomy are deliberately not exceptions:
  CALLBACK_AMBIGUOUS - a callback that did not resolve a unit; the unit stays in flight
  DUPLICATE_EVENT    - an idempotency-gate short circuit; reported as success
"""

from enum import Enum
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fanverse_studio.common.observability import get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Stable machine-readable error codes."""

    INVALID_REQUEST = "invalid_request"
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    DISPATCH_FAILED = "dispatch_failed"
    PROVIDER_QUERY_FAILED = "provider_query_failed"
    CALLBACK_AMBIGUOUS = "callback_ambiguous"
    DUPLICATE_EVENT = "duplicate_event"


class FanverseError(Exception):
    """Base class for all domain errors."""

    error_code: ErrorCode = ErrorCode.INVALID_REQUEST
    status_code: int = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequestError(FanverseError):
    """Bad request shape or out-of-range value. Raised before any state change."""

    error_code = ErrorCode.INVALID_REQUEST
    status_code = 400


class UnauthenticatedError(FanverseError):
    error_code = ErrorCode.UNAUTHENTICATED
    status_code = 401


class InsufficientCreditsError(FanverseError):
    """Balance is below the amount required. Raised before any state change."""

    error_code = ErrorCode.INSUFFICIENT_CREDITS
    status_code = 402

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(
            f"Not enough credits. Need {required}, have {balance}.",
            balance=balance,
            required=required,
        )
        self.balance = balance
        self.required = required


class ForbiddenError(FanverseError):
    error_code = ErrorCode.FORBIDDEN
    status_code = 403


class NotFoundError(FanverseError):
    error_code = ErrorCode.NOT_FOUND
    status_code = 404


class ProviderUnavailableError(FanverseError):
    """Provider credential or configuration missing. No credits are touched."""

    error_code = ErrorCode.PROVIDER_UNAVAILABLE
    status_code = 500


class DispatchFailedError(FanverseError):
    """A single unit's dispatch failed synchronously (after credits were reserved)."""

    error_code = ErrorCode.DISPATCH_FAILED
    status_code = 502


class ProviderQueryError(FanverseError):
    """A task-status query to the provider failed."""

    error_code = ErrorCode.PROVIDER_QUERY_FAILED
    status_code = 502


def register_exception_handlers(app: FastAPI) -> None:
    """Install JSON renderers for domain and validation errors."""

    @app.exception_handler(FanverseError)
    async def _handle_domain_error(request: Request, exc: FanverseError) -> JSONResponse:
        logger.info(
            "request_rejected",
            path=request.url.path,
            error_code=exc.error_code.value,
            message=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "code": exc.error_code.value, **exc.details},
        )

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request."
        return JSONResponse(
            status_code=400,
            content={"error": message, "code": ErrorCode.INVALID_REQUEST.value},
        )
