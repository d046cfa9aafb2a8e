"""Domain error taxonomy and HTTP error handling."""

import logging
import re
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

# Regex to detect internal paths (Unix/Linux focus for container env)
_PATH_PATTERN = re.compile(r"(\/(?:app|home|var|tmp|usr|etc|opt|root)\/[\w\-\.\/]+)")


class ServiceError(Exception):
    """Base for typed, per-job failures surfaced to callers as ``{code, message}``."""

    code = "service_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class RequestError(ServiceError):
    """Rejected before any ledger mutation."""

    code = "invalid_body"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class FundingError(ServiceError):
    """Account missing or underfunded; nothing was created."""

    code = "debit_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Debit failed"


class LedgerError(ServiceError):
    code = "ledger_error"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Ledger operation rejected"


class SettlementError(ServiceError):
    """The executor ran but its outcome could not be written back."""

    code = "settlement_failed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Job result could not be recorded; it will be reconciled"

    def __init__(
        self,
        message: str | None = None,
        *,
        job_id: str | None = None,
        outcome: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.job_id = job_id
        # Terminal status plus output_url or error, for an operator to apply with `settle`
        self.outcome = outcome or {}


def sanitize_message(msg: str) -> str:
    """
    Sanitize string messages to prevent leaking internal details.
    """
    if _PATH_PATTERN.search(msg):
        return _PATH_PATTERN.sub("[INTERNAL_PATH]", msg)
    return msg


def error_payload(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": sanitize_message(message)}}


def create_error_response(status_code: int, message: str, error_code: str = "error") -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_payload(error_code, message))


async def service_error_handler(request: Request, exc: ServiceError):
    """
    Render typed domain errors with their own code and status.
    """
    return create_error_response(exc.status_code, exc.message, exc.code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Handle explicit HTTP exceptions (e.g. 401, 404).
    """
    codes = {
        status.HTTP_401_UNAUTHORIZED: "unauthorized",
        status.HTTP_403_FORBIDDEN: "forbidden",
        status.HTTP_404_NOT_FOUND: "not_found",
        status.HTTP_429_TOO_MANY_REQUESTS: "rate_limited",
    }
    response = create_error_response(
        exc.status_code,
        str(exc.detail),
        codes.get(exc.status_code, "http_error"),
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors.
    """
    sanitized_errors = []
    for err in exc.errors():
        loc = ".".join([str(x) for x in err.get("loc", [])])
        msg = err.get("msg", "Invalid input")
        sanitized_errors.append(f"{loc}: {msg}")

    error_msg = "; ".join(sanitized_errors)
    return create_error_response(status.HTTP_400_BAD_REQUEST, f"Invalid payload: {error_msg}", "invalid_body")


async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """
    Handle database errors. Log the full error, return generic message.
    """
    logger.exception("Database error occurred", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "A database error occurred. Please try again later.",
        "db_error",
    )


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    """
    logger.exception("Unhandled exception", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An internal server error occurred.",
        "internal_error",
    )


def register_exception_handlers(app: FastAPI):
    """
    Registrar for all exception handlers.
    """
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
