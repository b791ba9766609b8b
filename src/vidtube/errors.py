"""Typed API errors and the handlers that render them as envelopes."""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Internal Server Error"


class ApiError(HTTPException):
    """Base class for errors raised by account and profile operations."""

    default_status = 500
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, errors: list | None = None) -> None:
        self.message = message or self.default_message
        self.errors = list(errors or [])
        super().__init__(status_code=self.default_status, detail=self.message)


class BadRequestError(ApiError):
    default_status = 400
    default_message = "Bad request"


class UnauthorizedError(ApiError):
    default_status = 401
    default_message = "Unauthorized request"


class NotFoundError(ApiError):
    default_status = 404
    default_message = "Not found"


class ConflictError(ApiError):
    default_status = 409
    default_message = "Conflict"


class InternalError(ApiError):
    default_status = 500
    default_message = "Something went wrong"


def error_envelope(status_code: int, message: str, errors: list | None = None) -> dict:
    return {
        "statusCode": status_code,
        "message": message,
        "errors": errors or [],
        "data": None,
        "success": False,
    }


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.status_code, exc.message, exc.errors),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.status_code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request input as a 400 with per-field messages."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"][1:]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_envelope(400, "Invalid request", errors),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled error on %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(
        status_code=500,
        content=error_envelope(500, GENERIC_ERROR_MESSAGE),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the envelope-rendering handlers on the application."""
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)


def handle_service_error(session, exc: Exception) -> None:
    """Rollback the session and re-raise ``exc`` as an API error."""
    session.rollback()
    if isinstance(exc, ApiError):
        raise exc
    logger.exception("service layer error", exc_info=exc)
    raise InternalError("Database error") from exc
