"""
Global exception handlers for the FitCoach API.
Every error leaves the API with the same body shape: detail, code, optional field/metadata.
"""

import logging
import uuid
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.exceptions import AppException, ErrorCode

logger = logging.getLogger(__name__)

STATUS_TO_CODE = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTH_NOT_AUTHENTICATED,
    403: ErrorCode.AUTHZ_FORBIDDEN,
    404: ErrorCode.RESOURCE_NOT_FOUND,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    500: ErrorCode.SERVER_ERROR,
    502: ErrorCode.SERVER_UNAVAILABLE,
    503: ErrorCode.SERVER_UNAVAILABLE,
}


def generate_request_id() -> str:
    """Generate a short request ID for error tracing"""
    return str(uuid.uuid4())[:8]


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException and its subclasses with their own status and code."""
    request_id = generate_request_id()

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "AppException: %s (code=%s, status=%d, request_id=%s, path=%s)",
        exc.message,
        exc.code.value,
        exc.status_code,
        request_id,
        request.url.path,
    )

    headers = {"X-Request-ID": request_id}
    if exc.code == ErrorCode.STORE_UNAVAILABLE:
        headers["Retry-After"] = "5"

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic request validation errors, keeping field locations."""
    request_id = generate_request_id()

    logger.warning(
        "ValidationError: %s (request_id=%s, path=%s)",
        exc.errors(),
        request_id,
        request.url.path,
    )

    errors = [
        {
            "loc": list(error["loc"]),
            "msg": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    response_body: dict[str, Any] = {
        "detail": errors,
        "code": ErrorCode.VALIDATION_ERROR.value,
    }

    return JSONResponse(
        status_code=422,
        content=response_body,
        headers={"X-Request-ID": request_id},
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Convert FastAPI/Starlette HTTP exceptions to the standard body."""
    request_id = generate_request_id()
    error_code = STATUS_TO_CODE.get(exc.status_code, ErrorCode.SERVER_ERROR)

    logger.warning(
        "HTTPException: %s (status=%d, request_id=%s, path=%s)",
        exc.detail,
        exc.status_code,
        request_id,
        request.url.path,
    )

    response_body: dict[str, Any] = {
        "detail": exc.detail or "An error occurred",
        "code": error_code.value,
    }

    headers = {"X-Request-ID": request_id}
    if exc.headers:
        headers.update(exc.headers)

    return JSONResponse(
        status_code=exc.status_code,
        content=response_body,
        headers=headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler: log with traceback, answer with a generic 500."""
    request_id = generate_request_id()

    logger.exception(
        "Unhandled exception (request_id=%s, path=%s): %s",
        request_id,
        request.url.path,
        str(exc),
    )

    response_body: dict[str, Any] = {
        "detail": "Something went wrong on our side. Please try again later.",
        "code": ErrorCode.SERVER_ERROR.value,
    }

    return JSONResponse(
        status_code=500,
        content=response_body,
        headers={"X-Request-ID": request_id},
    )
