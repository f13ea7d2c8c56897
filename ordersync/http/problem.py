"""Problem+JSON utilities and global exception handlers.

Defines the RFC7807 media type and handler callables that produce
application/problem+json responses, including the mapping of the
ordering error taxonomy to HTTP statuses.
"""

from __future__ import annotations

import logging
from http import HTTPStatus

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from ordersync.logic.errors import (
    ChannelDegraded,
    ConstraintViolation,
    NotFound,
    OperationFailed,
    OrderSyncError,
)

PROBLEM_MEDIA_TYPE = "application/problem+json"

logger = logging.getLogger(__name__)

# Single source of truth for error class -> (title, status, retryable)
ERROR_STATUS_MAP = {
    NotFound: ("Not Found", 404, False),
    ConstraintViolation: ("Conflict", 409, True),
    ChannelDegraded: ("Service Unavailable", 503, True),
    OperationFailed: ("Service Unavailable", 503, True),
}


def problem_for(exc: OrderSyncError) -> dict:
    title, status, retryable = ("Internal Server Error", 500, False)
    for cls, mapped in ERROR_STATUS_MAP.items():
        if isinstance(exc, cls):
            title, status, retryable = mapped
            break
    return {
        "type": "about:blank",
        "title": title,
        "status": status,
        "detail": str(exc),
        "code": exc.code,
        "retryable": retryable,
    }


async def handle_ordersync_error(request: Request, exc: OrderSyncError) -> JSONResponse:  # noqa: D401
    problem = problem_for(exc)
    logger.info(
        "error_handler.handle path=%s code=%s status=%s",
        getattr(request.url, "path", ""),
        problem["code"],
        problem["status"],
    )
    headers = {"Retry-After": "1"} if problem["retryable"] and problem["status"] == 503 else None
    return JSONResponse(problem, status_code=problem["status"], media_type=PROBLEM_MEDIA_TYPE, headers=headers)


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:  # noqa: D401
    """Render routing errors (unknown path, wrong method) as problem+json."""
    status_code = int(getattr(exc, "status_code", 500) or 500)
    try:
        title = HTTPStatus(status_code).phrase
    except ValueError:
        title = "Error"
    detail = {
        "title": title,
        "status": status_code,
        "detail": str(exc.detail or ""),
        "code": "not_found" if status_code == 404 else "http_error",
    }
    headers = dict(exc.headers) if isinstance(getattr(exc, "headers", None), dict) else None
    return JSONResponse(detail, status_code=status_code, media_type=PROBLEM_MEDIA_TYPE, headers=headers)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: D401
    problem = {
        "title": "Invalid Request",
        "status": 422,
        "detail": "Request validation failed",
        "code": "validation_failed",
        "errors": [
            {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
            for e in exc.errors()
        ],
    }
    return JSONResponse(problem, status_code=422, media_type=PROBLEM_MEDIA_TYPE)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:  # noqa: D401
    logger.error("unexpected_error path=%s", getattr(request.url, "path", ""), exc_info=exc)
    return JSONResponse({"title": "Internal Server Error", "status": 500}, status_code=500, media_type=PROBLEM_MEDIA_TYPE)


__all__ = [
    "PROBLEM_MEDIA_TYPE",
    "ERROR_STATUS_MAP",
    "problem_for",
    "handle_ordersync_error",
    "handle_http_exception",
    "handle_request_validation_error",
    "handle_unexpected_error",
]
