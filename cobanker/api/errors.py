"""
Exception handlers mapping the domain error taxonomy onto HTTP responses
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import CobankerError, StorageFailure
from ..logging_config import log_action

logger = logging.getLogger("cobanker.api")

RETRY_AFTER_SECONDS = "1"


def error_body(detail: str, error: str) -> dict:
    return {"detail": detail, "error": error}


async def cobanker_error_handler(request: Request, exc: CobankerError) -> JSONResponse:
    level = "warning" if exc.http_status < 500 else "error"
    log_action(logger, level, exc.message, action="request_failed",
               resource=f"{request.method} {request.url.path}",
               extra={"error": exc.error_code})
    return JSONResponse(status_code=exc.http_status,
                        content=error_body(exc.message, exc.error_code))


async def storage_failure_handler(request: Request, exc: StorageFailure) -> JSONResponse:
    log_action(logger, "error", f"Storage unavailable: {exc.message}", action="request_failed",
               resource=f"{request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=exc.http_status,
        content=error_body("Storage temporarily unavailable, retry later", exc.error_code),
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=400,
                        content=error_body("; ".join(problems) or "Invalid request", "validation_error"))


_HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: "access_denied",
    404: "not_found",
    405: "method_not_allowed",
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), _HTTP_ERROR_CODES.get(exc.status_code, "http_error")),
        headers=getattr(exc, "headers", None),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Full detail goes to the log only
    log_action(logger, "error", f"Unhandled error: {exc!r}", action="request_failed",
               resource=f"{request.method} {request.url.path}", exc_info=True)
    return JSONResponse(status_code=500,
                        content=error_body("Internal server error", "internal_error"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StorageFailure, storage_failure_handler)
    app.add_exception_handler(CobankerError, cobanker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
