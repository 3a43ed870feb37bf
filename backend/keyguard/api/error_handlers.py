"""
Custom exception handlers for FastAPI.
Maps domain errors to clear JSON responses and reports unexpected ones.
"""

import logging

import sentry_sdk
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from keyguard.core.config import settings
from keyguard.core.exceptions import KeyNotFoundError, ValidationError

logger = logging.getLogger(__name__)


def key_validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=HTTP_400_BAD_REQUEST,
        content={
            "error": exc.message,
            "fieldErrors": exc.field_errors,
        },
    )


def key_not_found_exception_handler(request: Request, exc: KeyNotFoundError):
    return JSONResponse(
        status_code=HTTP_404_NOT_FOUND,
        content={"error": str(exc)},
    )


def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Echoing the body back could leak a submitted key
    errors = [{k: v for k, v in err.items() if k not in ("input", "ctx")} for err in exc.errors()]
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": errors,
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if settings.SENTRY_DSN:
        sentry_sdk.capture_exception(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(ValidationError, key_validation_exception_handler)
    app.add_exception_handler(KeyNotFoundError, key_not_found_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
