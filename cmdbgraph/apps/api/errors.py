from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from cmdbgraph.apps.api.response import error_response
from cmdbgraph.core.errors import (
    CmdbError,
    CmdbValidationError,
    ConstraintViolationError,
    EntityNotFoundError,
    IdentityUnresolvableError,
    ManagedDeleteBlockedError,
    TenantRequiredError,
    TraversalCancelledError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first isinstance match wins.
_CMDB_STATUS: tuple[tuple[type[CmdbError], int], ...] = (
    (TenantRequiredError, 400),
    (CmdbValidationError, 422),
    (IdentityUnresolvableError, 422),
    (EntityNotFoundError, 404),
    (ManagedDeleteBlockedError, 409),
    (ConstraintViolationError, 409),
    (TraversalCancelledError, 408),
)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"), detail, None
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"), "Request failed", None


def status_for(exc: CmdbError) -> int:
    for error_type, status_code in _CMDB_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def cmdb_exception_handler(request: Request, exc: CmdbError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info("cmdb_request_rejected path=%s code=%s status=%s", request.url.path, exc.code, status_code)
    payload = error_response(request=request, code=exc.code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def store_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Store failures are not retried here; clients see a transient 503.
    logger.exception("cmdb_store_failure path=%s", request.url.path)
    payload = error_response(request=request, code="STORE_UNAVAILABLE", message="Backing store unavailable")
    return JSONResponse(content=payload, status_code=503)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("cmdb_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
