from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from offboard.apps.api.response import error_response, offboard_error_response, wants_envelope
from offboard.core.errors import (
    CoolingOffNotElapsedError,
    DeletionBlockedError,
    DeletionNotFoundError,
    ForeignTenantError,
    InvalidStateError,
    InvalidTenantIdError,
    OffboardError,
    SelfApprovalError,
)
from offboard.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

# Most specific class first.
_OFFBOARD_STATUS: tuple[tuple[type[OffboardError], int], ...] = (
    (InvalidTenantIdError, 400),
    (SelfApprovalError, 403),
    (ForeignTenantError, 403),
    (DeletionNotFoundError, 404),
    (DeletionBlockedError, 409),
    (CoolingOffNotElapsedError, 409),
    (InvalidStateError, 409),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for_error(exc: OffboardError) -> int:
    for error_cls, status_code in _OFFBOARD_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a {code, message, ...} dict or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not wants_envelope(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not wants_envelope(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def offboard_exception_handler(request: Request, exc: OffboardError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("offboard_error_unmapped code=%s path=%s", exc.code, request.url.path, exc_info=exc)
    payload = offboard_error_response(request, exc)
    return JSONResponse(content=payload, status_code=status_code)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # An unscoped tenant query is a programming error; never expose which table.
    logger.error("tenant_predicate_missing path=%s message=%s", request.url.path, exc.message)
    payload = error_response(request=request, code="TENANT_SCOPE_REQUIRED", message="Tenant scope required")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    if not wants_envelope(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)

