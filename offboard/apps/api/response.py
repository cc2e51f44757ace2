from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel

from offboard.core.errors import OffboardError


API_VERSION = "v1"
API_PREFIX = f"/{API_VERSION}"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    """Body of every successful ``/v1`` response."""

    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    """Correlation id for audit rows and envelopes; fixed once per request."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or uuid4().hex
    request.state.request_id = request_id
    return request_id


def wants_envelope(request: Request) -> bool:
    # Unversioned legacy paths (/health) keep bare bodies.
    return request.url.path.startswith(API_PREFIX)


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    if not wants_envelope(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details or None)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}


def offboard_error_response(request: Request, exc: OffboardError) -> dict[str, Any]:
    return error_response(request=request, code=exc.code, message=exc.message, details=exc.details)
