from __future__ import annotations

from typing import Any

from offboard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Invalid tenant id",
        _error_example(code="INVALID_TENANT_ID", message="Invalid tenant id: 'bad id!'"),
    ),
    401: _response(
        "Unknown operator",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Actor-Id header is required"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="SELF_APPROVAL", message="Requester cannot approve their own deletion request"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Deletion request 42 not found")),
    409: _response(
        "Conflict",
        _error_example(
            code="COOLING_OFF_NOT_ELAPSED",
            message="Cooling-off period has not elapsed; retry in 11.5 hours",
            details={"remaining_hours": 11.5},
        ),
    ),
    422: _response("Validation error", _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error")),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
}
