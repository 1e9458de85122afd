from __future__ import annotations

from typing import Any

from timbersync.apps.api.response import ErrorEnvelope


def _error_example(
    *,
    code: str,
    message: str,
    retryable: bool = False,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message, "retryable": retryable},
        "meta": {
            "request_id": "req_example",
            "api_version": "v1",
            "server_time": "2025-05-14T08:00:00Z",
        },
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
    400: _response("Bad request", _error_example(code="BAD_REQUEST", message="Bad request")),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(
            code="LICENSE_DENIED",
            message="device limit reached",
            details={"reason": "device limit reached", "max_devices": 3},
        ),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    409: _response(
        "Conflict",
        _error_example(
            code="CONFLICT",
            message="Username already exists",
            details={"field": "username", "value": "jdoe"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    503: _response(
        "Service unavailable",
        _error_example(
            code="SERVICE_UNAVAILABLE",
            message="verification failed",
            retryable=True,
            details={"valid": False, "should_retry": True},
        ),
    ),
}
