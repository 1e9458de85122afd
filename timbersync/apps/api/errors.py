from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from timbersync.apps.api.response import RETRYABLE_STATUSES, error_response, is_versioned_request
from timbersync.core.errors import (
    AuthenticationError,
    AuthorizationDenied,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationFailure,
)
from timbersync.persistence.guards import CompanyPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details are either plain strings or {"code", "message", ...context}.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    retryable: bool | None = None,
) -> JSONResponse:
    if retryable is None:
        retryable = status_code in RETRYABLE_STATUSES
    if not is_versioned_request(request):
        content: dict[str, Any] = {"detail": message}
    else:
        content = error_response(
            request=request,
            code=code,
            message=message,
            retryable=retryable,
            details=details,
        )
    return JSONResponse(content=jsonable_encoder(content), status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return await starlette_http_exception_handler(request, exc)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content=jsonable_encoder({"detail": exc.errors()}), status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=jsonable_encoder(payload), status_code=422)


async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    return _render(
        request,
        status_code=401,
        code="AUTH_UNAUTHORIZED",
        message=str(exc),
        headers={"WWW-Authenticate": "Bearer"},
    )


async def authorization_denied_handler(request: Request, exc: AuthorizationDenied) -> JSONResponse:
    # Keep the machine-readable reason next to any context (max_devices, valid_for, expiry).
    details = {"reason": exc.reason, **exc.context}
    return _render(request, status_code=403, code=exc.code, message=exc.reason, details=details)


async def validation_failure_handler(request: Request, exc: ValidationFailure) -> JSONResponse:
    return _render(request, status_code=400, code="BAD_REQUEST", message=str(exc))


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    details = {"resource": exc.resource} if exc.resource else None
    return _render(request, status_code=404, code="NOT_FOUND", message=str(exc), details=details)


async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    details = {key: value for key, value in {"field": exc.field, "value": exc.value}.items() if value}
    details.update(exc.context)
    return _render(request, status_code=409, code="CONFLICT", message=str(exc), details=details or None)


async def infrastructure_error_handler(request: Request, exc: InfrastructureError) -> JSONResponse:
    logger.error("infrastructure_error path=%s message=%s", request.url.path, exc, exc_info=exc.__cause__)
    return _render(
        request,
        status_code=503,
        code="SERVICE_UNAVAILABLE",
        message=str(exc),
        retryable=exc.retryable,
    )


async def company_predicate_exception_handler(request: Request, exc: CompanyPredicateError) -> JSONResponse:
    # A missing company scope is a programming error; fail closed without leaking data.
    return _render(request, status_code=500, code="COMPANY_PREDICATE_REQUIRED", message=exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _render(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
