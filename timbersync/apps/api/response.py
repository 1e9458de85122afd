"""Envelopes for every ``/v1`` response.

Field devices run offline for days between syncs, so each envelope carries
the server clock (``meta.server_time``) for skew checks against cached
expiry dates, and each error says whether a later attempt can succeed
(``error.retryable``). A device that receives ``retryable=false`` treats the
answer as final; ``retryable=true`` means keep the cached license and retry.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel

from timbersync.core.timeutil import utc_now


API_VERSION = "v1"
API_PREFIX = f"/{API_VERSION}"

# The request itself was acceptable; the server could not answer it right now.
RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    server_time: datetime


class ErrorDetail(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def build_meta(request: Request) -> dict[str, Any]:
    # The request context middleware assigns request_id before routing.
    request_id = getattr(request.state, "request_id", None) or uuid4().hex
    return ResponseMeta(request_id=request_id, server_time=utc_now()).model_dump(mode="json")


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": build_meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    retryable: bool = False,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, retryable=retryable, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": build_meta(request)}
