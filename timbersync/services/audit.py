from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from timbersync.core.errors import InfrastructureError
from timbersync.core.timeutil import utc_now
from timbersync.domain.models import AuditEvent
from timbersync.domain.principal import Principal
from timbersync.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "license_key"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credentials and license keys while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_event(
    *,
    event_type: str,
    outcome: str,
    principal: Principal | None = None,
    actor_type: str = "user",
    actor_id: str | None = None,
    company_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request: Request | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
) -> None:
    """Append an audit row in its own transaction.

    Audit writes are best effort: a failure is logged and never breaks the
    request that triggered it.
    """
    context = get_request_context(request)
    event = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        company_id=company_id if company_id is not None else (principal.company_id if principal else None),
        actor_type=actor_type if principal is not None or actor_id else "anonymous",
        actor_id=principal.id if principal is not None else actor_id,
        actor_role=principal.role if principal is not None else None,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=context["request_id"],
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    async with SessionLocal() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.warning(
                "audit_event_write_failed event_type=%s request_id=%s",
                event_type,
                context["request_id"],
                exc_info=exc,
            )


async def list_events(
    session: AsyncSession,
    *,
    event_type: str | None = None,
    actor_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    query = select(AuditEvent)
    if event_type:
        query = query.where(AuditEvent.event_type == event_type)
    if actor_id:
        query = query.where(AuditEvent.actor_id == actor_id)
    query = query.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch audit events") from exc
    return list(result.scalars().all())
