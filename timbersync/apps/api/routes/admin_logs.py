from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db, require_admin
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.core.timeutil import as_utc
from timbersync.domain.principal import Principal
from timbersync.services.audit import list_events
from timbersync.services.sync import list_sync_logs


router = APIRouter(prefix="/admin", tags=["admin-logs"], responses=DEFAULT_ERROR_RESPONSES)


class SyncLogResponse(BaseModel):
    id: int
    occurred_at: datetime
    device_id: str
    company_id: str | None
    license_id: str | None
    sessions_received: int
    sessions_created: int
    sessions_updated: int
    sessions_failed: int
    measurements_written: int
    outcome: str
    reason: str | None


class SyncLogListResponse(BaseModel):
    items: list[SyncLogResponse]
    count: int


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: datetime
    company_id: str | None
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata: dict[str, Any] | None
    error_code: str | None


class AuditEventListResponse(BaseModel):
    items: list[AuditEventResponse]
    count: int


@router.get("/sync-logs", response_model=SuccessEnvelope[SyncLogListResponse] | SyncLogListResponse)
async def get_sync_logs(
    request: Request,
    device_id: str | None = Query(default=None),
    company_id: str | None = Query(default=None),
    outcome: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_sync_logs(db, device_id=device_id, company_id=company_id, outcome=outcome, limit=limit)
    items = [
        SyncLogResponse(
            id=row.id,
            occurred_at=as_utc(row.occurred_at),
            device_id=row.device_id,
            company_id=row.company_id,
            license_id=row.license_id,
            sessions_received=row.sessions_received,
            sessions_created=row.sessions_created,
            sessions_updated=row.sessions_updated,
            sessions_failed=row.sessions_failed,
            measurements_written=row.measurements_written,
            outcome=row.outcome,
            reason=row.reason,
        )
        for row in rows
    ]
    return success_response(request=request, data=SyncLogListResponse(items=items, count=len(items)))


@router.get(
    "/audit-events",
    response_model=SuccessEnvelope[AuditEventListResponse] | AuditEventListResponse,
)
async def get_audit_events(
    request: Request,
    event_type: str | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_events(db, event_type=event_type, actor_id=actor_id, limit=limit)
    items = [
        AuditEventResponse(
            id=row.id,
            occurred_at=as_utc(row.occurred_at),
            company_id=row.company_id,
            actor_type=row.actor_type,
            actor_id=row.actor_id,
            actor_role=row.actor_role,
            event_type=row.event_type,
            outcome=row.outcome,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            request_id=row.request_id,
            metadata=row.metadata_json,
            error_code=row.error_code,
        )
        for row in rows
    ]
    return success_response(request=request, data=AuditEventListResponse(items=items, count=len(items)))
