from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db, require_app_access, require_company_scope
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.core.config import get_settings
from timbersync.core.timeutil import as_utc
from timbersync.domain.models import InventoryMeasurement, InventorySession
from timbersync.domain.principal import Principal
from timbersync.services import sync as sync_service


router = APIRouter(prefix="/inventory", tags=["inventory"], responses=DEFAULT_ERROR_RESPONSES)

_field_app_access = require_app_access(get_settings().field_app_id)


class InventorySessionResponse(BaseModel):
    id: str
    company_id: str
    device_id: str
    external_session_key: str
    inventory_date: date
    name: str | None
    location: str | None
    operator_name: str | None
    notes: str | None
    tree_count: int
    total_volume_m3: float | None
    synced_at: datetime | None


class InventorySessionListResponse(BaseModel):
    sessions: list[InventorySessionResponse]
    count: int


class MeasurementResponse(BaseModel):
    position: int
    species: str
    diameter_cm: float
    height_m: float | None
    volume_m3: float | None
    quality: str | None
    latitude: float | None
    longitude: float | None
    measured_at: datetime | None
    extra: dict[str, Any] | None = None


class InventorySessionDetailResponse(InventorySessionResponse):
    measurements: list[MeasurementResponse] = Field(default_factory=list)


def _session_fields(row: InventorySession) -> dict[str, Any]:
    return {
        "id": row.id,
        "company_id": row.company_id,
        "device_id": row.device_id,
        "external_session_key": row.external_session_key,
        "inventory_date": row.inventory_date,
        "name": row.name,
        "location": row.location,
        "operator_name": row.operator_name,
        "notes": row.notes,
        "tree_count": row.tree_count,
        "total_volume_m3": row.total_volume_m3,
        "synced_at": as_utc(row.synced_at),
    }


def _to_measurement_response(item: InventoryMeasurement) -> MeasurementResponse:
    return MeasurementResponse(
        position=item.position,
        species=item.species,
        diameter_cm=item.diameter_cm,
        height_m=item.height_m,
        volume_m3=item.volume_m3,
        quality=item.quality,
        latitude=item.latitude,
        longitude=item.longitude,
        measured_at=as_utc(item.measured_at),
        extra=item.extra_json,
    )


@router.get(
    "/sessions",
    response_model=SuccessEnvelope[InventorySessionListResponse] | InventorySessionListResponse,
)
async def list_inventory_sessions(
    request: Request,
    device_id: str | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _principal: Principal = Depends(_field_app_access),
    company_id: str | None = Depends(require_company_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await sync_service.list_sessions(
        db,
        company_id=company_id,
        device_id=device_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    sessions = [InventorySessionResponse(**_session_fields(row)) for row in rows]
    return success_response(
        request=request,
        data=InventorySessionListResponse(sessions=sessions, count=len(sessions)),
    )


@router.get(
    "/sessions/{session_id}",
    response_model=SuccessEnvelope[InventorySessionDetailResponse] | InventorySessionDetailResponse,
)
async def get_inventory_session(
    session_id: str,
    request: Request,
    _principal: Principal = Depends(_field_app_access),
    company_id: str | None = Depends(require_company_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row, measurements = await sync_service.get_session_with_measurements(db, session_id, company_id=company_id)
    payload = InventorySessionDetailResponse(
        **_session_fields(row),
        measurements=[_to_measurement_response(item) for item in measurements],
    )
    return success_response(request=request, data=payload)
