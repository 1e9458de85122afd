from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.core.errors import AuthenticationError, AuthorizationDenied
from timbersync.services.sync import (
    OUTCOME_DENIED,
    REASON_NOT_ACTIVATED,
    FieldMeasurement,
    FieldSession,
    sync_field_inventory,
)


# Devices authenticate with their prior activation, not a bearer token.
router = APIRouter(prefix="/sync", tags=["sync"], responses=DEFAULT_ERROR_RESPONSES)


class MeasurementPayload(BaseModel):
    species: str = Field(min_length=1)
    diameter_cm: float = Field(gt=0)
    height_m: float | None = Field(default=None, ge=0)
    volume_m3: float | None = Field(default=None, ge=0)
    quality: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    measured_at: datetime | None = None
    extra: dict[str, Any] | None = None


class SessionPayload(BaseModel):
    external_session_key: str = Field(min_length=1)
    inventory_date: date
    name: str | None = None
    location: str | None = None
    operator_name: str | None = None
    notes: str | None = None
    measurements: list[MeasurementPayload] = Field(default_factory=list)


class FieldSyncRequest(BaseModel):
    device_id: str = Field(min_length=1)
    sessions: list[SessionPayload] = Field(default_factory=list)


class FieldSyncResponse(BaseModel):
    outcome: str
    company_id: str | None
    sessions_received: int
    sessions_created: int
    sessions_updated: int
    sessions_failed: int
    measurements_written: int
    failed_session_keys: list[str] = Field(default_factory=list)


def _to_field_session(payload: SessionPayload) -> FieldSession:
    return FieldSession(
        external_session_key=payload.external_session_key,
        inventory_date=payload.inventory_date,
        name=payload.name,
        location=payload.location,
        operator_name=payload.operator_name,
        notes=payload.notes,
        measurements=[FieldMeasurement(**item.model_dump()) for item in payload.measurements],
    )


@router.post("/field-inventory", response_model=SuccessEnvelope[FieldSyncResponse] | FieldSyncResponse)
async def sync_inventory(
    request: Request,
    payload: FieldSyncRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await sync_field_inventory(
        db,
        payload.device_id,
        [_to_field_session(item) for item in payload.sessions],
    )
    if result.outcome == OUTCOME_DENIED:
        # An unknown device has no credential at all; every other denial is a license decision.
        if result.reason == REASON_NOT_ACTIVATED:
            raise AuthenticationError("Device not activated")
        raise AuthorizationDenied(result.reason, code="SYNC_DENIED", context=result.context)
    response = FieldSyncResponse(
        outcome=result.outcome,
        company_id=result.company_id,
        sessions_received=result.sessions_received,
        sessions_created=result.sessions_created,
        sessions_updated=result.sessions_updated,
        sessions_failed=result.sessions_failed,
        measurements_written=result.measurements_written,
        failed_session_keys=result.failed_keys,
    )
    return success_response(request=request, data=response)
