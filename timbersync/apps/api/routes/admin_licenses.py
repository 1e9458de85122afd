from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db, require_admin
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.apps.api.routes.licenses import DeviceInfo, to_device_info
from timbersync.core.config import APP_SCOPE_ANY
from timbersync.core.errors import NotFoundError
from timbersync.core.timeutil import as_utc
from timbersync.domain.models import License
from timbersync.domain.principal import Principal
from timbersync.services.audit import record_event
from timbersync.services.licensing import activation, registry
from timbersync.services.licensing.registry import LicenseSpec


router = APIRouter(prefix="/admin/licenses", tags=["admin-licenses"], responses=DEFAULT_ERROR_RESPONSES)


class LicenseResponse(BaseModel):
    id: str
    license_key: str
    owner_user_id: str | None
    owner_username: str | None = None
    company_id: str | None
    app_id: str
    max_devices: int
    grace_period_days: int
    expires_at: datetime | None
    is_active: bool
    notes: str | None
    active_devices: int | None = None
    created_at: datetime | None = None


class LicenseCreateRequest(BaseModel):
    owner_user_id: str | None = None
    company_id: str | None = None
    app_id: str = APP_SCOPE_ANY
    max_devices: int | None = Field(default=None, ge=1)
    grace_period_days: int | None = Field(default=None, ge=0)
    expires_at: datetime | None = None
    is_active: bool = True
    notes: str | None = None


class LicenseUpdateRequest(BaseModel):
    owner_user_id: str | None = None
    company_id: str | None = None
    app_id: str | None = None
    max_devices: int | None = Field(default=None, ge=1)
    grace_period_days: int | None = Field(default=None, ge=0)
    expires_at: datetime | None = None
    is_active: bool | None = None
    notes: str | None = None


class LicenseListResponse(BaseModel):
    licenses: list[LicenseResponse]
    total: int


class DeviceListResponse(BaseModel):
    license_id: str
    devices: list[DeviceInfo]
    total: int


class DeletedResponse(BaseModel):
    deleted: bool


def _to_license_response(
    license: License,
    *,
    active_devices: int | None = None,
    owner_username: str | None = None,
) -> LicenseResponse:
    return LicenseResponse(
        id=license.id,
        license_key=license.license_key,
        owner_user_id=license.owner_user_id,
        owner_username=owner_username,
        company_id=license.company_id,
        app_id=license.app_id,
        max_devices=license.max_devices,
        grace_period_days=license.grace_period_days,
        expires_at=as_utc(license.expires_at),
        is_active=license.is_active,
        notes=license.notes,
        active_devices=active_devices,
        created_at=as_utc(license.created_at),
    )


@router.get("", response_model=SuccessEnvelope[LicenseListResponse] | LicenseListResponse)
async def list_licenses(
    request: Request,
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summaries = await registry.list_licenses(db)
    licenses = [
        _to_license_response(
            item.license,
            active_devices=item.active_devices,
            owner_username=item.owner_username,
        )
        for item in summaries
    ]
    return success_response(request=request, data=LicenseListResponse(licenses=licenses, total=len(licenses)))


@router.post("", status_code=201, response_model=SuccessEnvelope[LicenseResponse] | LicenseResponse)
async def create_license(
    request: Request,
    payload: LicenseCreateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    license = await registry.create_license(db, LicenseSpec(**payload.model_dump()))
    await record_event(
        event_type="license.created",
        outcome="success",
        principal=admin,
        resource_type="license",
        resource_id=license.id,
        request=request,
        metadata={
            "company_id": license.company_id,
            "app_id": license.app_id,
            "max_devices": license.max_devices,
        },
    )
    return success_response(request=request, data=_to_license_response(license, active_devices=0))


@router.patch("/{license_id}", response_model=SuccessEnvelope[LicenseResponse] | LicenseResponse)
async def update_license(
    license_id: str,
    request: Request,
    payload: LicenseUpdateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    license = await registry.update_license(db, license_id, changes)
    await record_event(
        event_type="license.updated",
        outcome="success",
        principal=admin,
        resource_type="license",
        resource_id=license_id,
        request=request,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=_to_license_response(license))


@router.delete("/{license_id}", response_model=SuccessEnvelope[DeletedResponse] | DeletedResponse)
async def delete_license(
    license_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await registry.delete_license(db, license_id)
    if not deleted:
        raise NotFoundError("License not found", resource="license", identity=license_id)
    await record_event(
        event_type="license.deleted",
        outcome="success",
        principal=admin,
        resource_type="license",
        resource_id=license_id,
        request=request,
    )
    return success_response(request=request, data=DeletedResponse(deleted=True))


@router.get(
    "/{license_id}/devices",
    response_model=SuccessEnvelope[DeviceListResponse] | DeviceListResponse,
)
async def list_license_devices(
    license_id: str,
    request: Request,
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await registry.require_license(db, license_id)
    devices = [to_device_info(item) for item in await activation.list_devices(db, license_id)]
    return success_response(
        request=request,
        data=DeviceListResponse(license_id=license_id, devices=devices, total=len(devices)),
    )


@router.delete(
    "/{license_id}/devices/{device_row_id}",
    response_model=SuccessEnvelope[DeletedResponse] | DeletedResponse,
)
async def remove_license_device(
    license_id: str,
    device_row_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    removed = await activation.remove_device(db, license_id, device_row_id)
    if not removed:
        raise NotFoundError("Device not found", resource="license_device", identity=device_row_id)
    await record_event(
        event_type="license.device.removed",
        outcome="success",
        principal=admin,
        resource_type="license_device",
        resource_id=device_row_id,
        request=request,
        metadata={"license_id": license_id},
    )
    return success_response(request=request, data=DeletedResponse(deleted=True))
