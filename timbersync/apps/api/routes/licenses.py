from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.core.errors import AuthorizationDenied
from timbersync.core.timeutil import as_utc
from timbersync.domain.models import License, LicenseDevice
from timbersync.services.licensing.activation import (
    REASON_INVALID_KEY,
    ActivationDenied,
    Invalid,
    activate_device,
    deactivate_device,
    verify_device,
)
from timbersync.services.licensing.registry import license_info


# Public device endpoints: the license key is the credential, no bearer token.
router = APIRouter(prefix="/licenses", tags=["licenses"], responses=DEFAULT_ERROR_RESPONSES)


class ActivateRequest(BaseModel):
    license_key: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    device_name: str | None = None
    device_model: str | None = None
    app_id: str | None = None


class DeviceRequest(BaseModel):
    license_key: str = Field(min_length=1)
    device_id: str = Field(min_length=1)


class LicenseInfo(BaseModel):
    license_key: str
    app_id: str
    company_id: str | None = None
    max_devices: int
    grace_period_days: int
    expires_at: datetime | None
    is_active: bool


class DeviceInfo(BaseModel):
    id: str
    device_id: str
    device_name: str
    device_model: str
    activated_at: datetime
    last_seen: datetime


class ActivateResponse(BaseModel):
    status: str
    message: str
    license: LicenseInfo
    device: DeviceInfo


class VerifyResponse(BaseModel):
    valid: bool
    reason: str | None = None
    should_retry: bool = False
    verified_at: datetime | None = None
    expired_at: datetime | None = None
    license: LicenseInfo | None = None


class DeactivateResponse(BaseModel):
    deactivated: bool


def to_license_info(license: License) -> LicenseInfo:
    return LicenseInfo(
        license_key=license.license_key,
        app_id=license.app_id,
        company_id=license.company_id,
        max_devices=license.max_devices,
        grace_period_days=license.grace_period_days,
        expires_at=as_utc(license.expires_at),
        is_active=license.is_active,
    )


def to_device_info(device: LicenseDevice) -> DeviceInfo:
    return DeviceInfo(
        id=device.id,
        device_id=device.device_id,
        device_name=device.device_name,
        device_model=device.device_model,
        activated_at=as_utc(device.activated_at),
        last_seen=as_utc(device.last_seen),
    )


@router.post("/activate", response_model=SuccessEnvelope[ActivateResponse] | ActivateResponse)
async def activate(
    request: Request,
    payload: ActivateRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await activate_device(
        db,
        license_key=payload.license_key,
        device_id=payload.device_id,
        device_name=payload.device_name,
        device_model=payload.device_model,
        app_id=payload.app_id,
    )
    if isinstance(result, ActivationDenied):
        raise AuthorizationDenied(result.reason, code="LICENSE_DENIED", context=result.context)
    message = "Device activated successfully" if result.status == "activated" else "Device already activated"
    response = ActivateResponse(
        status=result.status,
        message=message,
        license=to_license_info(result.license),
        device=to_device_info(result.device),
    )
    return success_response(request=request, data=response)


@router.post("/verify", response_model=SuccessEnvelope[VerifyResponse] | VerifyResponse)
async def verify(
    request: Request,
    payload: DeviceRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Check a device's license without extending it past nominal expiry.

    Expected failures come back as ``valid=false`` with a reason. A datastore
    failure is a 503 with ``should_retry=true`` so offline clients keep their
    cached license instead of treating it as revoked.
    """
    result = await verify_device(db, license_key=payload.license_key, device_id=payload.device_id)
    if isinstance(result, Invalid):
        if result.retryable:
            raise HTTPException(
                status_code=503,
                detail={
                    "code": "SERVICE_UNAVAILABLE",
                    "message": result.reason,
                    "valid": False,
                    "should_retry": True,
                },
            )
        if result.reason == REASON_INVALID_KEY:
            raise HTTPException(
                status_code=404,
                detail={
                    "code": "LICENSE_NOT_FOUND",
                    "message": "Invalid license key",
                    "valid": False,
                    "should_retry": False,
                },
            )
        response = VerifyResponse(
            valid=False,
            reason=result.reason,
            should_retry=False,
            expired_at=result.context.get("expired_at"),
        )
        return success_response(request=request, data=response)
    response = VerifyResponse(
        valid=True,
        verified_at=result.verified_at,
        license=to_license_info(result.license),
    )
    return success_response(request=request, data=response)


@router.post("/deactivate", response_model=SuccessEnvelope[DeactivateResponse] | DeactivateResponse)
async def deactivate(
    request: Request,
    payload: DeviceRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    removed = await deactivate_device(db, license_key=payload.license_key, device_id=payload.device_id)
    return success_response(request=request, data=DeactivateResponse(deactivated=removed))


@router.get("/info/{license_key}", response_model=SuccessEnvelope[LicenseInfo] | LicenseInfo)
async def info(
    license_key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    details = await license_info(db, license_key)
    return success_response(request=request, data=LicenseInfo(**details))
