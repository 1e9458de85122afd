from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from timbersync.domain.models import LicenseDevice
from timbersync.persistence.db import SessionLocal
from timbersync.services.licensing.activation import (
    REASON_EXPIRED,
    REASON_INACTIVE,
    REASON_INVALID_KEY,
    REASON_NOT_ACTIVATED,
    REASON_VERIFICATION_FAILED,
    Invalid,
    Valid,
    activate_device,
    verify_device,
)
from timbersync.services.licensing.registry import update_license
from timbersync.tests.utils.auth import create_test_company, create_test_license


async def _verify(license_key: str, device_id: str, *, now: datetime | None = None):
    async with SessionLocal() as session:
        return await verify_device(session, license_key=license_key, device_id=device_id, now=now)


async def _activate(license_key: str, device_id: str, *, now: datetime) -> None:
    async with SessionLocal() as session:
        await activate_device(session, license_key=license_key, device_id=device_id, now=now)


@pytest.mark.asyncio
async def test_verify_refreshes_last_seen() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id)
    activated_at = datetime(2025, 3, 1, tzinfo=timezone.utc)
    verified_at = datetime(2025, 3, 4, tzinfo=timezone.utc)
    await _activate(license.license_key, "device-a", now=activated_at)

    # Keys are accepted regardless of case and surrounding whitespace.
    result = await _verify(f"  {license.license_key.lower()} ", "device-a", now=verified_at)

    assert isinstance(result, Valid)
    assert result.verified_at == verified_at
    async with SessionLocal() as session:
        device = (
            await session.execute(select(LicenseDevice).where(LicenseDevice.device_id == "device-a"))
        ).scalar_one()
        assert device.last_seen.replace(tzinfo=timezone.utc) == verified_at


@pytest.mark.asyncio
async def test_verify_ignores_grace_period() -> None:
    company_id = await create_test_company()
    license = await create_test_license(
        company_id=company_id,
        grace_period_days=7,
        expires_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    await _activate(license.license_key, "device-a", now=datetime(2024, 12, 30, tzinfo=timezone.utc))

    result = await _verify(license.license_key, "device-a", now=datetime(2025, 1, 3, tzinfo=timezone.utc))

    assert isinstance(result, Invalid)
    assert result.reason == REASON_EXPIRED
    assert not result.retryable
    assert result.context["expired_at"].startswith("2025-01-01")


@pytest.mark.asyncio
async def test_verify_reports_specific_reasons() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id)
    await _activate(license.license_key, "device-a", now=datetime.now(timezone.utc))

    unknown_key = await _verify("TBR-ZZZZ-ZZZZ-ZZZZ-ZZZZ", "device-a")
    unknown_device = await _verify(license.license_key, "device-b")
    assert isinstance(unknown_key, Invalid) and unknown_key.reason == REASON_INVALID_KEY
    assert isinstance(unknown_device, Invalid) and unknown_device.reason == REASON_NOT_ACTIVATED

    async with SessionLocal() as session:
        await update_license(session, license.id, {"is_active": False})
    deactivated = await _verify(license.license_key, "device-a")
    assert isinstance(deactivated, Invalid)
    assert deactivated.reason == REASON_INACTIVE
    assert not deactivated.retryable


@pytest.mark.asyncio
async def test_datastore_outage_is_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id)
    await _activate(license.license_key, "device-a", now=datetime(2025, 3, 1, tzinfo=timezone.utc))

    async def _unavailable(*args, **kwargs):
        raise OperationalError("SELECT licenses", {}, Exception("database is down"))

    async with SessionLocal() as session:
        monkeypatch.setattr(session, "execute", _unavailable)
        result = await verify_device(session, license_key=license.license_key, device_id="device-a")

    assert isinstance(result, Invalid)
    assert result.retryable is True
    assert result.reason == REASON_VERIFICATION_FAILED
