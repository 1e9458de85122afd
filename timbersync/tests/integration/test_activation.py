from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from timbersync.core.errors import ConflictError, LicenseNotFound
from timbersync.domain.models import LicenseDevice
from timbersync.persistence.db import SessionLocal
from timbersync.services.licensing.activation import (
    REASON_APP_SCOPE_REQUIRED,
    REASON_DEVICE_LIMIT,
    REASON_EXPIRED,
    REASON_INACTIVE,
    REASON_WRONG_APPLICATION,
    Activated,
    ActivationDenied,
    AlreadyActive,
    activate_device,
    deactivate_device,
    list_devices,
)
from timbersync.services.licensing.registry import get_license, update_license
from timbersync.tests.utils.auth import create_test_application, create_test_company, create_test_license


def _at(day: int, month: int = 1, year: int = 2025) -> datetime:
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


async def _activate(license_key: str, device_id: str, *, app_id: str | None = None, now: datetime | None = None):
    async with SessionLocal() as session:
        return await activate_device(
            session,
            license_key=license_key,
            device_id=device_id,
            device_name="Ranger Tablet",
            app_id=app_id,
            now=now,
        )


async def _seat_count(license_id: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count(LicenseDevice.id)).where(LicenseDevice.license_id == license_id)
        )
        return int(result.scalar_one())


@pytest.mark.asyncio
async def test_activation_is_idempotent_per_device() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=1)

    first = await _activate(license.license_key, "device-a", now=_at(5))
    again = await _activate(license.license_key, "device-a", now=_at(9))

    assert isinstance(first, Activated)
    assert isinstance(again, AlreadyActive)
    assert again.device.id == first.device.id
    assert again.device.device_name == "Ranger Tablet"
    assert await _seat_count(license.id) == 1


@pytest.mark.asyncio
async def test_device_limit_scenario() -> None:
    company_id = await create_test_company()
    license = await create_test_license(
        company_id=company_id,
        max_devices=2,
        grace_period_days=7,
        expires_at=_at(1),
    )

    # Expired on Jan 1 but still inside the seven day grace window.
    device_a = await _activate(license.license_key, "A", now=_at(5))
    device_b = await _activate(license.license_key, "B", now=_at(6))
    device_c = await _activate(license.license_key, "C", now=_at(7))

    assert isinstance(device_a, Activated)
    assert isinstance(device_b, Activated)
    assert isinstance(device_c, ActivationDenied)
    assert device_c.reason == REASON_DEVICE_LIMIT
    assert device_c.context == {"max_devices": 2}
    assert await _seat_count(license.id) == 2


@pytest.mark.asyncio
async def test_activation_after_grace_is_denied() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, grace_period_days=7, expires_at=_at(1))

    result = await _activate(license.license_key, "late-device", now=_at(9))

    assert isinstance(result, ActivationDenied)
    assert result.reason == REASON_EXPIRED
    assert result.context["grace_deadline"].startswith("2025-01-08")


@pytest.mark.asyncio
async def test_inactive_license_rejects_new_devices() -> None:
    license = await create_test_license(is_active=False)
    result = await _activate(license.license_key, "device-a")
    assert isinstance(result, ActivationDenied)
    assert result.reason == REASON_INACTIVE


@pytest.mark.asyncio
async def test_app_scoped_license_requires_matching_app() -> None:
    company_id = await create_test_company()
    app_id = await create_test_application("field-inventory")
    await create_test_application("harvest-planner", name="Harvest Planner")
    license = await create_test_license(company_id=company_id, app_id=app_id)

    missing = await _activate(license.license_key, "device-a")
    wrong = await _activate(license.license_key, "device-a", app_id="harvest-planner")
    right = await _activate(license.license_key, "device-a", app_id=app_id)

    assert isinstance(missing, ActivationDenied)
    assert missing.reason == REASON_APP_SCOPE_REQUIRED
    assert isinstance(wrong, ActivationDenied)
    assert wrong.reason == REASON_WRONG_APPLICATION
    assert wrong.context == {"valid_for": app_id}
    assert isinstance(right, Activated)


@pytest.mark.asyncio
async def test_concurrent_activations_never_exceed_quota() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=2)

    results = await asyncio.gather(
        *(_activate(license.license_key, f"device-{index}") for index in range(5))
    )

    admitted = [result for result in results if isinstance(result, Activated)]
    denied = [result for result in results if isinstance(result, ActivationDenied)]
    assert len(admitted) == 2
    assert len(denied) == 3
    assert all(result.reason == REASON_DEVICE_LIMIT for result in denied)
    assert await _seat_count(license.id) == 2


@pytest.mark.asyncio
async def test_deactivation_frees_a_seat() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=1)
    await _activate(license.license_key, "device-a")

    async with SessionLocal() as session:
        assert await deactivate_device(session, license_key=license.license_key, device_id="device-a")
    async with SessionLocal() as session:
        # Repeating the call is harmless.
        assert not await deactivate_device(session, license_key=license.license_key, device_id="device-a")
        assert await list_devices(session, license.id) == []

    replacement = await _activate(license.license_key, "device-b")
    assert isinstance(replacement, Activated)


@pytest.mark.asyncio
async def test_unknown_key_is_not_found() -> None:
    with pytest.raises(LicenseNotFound):
        await _activate("TBR-0000-0000-0000-0000", "device-a")
    async with SessionLocal() as session:
        with pytest.raises(LicenseNotFound):
            await deactivate_device(session, license_key="TBR-0000-0000-0000-0000", device_id="device-a")


@pytest.mark.asyncio
async def test_seat_limit_cannot_drop_below_activated_devices() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=3)
    for device_id in ("device-a", "device-b", "device-c"):
        assert isinstance(await _activate(license.license_key, device_id), Activated)

    async with SessionLocal() as session:
        with pytest.raises(ConflictError) as excinfo:
            await update_license(session, license.id, {"max_devices": 1, "notes": "shrink"})
    async with SessionLocal() as session:
        stored = await get_license(session, license.id)

    assert excinfo.value.context == {"max_devices": 1, "active_devices": 3}
    assert stored.max_devices == 3
    assert stored.notes is None
    assert await _seat_count(license.id) <= stored.max_devices


@pytest.mark.asyncio
async def test_seat_limit_can_shrink_to_activated_devices() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=5)
    await _activate(license.license_key, "device-a")
    await _activate(license.license_key, "device-b")

    async with SessionLocal() as session:
        updated = await update_license(session, license.id, {"max_devices": 2})
    denied = await _activate(license.license_key, "device-c")

    assert updated.max_devices == 2
    assert isinstance(denied, ActivationDenied)
    assert denied.reason == REASON_DEVICE_LIMIT
