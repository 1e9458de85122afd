from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from timbersync.apps.api.main import create_app
from timbersync.core.config import get_settings
from timbersync.tests.utils.auth import (
    create_test_application,
    create_test_company,
    create_test_license,
    create_test_user,
    grant_test_application,
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _sync_payload(device_id: str) -> dict:
    return {
        "device_id": device_id,
        "sessions": [
            {
                "external_session_key": "plot-17",
                "inventory_date": "2025-05-14",
                "name": "Plot 17",
                "operator_name": "J. Doe",
                "measurements": [
                    {"species": "Abies alba", "diameter_cm": 38.5, "height_m": 24.0, "volume_m3": 1.2},
                    {"species": "Fagus sylvatica", "diameter_cm": 29.0, "volume_m3": 0.7},
                ],
            }
        ],
    }


async def _activated_device(company_id: str, device_id: str, **license_fields) -> str:
    license = await create_test_license(company_id=company_id, **license_fields)
    async with _client() as client:
        response = await client.post(
            "/v1/licenses/activate",
            json={"license_key": license.license_key, "device_id": device_id},
        )
    assert response.status_code == 200
    return license.id


@pytest.mark.asyncio
async def test_unknown_device_sync_is_unauthenticated() -> None:
    async with _client() as client:
        response = await client.post("/v1/sync/field-inventory", json=_sync_payload("ghost"))
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_expired_license_sync_is_forbidden() -> None:
    company_id = await create_test_company()
    # Activated inside the grace window, synced after it closes.
    expires_at = datetime.now(timezone.utc) - timedelta(days=2)
    license_id = await _activated_device(company_id, "tablet-1", expires_at=expires_at, grace_period_days=3)
    _admin, admin_headers = await create_test_user(role="admin")

    async with _client() as client:
        shortened = await client.patch(
            f"/v1/admin/licenses/{license_id}",
            headers=admin_headers,
            json={"grace_period_days": 1},
        )
        response = await client.post("/v1/sync/field-inventory", json=_sync_payload("tablet-1"))

    assert shortened.status_code == 200
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "SYNC_DENIED"
    assert error["details"]["reason"] == "expired"
    assert "grace_deadline" in error["details"]


@pytest.mark.asyncio
async def test_synced_sessions_are_readable_by_company_users() -> None:
    settings = get_settings()
    company_id = await create_test_company()
    other_company = await create_test_company()
    await create_test_application(settings.field_app_id)
    await grant_test_application(company_id, settings.field_app_id)
    await grant_test_application(other_company, settings.field_app_id)
    await _activated_device(company_id, "tablet-1")
    _member, member_headers = await create_test_user(company_id=company_id)
    _outsider, outsider_headers = await create_test_user(company_id=other_company)
    _ungranted, ungranted_headers = await create_test_user(company_id=await create_test_company())

    async with _client() as client:
        synced = await client.post("/v1/sync/field-inventory", json=_sync_payload("tablet-1"))
        listing = await client.get("/v1/inventory/sessions", headers=member_headers)
        session_id = listing.json()["data"]["sessions"][0]["id"]
        detail = await client.get(f"/v1/inventory/sessions/{session_id}", headers=member_headers)
        outsider_listing = await client.get("/v1/inventory/sessions", headers=outsider_headers)
        outsider_detail = await client.get(f"/v1/inventory/sessions/{session_id}", headers=outsider_headers)
        ungranted = await client.get("/v1/inventory/sessions", headers=ungranted_headers)

    assert synced.status_code == 200
    assert synced.json()["data"]["outcome"] == "success"
    assert synced.json()["data"]["company_id"] == company_id
    assert listing.json()["data"]["count"] == 1
    assert detail.json()["data"]["tree_count"] == 2
    assert [item["species"] for item in detail.json()["data"]["measurements"]] == [
        "Abies alba",
        "Fagus sylvatica",
    ]
    assert outsider_listing.json()["data"]["count"] == 0
    assert outsider_detail.status_code == 404
    assert ungranted.status_code == 403
    assert ungranted.json()["error"]["code"] == "APP_ACCESS_DENIED"


@pytest.mark.asyncio
async def test_sync_logs_are_visible_to_admins() -> None:
    company_id = await create_test_company()
    await _activated_device(company_id, "tablet-1")
    _admin, admin_headers = await create_test_user(role="admin")

    async with _client() as client:
        await client.post("/v1/sync/field-inventory", json=_sync_payload("tablet-1"))
        await client.post("/v1/sync/field-inventory", json=_sync_payload("ghost"))
        logs = await client.get("/v1/admin/sync-logs", headers=admin_headers)
        denied_only = await client.get("/v1/admin/sync-logs?outcome=denied", headers=admin_headers)

    assert logs.status_code == 200
    assert {entry["device_id"] for entry in logs.json()["data"]["items"]} == {"tablet-1", "ghost"}
    assert [entry["device_id"] for entry in denied_only.json()["data"]["items"]] == ["ghost"]
