from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from timbersync.apps.api.deps import get_db
from timbersync.apps.api.main import create_app
from timbersync.persistence.db import SessionLocal
from timbersync.tests.utils.auth import create_test_company, create_test_license, create_test_user


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_activate_verify_and_info_flow() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=2)
    device = {"license_key": license.license_key, "device_id": "tablet-7"}

    async with _client() as client:
        activated = await client.post(
            "/v1/licenses/activate",
            json={**device, "device_name": "Field Tablet", "device_model": "Rugged 10"},
        )
        again = await client.post("/v1/licenses/activate", json=device)
        verified = await client.post("/v1/licenses/verify", json=device)
        info = await client.get(f"/v1/licenses/info/{license.license_key}")

    assert activated.status_code == 200
    assert activated.json()["data"]["status"] == "activated"
    assert activated.json()["data"]["device"]["device_name"] == "Field Tablet"
    assert again.json()["data"]["status"] == "already_active"
    assert verified.json()["data"]["valid"] is True
    assert verified.json()["data"]["license"]["license_key"] == license.license_key
    assert info.status_code == 200
    assert info.json()["data"]["max_devices"] == 2
    assert "devices" not in info.json()["data"]


@pytest.mark.asyncio
async def test_device_limit_denial_carries_reason_and_quota() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=1)

    async with _client() as client:
        await client.post("/v1/licenses/activate", json={"license_key": license.license_key, "device_id": "a"})
        denied = await client.post(
            "/v1/licenses/activate",
            json={"license_key": license.license_key, "device_id": "b"},
        )

    assert denied.status_code == 403
    error = denied.json()["error"]
    assert error["code"] == "LICENSE_DENIED"
    assert error["details"] == {"reason": "device limit reached", "max_devices": 1}


@pytest.mark.asyncio
async def test_unknown_license_key_is_not_found() -> None:
    payload = {"license_key": "TBR-ZZZZ-ZZZZ-ZZZZ-ZZZZ", "device_id": "a"}
    async with _client() as client:
        activate = await client.post("/v1/licenses/activate", json=payload)
        verify = await client.post("/v1/licenses/verify", json=payload)
        info = await client.get("/v1/licenses/info/TBR-ZZZZ-ZZZZ-ZZZZ-ZZZZ")
    assert activate.status_code == 404
    assert verify.status_code == 404
    assert verify.json()["error"]["code"] == "LICENSE_NOT_FOUND"
    assert verify.json()["error"]["details"]["should_retry"] is False
    assert info.status_code == 404


@pytest.mark.asyncio
async def test_verify_expired_license_reports_invalid() -> None:
    company_id = await create_test_company()
    expires_at = datetime.now(timezone.utc) + timedelta(days=30)
    license = await create_test_license(company_id=company_id, expires_at=expires_at)
    async with _client() as client:
        await client.post("/v1/licenses/activate", json={"license_key": license.license_key, "device_id": "a"})

    _admin, admin_headers = await create_test_user(role="admin")
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    async with _client() as client:
        patched = await client.patch(
            f"/v1/admin/licenses/{license.id}",
            headers=admin_headers,
            json={"expires_at": past},
        )
        verified = await client.post(
            "/v1/licenses/verify",
            json={"license_key": license.license_key, "device_id": "a"},
        )

    assert patched.status_code == 200
    data = verified.json()["data"]
    assert verified.status_code == 200
    assert data["valid"] is False
    assert data["reason"] == "expired"
    assert data["should_retry"] is False
    assert data["expired_at"] is not None


@pytest.mark.asyncio
async def test_admin_license_lifecycle() -> None:
    company_id = await create_test_company()
    _admin, admin_headers = await create_test_user(role="admin")
    _user, user_headers = await create_test_user(company_id=company_id)

    async with _client() as client:
        forbidden = await client.post("/v1/admin/licenses", headers=user_headers, json={})
        created = await client.post(
            "/v1/admin/licenses",
            headers=admin_headers,
            json={"company_id": company_id, "max_devices": 5},
        )
        license_id = created.json()["data"]["id"]
        license_key = created.json()["data"]["license_key"]
        await client.post("/v1/licenses/activate", json={"license_key": license_key, "device_id": "a"})
        devices = await client.get(f"/v1/admin/licenses/{license_id}/devices", headers=admin_headers)
        listing = await client.get("/v1/admin/licenses", headers=admin_headers)
        removed = await client.delete(f"/v1/admin/licenses/{license_id}", headers=admin_headers)
        missing = await client.delete(f"/v1/admin/licenses/{license_id}", headers=admin_headers)

    assert forbidden.status_code == 403
    assert created.status_code == 201
    assert license_key.startswith("TBR-")
    assert created.json()["data"]["app_id"] == "*"
    assert [item["device_id"] for item in devices.json()["data"]["devices"]] == ["a"]
    assert listing.json()["data"]["licenses"][0]["active_devices"] == 1
    assert removed.status_code == 200
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_shrinking_seat_limit_below_active_devices_conflicts() -> None:
    company_id = await create_test_company()
    license = await create_test_license(company_id=company_id, max_devices=3)
    _admin, admin_headers = await create_test_user(role="admin")

    async with _client() as client:
        for device_id in ("a", "b", "c"):
            await client.post(
                "/v1/licenses/activate",
                json={"license_key": license.license_key, "device_id": device_id},
            )
        shrunk = await client.patch(
            f"/v1/admin/licenses/{license.id}",
            headers=admin_headers,
            json={"max_devices": 1},
        )
        info = await client.get(f"/v1/licenses/info/{license.license_key}")

    assert shrunk.status_code == 409
    error = shrunk.json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"] == {"field": "max_devices", "max_devices": 1, "active_devices": 3}
    assert info.json()["data"]["max_devices"] == 3


@pytest.mark.asyncio
async def test_verify_during_datastore_outage_asks_device_to_retry() -> None:
    app = create_app()

    async def _unavailable(*args, **kwargs):
        raise OperationalError("SELECT licenses", {}, Exception("database is down"))

    async def _outage_db():
        async with SessionLocal() as session:
            session.execute = _unavailable
            yield session

    app.dependency_overrides[get_db] = _outage_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/licenses/verify",
            json={"license_key": "TBR-AAAA-BBBB-CCCC-DDDD", "device_id": "a"},
        )

    assert response.status_code == 503
    body = response.json()
    assert body["error"]["code"] == "SERVICE_UNAVAILABLE"
    assert body["error"]["retryable"] is True
    assert body["error"]["details"] == {"valid": False, "should_retry": True}
    assert body["meta"]["server_time"]


@pytest.mark.asyncio
async def test_final_errors_are_not_retryable() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/licenses/verify",
            json={"license_key": "TBR-ZZZZ-ZZZZ-ZZZZ-ZZZZ", "device_id": "a"},
        )

    assert response.status_code == 404
    assert response.json()["error"]["retryable"] is False
    assert response.headers["X-Request-Id"] == response.json()["meta"]["request_id"]
