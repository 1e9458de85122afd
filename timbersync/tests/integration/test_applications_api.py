from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from timbersync.apps.api.main import create_app
from timbersync.tests.utils.auth import create_test_user


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_company_grant_controls_application_catalog() -> None:
    _admin, admin_headers = await create_test_user(role="admin")
    async with _client() as client:
        company = await client.post("/v1/admin/companies", headers=admin_headers, json={"name": "Northwoods"})
        company_id = company.json()["data"]["id"]
        registered = await client.post(
            "/v1/admin/applications",
            headers=admin_headers,
            json={"app_id": "cruise-planner", "name": "Cruise Planner"},
        )
        await client.post(
            "/v1/admin/applications",
            headers=admin_headers,
            json={"app_id": "harvest-planner", "name": "Harvest Planner"},
        )
        grant = await client.post(
            "/v1/admin/company-apps",
            headers=admin_headers,
            json={"company_id": company_id, "app_id": "cruise-planner", "max_devices": 4},
        )

        _member, member_headers = await create_test_user(company_id=company_id)
        catalog = await client.get("/v1/applications", headers=member_headers)
        allowed = await client.get("/v1/applications/cruise-planner/access", headers=member_headers)
        not_granted = await client.get("/v1/applications/harvest-planner/access", headers=member_headers)

        revoked = await client.delete(f"/v1/admin/company-apps/{grant.json()['data']['id']}", headers=admin_headers)
        after_revoke = await client.get("/v1/applications/cruise-planner/access", headers=member_headers)

    assert company.status_code == 201
    assert registered.status_code == 201
    assert grant.json()["data"]["max_devices"] == 4
    assert [item["app_id"] for item in catalog.json()["data"]["applications"]] == ["cruise-planner"]
    assert allowed.json()["data"]["allowed"] is True
    assert allowed.json()["data"]["access_level"] == "company"
    assert not_granted.json()["data"]["allowed"] is False
    assert not_granted.json()["data"]["reason"] == "not available for company"
    assert revoked.status_code == 200
    assert after_revoke.json()["data"]["reason"] == "disabled"


@pytest.mark.asyncio
async def test_user_override_applies_before_company_grant() -> None:
    _admin, admin_headers = await create_test_user(role="admin")
    async with _client() as client:
        company = await client.post("/v1/admin/companies", headers=admin_headers, json={"name": "Eastwoods"})
        company_id = company.json()["data"]["id"]
        await client.post(
            "/v1/admin/applications",
            headers=admin_headers,
            json={"app_id": "cruise-planner", "name": "Cruise Planner"},
        )
        member, member_headers = await create_test_user(company_id=company_id)
        override = await client.put(
            f"/v1/admin/users/{member.id}/applications/cruise-planner",
            headers=admin_headers,
            json={"access_type": "allow"},
        )
        access = await client.get("/v1/applications/cruise-planner/access", headers=member_headers)

    assert override.status_code == 200
    assert access.json()["data"]["allowed"] is True
    assert access.json()["data"]["access_level"] == "user_override_allow"


@pytest.mark.asyncio
async def test_admin_actions_are_audited() -> None:
    admin, admin_headers = await create_test_user(role="admin")
    async with _client() as client:
        await client.post("/v1/admin/companies", headers=admin_headers, json={"name": "Westwoods"})
        events = await client.get(
            "/v1/admin/audit-events?event_type=company.created",
            headers=admin_headers,
        )

    items = events.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["actor_id"] == admin.id
    assert items[0]["outcome"] == "success"


@pytest.mark.asyncio
async def test_catalog_follows_user_overrides() -> None:
    _admin, admin_headers = await create_test_user(role="admin")
    async with _client() as client:
        company = await client.post("/v1/admin/companies", headers=admin_headers, json={"name": "Southwoods"})
        company_id = company.json()["data"]["id"]
        for app_id, name in (("cruise-planner", "Cruise Planner"), ("harvest-planner", "Harvest Planner")):
            await client.post(
                "/v1/admin/applications",
                headers=admin_headers,
                json={"app_id": app_id, "name": name},
            )
        await client.post(
            "/v1/admin/company-apps",
            headers=admin_headers,
            json={"company_id": company_id, "app_id": "cruise-planner"},
        )
        member, member_headers = await create_test_user(company_id=company_id)
        await client.put(
            f"/v1/admin/users/{member.id}/applications/cruise-planner",
            headers=admin_headers,
            json={"access_type": "deny"},
        )
        await client.put(
            f"/v1/admin/users/{member.id}/applications/harvest-planner",
            headers=admin_headers,
            json={"access_type": "allow"},
        )

        catalog = await client.get("/v1/applications", headers=member_headers)
        denied_detail = await client.get("/v1/applications/cruise-planner", headers=member_headers)
        denied_access = await client.get("/v1/applications/cruise-planner/access", headers=member_headers)
        allowed_detail = await client.get("/v1/applications/harvest-planner", headers=member_headers)

    assert [item["app_id"] for item in catalog.json()["data"]["applications"]] == ["harvest-planner"]
    assert denied_detail.status_code == 404
    assert denied_access.json()["data"]["allowed"] is False
    assert allowed_detail.status_code == 200
    assert allowed_detail.json()["data"]["app_id"] == "harvest-planner"
