from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from timbersync.apps.api.main import create_app
from timbersync.tests.utils.auth import TEST_PASSWORD, create_test_company, create_test_user


@pytest.mark.asyncio
async def test_login_issues_token_usable_for_me() -> None:
    company_id = await create_test_company()
    principal, _headers = await create_test_user(company_id=company_id, username="forester")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        login = await client.post("/v1/auth/login", json={"username": "forester", "password": TEST_PASSWORD})
        assert login.status_code == 200
        body = login.json()
        assert set(body) == {"data", "meta"}
        assert body["meta"]["api_version"] == "v1"
        token = body["data"]["token"]

        me = await client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["id"] == principal.id
    assert me.json()["data"]["company_id"] == company_id
    assert "password_hash" not in me.json()["data"]


@pytest.mark.asyncio
async def test_wrong_password_is_rejected_with_error_envelope() -> None:
    await create_test_user(username="forester")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/auth/login", json={"username": "forester", "password": "nope"})
    assert response.status_code == 401
    body = response.json()
    assert set(body) == {"error", "meta"}
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_protected_endpoint_requires_bearer_token() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.get("/v1/auth/me")
        garbage = await client.get("/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert missing.status_code == 401
    assert garbage.status_code == 401
    assert missing.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_admin_routes_reject_regular_users() -> None:
    _user, user_headers = await create_test_user()
    _admin, admin_headers = await create_test_user(role="admin")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        forbidden = await client.get("/v1/admin/users", headers=user_headers)
        allowed = await client.get("/v1/admin/users", headers=admin_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert allowed.status_code == 200
    assert allowed.json()["data"]["total"] == 2


@pytest.mark.asyncio
async def test_admin_creates_user_with_category_grants() -> None:
    company_id = await create_test_company()
    _admin, admin_headers = await create_test_user(role="admin")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(
            "/v1/admin/users",
            headers=admin_headers,
            json={
                "username": "cruiser",
                "password": "timber-1",
                "company_id": company_id,
                "categories": [{"category": "cruise", "can_read": True, "can_write": True}],
            },
        )
        duplicate = await client.post(
            "/v1/admin/users",
            headers=admin_headers,
            json={"username": "cruiser", "password": "timber-2"},
        )
        login = await client.post("/v1/auth/login", json={"username": "cruiser", "password": "timber-1"})
    assert created.status_code == 201
    assert created.json()["data"]["categories"][0]["can_write"] is True
    assert duplicate.status_code == 409
    assert login.status_code == 200
