from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from timbersync.apps.api.main import create_app
from timbersync.persistence.repos.users import CategoryGrant
from timbersync.tests.utils.auth import create_test_user


_CRUISE_CSV = b"plot,species,dbh_cm\nA1,Pinus,31.2\nA2,Picea,27.0\n"


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_upload_requires_write_grant_for_category() -> None:
    _user, headers = await create_test_user(
        categories=[
            CategoryGrant(category="cruise", can_read=True, can_write=True),
            CategoryGrant(category="harvest", can_read=True, can_write=False),
        ]
    )
    async with _client() as client:
        allowed = await client.post(
            "/v1/datasets",
            headers=headers,
            data={"category": "cruise"},
            files={"file": ("plots.csv", _CRUISE_CSV, "text/csv")},
        )
        denied = await client.post(
            "/v1/datasets",
            headers=headers,
            data={"category": "harvest"},
            files={"file": ("plots.csv", _CRUISE_CSV, "text/csv")},
        )
        duplicate = await client.post(
            "/v1/datasets",
            headers=headers,
            data={"category": "cruise"},
            files={"file": ("plots.csv", _CRUISE_CSV, "text/csv")},
        )

    assert allowed.status_code == 201
    assert allowed.json()["data"]["record_count"] == 2
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "CATEGORY_ACCESS_DENIED"
    assert denied.json()["error"]["details"]["permission"] == "write"
    assert duplicate.status_code == 409


@pytest.mark.asyncio
async def test_rows_and_listings_respect_read_grants() -> None:
    _admin, admin_headers = await create_test_user(role="admin")
    _reader, reader_headers = await create_test_user(
        categories=[CategoryGrant(category="cruise", can_read=True)]
    )
    async with _client() as client:
        for category in ("cruise", "harvest"):
            uploaded = await client.post(
                "/v1/datasets",
                headers=admin_headers,
                data={"category": category},
                files={"file": (f"{category}.csv", _CRUISE_CSV, "text/csv")},
            )
            assert uploaded.status_code == 201

        categories = await client.get("/v1/categories", headers=reader_headers)
        listing = await client.get("/v1/datasets", headers=reader_headers)
        by_category = await client.get("/v1/categories/cruise/datasets", headers=reader_headers)
        hidden_category = await client.get("/v1/categories/harvest/datasets", headers=reader_headers)
        rows = await client.get("/v1/datasets/cruise.csv/rows", headers=reader_headers)
        hidden_rows = await client.get("/v1/datasets/harvest.csv/rows", headers=reader_headers)
        missing = await client.get("/v1/datasets/nope.csv/rows", headers=reader_headers)

    assert categories.json()["data"]["categories"] == ["cruise"]
    assert [item["filename"] for item in listing.json()["data"]["files"]] == ["cruise.csv"]
    assert by_category.json()["data"]["total"] == 1
    assert hidden_category.status_code == 403
    assert rows.status_code == 200
    assert rows.json()["data"]["rows"][0] == {"plot": "A1", "species": "Pinus", "dbh_cm": "31.2"}
    assert hidden_rows.status_code == 403
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_delete_requires_delete_grant() -> None:
    _user, headers = await create_test_user(
        categories=[CategoryGrant(category="cruise", can_read=True, can_write=True, can_delete=False)]
    )
    _admin, admin_headers = await create_test_user(role="admin")
    async with _client() as client:
        uploaded = await client.post(
            "/v1/datasets",
            headers=headers,
            data={"category": "cruise"},
            files={"file": ("plots.csv", _CRUISE_CSV, "text/csv")},
        )
        dataset_id = uploaded.json()["data"]["file_id"]
        denied = await client.delete(f"/v1/datasets/{dataset_id}", headers=headers)
        deleted = await client.delete(f"/v1/datasets/{dataset_id}", headers=admin_headers)
        rows = await client.get("/v1/datasets/plots.csv/rows", headers=admin_headers)

    assert denied.status_code == 403
    assert deleted.status_code == 200
    assert rows.status_code == 404
