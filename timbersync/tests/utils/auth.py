from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from timbersync.domain.models import Application, Company, CompanyApplication, UserApplication
from timbersync.domain.principal import Principal
from timbersync.persistence.db import SessionLocal
from timbersync.persistence.repos.users import CategoryGrant
from timbersync.services.auth.tokens import issue_token
from timbersync.services.licensing.registry import LicenseSpec, create_license
from timbersync.services.users import create_user

TEST_PASSWORD = "correct-horse-battery"


async def create_test_company(name: str | None = None) -> str:
    company_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(Company(id=company_id, name=name or f"company-{company_id[:8]}", is_active=True))
        await session.commit()
    return company_id


async def create_test_user(
    *,
    role: str = "user",
    company_id: str | None = None,
    categories: list[CategoryGrant] | None = None,
    username: str | None = None,
) -> tuple[Principal, dict[str, str]]:
    # Provision a user plus a signed bearer header for API tests.
    async with SessionLocal() as session:
        user, _grants = await create_user(
            session,
            username=username or f"user-{uuid4().hex[:10]}",
            password=TEST_PASSWORD,
            role=role,
            company_id=company_id,
            categories=categories or [],
        )
    token, _expires_at = issue_token(principal_id=user.id, role=user.role)
    principal = Principal(
        id=user.id,
        username=user.username,
        role=user.role,
        company_id=user.company_id,
        is_active=user.is_active,
    )
    return principal, {"Authorization": f"Bearer {token}"}


async def create_test_application(app_id: str | None = None, *, name: str = "Field Inventory") -> str:
    app_id = app_id or f"app-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        session.add(Application(app_id=app_id, name=name, is_active=True, requires_license=True))
        await session.commit()
    return app_id


async def grant_test_application(
    company_id: str,
    app_id: str,
    *,
    is_enabled: bool = True,
    license_expires_at: datetime | None = None,
) -> str:
    grant_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            CompanyApplication(
                id=grant_id,
                company_id=company_id,
                app_id=app_id,
                is_enabled=is_enabled,
                license_expires_at=license_expires_at,
                max_devices=3,
            )
        )
        await session.commit()
    return grant_id


async def set_test_override(user_id: str, app_id: str, access_type: str, *, is_enabled: bool = True) -> None:
    async with SessionLocal() as session:
        session.add(
            UserApplication(user_id=user_id, app_id=app_id, access_type=access_type, is_enabled=is_enabled)
        )
        await session.commit()


async def create_test_license(
    *,
    company_id: str | None = None,
    app_id: str = "*",
    max_devices: int = 3,
    grace_period_days: int = 7,
    expires_at: datetime | None = None,
    is_active: bool = True,
):
    async with SessionLocal() as session:
        return await create_license(
            session,
            LicenseSpec(
                company_id=company_id,
                app_id=app_id,
                max_devices=max_devices,
                grace_period_days=grace_period_days,
                expires_at=expires_at,
                is_active=is_active,
            ),
        )
