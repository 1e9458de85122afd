from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import re
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.config import APP_SCOPE_ANY
from timbersync.core.errors import ConflictError, InfrastructureError, NotFoundError, ValidationFailure
from timbersync.core.timeutil import as_utc, utc_now
from timbersync.domain.models import Application, Company, CompanyApplication, UserApplication
from timbersync.domain.principal import Principal
from timbersync.services.entitlements import ACCESS_ALLOW, ACCESS_DENY


logger = logging.getLogger(__name__)

APP_ID_PATTERN = re.compile(r"^[a-z0-9-]+$")

_APP_UPDATABLE_FIELDS = {"name", "description", "landing_url", "is_active", "requires_license"}
_COMPANY_UPDATABLE_FIELDS = {"name", "is_active"}


@dataclass(frozen=True)
class AccessibleApplication:
    app_id: str
    name: str
    description: str | None
    landing_url: str | None
    license_expires_at: datetime | None = None
    is_expired: bool = False
    companies_count: int | None = None


@dataclass(frozen=True)
class CompanyGrantView:
    grant: CompanyApplication
    company_name: str | None
    app_name: str | None


def validate_app_id(app_id: str) -> str:
    # app_ids double as URL segments and license scopes, so keep them lowercase slugs.
    candidate = (app_id or "").strip()
    if candidate == APP_SCOPE_ANY or not APP_ID_PATTERN.match(candidate):
        raise ValidationFailure("app_id must contain only lowercase letters, numbers, and hyphens")
    return candidate


async def register_application(
    session: AsyncSession,
    *,
    app_id: str,
    name: str,
    description: str | None = None,
    landing_url: str | None = None,
    requires_license: bool = True,
) -> Application:
    app_id = validate_app_id(app_id)
    if not name or not name.strip():
        raise ValidationFailure("Application name is required")
    try:
        if await session.get(Application, app_id) is not None:
            raise ConflictError("Application ID already exists", field="app_id", value=app_id)
        application = Application(
            app_id=app_id,
            name=name.strip(),
            description=description,
            landing_url=landing_url,
            is_active=True,
            requires_license=requires_license,
        )
        session.add(application)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Application ID already exists", field="app_id", value=app_id) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to register application") from exc
    logger.info("application_registered app_id=%s", app_id)
    return application


async def update_application(session: AsyncSession, app_id: str, changes: dict[str, Any]) -> Application:
    unknown = set(changes) - _APP_UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailure(f"Unsupported application fields: {sorted(unknown)}")
    try:
        application = await session.get(Application, app_id)
        if application is None:
            raise NotFoundError("Application not found", resource="application", identity=app_id)
        for key, value in changes.items():
            setattr(application, key, value)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to update application") from exc
    logger.info("application_updated app_id=%s fields=%s", app_id, sorted(changes))
    return application


async def list_accessible_applications(
    session: AsyncSession,
    principal: Principal,
    *,
    now: datetime | None = None,
) -> list[AccessibleApplication]:
    """List the active applications a principal can open.

    Admins see every active application with a count of companies holding an
    enabled grant. Users see applications enabled for their company, flagged
    when the company grant has expired, adjusted by their own overrides: a
    deny hides a granted application and an enabled allow adds one.
    """
    moment = now or utc_now()
    try:
        if principal.is_admin:
            enabled_grants = (
                select(CompanyApplication.app_id, func.count(CompanyApplication.id).label("companies"))
                .where(CompanyApplication.is_enabled.is_(True))
                .group_by(CompanyApplication.app_id)
                .subquery()
            )
            result = await session.execute(
                select(Application, enabled_grants.c.companies)
                .outerjoin(enabled_grants, enabled_grants.c.app_id == Application.app_id)
                .where(Application.is_active.is_(True))
                .order_by(Application.name)
            )
            return [
                AccessibleApplication(
                    app_id=app.app_id,
                    name=app.name,
                    description=app.description,
                    landing_url=app.landing_url,
                    companies_count=int(companies or 0),
                )
                for app, companies in result.all()
            ]
        if not principal.company_id:
            return []
        overrides = await _load_user_overrides(session, principal.id)
        result = await session.execute(
            select(Application, CompanyApplication.license_expires_at)
            .join(CompanyApplication, CompanyApplication.app_id == Application.app_id)
            .where(
                Application.is_active.is_(True),
                CompanyApplication.is_enabled.is_(True),
                CompanyApplication.company_id == principal.company_id,
            )
        )
        rows = [(app, expires_at) for app, expires_at in result.all() if overrides.get(app.app_id) != ACCESS_DENY]
        granted = {app.app_id for app, _ in rows}
        extra = [app_id for app_id, access in overrides.items() if access == ACCESS_ALLOW and app_id not in granted]
        if extra:
            result = await session.execute(
                select(Application).where(Application.app_id.in_(extra), Application.is_active.is_(True))
            )
            rows.extend((app, None) for app in result.scalars().all())
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch applications") from exc
    applications = []
    for app, expires_at in sorted(rows, key=lambda row: row[0].name):
        expires_at = as_utc(expires_at)
        applications.append(
            AccessibleApplication(
                app_id=app.app_id,
                name=app.name,
                description=app.description,
                landing_url=app.landing_url,
                license_expires_at=expires_at,
                is_expired=expires_at is not None and expires_at < moment,
            )
        )
    return applications


async def _load_user_overrides(session: AsyncSession, user_id: str) -> dict[str, str]:
    # Same precedence as resolve_app_access: a deny always wins, a disabled allow defers to the company.
    result = await session.execute(
        select(UserApplication.app_id, UserApplication.access_type, UserApplication.is_enabled).where(
            UserApplication.user_id == user_id
        )
    )
    return {
        app_id: access_type
        for app_id, access_type, is_enabled in result.all()
        if access_type == ACCESS_DENY or (access_type == ACCESS_ALLOW and is_enabled)
    }


async def get_accessible_application(
    session: AsyncSession,
    principal: Principal,
    app_id: str,
    *,
    now: datetime | None = None,
) -> AccessibleApplication:
    # Missing and not-granted applications are reported the same way to non-admins.
    if principal.is_admin:
        try:
            application = await session.get(Application, app_id)
        except SQLAlchemyError as exc:
            raise InfrastructureError("Failed to fetch application") from exc
        if application is None:
            raise NotFoundError("Application not found", resource="application", identity=app_id)
        return AccessibleApplication(
            app_id=application.app_id,
            name=application.name,
            description=application.description,
            landing_url=application.landing_url,
        )
    for candidate in await list_accessible_applications(session, principal, now=now):
        if candidate.app_id == app_id:
            return candidate
    raise NotFoundError("Application not found or access denied", resource="application", identity=app_id)


async def grant_company_access(
    session: AsyncSession,
    *,
    company_id: str,
    app_id: str,
    max_devices: int | None = None,
    license_expires_at: datetime | None = None,
    notes: str | None = None,
) -> CompanyApplication:
    """Enable an application for a company, re-enabling an existing grant."""
    try:
        if await session.get(Company, company_id) is None:
            raise NotFoundError("Company not found", resource="company", identity=company_id)
        if await session.get(Application, app_id) is None:
            raise NotFoundError("Application not found", resource="application", identity=app_id)
        result = await session.execute(
            select(CompanyApplication).where(
                CompanyApplication.company_id == company_id,
                CompanyApplication.app_id == app_id,
            )
        )
        grant = result.scalar_one_or_none()
        if grant is None:
            grant = CompanyApplication(id=uuid4().hex, company_id=company_id, app_id=app_id)
            session.add(grant)
        grant.is_enabled = True
        grant.max_devices = max_devices or 3
        grant.license_expires_at = license_expires_at
        grant.notes = notes
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to grant access") from exc
    logger.info("company_access_granted company_id=%s app_id=%s", company_id, app_id)
    return grant


async def revoke_company_access(session: AsyncSession, grant_id: str) -> CompanyApplication:
    # Revocation disables rather than deletes so expiry and notes survive re-enabling.
    try:
        grant = await session.get(CompanyApplication, grant_id)
        if grant is None:
            raise NotFoundError("Company-app relationship not found", resource="company_application", identity=grant_id)
        grant.is_enabled = False
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to revoke access") from exc
    logger.info("company_access_revoked grant_id=%s company_id=%s app_id=%s", grant_id, grant.company_id, grant.app_id)
    return grant


async def list_company_grants(session: AsyncSession, *, company_id: str | None = None) -> list[CompanyGrantView]:
    query = (
        select(CompanyApplication, Company.name, Application.name)
        .outerjoin(Company, Company.id == CompanyApplication.company_id)
        .outerjoin(Application, Application.app_id == CompanyApplication.app_id)
        .order_by(Company.name, Application.name)
    )
    if company_id:
        query = query.where(CompanyApplication.company_id == company_id)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch company-app access") from exc
    return [
        CompanyGrantView(grant=grant, company_name=company_name, app_name=app_name)
        for grant, company_name, app_name in result.all()
    ]


async def create_company(session: AsyncSession, *, name: str) -> Company:
    name = (name or "").strip()
    if not name:
        raise ValidationFailure("Company name is required")
    try:
        existing = await session.execute(select(Company).where(Company.name == name))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("Company already exists", field="name", value=name)
        company = Company(id=uuid4().hex, name=name, is_active=True)
        session.add(company)
        await session.commit()
        await session.refresh(company)
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Company already exists", field="name", value=name) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to create company") from exc
    logger.info("company_created company_id=%s", company.id)
    return company


async def update_company(session: AsyncSession, company_id: str, changes: dict[str, Any]) -> Company:
    # Deactivation is advisory; users, licenses and synced data are left in place.
    unknown = set(changes) - _COMPANY_UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailure(f"Unsupported company fields: {sorted(unknown)}")
    try:
        company = await session.get(Company, company_id)
        if company is None:
            raise NotFoundError("Company not found", resource="company", identity=company_id)
        if "name" in changes:
            name = str(changes["name"] or "").strip()
            if not name:
                raise ValidationFailure("Company name is required")
            company.name = name
        if "is_active" in changes:
            company.is_active = bool(changes["is_active"])
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Company already exists", field="name", value=changes.get("name")) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to update company") from exc
    return company


async def list_companies(session: AsyncSession) -> list[Company]:
    try:
        result = await session.execute(select(Company).order_by(Company.name))
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch companies") from exc
    return list(result.scalars().all())
