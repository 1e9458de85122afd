from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.errors import InfrastructureError
from timbersync.core.timeutil import as_utc, utc_now
from timbersync.domain.models import Application, CompanyApplication, UserApplication, UserCategory
from timbersync.domain.principal import Principal


logger = logging.getLogger(__name__)

ACCESS_ALLOW = "allow"
ACCESS_DENY = "deny"
ACCESS_INHERIT = "inherit"
ACCESS_TYPES = {ACCESS_ALLOW, ACCESS_DENY, ACCESS_INHERIT}

PERMISSION_READ = "read"
PERMISSION_WRITE = "write"
PERMISSION_DELETE = "delete"
_PERMISSION_COLUMNS = {
    PERMISSION_READ: "can_read",
    PERMISSION_WRITE: "can_write",
    PERMISSION_DELETE: "can_delete",
}

REASON_NO_COMPANY = "no company"
REASON_OVERRIDE_DENY = "user override deny"
REASON_NOT_AVAILABLE = "not available for company"
REASON_DISABLED = "disabled"
REASON_LICENSE_EXPIRED = "license expired"
REASON_CATEGORY_DENIED = "permission denied for category"


@dataclass(frozen=True)
class AdminBypass:
    app_id: str
    allowed: bool = True
    access_level: str = "admin"
    reason: None = None
    company_id: None = None


@dataclass(frozen=True)
class UserOverrideAllow:
    app_id: str
    company_id: str
    allowed: bool = True
    access_level: str = "user_override_allow"
    reason: None = None


@dataclass(frozen=True)
class UserOverrideDeny:
    app_id: str
    company_id: str
    allowed: bool = False
    access_level: None = None
    reason: str = REASON_OVERRIDE_DENY


@dataclass(frozen=True)
class NoCompany:
    app_id: str
    allowed: bool = False
    access_level: None = None
    reason: str = REASON_NO_COMPANY
    company_id: None = None


@dataclass(frozen=True)
class CompanyGrantAllow:
    app_id: str
    company_id: str
    app_name: str | None = None
    allowed: bool = True
    access_level: str = "company"
    reason: None = None


@dataclass(frozen=True)
class CompanyGrantDenied:
    app_id: str
    company_id: str
    reason: str
    context: dict[str, Any] = field(default_factory=dict)
    allowed: bool = False
    access_level: None = None


AccessDecision = Union[
    AdminBypass,
    UserOverrideAllow,
    UserOverrideDeny,
    NoCompany,
    CompanyGrantAllow,
    CompanyGrantDenied,
]


@dataclass(frozen=True)
class CategoryDecision:
    allowed: bool
    category: str
    permission: str
    reason: str | None = None


async def resolve_app_access(
    session: AsyncSession,
    principal: Principal,
    app_id: str,
    *,
    now: datetime | None = None,
) -> AccessDecision:
    """Resolve whether a principal may use an application.

    Precedence is admin bypass, then the user's override, then the company
    grant. A Deny is returned, never raised; only datastore failures raise
    ``InfrastructureError``.
    """
    if principal.is_admin:
        return AdminBypass(app_id=app_id)
    if not principal.company_id:
        return NoCompany(app_id=app_id)

    company_id = principal.company_id
    try:
        override = await _load_override(session, principal.id, app_id)
        if override is not None:
            if override.access_type == ACCESS_ALLOW and override.is_enabled:
                return UserOverrideAllow(app_id=app_id, company_id=company_id)
            if override.access_type == ACCESS_DENY:
                return UserOverrideDeny(app_id=app_id, company_id=company_id)
        grant_row = await _load_company_grant(session, company_id, app_id)
    except SQLAlchemyError as exc:
        logger.error("app_access_lookup_failed app_id=%s user_id=%s", app_id, principal.id, exc_info=exc)
        raise InfrastructureError("Access verification failed") from exc

    return _decide_company_grant(grant_row, app_id=app_id, company_id=company_id, now=now or utc_now())


def _decide_company_grant(
    grant_row: tuple[CompanyApplication, str | None] | None,
    *,
    app_id: str,
    company_id: str,
    now: datetime,
) -> AccessDecision:
    if grant_row is None:
        return CompanyGrantDenied(app_id=app_id, company_id=company_id, reason=REASON_NOT_AVAILABLE)
    grant, app_name = grant_row
    if not grant.is_enabled:
        return CompanyGrantDenied(app_id=app_id, company_id=company_id, reason=REASON_DISABLED)
    expires_at = as_utc(grant.license_expires_at)
    if expires_at is not None and now > expires_at:
        return CompanyGrantDenied(
            app_id=app_id,
            company_id=company_id,
            reason=REASON_LICENSE_EXPIRED,
            context={"license_expires_at": expires_at.isoformat()},
        )
    return CompanyGrantAllow(app_id=app_id, company_id=company_id, app_name=app_name)


async def _load_override(session: AsyncSession, user_id: str, app_id: str) -> UserApplication | None:
    result = await session.execute(
        select(UserApplication).where(
            UserApplication.user_id == user_id,
            UserApplication.app_id == app_id,
        )
    )
    return result.scalar_one_or_none()


async def _load_company_grant(
    session: AsyncSession, company_id: str, app_id: str
) -> tuple[CompanyApplication, str | None] | None:
    result = await session.execute(
        select(CompanyApplication, Application.name)
        .outerjoin(Application, Application.app_id == CompanyApplication.app_id)
        .where(
            CompanyApplication.company_id == company_id,
            CompanyApplication.app_id == app_id,
        )
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def check_category_access(
    session: AsyncSession,
    principal: Principal,
    category: str,
    permission: str,
) -> CategoryDecision:
    # Single-tier variant: admin bypass, otherwise an exact grant row with the flag set.
    if permission not in _PERMISSION_COLUMNS:
        raise ValueError(f"Unsupported permission: {permission}")
    if principal.is_admin:
        return CategoryDecision(allowed=True, category=category, permission=permission)
    try:
        result = await session.execute(
            select(UserCategory).where(
                UserCategory.user_id == principal.id,
                UserCategory.category == category,
            )
        )
        grant = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.error("category_access_lookup_failed category=%s user_id=%s", category, principal.id, exc_info=exc)
        raise InfrastructureError("Permission check failed") from exc
    if grant is None or not getattr(grant, _PERMISSION_COLUMNS[permission]):
        return CategoryDecision(
            allowed=False,
            category=category,
            permission=permission,
            reason=REASON_CATEGORY_DENIED,
        )
    return CategoryDecision(allowed=True, category=category, permission=permission)


async def readable_categories(session: AsyncSession, principal: Principal) -> list[str] | None:
    # None means unrestricted (admin); otherwise the categories the user may read.
    if principal.is_admin:
        return None
    try:
        result = await session.execute(
            select(UserCategory.category)
            .where(UserCategory.user_id == principal.id, UserCategory.can_read.is_(True))
            .order_by(UserCategory.category)
        )
    except SQLAlchemyError as exc:
        raise InfrastructureError("Permission check failed") from exc
    return [row[0] for row in result.all()]
