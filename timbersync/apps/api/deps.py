from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.config import get_settings
from timbersync.core.errors import AuthenticationError, AuthorizationDenied
from timbersync.domain.principal import Principal
from timbersync.persistence.db import get_session
from timbersync.persistence.repos.users import get_user
from timbersync.services.audit import record_event
from timbersync.services.auth.tokens import decode_token
from timbersync.services.entitlements import (
    REASON_NO_COMPANY,
    check_category_access,
    resolve_app_access,
)


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str, **context) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message, **context},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing or invalid bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Resolve the bearer token to a live principal.

    The token only proves identity; role, company and active status are
    re-read from the datastore on every request so admin changes apply
    immediately.
    """
    settings = get_settings()
    raw_token = _parse_bearer_token(request.headers.get(settings.auth_header))
    try:
        claims = decode_token(raw_token)
    except AuthenticationError as exc:
        raise _auth_error(str(exc)) from exc
    try:
        user = await get_user(db, claims.principal_id)
    except SQLAlchemyError as exc:
        logger.error("principal_lookup_failed user_id=%s", claims.principal_id, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Authentication backend unavailable"},
        ) from exc
    if user is None:
        raise _auth_error("User not found")
    if not user.is_active:
        raise _auth_error("User is inactive")
    principal = Principal(
        id=user.id,
        username=user.username,
        role=user.role,
        company_id=user.company_id,
        is_active=user.is_active,
    )
    request.state.principal_id = principal.id
    return principal


async def require_admin(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if not principal.is_admin:
        await record_event(
            event_type="rbac.forbidden",
            outcome="failure",
            principal=principal,
            resource_type="rbac",
            request=request,
            metadata={"path": request.url.path, "method": request.method, "required_role": "admin"},
            error_code="AUTH_FORBIDDEN",
        )
        raise _forbidden_error("Admin access required")
    return principal


async def require_company_scope(
    principal: Principal = Depends(get_current_principal),
) -> str | None:
    # Admins read across companies (None); everyone else is pinned to their own.
    if principal.is_admin:
        return None
    if not principal.company_id:
        raise AuthorizationDenied(REASON_NO_COMPANY, code="NO_COMPANY")
    return principal.company_id


def require_app_access(app_id: str):
    """Dependency factory gating a route on an application entitlement."""

    async def _dependency(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        decision = await resolve_app_access(db, principal, app_id)
        if not decision.allowed:
            raise AuthorizationDenied(
                decision.reason,
                code="APP_ACCESS_DENIED",
                context={"app_id": app_id, **getattr(decision, "context", {})},
            )
        return principal

    return _dependency


def require_category_access(permission: str):
    """Dependency factory gating a route on a category permission.

    The category is read from the path or query parameter named ``category``.
    """

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        category = request.path_params.get("category") or request.query_params.get("category")
        if not category:
            category = get_settings().default_dataset_category
        decision = await check_category_access(db, principal, category, permission)
        if not decision.allowed:
            raise AuthorizationDenied(
                decision.reason,
                code="CATEGORY_ACCESS_DENIED",
                context={"category": category, "permission": permission},
            )
        return principal

    return _dependency


async def ensure_category_access(
    db: AsyncSession, principal: Principal, category: str, permission: str
) -> None:
    # Inline variant for handlers that only learn the category after a lookup.
    decision = await check_category_access(db, principal, category, permission)
    if not decision.allowed:
        raise AuthorizationDenied(
            decision.reason,
            code="CATEGORY_ACCESS_DENIED",
            context={"category": category, "permission": permission},
        )
