from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.errors import (
    AuthenticationError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationFailure,
)
from timbersync.domain.models import Application, Company, User, UserApplication, UserCategory
from timbersync.persistence.repos import users as users_repo
from timbersync.persistence.repos.users import CategoryGrant
from timbersync.services.auth.passwords import hash_password, verify_password
from timbersync.services.auth.roles import ROLE_USER, normalize_role
from timbersync.services.entitlements import ACCESS_TYPES


logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"username", "full_name", "role", "company_id", "is_active", "password"}


async def authenticate(session: AsyncSession, username: str, password: str) -> User:
    # Unknown user, wrong password and inactive account share one message.
    try:
        user = await users_repo.get_by_username(session, username.strip())
    except SQLAlchemyError as exc:
        raise InfrastructureError("Login failed") from exc
    if user is None or not verify_password(password, user.password_hash):
        raise AuthenticationError("Invalid username or password")
    if not user.is_active:
        raise AuthenticationError("Invalid username or password")
    return user


def _normalize_role(role: str) -> str:
    try:
        return normalize_role(role)
    except ValueError as exc:
        raise ValidationFailure(str(exc)) from exc


async def _ensure_company(session: AsyncSession, company_id: str | None) -> None:
    if company_id and await session.get(Company, company_id) is None:
        raise NotFoundError("Company not found", resource="company", identity=company_id)


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    password: str,
    full_name: str | None = None,
    role: str = ROLE_USER,
    company_id: str | None = None,
    categories: list[CategoryGrant] | None = None,
) -> tuple[User, list[UserCategory]]:
    """Create a user together with their category grants in one transaction."""
    username = username.strip()
    if not username or not password:
        raise ValidationFailure("Username and password are required")
    resolved_role = _normalize_role(role)
    try:
        await _ensure_company(session, company_id)
        if await users_repo.get_by_username(session, username) is not None:
            raise ConflictError("Username already exists", field="username", value=username)
        user = users_repo.new_user(
            username=username,
            password_hash=hash_password(password),
            full_name=full_name,
            role=resolved_role,
            company_id=company_id,
        )
        session.add(user)
        await session.flush()
        await users_repo.replace_category_grants(session, user.id, categories or [])
        await session.commit()
        await session.refresh(user)
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Username already exists", field="username", value=username) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to create user") from exc
    logger.info("user_created user_id=%s role=%s company_id=%s", user.id, resolved_role, company_id)
    return user, await _grants_for(session, user.id)


async def update_user(
    session: AsyncSession,
    user_id: str,
    changes: dict[str, Any],
    *,
    categories: list[CategoryGrant] | None = None,
) -> tuple[User, list[UserCategory]]:
    # categories=None leaves grants untouched; a list (even empty) replaces them.
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailure(f"Unsupported user fields: {sorted(unknown)}")
    try:
        user = await users_repo.get_user(session, user_id)
        if user is None:
            raise NotFoundError("User not found", resource="user", identity=user_id)
        if "username" in changes:
            username = str(changes["username"] or "").strip()
            if not username:
                raise ValidationFailure("Username cannot be empty")
            existing = await users_repo.get_by_username(session, username)
            if existing is not None and existing.id != user_id:
                raise ConflictError("Username already exists", field="username", value=username)
            user.username = username
        if "company_id" in changes:
            await _ensure_company(session, changes["company_id"])
            user.company_id = changes["company_id"] or None
        if "role" in changes:
            user.role = _normalize_role(changes["role"])
        if "full_name" in changes:
            user.full_name = changes["full_name"]
        if "is_active" in changes:
            user.is_active = bool(changes["is_active"])
        if changes.get("password"):
            user.password_hash = hash_password(changes["password"])
        if categories is not None:
            await users_repo.replace_category_grants(session, user_id, categories)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Username already exists", field="username") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to update user") from exc
    logger.info("user_updated user_id=%s fields=%s", user_id, sorted(changes))
    return user, await _grants_for(session, user_id)


async def delete_user(session: AsyncSession, user_id: str, *, acting_user_id: str) -> None:
    if user_id == acting_user_id:
        raise ValidationFailure("Cannot delete your own account")
    try:
        user = await users_repo.get_user(session, user_id)
        if user is None:
            raise NotFoundError("User not found", resource="user", identity=user_id)
        await users_repo.delete_user(session, user_id)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to delete user") from exc
    logger.info("user_deleted user_id=%s", user_id)


async def list_users(session: AsyncSession) -> list[tuple[User, list[UserCategory]]]:
    try:
        users = await users_repo.list_users(session)
        grants = await users_repo.list_category_grants(session, [user.id for user in users])
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch users") from exc
    return [(user, grants.get(user.id, [])) for user in users]


async def set_user_override(
    session: AsyncSession,
    user_id: str,
    app_id: str,
    *,
    access_type: str,
    is_enabled: bool = True,
) -> UserApplication:
    if access_type not in ACCESS_TYPES:
        raise ValidationFailure(f"access_type must be one of {sorted(ACCESS_TYPES)}")
    try:
        if await users_repo.get_user(session, user_id) is None:
            raise NotFoundError("User not found", resource="user", identity=user_id)
        if await session.get(Application, app_id) is None:
            raise NotFoundError("Application not found", resource="application", identity=app_id)
        override = await users_repo.get_override(session, user_id, app_id)
        if override is None:
            override = UserApplication(user_id=user_id, app_id=app_id)
            session.add(override)
        override.access_type = access_type
        override.is_enabled = is_enabled
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to update application override") from exc
    logger.info("user_override_set user_id=%s app_id=%s access_type=%s", user_id, app_id, access_type)
    return override


async def delete_user_override(session: AsyncSession, user_id: str, app_id: str) -> bool:
    try:
        result = await session.execute(
            delete(UserApplication).where(
                UserApplication.user_id == user_id,
                UserApplication.app_id == app_id,
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to delete application override") from exc
    return bool(result.rowcount)


async def _grants_for(session: AsyncSession, user_id: str) -> list[UserCategory]:
    try:
        grouped = await users_repo.list_category_grants(session, [user_id])
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch category grants") from exc
    return grouped.get(user_id, [])
