from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.domain.models import User, UserApplication, UserCategory


@dataclass(frozen=True)
class CategoryGrant:
    category: str
    can_read: bool = True
    can_write: bool = False
    can_delete: bool = False


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_by_username(session: AsyncSession, username: str) -> User | None:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.created_at.desc(), User.id))
    return list(result.scalars().all())


async def list_category_grants(
    session: AsyncSession, user_ids: list[str]
) -> dict[str, list[UserCategory]]:
    # Fetch grants for many users in one query to avoid N+1 lookups in admin listings.
    if not user_ids:
        return {}
    result = await session.execute(
        select(UserCategory)
        .where(UserCategory.user_id.in_(user_ids))
        .order_by(UserCategory.category)
    )
    grouped: dict[str, list[UserCategory]] = {}
    for grant in result.scalars().all():
        grouped.setdefault(grant.user_id, []).append(grant)
    return grouped


async def get_category_grant(
    session: AsyncSession, user_id: str, category: str
) -> UserCategory | None:
    result = await session.execute(
        select(UserCategory).where(
            UserCategory.user_id == user_id,
            UserCategory.category == category,
        )
    )
    return result.scalar_one_or_none()


async def replace_category_grants(
    session: AsyncSession, user_id: str, grants: list[CategoryGrant]
) -> None:
    # Replace, not merge: callers own the transaction so the user is never seen half-updated.
    result = await session.execute(select(UserCategory).where(UserCategory.user_id == user_id))
    existing = {row.category: row for row in result.scalars().all()}
    wanted: dict[str, CategoryGrant] = {}
    for grant in grants:
        wanted.setdefault(grant.category, grant)
    for category, row in existing.items():
        if category not in wanted:
            await session.delete(row)
    for category, grant in wanted.items():
        row = existing.get(category)
        if row is None:
            row = UserCategory(user_id=user_id, category=category)
            session.add(row)
        row.can_read = grant.can_read
        row.can_write = grant.can_write
        row.can_delete = grant.can_delete
    await session.flush()


def new_user(
    *,
    username: str,
    password_hash: str,
    full_name: str | None,
    role: str,
    company_id: str | None,
) -> User:
    return User(
        id=uuid4().hex,
        username=username,
        password_hash=password_hash,
        full_name=full_name or username,
        role=role,
        company_id=company_id,
        is_active=True,
    )


async def get_override(
    session: AsyncSession, user_id: str, app_id: str
) -> UserApplication | None:
    result = await session.execute(
        select(UserApplication).where(
            UserApplication.user_id == user_id,
            UserApplication.app_id == app_id,
        )
    )
    return result.scalar_one_or_none()


async def delete_user(session: AsyncSession, user_id: str) -> None:
    # Remove dependents explicitly; SQLite test databases do not enforce FK cascades.
    await session.execute(delete(UserCategory).where(UserCategory.user_id == user_id))
    await session.execute(delete(UserApplication).where(UserApplication.user_id == user_id))
    await session.execute(delete(User).where(User.id == user_id))
