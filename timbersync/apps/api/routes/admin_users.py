from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db, require_admin
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.domain.models import User, UserApplication, UserCategory
from timbersync.domain.principal import Principal
from timbersync.persistence.repos.users import CategoryGrant
from timbersync.services import users as users_service
from timbersync.services.audit import record_event
from timbersync.services.auth.roles import ROLE_USER
from timbersync.services.entitlements import ACCESS_INHERIT


router = APIRouter(prefix="/admin/users", tags=["admin-users"], responses=DEFAULT_ERROR_RESPONSES)


class CategoryPermissionModel(BaseModel):
    category: str = Field(min_length=1)
    can_read: bool = True
    can_write: bool = False
    can_delete: bool = False


class UserResponse(BaseModel):
    id: str
    username: str
    full_name: str | None
    role: str
    company_id: str | None
    is_active: bool
    created_at: datetime | None = None
    categories: list[CategoryPermissionModel] = Field(default_factory=list)


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    full_name: str | None = None
    role: str = ROLE_USER
    company_id: str | None = None
    categories: list[CategoryPermissionModel] = Field(default_factory=list)


class UserUpdateRequest(BaseModel):
    username: str | None = None
    password: str | None = None
    full_name: str | None = None
    role: str | None = None
    company_id: str | None = None
    is_active: bool | None = None
    # Omit to keep grants; send a list (possibly empty) to replace them.
    categories: list[CategoryPermissionModel] | None = None


class UserListResponse(BaseModel):
    users: list[UserResponse]
    total: int


class OverrideRequest(BaseModel):
    access_type: str = Field(default=ACCESS_INHERIT, pattern="^(allow|deny|inherit)$")
    is_enabled: bool = True


class OverrideResponse(BaseModel):
    user_id: str
    app_id: str
    access_type: str
    is_enabled: bool


class DeletedResponse(BaseModel):
    deleted: bool


def to_user_response(user: User, grants: list[UserCategory]) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        full_name=user.full_name,
        role=user.role,
        company_id=user.company_id,
        is_active=user.is_active,
        created_at=user.created_at,
        categories=[
            CategoryPermissionModel(
                category=grant.category,
                can_read=grant.can_read,
                can_write=grant.can_write,
                can_delete=grant.can_delete,
            )
            for grant in grants
        ],
    )


def _to_grants(categories: list[CategoryPermissionModel]) -> list[CategoryGrant]:
    return [
        CategoryGrant(
            category=item.category,
            can_read=item.can_read,
            can_write=item.can_write,
            can_delete=item.can_delete,
        )
        for item in categories
    ]


def _to_override_response(override: UserApplication) -> OverrideResponse:
    return OverrideResponse(
        user_id=override.user_id,
        app_id=override.app_id,
        access_type=override.access_type,
        is_enabled=override.is_enabled,
    )


@router.get("", response_model=SuccessEnvelope[UserListResponse] | UserListResponse)
async def list_users(
    request: Request,
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await users_service.list_users(db)
    users = [to_user_response(user, grants) for user, grants in rows]
    return success_response(request=request, data=UserListResponse(users=users, total=len(users)))


@router.post("", status_code=201, response_model=SuccessEnvelope[UserResponse] | UserResponse)
async def create_user(
    request: Request,
    payload: UserCreateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user, grants = await users_service.create_user(
        db,
        username=payload.username,
        password=payload.password,
        full_name=payload.full_name,
        role=payload.role,
        company_id=payload.company_id,
        categories=_to_grants(payload.categories),
    )
    await record_event(
        event_type="user.created",
        outcome="success",
        principal=admin,
        resource_type="user",
        resource_id=user.id,
        request=request,
        metadata={"username": user.username, "role": user.role, "company_id": user.company_id},
    )
    return success_response(request=request, data=to_user_response(user, grants))


@router.patch("/{user_id}", response_model=SuccessEnvelope[UserResponse] | UserResponse)
async def update_user(
    user_id: str,
    request: Request,
    payload: UserUpdateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True, exclude={"categories"})
    categories = _to_grants(payload.categories) if payload.categories is not None else None
    user, grants = await users_service.update_user(db, user_id, changes, categories=categories)
    await record_event(
        event_type="user.updated",
        outcome="success",
        principal=admin,
        resource_type="user",
        resource_id=user_id,
        request=request,
        metadata={"fields": sorted(changes), "categories_replaced": categories is not None},
    )
    return success_response(request=request, data=to_user_response(user, grants))


@router.delete("/{user_id}", response_model=SuccessEnvelope[DeletedResponse] | DeletedResponse)
async def delete_user(
    user_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await users_service.delete_user(db, user_id, acting_user_id=admin.id)
    await record_event(
        event_type="user.deleted",
        outcome="success",
        principal=admin,
        resource_type="user",
        resource_id=user_id,
        request=request,
    )
    return success_response(request=request, data=DeletedResponse(deleted=True))


@router.put(
    "/{user_id}/applications/{app_id}",
    response_model=SuccessEnvelope[OverrideResponse] | OverrideResponse,
)
async def set_override(
    user_id: str,
    app_id: str,
    request: Request,
    payload: OverrideRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    override = await users_service.set_user_override(
        db,
        user_id,
        app_id,
        access_type=payload.access_type,
        is_enabled=payload.is_enabled,
    )
    await record_event(
        event_type="user.app_override.set",
        outcome="success",
        principal=admin,
        resource_type="user_application",
        resource_id=f"{user_id}:{app_id}",
        request=request,
        metadata={"access_type": payload.access_type, "is_enabled": payload.is_enabled},
    )
    return success_response(request=request, data=_to_override_response(override))


@router.delete(
    "/{user_id}/applications/{app_id}",
    response_model=SuccessEnvelope[DeletedResponse] | DeletedResponse,
)
async def delete_override(
    user_id: str,
    app_id: str,
    request: Request,
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await users_service.delete_user_override(db, user_id, app_id)
    return success_response(request=request, data=DeletedResponse(deleted=deleted))
