from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_current_principal, get_db
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.apps.api.routes.admin_users import UserResponse, to_user_response
from timbersync.core.errors import AuthenticationError
from timbersync.domain.principal import Principal
from timbersync.persistence.repos.users import get_user, list_category_grants
from timbersync.services.audit import record_event
from timbersync.services.auth.tokens import issue_token
from timbersync.services.users import authenticate


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse


@router.post("/login", response_model=SuccessEnvelope[LoginResponse] | LoginResponse)
async def login(
    request: Request,
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        user = await authenticate(db, payload.username, payload.password)
    except AuthenticationError:
        await record_event(
            event_type="auth.login.failure",
            outcome="failure",
            request=request,
            resource_type="auth",
            metadata={"username": payload.username},
            error_code="AUTH_UNAUTHORIZED",
        )
        raise
    token, expires_at = issue_token(principal_id=user.id, role=user.role)
    grants = await list_category_grants(db, [user.id])
    await record_event(
        event_type="auth.login.success",
        outcome="success",
        actor_id=user.id,
        company_id=user.company_id,
        request=request,
        resource_type="auth",
    )
    response = LoginResponse(
        token=token,
        expires_at=expires_at,
        user=to_user_response(user, grants.get(user.id, [])),
    )
    return success_response(request=request, data=response)


@router.get("/me", response_model=SuccessEnvelope[UserResponse] | UserResponse)
async def me(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await get_user(db, principal.id)
    grants = await list_category_grants(db, [principal.id])
    return success_response(request=request, data=to_user_response(user, grants.get(principal.id, [])))
