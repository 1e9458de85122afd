from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_current_principal, get_db, require_admin, require_company_scope
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.domain.models import Application
from timbersync.domain.principal import Principal
from timbersync.services import applications as applications_service
from timbersync.services.applications import AccessibleApplication, CompanyGrantView
from timbersync.services.audit import record_event
from timbersync.services.entitlements import resolve_app_access


router = APIRouter(tags=["applications"], responses=DEFAULT_ERROR_RESPONSES)


class ApplicationSummary(BaseModel):
    app_id: str
    name: str
    description: str | None
    landing_url: str | None
    license_expires_at: datetime | None = None
    is_expired: bool = False
    companies_count: int | None = None


class ApplicationListResponse(BaseModel):
    applications: list[ApplicationSummary]
    count: int


class AccessCheckResponse(BaseModel):
    app_id: str
    allowed: bool
    access_level: str | None
    reason: str | None
    company_id: str | None
    details: dict = Field(default_factory=dict)


class ApplicationResponse(BaseModel):
    app_id: str
    name: str
    description: str | None
    landing_url: str | None
    is_active: bool
    requires_license: bool


class ApplicationCreateRequest(BaseModel):
    app_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    landing_url: str | None = None
    requires_license: bool = True


class ApplicationUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    landing_url: str | None = None
    is_active: bool | None = None
    requires_license: bool | None = None


class CompanyGrantRequest(BaseModel):
    company_id: str = Field(min_length=1)
    app_id: str = Field(min_length=1)
    max_devices: int | None = Field(default=None, ge=1)
    license_expires_at: datetime | None = None
    notes: str | None = None


class CompanyGrantResponse(BaseModel):
    id: str
    company_id: str
    company_name: str | None = None
    app_id: str
    app_name: str | None = None
    is_enabled: bool
    max_devices: int
    license_expires_at: datetime | None
    notes: str | None


class CompanyGrantListResponse(BaseModel):
    company_apps: list[CompanyGrantResponse]
    total: int


def _to_summary(item: AccessibleApplication) -> ApplicationSummary:
    return ApplicationSummary(
        app_id=item.app_id,
        name=item.name,
        description=item.description,
        landing_url=item.landing_url,
        license_expires_at=item.license_expires_at,
        is_expired=item.is_expired,
        companies_count=item.companies_count,
    )


def _to_application_response(application: Application) -> ApplicationResponse:
    return ApplicationResponse(
        app_id=application.app_id,
        name=application.name,
        description=application.description,
        landing_url=application.landing_url,
        is_active=application.is_active,
        requires_license=application.requires_license,
    )


def _to_grant_response(view: CompanyGrantView) -> CompanyGrantResponse:
    grant = view.grant
    return CompanyGrantResponse(
        id=grant.id,
        company_id=grant.company_id,
        company_name=view.company_name,
        app_id=grant.app_id,
        app_name=view.app_name,
        is_enabled=grant.is_enabled,
        max_devices=grant.max_devices,
        license_expires_at=grant.license_expires_at,
        notes=grant.notes,
    )


@router.get(
    "/applications",
    response_model=SuccessEnvelope[ApplicationListResponse] | ApplicationListResponse,
)
async def list_applications(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    _scope: str | None = Depends(require_company_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = [_to_summary(item) for item in await applications_service.list_accessible_applications(db, principal)]
    return success_response(request=request, data=ApplicationListResponse(applications=items, count=len(items)))


@router.get(
    "/applications/{app_id}",
    response_model=SuccessEnvelope[ApplicationSummary] | ApplicationSummary,
)
async def get_application(
    app_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    _scope: str | None = Depends(require_company_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await applications_service.get_accessible_application(db, principal, app_id)
    return success_response(request=request, data=_to_summary(item))


@router.get(
    "/applications/{app_id}/access",
    response_model=SuccessEnvelope[AccessCheckResponse] | AccessCheckResponse,
)
async def check_application_access(
    app_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Report the decision instead of failing so dashboards can explain a denial.
    decision = await resolve_app_access(db, principal, app_id)
    payload = AccessCheckResponse(
        app_id=app_id,
        allowed=decision.allowed,
        access_level=decision.access_level,
        reason=decision.reason,
        company_id=decision.company_id,
        details=getattr(decision, "context", {}),
    )
    return success_response(request=request, data=payload)


@router.post(
    "/admin/applications",
    status_code=201,
    response_model=SuccessEnvelope[ApplicationResponse] | ApplicationResponse,
)
async def register_application(
    request: Request,
    payload: ApplicationCreateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    application = await applications_service.register_application(
        db,
        app_id=payload.app_id,
        name=payload.name,
        description=payload.description,
        landing_url=payload.landing_url,
        requires_license=payload.requires_license,
    )
    await record_event(
        event_type="application.registered",
        outcome="success",
        principal=admin,
        resource_type="application",
        resource_id=application.app_id,
        request=request,
    )
    return success_response(request=request, data=_to_application_response(application))


@router.patch(
    "/admin/applications/{app_id}",
    response_model=SuccessEnvelope[ApplicationResponse] | ApplicationResponse,
)
async def update_application(
    app_id: str,
    request: Request,
    payload: ApplicationUpdateRequest,
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    application = await applications_service.update_application(
        db, app_id, payload.model_dump(exclude_unset=True)
    )
    return success_response(request=request, data=_to_application_response(application))


@router.get(
    "/admin/company-apps",
    response_model=SuccessEnvelope[CompanyGrantListResponse] | CompanyGrantListResponse,
)
async def list_company_apps(
    request: Request,
    company_id: str | None = Query(default=None),
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grants = [_to_grant_response(view) for view in await applications_service.list_company_grants(db, company_id=company_id)]
    return success_response(
        request=request,
        data=CompanyGrantListResponse(company_apps=grants, total=len(grants)),
    )


@router.post(
    "/admin/company-apps",
    response_model=SuccessEnvelope[CompanyGrantResponse] | CompanyGrantResponse,
)
async def grant_company_app(
    request: Request,
    payload: CompanyGrantRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await applications_service.grant_company_access(
        db,
        company_id=payload.company_id,
        app_id=payload.app_id,
        max_devices=payload.max_devices,
        license_expires_at=payload.license_expires_at,
        notes=payload.notes,
    )
    await record_event(
        event_type="company_app.granted",
        outcome="success",
        principal=admin,
        resource_type="company_application",
        resource_id=grant.id,
        request=request,
        metadata={"company_id": grant.company_id, "app_id": grant.app_id},
    )
    view = CompanyGrantView(grant=grant, company_name=None, app_name=None)
    return success_response(request=request, data=_to_grant_response(view))


@router.delete(
    "/admin/company-apps/{grant_id}",
    response_model=SuccessEnvelope[CompanyGrantResponse] | CompanyGrantResponse,
)
async def revoke_company_app(
    grant_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await applications_service.revoke_company_access(db, grant_id)
    await record_event(
        event_type="company_app.revoked",
        outcome="success",
        principal=admin,
        resource_type="company_application",
        resource_id=grant_id,
        request=request,
    )
    view = CompanyGrantView(grant=grant, company_name=None, app_name=None)
    return success_response(request=request, data=_to_grant_response(view))
