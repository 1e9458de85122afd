from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db, require_admin
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.domain.models import Company
from timbersync.domain.principal import Principal
from timbersync.services import applications as applications_service
from timbersync.services.audit import record_event


router = APIRouter(prefix="/admin/companies", tags=["admin-companies"], responses=DEFAULT_ERROR_RESPONSES)


class CompanyResponse(BaseModel):
    id: str
    name: str
    is_active: bool
    created_at: datetime | None = None


class CompanyCreateRequest(BaseModel):
    name: str = Field(min_length=1)


class CompanyUpdateRequest(BaseModel):
    name: str | None = None
    is_active: bool | None = None


class CompanyListResponse(BaseModel):
    companies: list[CompanyResponse]
    total: int


def _to_company_response(company: Company) -> CompanyResponse:
    return CompanyResponse(
        id=company.id,
        name=company.name,
        is_active=company.is_active,
        created_at=company.created_at,
    )


@router.get("", response_model=SuccessEnvelope[CompanyListResponse] | CompanyListResponse)
async def list_companies(
    request: Request,
    _admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    companies = [_to_company_response(item) for item in await applications_service.list_companies(db)]
    return success_response(
        request=request,
        data=CompanyListResponse(companies=companies, total=len(companies)),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[CompanyResponse] | CompanyResponse)
async def create_company(
    request: Request,
    payload: CompanyCreateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    company = await applications_service.create_company(db, name=payload.name)
    await record_event(
        event_type="company.created",
        outcome="success",
        principal=admin,
        resource_type="company",
        resource_id=company.id,
        request=request,
    )
    return success_response(request=request, data=_to_company_response(company))


@router.patch("/{company_id}", response_model=SuccessEnvelope[CompanyResponse] | CompanyResponse)
async def update_company(
    company_id: str,
    request: Request,
    payload: CompanyUpdateRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    company = await applications_service.update_company(db, company_id, changes)
    await record_event(
        event_type="company.updated",
        outcome="success",
        principal=admin,
        resource_type="company",
        resource_id=company_id,
        request=request,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=_to_company_response(company))
