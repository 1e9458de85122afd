from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import (
    ensure_category_access,
    get_current_principal,
    get_db,
    require_category_access,
)
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.core.config import get_settings
from timbersync.domain.principal import Principal
from timbersync.services import datasets as datasets_service
from timbersync.services.audit import record_event
from timbersync.services.datasets import DatasetSummary
from timbersync.services.entitlements import PERMISSION_DELETE, PERMISSION_READ, PERMISSION_WRITE


router = APIRouter(tags=["datasets"], responses=DEFAULT_ERROR_RESPONSES)


class CategoryListResponse(BaseModel):
    categories: list[str]


class DatasetResponse(BaseModel):
    id: str
    filename: str
    category: str
    uploaded_at: datetime | None
    uploaded_by: str | None
    record_count: int


class DatasetListResponse(BaseModel):
    files: list[DatasetResponse]
    total: int


class UploadResponse(BaseModel):
    file_id: str
    filename: str
    category: str
    record_count: int


class DatasetRowsResponse(BaseModel):
    file_id: str
    filename: str
    category: str
    rows: list[dict[str, Any]]
    total: int


class DeletedResponse(BaseModel):
    deleted: bool


def _to_dataset_response(item: DatasetSummary) -> DatasetResponse:
    return DatasetResponse(
        id=item.id,
        filename=item.filename,
        category=item.category,
        uploaded_at=item.uploaded_at,
        uploaded_by=item.uploaded_by,
        record_count=item.record_count,
    )


def _to_list_response(items: list[DatasetSummary]) -> DatasetListResponse:
    files = [_to_dataset_response(item) for item in items]
    return DatasetListResponse(files=files, total=len(files))


@router.get("/categories", response_model=SuccessEnvelope[CategoryListResponse] | CategoryListResponse)
async def list_categories(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    categories = await datasets_service.list_categories(db, principal)
    return success_response(request=request, data=CategoryListResponse(categories=categories))


@router.get(
    "/categories/{category}/datasets",
    response_model=SuccessEnvelope[DatasetListResponse] | DatasetListResponse,
)
async def list_category_datasets(
    category: str,
    request: Request,
    principal: Principal = Depends(require_category_access(PERMISSION_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await datasets_service.list_datasets(db, principal, category=category)
    return success_response(request=request, data=_to_list_response(items))


@router.post(
    "/datasets",
    status_code=201,
    response_model=SuccessEnvelope[UploadResponse] | UploadResponse,
)
async def upload_dataset(
    request: Request,
    file: UploadFile = File(...),
    category: str | None = Form(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Multipart fields are not visible to dependencies, so check the grant here.
    category = (category or "").strip() or get_settings().default_dataset_category
    await ensure_category_access(db, principal, category, PERMISSION_WRITE)
    content = await file.read()
    dataset, record_count = await datasets_service.upload_dataset(
        db,
        filename=file.filename or "",
        content=content,
        category=category,
        uploaded_by=principal.id,
    )
    await record_event(
        event_type="dataset.uploaded",
        outcome="success",
        principal=principal,
        resource_type="dataset",
        resource_id=dataset.id,
        request=request,
        metadata={"filename": dataset.filename, "category": category, "record_count": record_count},
    )
    payload = UploadResponse(
        file_id=dataset.id,
        filename=dataset.filename,
        category=dataset.category,
        record_count=record_count,
    )
    return success_response(request=request, data=payload)


@router.get("/datasets", response_model=SuccessEnvelope[DatasetListResponse] | DatasetListResponse)
async def list_datasets(
    request: Request,
    category: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if category:
        await ensure_category_access(db, principal, category, PERMISSION_READ)
    items = await datasets_service.list_datasets(db, principal, category=category)
    return success_response(request=request, data=_to_list_response(items))


@router.get(
    "/datasets/search",
    response_model=SuccessEnvelope[DatasetListResponse] | DatasetListResponse,
)
async def search_datasets(
    request: Request,
    q: str = Query(default=""),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await datasets_service.search_datasets(db, principal, q)
    return success_response(request=request, data=_to_list_response(items))


@router.get(
    "/datasets/{filename}/rows",
    response_model=SuccessEnvelope[DatasetRowsResponse] | DatasetRowsResponse,
)
async def get_dataset_rows(
    filename: str,
    request: Request,
    category: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    dataset = await datasets_service.find_dataset(db, filename, category=category)
    await ensure_category_access(db, principal, dataset.category, PERMISSION_READ)
    rows = await datasets_service.load_rows(db, dataset)
    payload = DatasetRowsResponse(
        file_id=dataset.id,
        filename=dataset.filename,
        category=dataset.category,
        rows=rows,
        total=len(rows),
    )
    return success_response(request=request, data=payload)


@router.delete(
    "/datasets/{dataset_id}",
    response_model=SuccessEnvelope[DeletedResponse] | DeletedResponse,
)
async def delete_dataset(
    dataset_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    dataset = await datasets_service.get_dataset(db, dataset_id)
    await ensure_category_access(db, principal, dataset.category, PERMISSION_DELETE)
    filename, category = dataset.filename, dataset.category
    await datasets_service.delete_dataset(db, dataset)
    await record_event(
        event_type="dataset.deleted",
        outcome="success",
        principal=principal,
        resource_type="dataset",
        resource_id=dataset_id,
        request=request,
        metadata={"filename": filename, "category": category},
    )
    return success_response(request=request, data=DeletedResponse(deleted=True))
