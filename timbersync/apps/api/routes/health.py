from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.apps.api.deps import get_db
from timbersync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from timbersync.apps.api.response import SuccessEnvelope, success_response
from timbersync.core.errors import InfrastructureError

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Devices poll this before syncing; report the datastore separately from the process.
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise InfrastructureError("Database unavailable") from exc
    payload = HealthResponse(status="ok", database="ok")
    return success_response(request=request, data=payload)
