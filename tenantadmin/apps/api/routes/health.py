from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import get_db
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import SuccessEnvelope, success_response
from tenantadmin.core.config import get_settings
from tenantadmin.services.events.queue import get_queue_depth


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    queue_depth: int | None
    relationship_backend: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Degraded rather than failing so load balancers can still read the body.
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
    queue_depth = await get_queue_depth()
    payload = HealthResponse(
        status="ok" if database == "ok" and queue_depth is not None else "degraded",
        database=database,
        queue_depth=queue_depth,
        relationship_backend=get_settings().relationship_backend,
    )
    return success_response(request=request, data=payload.model_dump())
