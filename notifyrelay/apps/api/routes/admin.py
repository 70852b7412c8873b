from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from notifyrelay.apps.api.deps import get_stores, require_admin
from notifyrelay.apps.api.openapi import ADMIN_ERROR_RESPONSES
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.notifications import list_recent_logs
from notifyrelay.services.telemetry import counters_snapshot, external_call_stats

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class LogEntryResponse(BaseModel):
    id: int
    queue_id: int
    status: str
    response: str | None
    created_at: datetime


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    external_calls: dict[str, dict[str, float | int | None]]


@router.get("/logs", response_model=SuccessEnvelope[list[LogEntryResponse]])
async def recent_logs(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=200),
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    rows = await list_recent_logs(stores.logs, limit=limit)
    items = [
        LogEntryResponse(
            id=row.id,
            queue_id=row.queue_id,
            status=row.status,
            response=row.response,
            created_at=row.created_at,
        )
        for row in rows
    ]
    return success_response(request=request, data=items)


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def delivery_metrics(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
) -> dict:
    payload = MetricsResponse(counters=counters_snapshot(), external_calls=external_call_stats(window_s))
    return success_response(request=request, data=payload)
