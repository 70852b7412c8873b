from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from notifyrelay.apps.api.deps import get_stores
from notifyrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.domain.state import JobRecord
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.notifications import list_history

router = APIRouter(tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class NotificationItem(BaseModel):
    id: int
    type: str
    channel: str
    title: str | None
    body: str | None
    url: str | None
    icon: str | None
    created_at: datetime


def _item(job: JobRecord) -> NotificationItem:
    return NotificationItem(
        id=job.id,
        type=job.type,
        channel=job.channel,
        title=job.payload.get("title"),
        body=job.payload.get("body"),
        url=job.payload.get("url"),
        icon=job.payload.get("icon"),
        created_at=job.created_at,
    )


@router.get("/notifications/{user_id}", response_model=SuccessEnvelope[list[NotificationItem]])
async def notification_history(
    request: Request,
    user_id: str,
    limit: int | None = Query(default=None, ge=1, le=100),
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    # Delivered notifications only, newest first.
    jobs = await list_history(stores.jobs, user_id=user_id, limit=limit)
    return success_response(request=request, data=[_item(job) for job in jobs])
