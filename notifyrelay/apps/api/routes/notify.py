from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from notifyrelay.apps.api.deps import get_stores
from notifyrelay.apps.api.errors import bad_request
from notifyrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.notifications import enqueue_notification

router = APIRouter(tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class NotifyRequest(BaseModel):
    user_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    body: str = ""
    url: str | None = None
    type: str = "info"
    # Producers may target email directly; push is the default with email fallback.
    channel: Literal["push", "email"] = "push"


class NotifyAccepted(BaseModel):
    queue_id: int
    status: str
    channel: str


@router.post("/notify", status_code=202, response_model=SuccessEnvelope[NotifyAccepted])
async def notify(
    request: Request,
    payload: NotifyRequest,
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    # Enqueue only; the caller never waits on delivery.
    try:
        job = await enqueue_notification(
            stores.jobs,
            user_id=payload.user_id,
            title=payload.title,
            body=payload.body,
            url=payload.url,
            type=payload.type,
            channel=payload.channel,
        )
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    accepted = NotifyAccepted(queue_id=job.id, status=job.status, channel=job.channel)
    return success_response(request=request, data=accepted)
