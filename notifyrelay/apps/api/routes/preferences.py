from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from notifyrelay.apps.api.deps import get_stores
from notifyrelay.apps.api.errors import bad_request
from notifyrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.domain.state import PreferenceRecord
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.delivery.preferences import PreferenceResolver
from notifyrelay.services.notifications import update_preferences

router = APIRouter(prefix="/preferences", tags=["preferences"], responses=DEFAULT_ERROR_RESPONSES)


class PreferenceUpdate(BaseModel):
    allow_push: bool | None = None
    allow_email: bool | None = None
    categories: str | None = None


class PreferenceResponse(BaseModel):
    user_id: str
    allow_push: bool
    allow_email: bool
    categories: str
    updated_at: datetime | None


def _payload(record: PreferenceRecord) -> PreferenceResponse:
    return PreferenceResponse(
        user_id=record.user_id,
        allow_push=record.allow_push,
        allow_email=record.allow_email,
        categories=record.categories,
        updated_at=record.updated_at,
    )


@router.get("/{user_id}", response_model=SuccessEnvelope[PreferenceResponse])
async def get_preferences(
    request: Request,
    user_id: str,
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    record = await PreferenceResolver(stores.preferences).resolve(user_id)
    return success_response(request=request, data=_payload(record))


@router.put("/{user_id}", response_model=SuccessEnvelope[PreferenceResponse])
async def put_preferences(
    request: Request,
    user_id: str,
    payload: PreferenceUpdate,
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    try:
        record = await update_preferences(
            stores.preferences,
            user_id=user_id,
            allow_push=payload.allow_push,
            allow_email=payload.allow_email,
            categories=payload.categories,
        )
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    return success_response(request=request, data=_payload(record))
