from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from notifyrelay.apps.api.deps import get_lifecycle, get_stores
from notifyrelay.apps.api.errors import bad_request
from notifyrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.core.config import get_settings
from notifyrelay.domain.state import SubscriptionRecord
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.delivery.lifecycle import SubscriptionLifecycleManager
from notifyrelay.services.notifications import (
    register_mobile_token,
    register_web_subscription,
    unregister_subscription,
)

router = APIRouter(tags=["subscriptions"], responses=DEFAULT_ERROR_RESPONSES)


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class PushSubscriptionPayload(BaseModel):
    # Shape of the browser's PushSubscription.toJSON().
    endpoint: str = Field(min_length=1)
    keys: SubscriptionKeys


class WebSubscriptionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    subscription: PushSubscriptionPayload


class MobileTokenRequest(BaseModel):
    user_id: str = Field(min_length=1)
    token: str = Field(min_length=1)
    platform: str = "android"


class UnsubscribeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)


class SubscriptionResponse(BaseModel):
    id: int
    user_id: str
    platform: str
    endpoint: str
    is_active: bool
    created_at: datetime


class UnsubscribeResponse(BaseModel):
    deactivated: int


class VapidKeyResponse(BaseModel):
    public_key: str | None


def _subscription_payload(record: SubscriptionRecord) -> SubscriptionResponse:
    # Encryption keys stay server-side.
    return SubscriptionResponse(
        id=record.id,
        user_id=record.user_id,
        platform=record.platform,
        endpoint=record.endpoint,
        is_active=record.is_active,
        created_at=record.created_at,
    )


@router.post("/subscriptions", status_code=201, response_model=SuccessEnvelope[SubscriptionResponse])
async def subscribe_web(
    request: Request,
    payload: WebSubscriptionRequest,
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    try:
        record = await register_web_subscription(
            stores.subscriptions,
            user_id=payload.user_id,
            endpoint=payload.subscription.endpoint,
            p256dh=payload.subscription.keys.p256dh,
            auth=payload.subscription.keys.auth,
        )
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    return success_response(request=request, data=_subscription_payload(record))


@router.post("/subscriptions/mobile", status_code=201, response_model=SuccessEnvelope[SubscriptionResponse])
async def subscribe_mobile(
    request: Request,
    payload: MobileTokenRequest,
    stores: StoreBundle = Depends(get_stores),
) -> dict:
    try:
        record = await register_mobile_token(
            stores.subscriptions,
            user_id=payload.user_id,
            token=payload.token,
            platform=payload.platform,
        )
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    return success_response(request=request, data=_subscription_payload(record))


@router.post("/subscriptions/unsubscribe", response_model=SuccessEnvelope[UnsubscribeResponse])
async def unsubscribe(
    request: Request,
    payload: UnsubscribeRequest,
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> dict:
    # Unknown endpoints are not an error; the count tells the client what changed.
    deactivated = await unregister_subscription(lifecycle, user_id=payload.user_id, endpoint=payload.endpoint)
    return success_response(request=request, data=UnsubscribeResponse(deactivated=deactivated))


@router.get("/push/vapid-public-key", response_model=SuccessEnvelope[VapidKeyResponse])
async def vapid_public_key(request: Request) -> dict:
    return success_response(request=request, data=VapidKeyResponse(public_key=get_settings().vapid_public_key))
