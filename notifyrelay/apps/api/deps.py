from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from notifyrelay.core.config import get_settings
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.delivery.lifecycle import SubscriptionLifecycleManager


def get_stores(request: Request) -> StoreBundle:
    # Stores are bound once in create_app so tests can inject in-memory ones.
    return request.app.state.stores


def get_lifecycle(stores: StoreBundle = Depends(get_stores)) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(stores.subscriptions)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def require_admin(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    # Admin routes are open when no key is configured (local development).
    expected = get_settings().admin_api_key
    if not expected:
        return
    if not x_admin_key:
        raise _auth_error("Missing admin key")
    if not hmac.compare_digest(x_admin_key.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Invalid admin key")
