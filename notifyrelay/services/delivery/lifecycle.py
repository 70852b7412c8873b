from __future__ import annotations

import logging

from notifyrelay.persistence.repos.subscriptions import SubscriptionStore
from notifyrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class SubscriptionLifecycleManager:
    def __init__(self, store: SubscriptionStore) -> None:
        self._store = store

    async def deactivate(self, subscription_id: int, *, reason: str = "stale_endpoint") -> bool:
        # Idempotent: a second call for the same id is a no-op returning False.
        changed = await self._store.deactivate(subscription_id)
        if changed:
            increment_counter("notify_subscriptions_deactivated_total")
            logger.info("subscription_deactivated subscription_id=%s reason=%s", subscription_id, reason)
        return changed

    async def unregister(self, *, user_id: str, endpoint: str) -> int:
        changed = await self._store.deactivate_endpoint(user_id=user_id, endpoint=endpoint)
        if changed:
            increment_counter("notify_subscriptions_deactivated_total", changed)
            logger.info("subscription_unregistered user_id=%s count=%s", user_id, changed)
        return changed
