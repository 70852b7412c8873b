from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import json
import logging
import time
from typing import Any, Literal, Protocol

import httpx
from pywebpush import WebPushException, webpush

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.core.errors import StaleEndpointError, TransientDispatchError
from notifyrelay.domain.state import DispatchResult, JobRecord, SubscriptionRecord
from notifyrelay.persistence.repos.subscriptions import SubscriptionStore
from notifyrelay.services.delivery.lifecycle import SubscriptionLifecycleManager
from notifyrelay.services.resilience import is_transient, run_with_timeout
from notifyrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_GONE_STATUS_CODES = (404, 410)
# Gateway result errors that mean the device token will never work again.
_STALE_TOKEN_ERRORS = frozenset({"NotRegistered", "InvalidRegistration", "MismatchSenderId"})

SendStatus = Literal["delivered", "stale", "error", "skipped"]


class PushSender(Protocol):
    integration: str

    @property
    def configured(self) -> bool: ...

    async def send(self, subscription: SubscriptionRecord, payload: dict[str, Any]) -> str: ...


class PyWebPushSender:
    """Web Push (VAPID) sender backed by pywebpush.

    pywebpush is synchronous, so each send runs in a worker thread.
    """

    integration = "push.web"

    def __init__(
        self,
        *,
        vapid_private_key: str | None,
        vapid_subject: str,
        ttl_s: int = 86400,
        timeout_s: float = 5.0,
    ) -> None:
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._ttl_s = ttl_s
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PyWebPushSender":
        settings = settings or get_settings()
        return cls(
            vapid_private_key=settings.vapid_private_key,
            vapid_subject=settings.vapid_subject,
            ttl_s=settings.web_push_ttl_s,
            timeout_s=max(0.2, settings.push_send_timeout_ms / 1000.0),
        )

    @property
    def configured(self) -> bool:
        return bool(self._vapid_private_key)

    async def send(self, subscription: SubscriptionRecord, payload: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._send_sync, subscription, json.dumps(payload))

    def _send_sync(self, subscription: SubscriptionRecord, data: str) -> str:
        subscription_info = {
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
        }
        try:
            response = webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self._vapid_private_key,
                # pywebpush mutates the claims dict, so build a fresh one per send.
                vapid_claims={"sub": self._vapid_subject},
                ttl=self._ttl_s,
                timeout=self._timeout_s,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            if status_code in _GONE_STATUS_CODES:
                raise StaleEndpointError(subscription.id, status_code) from exc
            raise TransientDispatchError(f"web push rejected ({status_code}): {exc.message}") from exc
        return f"web push accepted ({getattr(response, 'status_code', 201)})"


class FcmGatewaySender:
    integration = "push.mobile"

    def __init__(
        self,
        *,
        server_key: str | None,
        endpoint: str,
        timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._server_key = server_key
        self._endpoint = endpoint
        self._timeout_s = timeout_s
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "FcmGatewaySender":
        settings = settings or get_settings()
        return cls(
            server_key=settings.fcm_server_key,
            endpoint=settings.fcm_endpoint,
            timeout_s=max(0.2, settings.push_send_timeout_ms / 1000.0),
        )

    @property
    def configured(self) -> bool:
        return bool(self._server_key)

    async def send(self, subscription: SubscriptionRecord, payload: dict[str, Any]) -> str:
        body = {
            "to": subscription.endpoint,
            "notification": {"title": payload.get("title"), "body": payload.get("body")},
            "data": payload,
        }
        headers = {"Authorization": f"key={self._server_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._endpoint, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise TransientDispatchError(f"mobile gateway request failed: {exc.__class__.__name__}") from exc
        if response.status_code in _GONE_STATUS_CODES:
            raise StaleEndpointError(subscription.id, response.status_code)
        if response.status_code >= 400:
            raise TransientDispatchError(f"mobile gateway rejected notification ({response.status_code})")
        try:
            data = response.json()
        except ValueError:
            data = {}
        results = data.get("results") if isinstance(data, dict) else None
        error = None
        if isinstance(results, list) and results and isinstance(results[0], dict):
            error = results[0].get("error")
        if error in _STALE_TOKEN_ERRORS:
            raise StaleEndpointError(subscription.id, response.status_code, f"device token rejected: {error}")
        if error:
            raise TransientDispatchError(f"mobile gateway error: {error}")
        return f"mobile gateway accepted ({response.status_code})"


@dataclass(frozen=True)
class SendOutcome:
    subscription_id: int
    platform: str
    status: SendStatus
    detail: str


class PushDispatcher:
    def __init__(
        self,
        *,
        subscriptions: SubscriptionStore,
        lifecycle: SubscriptionLifecycleManager,
        web_sender: PushSender,
        mobile_sender: PushSender,
        send_timeout_ms: int = 5000,
    ) -> None:
        self._subscriptions = subscriptions
        self._lifecycle = lifecycle
        self._web_sender = web_sender
        self._mobile_sender = mobile_sender
        self._send_timeout_ms = send_timeout_ms
        self._cleanups: set[asyncio.Task[None]] = set()

    async def dispatch(self, job: JobRecord) -> DispatchResult:
        # Fan out to every active device; one delivery is enough for success.
        subscriptions = await self._subscriptions.list_active(job.user_id)
        if not subscriptions:
            return DispatchResult(success=False, response="No active subscriptions")
        outcomes = await asyncio.gather(*(self._send_one(item, job.payload) for item in subscriptions))
        delivered = sum(1 for outcome in outcomes if outcome.status == "delivered")
        summary = "; ".join(f"#{o.subscription_id} {o.status}: {o.detail}" for o in outcomes)
        return DispatchResult(
            success=delivered > 0,
            response=f"delivered {delivered}/{len(outcomes)} ({summary})",
            details={"subscriptions": [asdict(outcome) for outcome in outcomes]},
        )

    async def _send_one(self, subscription: SubscriptionRecord, payload: dict[str, Any]) -> SendOutcome:
        sender = self._web_sender if subscription.is_web else self._mobile_sender
        if not sender.configured:
            return SendOutcome(subscription.id, subscription.platform, "skipped", f"{sender.integration} not configured")
        if subscription.is_web and not (subscription.p256dh and subscription.auth):
            return SendOutcome(subscription.id, subscription.platform, "skipped", "missing encryption keys")
        started = time.monotonic()
        try:
            detail = await run_with_timeout(
                sender.send(subscription, payload),
                timeout_ms=self._send_timeout_ms,
                operation=sender.integration,
            )
        except StaleEndpointError as exc:
            self._record(sender, started, success=False)
            self._schedule_retire(subscription.id)
            return SendOutcome(subscription.id, subscription.platform, "stale", f"endpoint gone ({exc.status_code})")
        except Exception as exc:  # noqa: BLE001 - one device failing must not abort the fan-out
            self._record(sender, started, success=False)
            logger.warning(
                "push_send_failed subscription_id=%s platform=%s transient=%s",
                subscription.id,
                subscription.platform,
                is_transient(exc),
                exc_info=exc,
            )
            return SendOutcome(subscription.id, subscription.platform, "error", str(exc) or exc.__class__.__name__)
        self._record(sender, started, success=True)
        return SendOutcome(subscription.id, subscription.platform, "delivered", detail)

    @property
    def pending_cleanups(self) -> int:
        return len(self._cleanups)

    async def settle(self) -> None:
        while self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    def _schedule_retire(self, subscription_id: int) -> None:
        # Deactivation runs outside the dispatch so a slow write never delays or fails the result.
        task = asyncio.create_task(self._retire(subscription_id), name=f"retire-subscription-{subscription_id}")
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)

    async def _retire(self, subscription_id: int) -> None:
        try:
            await self._lifecycle.deactivate(subscription_id)
        except Exception as exc:  # noqa: BLE001 - stale cleanup is best-effort
            logger.warning("subscription_deactivate_failed subscription_id=%s", subscription_id, exc_info=exc)

    @staticmethod
    def _record(sender: PushSender, started: float, *, success: bool) -> None:
        record_external_call(
            integration=sender.integration,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )
