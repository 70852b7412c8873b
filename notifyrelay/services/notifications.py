from __future__ import annotations

from datetime import datetime, timezone
import logging

from notifyrelay.core.config import get_settings
from notifyrelay.domain.state import (
    CHANNEL_PUSH,
    CHANNELS,
    MOBILE_PLATFORMS,
    PLATFORM_WEB,
    JobRecord,
    LogRecord,
    PreferenceRecord,
    SubscriptionRecord,
)
from notifyrelay.persistence.repos.jobs import JobStore
from notifyrelay.persistence.repos.logs import LogStore
from notifyrelay.persistence.repos.preferences import PreferenceStore
from notifyrelay.persistence.repos.subscriptions import SubscriptionStore
from notifyrelay.services.delivery.lifecycle import SubscriptionLifecycleManager
from notifyrelay.services.delivery.mailer import single_line
from notifyrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require(value: str | None, field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError(f"{field} is required")
    return cleaned


async def enqueue_notification(
    jobs: JobStore,
    *,
    user_id: str,
    title: str,
    body: str,
    url: str | None = None,
    type: str = "info",
    channel: str = CHANNEL_PUSH,
    icon: str | None = None,
) -> JobRecord:
    # Persist a pending job; delivery happens later on the worker, never on this call.
    user_id = _require(user_id, "user_id")
    title = single_line(_require(title, "title"))
    if channel not in CHANNELS:
        raise ValueError(f"channel must be one of {', '.join(CHANNELS)}")
    payload = {
        "title": title,
        "body": body or "",
        "url": url or "",
        "icon": icon or get_settings().default_icon,
    }
    record = await jobs.enqueue(
        user_id=user_id,
        type=(type or "info").strip() or "info",
        channel=channel,
        payload=payload,
        now=_utc_now(),
    )
    increment_counter("notify_jobs_enqueued_total")
    logger.info("notify_job_enqueued job_id=%s user_id=%s channel=%s", record.id, user_id, channel)
    return record


async def register_web_subscription(
    subscriptions: SubscriptionStore,
    *,
    user_id: str,
    endpoint: str,
    p256dh: str,
    auth: str,
) -> SubscriptionRecord:
    endpoint = _require(endpoint, "endpoint")
    if not endpoint.startswith("https://"):
        raise ValueError("endpoint must be an https URL")
    return await subscriptions.register(
        user_id=_require(user_id, "user_id"),
        platform=PLATFORM_WEB,
        endpoint=endpoint,
        p256dh=_require(p256dh, "keys.p256dh"),
        auth=_require(auth, "keys.auth"),
        now=_utc_now(),
    )


async def register_mobile_token(
    subscriptions: SubscriptionStore,
    *,
    user_id: str,
    token: str,
    platform: str = "android",
) -> SubscriptionRecord:
    platform = (platform or "android").strip().lower()
    if platform not in MOBILE_PLATFORMS:
        raise ValueError(f"platform must be one of {', '.join(MOBILE_PLATFORMS)}")
    return await subscriptions.register(
        user_id=_require(user_id, "user_id"),
        platform=platform,
        endpoint=_require(token, "token"),
        p256dh=None,
        auth=None,
        now=_utc_now(),
    )


async def unregister_subscription(
    lifecycle: SubscriptionLifecycleManager,
    *,
    user_id: str,
    endpoint: str,
) -> int:
    return await lifecycle.unregister(user_id=_require(user_id, "user_id"), endpoint=_require(endpoint, "endpoint"))


async def list_history(jobs: JobStore, *, user_id: str, limit: int | None = None) -> list[JobRecord]:
    settings = get_settings()
    bounded = min(max(1, limit or settings.history_page_size), settings.history_max_page_size)
    return await jobs.list_completed_for_user(_require(user_id, "user_id"), limit=bounded)


async def list_recent_logs(logs: LogStore, *, limit: int | None = None) -> list[LogRecord]:
    settings = get_settings()
    bounded = min(max(1, limit or settings.audit_page_size), settings.audit_max_page_size)
    return await logs.list_recent(limit=bounded)


async def update_preferences(
    preferences: PreferenceStore,
    *,
    user_id: str,
    allow_push: bool | None = None,
    allow_email: bool | None = None,
    categories: str | None = None,
) -> PreferenceRecord:
    # Partial update: unspecified flags keep their stored (or default) value.
    user_id = _require(user_id, "user_id")
    current = await preferences.get(user_id) or PreferenceRecord(user_id=user_id)
    return await preferences.upsert(
        user_id=user_id,
        allow_push=current.allow_push if allow_push is None else allow_push,
        allow_email=current.allow_email if allow_email is None else allow_email,
        categories=current.categories if categories is None else categories,
        now=_utc_now(),
    )
