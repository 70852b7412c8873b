from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


Channel = Literal["push", "email"]
JobStatus = Literal["pending", "processing", "failed", "completed", "dead"]
Platform = Literal["web", "android", "ios"]
LogOutcome = Literal["success", "retry_scheduled", "fallback_to_email", "permanent_fail"]

CHANNEL_PUSH: Channel = "push"
CHANNEL_EMAIL: Channel = "email"
CHANNELS: tuple[str, ...] = (CHANNEL_PUSH, CHANNEL_EMAIL)

STATUS_PENDING: JobStatus = "pending"
STATUS_PROCESSING: JobStatus = "processing"
STATUS_FAILED: JobStatus = "failed"
STATUS_COMPLETED: JobStatus = "completed"
STATUS_DEAD: JobStatus = "dead"
# Statuses the poller may pick up once next_attempt_at has elapsed.
CLAIMABLE_STATUSES: tuple[str, ...] = (STATUS_PENDING, STATUS_FAILED)
TERMINAL_STATUSES: tuple[str, ...] = (STATUS_COMPLETED, STATUS_DEAD)

PLATFORM_WEB: Platform = "web"
MOBILE_PLATFORMS: tuple[str, ...] = ("android", "ios")
PLATFORMS: tuple[str, ...] = (PLATFORM_WEB, *MOBILE_PLATFORMS)

OUTCOME_SUCCESS: LogOutcome = "success"
OUTCOME_RETRY_SCHEDULED: LogOutcome = "retry_scheduled"
OUTCOME_FALLBACK: LogOutcome = "fallback_to_email"
OUTCOME_PERMANENT_FAIL: LogOutcome = "permanent_fail"


def log_status(channel: str, outcome: str) -> str:
    # Audit rows encode the channel and outcome as one "<channel>:<outcome>" string.
    return f"{channel}:{outcome}"


@dataclass(frozen=True)
class JobRecord:
    id: int
    user_id: str
    type: str
    channel: str
    payload: dict[str, Any]
    status: str
    attempts: int
    next_attempt_at: datetime
    created_at: datetime
    # Set on every claim; a processing row whose claim is older than the lease is reclaimable.
    claimed_at: datetime | None = None


@dataclass(frozen=True)
class SubscriptionRecord:
    id: int
    user_id: str
    platform: str
    endpoint: str
    p256dh: str | None
    auth: str | None
    is_active: bool
    created_at: datetime

    @property
    def is_web(self) -> bool:
        return self.platform == PLATFORM_WEB


@dataclass(frozen=True)
class PreferenceRecord:
    user_id: str
    allow_push: bool = True
    allow_email: bool = True
    categories: str = "all"
    updated_at: datetime | None = None

    def allows(self, channel: str) -> bool:
        if channel == CHANNEL_PUSH:
            return self.allow_push
        if channel == CHANNEL_EMAIL:
            return self.allow_email
        return False


@dataclass(frozen=True)
class LogRecord:
    id: int
    queue_id: int
    status: str
    response: str | None
    created_at: datetime


@dataclass(frozen=True)
class DispatchResult:
    # Outcome of one channel dispatch; response is persisted verbatim in the audit log.
    success: bool
    response: str
    details: dict[str, Any] = field(default_factory=dict)
