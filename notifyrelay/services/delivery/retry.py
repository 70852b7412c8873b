from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.domain.state import CHANNEL_PUSH


RetryAction = Literal["retry", "fallback", "dead"]


@dataclass(frozen=True)
class RetryPolicy:
    # Retries allowed per channel after the initial attempt.
    max_retries: int = 3
    base_delay_ms: int = 5000

    @property
    def max_attempts_per_channel(self) -> int:
        return self.max_retries + 1

    def backoff_ms(self, prior_attempts: int) -> int:
        # base * 2^n where n counts attempts already made before the failing one.
        return int(self.base_delay_ms) * (2 ** max(0, int(prior_attempts)))


def retry_policy_from_settings(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_retries=max(0, int(settings.notify_retry_max)),
        base_delay_ms=max(0, int(settings.notify_retry_base_ms)),
    )


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay_ms: int | None = None
    next_attempt_at: datetime | None = None


class RetryController:
    """Decide what happens to a job after a failed attempt.

    ``attempts`` is the post-claim count, so the attempt that just failed is
    included. Exhausting push hands the job to email; exhausting email is final.
    """

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self.policy = policy or retry_policy_from_settings()

    def decide(self, *, attempts: int, channel: str, now: datetime) -> RetryDecision:
        if attempts > self.policy.max_retries:
            if channel == CHANNEL_PUSH:
                return RetryDecision(action="fallback", next_attempt_at=now)
            return RetryDecision(action="dead")
        delay_ms = self.policy.backoff_ms(attempts - 1)
        return RetryDecision(
            action="retry",
            delay_ms=delay_ms,
            next_attempt_at=now + timedelta(milliseconds=delay_ms),
        )
