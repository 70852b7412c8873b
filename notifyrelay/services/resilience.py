from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from notifyrelay.core.errors import DispatchTimeoutError, TransientDispatchError
from notifyrelay.services.telemetry import increment_counter


TransientException = (TimeoutError, OSError)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    # Network/timeout faults and provider 5xx/429 responses are worth another attempt.
    if isinstance(exc, (TransientDispatchError, *TransientException)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


async def run_with_timeout(awaitable: Awaitable[T], *, timeout_ms: int, operation: str) -> T:
    # Bound a provider call; expiry surfaces as DispatchTimeoutError so callers treat it as transient.
    try:
        return await asyncio.wait_for(awaitable, timeout=max(timeout_ms, 1) / 1000.0)
    except asyncio.TimeoutError as exc:
        raise DispatchTimeoutError(f"{operation} timed out after {timeout_ms}ms") from exc


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff_ms: int,
    retryable: Callable[[Exception], bool] = is_transient,
    counter: str = "retries_total",
) -> T:
    # Retry helper with jittered exponential backoff; the last failure propagates.
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-retryable failures
            if attempt >= max(max_attempts, 1) or not retryable(exc):
                raise
            increment_counter(counter)
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep((backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter)
            attempt += 1
