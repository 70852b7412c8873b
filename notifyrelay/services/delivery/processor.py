from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable, Literal, Mapping, Protocol

from notifyrelay.core.errors import DatabaseError, DispatchTimeoutError, PreferenceBlockedError, ProviderConfigError
from notifyrelay.domain.state import (
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    OUTCOME_FALLBACK,
    OUTCOME_PERMANENT_FAIL,
    OUTCOME_RETRY_SCHEDULED,
    OUTCOME_SUCCESS,
    DispatchResult,
    JobRecord,
)
from notifyrelay.persistence.repos.jobs import JobStore
from notifyrelay.services.delivery.preferences import PreferenceResolver
from notifyrelay.services.delivery.result_log import ResultLogger
from notifyrelay.services.delivery.retry import RetryController
from notifyrelay.services.resilience import retry_async, run_with_timeout
from notifyrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ProcessStatus = Literal["skipped", "completed", "retry_scheduled", "fallback_to_email", "dead"]


def _utc_now() -> datetime:
    # Keep worker timestamps in UTC so due checks compare consistently across stores.
    return datetime.now(timezone.utc)


class Dispatcher(Protocol):
    async def dispatch(self, job: JobRecord) -> DispatchResult: ...


@dataclass(frozen=True)
class ProcessOutcome:
    job_id: int
    status: ProcessStatus
    channel: str | None = None
    attempts: int | None = None
    detail: str | None = None


class JobProcessor:
    """Drive one job from claim to its next durable state.

    Every path that claims a job leaves it completed, failed (with a new
    next_attempt_at), pending on email, or dead; faults raised while
    dispatching are treated as failed attempts. The write recording the
    outcome is retried a bounded number of times; if it still fails the row
    stays processing until its claim lease expires and recover_stale()
    treats the stranded attempt as failed.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        preferences: PreferenceResolver,
        dispatchers: Mapping[str, Dispatcher],
        retry: RetryController,
        results: ResultLogger,
        dispatch_timeout_ms: int = 10000,
        write_attempts: int = 3,
        write_backoff_ms: int = 100,
        claim_lease_ms: int | None = None,
    ) -> None:
        self._jobs = jobs
        self._preferences = preferences
        self._dispatchers = dict(dispatchers)
        self._retry = retry
        self._results = results
        self._dispatch_timeout_ms = dispatch_timeout_ms
        self._write_attempts = write_attempts
        self._write_backoff_ms = write_backoff_ms
        self._claim_lease_ms = claim_lease_ms if claim_lease_ms is not None else dispatch_timeout_ms + 30000

    async def process(self, job_id: int) -> ProcessOutcome:
        job = await self._jobs.claim(
            job_id,
            now=_utc_now(),
            max_attempts=self._retry.policy.max_attempts_per_channel,
        )
        if job is None:
            # Another claimer won, or the job is no longer due.
            increment_counter("notify_jobs_claim_skipped_total")
            return ProcessOutcome(job_id=job_id, status="skipped")
        logger.info(
            "notify_job_claimed job_id=%s channel=%s attempt=%s",
            job.id,
            job.channel,
            job.attempts,
        )
        try:
            await self._preferences.ensure_allowed(job.user_id, job.channel)
            result = await run_with_timeout(
                self._dispatch(job),
                timeout_ms=self._dispatch_timeout_ms,
                operation=f"{job.channel} dispatch",
            )
        except PreferenceBlockedError as exc:
            return await self._handle_blocked(job, exc)
        except Exception as exc:  # noqa: BLE001 - any dispatch fault counts as a failed attempt
            if isinstance(exc, DispatchTimeoutError):
                increment_counter("notify_dispatch_timeouts_total")
            logger.warning(
                "notify_job_dispatch_error job_id=%s channel=%s attempt=%s",
                job.id,
                job.channel,
                job.attempts,
                exc_info=exc,
            )
            return await self._handle_failure(job, f"{exc.__class__.__name__}: {exc}")
        if not result.success:
            return await self._handle_failure(job, result.response)
        return await self._complete(job, result.response)

    async def recover_stale(self, *, limit: int, skip: frozenset[int] = frozenset()) -> list[ProcessOutcome]:
        # A processing row past its claim lease lost its owner; its attempt is recorded as failed.
        now = _utc_now()
        claimed_before = now - timedelta(milliseconds=self._claim_lease_ms)
        outcomes: list[ProcessOutcome] = []
        for stale in await self._jobs.list_stale(claimed_before=claimed_before, limit=limit):
            if stale.id in skip:
                continue
            job = await self._jobs.reclaim_stale(stale.id, now=now, claimed_before=claimed_before)
            if job is None:
                continue
            increment_counter("notify_jobs_reclaimed_total")
            logger.warning(
                "notify_job_reclaimed job_id=%s channel=%s attempt=%s claimed_at=%s",
                job.id,
                job.channel,
                job.attempts,
                stale.claimed_at,
            )
            outcomes.append(await self._handle_failure(job, "Claim lease expired before an outcome was recorded"))
        return outcomes

    async def settle(self) -> None:
        # Wait for dispatcher side work (stale endpoint cleanup) started by earlier jobs.
        for dispatcher in self._dispatchers.values():
            settle = getattr(dispatcher, "settle", None)
            if settle is not None:
                await settle()

    async def _dispatch(self, job: JobRecord) -> DispatchResult:
        dispatcher = self._dispatchers.get(job.channel)
        if dispatcher is None:
            raise ProviderConfigError(f"no dispatcher registered for channel {job.channel}")
        return await dispatcher.dispatch(job)

    async def _complete(self, job: JobRecord, response: str) -> ProcessOutcome:
        if not await self._write("complete", job, lambda: self._jobs.complete(job.id)):
            return self._lost_transition(job, "complete")
        increment_counter("notify_jobs_completed_total")
        await self._results.record(job_id=job.id, channel=job.channel, outcome=OUTCOME_SUCCESS, response=response)
        logger.info("notify_job_completed job_id=%s channel=%s attempt=%s", job.id, job.channel, job.attempts)
        return ProcessOutcome(job_id=job.id, status="completed", channel=job.channel, attempts=job.attempts)

    async def _handle_blocked(self, job: JobRecord, exc: PreferenceBlockedError) -> ProcessOutcome:
        # A disabled channel is a user decision, not a failure: no backoff is spent.
        if exc.channel == CHANNEL_PUSH:
            return await self._fall_back(job, str(exc))
        return await self._dead(job, str(exc))

    async def _handle_failure(self, job: JobRecord, response: str) -> ProcessOutcome:
        decision = self._retry.decide(attempts=job.attempts, channel=job.channel, now=_utc_now())
        if decision.action == "fallback":
            return await self._fall_back(job, f"Push exhausted after {job.attempts} attempts: {response}")
        if decision.action == "dead":
            return await self._dead(job, f"Exhausted after {job.attempts} attempts: {response}")
        if not await self._write(
            "schedule_retry",
            job,
            lambda: self._jobs.schedule_retry(job.id, next_attempt_at=decision.next_attempt_at),
        ):
            return self._lost_transition(job, "schedule_retry")
        increment_counter("notify_jobs_retried_total")
        await self._results.record(
            job_id=job.id,
            channel=job.channel,
            outcome=OUTCOME_RETRY_SCHEDULED,
            response=f"{response} (retry in {decision.delay_ms}ms)",
        )
        logger.info(
            "notify_job_retry_scheduled job_id=%s channel=%s attempt=%s delay_ms=%s",
            job.id,
            job.channel,
            job.attempts,
            decision.delay_ms,
        )
        return ProcessOutcome(
            job_id=job.id,
            status="retry_scheduled",
            channel=job.channel,
            attempts=job.attempts,
            detail=response,
        )

    async def _fall_back(self, job: JobRecord, response: str) -> ProcessOutcome:
        if not await self._write(
            "fall_back_to_email",
            job,
            lambda: self._jobs.fall_back_to_email(job.id, now=_utc_now()),
        ):
            return self._lost_transition(job, "fall_back_to_email")
        increment_counter("notify_jobs_fallback_total")
        await self._results.record(job_id=job.id, channel=CHANNEL_PUSH, outcome=OUTCOME_FALLBACK, response=response)
        logger.info("notify_job_fallback_to_email job_id=%s attempt=%s", job.id, job.attempts)
        return ProcessOutcome(
            job_id=job.id,
            status="fallback_to_email",
            channel=CHANNEL_EMAIL,
            attempts=0,
            detail=response,
        )

    async def _dead(self, job: JobRecord, response: str) -> ProcessOutcome:
        if not await self._write("mark_dead", job, lambda: self._jobs.mark_dead(job.id)):
            return self._lost_transition(job, "mark_dead")
        increment_counter("notify_jobs_dead_total")
        await self._results.record(job_id=job.id, channel=job.channel, outcome=OUTCOME_PERMANENT_FAIL, response=response)
        logger.warning("notify_job_dead job_id=%s channel=%s attempt=%s", job.id, job.channel, job.attempts)
        return ProcessOutcome(job_id=job.id, status="dead", channel=job.channel, attempts=job.attempts, detail=response)

    async def _write(self, transition: str, job: JobRecord, func: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return await retry_async(
                func,
                max_attempts=self._write_attempts,
                backoff_ms=self._write_backoff_ms,
                retryable=lambda exc: isinstance(exc, DatabaseError),
                counter="notify_state_write_retries_total",
            )
        except DatabaseError:
            logger.error(
                "notify_job_transition_failed job_id=%s transition=%s attempts=%s",
                job.id,
                transition,
                self._write_attempts,
            )
            raise

    @staticmethod
    def _lost_transition(job: JobRecord, transition: str) -> ProcessOutcome:
        # The row left processing underneath us; the current owner decides its fate.
        logger.warning("notify_job_transition_lost job_id=%s transition=%s", job.id, transition)
        return ProcessOutcome(job_id=job.id, status="skipped", channel=job.channel, attempts=job.attempts)
