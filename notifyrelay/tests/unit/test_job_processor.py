from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from notifyrelay.core.errors import DatabaseError, StaleEndpointError, TransientDispatchError
from notifyrelay.domain.state import TERMINAL_STATUSES, DispatchResult, JobRecord
from notifyrelay.persistence.repos.subscriptions import InMemorySubscriptionStore
from notifyrelay.persistence.stores import in_memory_stores
from notifyrelay.services import telemetry
from notifyrelay.services.delivery.preferences import PreferenceResolver
from notifyrelay.services.delivery.processor import JobProcessor
from notifyrelay.services.delivery.result_log import ResultLogger
from notifyrelay.services.delivery.retry import RetryController, RetryPolicy
from notifyrelay.services.notifications import (
    enqueue_notification,
    register_web_subscription,
    update_preferences,
)
from notifyrelay.tests.utils.fakes import FlakyJobStore, make_harness


async def _subscribe(stores, user_id: str = "u1", endpoint: str = "https://push.example/1"):
    return await register_web_subscription(
        stores.subscriptions,
        user_id=user_id,
        endpoint=endpoint,
        p256dh="p256dh-key",
        auth="auth-secret",
    )


async def _run_until_settled(harness, clock, job_id: int, *, max_cycles: int = 20) -> list[str]:
    # Advance the clock to each job's next_attempt_at and process until terminal.
    statuses: list[str] = []
    for _ in range(max_cycles):
        job = await harness.stores.jobs.get(job_id)
        if job.status in TERMINAL_STATUSES:
            break
        if job.next_attempt_at > clock.now:
            clock.now = job.next_attempt_at
        outcome = await harness.engine.processor.process(job_id)
        statuses.append(outcome.status)
    return statuses


@pytest.mark.asyncio
async def test_push_success_completes_after_one_attempt(harness, clock) -> None:
    subscription = await _subscribe(harness.stores)
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    outcome = await harness.engine.processor.process(job.id)

    stored = await harness.stores.jobs.get(job.id)
    assert outcome.status == "completed"
    assert stored.status == "completed"
    assert stored.attempts == 1
    assert stored.channel == "push"
    assert harness.web.calls == [subscription.id]
    assert harness.stores.logs.statuses(job.id) == ["push:success"]
    assert telemetry.counters_snapshot()["notify_jobs_completed_total"] == 1


@pytest.mark.asyncio
async def test_no_subscriptions_exhausts_push_then_email_to_dead(harness, clock) -> None:
    harness.email.error = TransientDispatchError("smtp unavailable")
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    statuses = await _run_until_settled(harness, clock, job.id)

    assert statuses == ["retry_scheduled"] * 3 + ["fallback_to_email"] + ["retry_scheduled"] * 3 + ["dead"]
    stored = await harness.stores.jobs.get(job.id)
    assert stored.status == "dead"
    assert stored.channel == "email"
    assert stored.attempts == 4
    assert len(harness.email.sent) == 4
    assert harness.stores.logs.statuses(job.id) == (
        ["push:retry_scheduled"] * 3
        + ["push:fallback_to_email"]
        + ["email:retry_scheduled"] * 3
        + ["email:permanent_fail"]
    )


@pytest.mark.asyncio
async def test_termination_is_bounded_by_two_channel_budgets(harness, clock) -> None:
    harness.email.error = TransientDispatchError("smtp unavailable")
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    statuses = await _run_until_settled(harness, clock, job.id)

    max_attempts_per_channel = harness.settings.notify_retry_max + 1
    assert len(statuses) <= 2 * max_attempts_per_channel


@pytest.mark.asyncio
async def test_retry_delays_double_and_job_waits_until_due(harness, clock) -> None:
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")
    expected_delays = [5000, 10000, 20000]

    for delay_ms in expected_delays:
        started = clock.now
        outcome = await harness.engine.processor.process(job.id)
        assert outcome.status == "retry_scheduled"
        stored = await harness.stores.jobs.get(job.id)
        assert stored.status == "failed"
        assert stored.next_attempt_at == started + timedelta(milliseconds=delay_ms)

        # Not yet due: the claim is refused and no attempt is consumed.
        clock.advance(ms=delay_ms - 1)
        early = await harness.engine.processor.process(job.id)
        assert early.status == "skipped"
        assert (await harness.stores.jobs.get(job.id)).attempts == stored.attempts
        clock.advance(ms=1)


@pytest.mark.asyncio
async def test_fallback_resets_attempts_and_channel_once(harness, clock) -> None:
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")
    for _ in range(4):
        current = await harness.stores.jobs.get(job.id)
        clock.now = max(clock.now, current.next_attempt_at)
        await harness.engine.processor.process(job.id)

    switched = await harness.stores.jobs.get(job.id)
    assert switched.channel == "email"
    assert switched.attempts == 0
    assert switched.status == "pending"
    assert switched.next_attempt_at == clock.now

    outcome = await harness.engine.processor.process(job.id)
    assert outcome.status == "completed"
    stored = await harness.stores.jobs.get(job.id)
    assert stored.channel == "email"
    assert stored.attempts == 1
    assert harness.stores.logs.statuses(job.id).count("push:fallback_to_email") == 1


@pytest.mark.asyncio
async def test_stale_subscription_is_deactivated_but_job_completes(harness, clock) -> None:
    healthy = await _subscribe(harness.stores, endpoint="https://push.example/healthy")
    stale = await _subscribe(harness.stores, endpoint="https://push.example/stale")
    harness.web.errors[stale.id] = StaleEndpointError(stale.id, 410)
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    outcome = await harness.engine.processor.process(job.id)

    assert outcome.status == "completed"
    await harness.engine.processor.settle()
    assert (await harness.stores.subscriptions.get(healthy.id)).is_active is True
    assert (await harness.stores.subscriptions.get(stale.id)).is_active is False
    assert telemetry.counters_snapshot()["notify_subscriptions_deactivated_total"] == 1


@pytest.mark.asyncio
async def test_push_disabled_switches_to_email_without_spending_attempt(harness, clock) -> None:
    await _subscribe(harness.stores)
    await update_preferences(harness.stores.preferences, user_id="u1", allow_push=False)
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    outcome = await harness.engine.processor.process(job.id)

    assert outcome.status == "fallback_to_email"
    stored = await harness.stores.jobs.get(job.id)
    assert stored.channel == "email"
    assert stored.attempts == 0
    assert stored.status == "pending"
    assert harness.web.calls == []
    logs = await harness.stores.logs.list_for_job(job.id)
    assert [(row.status, row.response) for row in logs] == [("push:fallback_to_email", "User disabled push")]

    delivered = await harness.engine.processor.process(job.id)
    assert delivered.status == "completed"
    assert len(harness.email.sent) == 1


@pytest.mark.asyncio
async def test_email_disabled_stops_without_rescheduling(harness, clock) -> None:
    await update_preferences(harness.stores.preferences, user_id="u1", allow_email=False)
    job = await enqueue_notification(
        harness.stores.jobs,
        user_id="u1",
        title="Hello",
        body="World",
        channel="email",
    )

    outcome = await harness.engine.processor.process(job.id)

    assert outcome.status == "dead"
    assert harness.email.sent == []
    logs = await harness.stores.logs.list_for_job(job.id)
    assert [(row.status, row.response) for row in logs] == [("email:permanent_fail", "User disabled email")]
    clock.advance(seconds=3600)
    assert await harness.stores.jobs.list_due(now=clock.now, limit=10, max_attempts=4) == []


@pytest.mark.asyncio
async def test_all_channels_disabled_ends_dead_after_fallback(harness, clock) -> None:
    await update_preferences(harness.stores.preferences, user_id="u1", allow_push=False, allow_email=False)
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    statuses = await _run_until_settled(harness, clock, job.id)

    assert statuses == ["fallback_to_email", "dead"]
    assert harness.stores.logs.statuses(job.id) == ["push:fallback_to_email", "email:permanent_fail"]


@pytest.mark.asyncio
async def test_dispatch_timeout_counts_as_failed_attempt(clock) -> None:
    harness = make_harness(dispatch_timeout_ms=50, push_send_timeout_ms=5000)
    await _subscribe(harness.stores)
    harness.web.delay_s = 0.5
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    outcome = await harness.engine.processor.process(job.id)

    assert outcome.status == "retry_scheduled"
    assert "DispatchTimeoutError" in (outcome.detail or "")
    stored = await harness.stores.jobs.get(job.id)
    assert stored.status == "failed"
    assert stored.attempts == 1
    assert telemetry.counters_snapshot()["notify_dispatch_timeouts_total"] == 1


class _ExplodingDispatcher:
    async def dispatch(self, job: JobRecord) -> DispatchResult:
        raise RuntimeError("provider crashed")


@pytest.mark.asyncio
async def test_unexpected_dispatch_exception_is_treated_as_transient(clock) -> None:
    stores = in_memory_stores()
    processor = JobProcessor(
        jobs=stores.jobs,
        preferences=PreferenceResolver(stores.preferences),
        dispatchers={"push": _ExplodingDispatcher()},
        retry=RetryController(RetryPolicy(max_retries=3, base_delay_ms=5000)),
        results=ResultLogger(stores.logs),
    )
    job = await enqueue_notification(stores.jobs, user_id="u1", title="Hello", body="World")

    outcome = await processor.process(job.id)

    assert outcome.status == "retry_scheduled"
    assert outcome.detail == "RuntimeError: provider crashed"
    assert stores.logs.statuses(job.id) == ["push:retry_scheduled"]


@pytest.mark.asyncio
async def test_missing_dispatcher_for_channel_is_a_failed_attempt(clock) -> None:
    stores = in_memory_stores()
    processor = JobProcessor(
        jobs=stores.jobs,
        preferences=PreferenceResolver(stores.preferences),
        dispatchers={},
        retry=RetryController(RetryPolicy(max_retries=0, base_delay_ms=5000)),
        results=ResultLogger(stores.logs),
    )
    job = await enqueue_notification(stores.jobs, user_id="u1", title="Hello", body="World", channel="email")

    outcome = await processor.process(job.id)

    assert outcome.status == "dead"
    assert "ProviderConfigError" in (outcome.detail or "")


@pytest.mark.asyncio
async def test_concurrent_processing_claims_job_once(harness, clock) -> None:
    await _subscribe(harness.stores)
    harness.web.delay_s = 0.05
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    first, second = await asyncio.gather(
        harness.engine.processor.process(job.id),
        harness.engine.processor.process(job.id),
    )

    assert sorted([first.status, second.status]) == ["completed", "skipped"]
    assert len(harness.web.calls) == 1
    assert (await harness.stores.jobs.get(job.id)).attempts == 1


@pytest.mark.asyncio
async def test_terminal_jobs_are_never_reclaimed(harness, clock) -> None:
    await _subscribe(harness.stores)
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")
    await harness.engine.processor.process(job.id)

    again = await harness.engine.processor.process(job.id)

    assert again.status == "skipped"
    assert harness.stores.logs.statuses(job.id) == ["push:success"]


@pytest.mark.asyncio
async def test_failed_outcome_write_is_retried_in_place(clock) -> None:
    jobs = FlakyJobStore()
    harness = make_harness(replace(in_memory_stores(), jobs=jobs))
    job = await enqueue_notification(jobs, user_id="u1", title="Hello", body="World")
    jobs.failures["schedule_retry"] = 1

    outcome = await harness.engine.processor.process(job.id)

    assert outcome.status == "retry_scheduled"
    stored = await jobs.get(job.id)
    assert stored.status == "failed"
    assert stored.attempts == 1
    assert jobs.write_calls["schedule_retry"] == 2
    assert telemetry.counters_snapshot()["notify_state_write_retries_total"] == 1

    await _run_until_settled(harness, clock, job.id)
    assert (await jobs.get(job.id)).status == "completed"


@pytest.mark.asyncio
async def test_stranded_processing_job_is_reclaimed_after_lease(clock) -> None:
    jobs = FlakyJobStore()
    harness = make_harness(replace(in_memory_stores(), jobs=jobs))
    job = await enqueue_notification(jobs, user_id="u1", title="Hello", body="World")
    jobs.failures["schedule_retry"] = harness.settings.notify_write_retry_attempts

    with pytest.raises(DatabaseError):
        await harness.engine.processor.process(job.id)

    stranded = await jobs.get(job.id)
    assert stranded.status == "processing"
    assert stranded.claimed_at == clock.now
    assert await harness.engine.processor.recover_stale(limit=5) == []

    lease_ms = harness.settings.dispatch_timeout_ms + harness.settings.notify_claim_lease_margin_ms
    clock.advance(ms=lease_ms)
    poller = harness.engine.poller
    await poller.tick()
    await poller.drain()

    recovered = await jobs.get(job.id)
    assert recovered.status == "failed"
    assert recovered.attempts == 1
    assert telemetry.counters_snapshot()["notify_jobs_reclaimed_total"] == 1
    trail = await harness.stores.logs.list_for_job(job.id)
    assert trail[0].status == "push:retry_scheduled"
    assert trail[0].response.startswith("Claim lease expired")

    for _ in range(20):
        if (await jobs.get(job.id)).status in TERMINAL_STATUSES:
            break
        clock.advance(seconds=60)
        await poller.tick()
        await poller.drain()
    assert (await jobs.get(job.id)).status == "completed"


class _SlowDeactivateStore(InMemorySubscriptionStore):
    async def deactivate(self, subscription_id: int) -> bool:
        await asyncio.sleep(0.5)
        return await super().deactivate(subscription_id)


@pytest.mark.asyncio
async def test_slow_stale_cleanup_does_not_fail_delivered_push(clock) -> None:
    subscriptions = _SlowDeactivateStore()
    harness = make_harness(
        replace(in_memory_stores(), subscriptions=subscriptions),
        dispatch_timeout_ms=200,
        push_send_timeout_ms=100,
    )
    healthy = await _subscribe(harness.stores, endpoint="https://push.example/healthy")
    stale = await _subscribe(harness.stores, endpoint="https://push.example/stale")
    harness.web.errors[stale.id] = StaleEndpointError(stale.id, 410)
    job = await enqueue_notification(harness.stores.jobs, user_id="u1", title="Hello", body="World")

    outcome = await harness.engine.processor.process(job.id)

    assert outcome.status == "completed"
    assert sorted(harness.web.calls) == [healthy.id, stale.id]
    assert (await subscriptions.get(stale.id)).is_active is True
    await harness.engine.processor.settle()
    assert (await subscriptions.get(stale.id)).is_active is False
    assert (await subscriptions.get(healthy.id)).is_active is True
