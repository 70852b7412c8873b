from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from notifyrelay.core.errors import DatabaseError
from notifyrelay.persistence.repos.jobs import InMemoryJobStore
from notifyrelay.persistence.stores import StoreBundle, in_memory_stores
from notifyrelay.services.delivery.poller import QueuePoller
from notifyrelay.services.notifications import enqueue_notification, register_web_subscription
from notifyrelay.tests.utils.fakes import make_harness


class _GatedSender:
    integration = "push.web"

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started: list[int] = []

    @property
    def configured(self) -> bool:
        return True

    async def send(self, subscription, payload) -> str:
        self.started.append(subscription.id)
        await self.gate.wait()
        return "accepted"


class _FlakyJobStore(InMemoryJobStore):
    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    async def list_due(self, *, now: datetime, limit: int, max_attempts: int):
        if self.failures_left:
            self.failures_left -= 1
            raise DatabaseError("database operation failed: OperationalError")
        return await super().list_due(now=now, limit=limit, max_attempts=max_attempts)


async def _seed(stores, count: int, *, user_id: str = "u1") -> list[int]:
    await register_web_subscription(
        stores.subscriptions,
        user_id=user_id,
        endpoint="https://push.example/1",
        p256dh="p256dh-key",
        auth="auth-secret",
    )
    ids = []
    for index in range(count):
        job = await enqueue_notification(stores.jobs, user_id=user_id, title=f"n{index}", body="")
        ids.append(job.id)
    return ids


def _poller(harness, *, interval_s: float = 5.0, batch_size: int = 5) -> QueuePoller:
    return QueuePoller(
        jobs=harness.stores.jobs,
        processor=harness.engine.processor,
        max_attempts=harness.settings.notify_retry_max + 1,
        interval_s=interval_s,
        batch_size=batch_size,
    )


async def _wait_for(predicate, timeout_s: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_tick_launches_at_most_batch_size_in_due_order(clock) -> None:
    harness = make_harness()
    ids = await _seed(harness.stores, 7)
    poller = _poller(harness, batch_size=5)

    first = await poller.tick()
    await poller.drain()
    second = await poller.tick()
    await poller.drain()

    assert first == ids[:5]
    assert second == ids[5:]
    assert [(await harness.stores.jobs.get(job_id)).status for job_id in ids] == ["completed"] * len(ids)


@pytest.mark.asyncio
async def test_tick_does_not_wait_for_processing(clock) -> None:
    harness = make_harness()
    ids = await _seed(harness.stores, 2)
    poller = _poller(harness)

    launched = await poller.tick()

    assert launched == ids
    assert poller.in_flight == frozenset(ids)
    assert [(await harness.stores.jobs.get(job_id)).status for job_id in ids] == ["pending"] * len(ids)
    await poller.drain()
    assert poller.in_flight == frozenset()
    assert [(await harness.stores.jobs.get(job_id)).status for job_id in ids] == ["completed"] * len(ids)


@pytest.mark.asyncio
async def test_in_flight_jobs_are_not_launched_twice(clock) -> None:
    harness = make_harness()
    ids = await _seed(harness.stores, 2)
    poller = _poller(harness)

    first = await poller.tick()
    second = await poller.tick()
    await poller.drain()

    assert first == ids
    assert second == []
    assert len(harness.web.calls) == 2


@pytest.mark.asyncio
async def test_in_flight_work_is_bounded_by_batch_size(clock) -> None:
    stores = in_memory_stores()
    sender = _GatedSender()
    harness = make_harness(stores, web_sender=sender)
    ids = await _seed(stores, 8)
    poller = _poller(harness, batch_size=3)

    launched = await poller.tick()
    await _wait_for(lambda: _started(sender, 3))
    blocked = await poller.tick()

    assert launched == ids[:3]
    assert blocked == []
    assert len(poller.in_flight) == 3
    sender.gate.set()
    await poller.drain()
    assert len(sender.started) == 3


async def _started(sender: _GatedSender, count: int) -> bool:
    return len(sender.started) >= count


@pytest.mark.asyncio
async def test_paused_poller_launches_nothing(clock) -> None:
    harness = make_harness()
    ids = await _seed(harness.stores, 1)
    poller = _poller(harness)

    poller.pause()
    assert await poller.tick() == []
    poller.resume()
    assert await poller.tick() == ids
    await poller.drain()


@pytest.mark.asyncio
async def test_run_processes_until_stopped(clock) -> None:
    harness = make_harness()
    ids = await _seed(harness.stores, 3)
    poller = _poller(harness, interval_s=0.01)

    task = asyncio.create_task(poller.run())

    async def all_completed() -> bool:
        rows = [await harness.stores.jobs.get(job_id) for job_id in ids]
        return all(row.status == "completed" for row in rows)

    await _wait_for(all_completed)
    poller.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert task.done()


@pytest.mark.asyncio
async def test_failed_tick_does_not_stop_the_loop(clock) -> None:
    stores = StoreBundle(
        jobs=_FlakyJobStore(),
        subscriptions=in_memory_stores().subscriptions,
        preferences=in_memory_stores().preferences,
        logs=in_memory_stores().logs,
    )
    harness = make_harness(stores)
    ids = await _seed(stores, 1)
    poller = _poller(harness, interval_s=0.01)

    task = asyncio.create_task(poller.run())

    async def completed() -> bool:
        return (await stores.jobs.get(ids[0])).status == "completed"

    await _wait_for(completed)
    poller.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert stores.jobs.failures_left == 0


class _SlowListJobStore(InMemoryJobStore):
    def __init__(self) -> None:
        super().__init__()
        self.tick_starts: list[float] = []

    async def list_due(self, *, now: datetime, limit: int, max_attempts: int):
        self.tick_starts.append(asyncio.get_running_loop().time())
        await asyncio.sleep(0.15)
        return await super().list_due(now=now, limit=limit, max_attempts=max_attempts)


@pytest.mark.asyncio
async def test_tick_period_is_measured_from_tick_start(clock) -> None:
    jobs = _SlowListJobStore()
    stores = StoreBundle(
        jobs=jobs,
        subscriptions=in_memory_stores().subscriptions,
        preferences=in_memory_stores().preferences,
        logs=in_memory_stores().logs,
    )
    harness = make_harness(stores)
    poller = _poller(harness, interval_s=0.25)

    task = asyncio.create_task(poller.run())

    async def three_ticks() -> bool:
        return len(jobs.tick_starts) >= 3

    await _wait_for(three_ticks)
    poller.stop()
    await asyncio.wait_for(task, timeout=1.0)
    gaps = [later - earlier for earlier, later in zip(jobs.tick_starts, jobs.tick_starts[1:])]
    # A timer started after the slow list_due would space ticks ~0.4s apart.
    assert all(gap < 0.35 for gap in gaps[:2])
