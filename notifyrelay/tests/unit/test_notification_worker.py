from __future__ import annotations

import asyncio

import pytest

from notifyrelay.persistence.stores import in_memory_stores
from notifyrelay.services.notifications import enqueue_notification
from notifyrelay.tests.utils.fakes import make_harness
from notifyrelay.workers import notification_worker


@pytest.mark.asyncio
async def test_worker_drains_queue_until_stopped(monkeypatch: pytest.MonkeyPatch, clock) -> None:
    stores = in_memory_stores()
    harness = make_harness(stores, notify_poll_interval_s=1)
    monkeypatch.setattr(notification_worker, "build_delivery_engine", lambda *_args, **_kwargs: harness.engine)
    await stores.subscriptions.register(
        user_id="u1", platform="web", endpoint="https://push.example/a", p256dh="k", auth="a", now=clock.now
    )
    job = await enqueue_notification(stores.jobs, user_id="u1", title="Hello", body="")

    task = asyncio.create_task(notification_worker.run_notification_worker(stores, handle_signals=False))
    for _ in range(200):
        if (await stores.jobs.get(job.id)).status == "completed":
            break
        await asyncio.sleep(0.01)
    harness.engine.poller.stop()
    await asyncio.wait_for(task, timeout=2)

    assert (await stores.jobs.get(job.id)).status == "completed"
    assert stores.logs.statuses(job.id) == ["push:success"]
