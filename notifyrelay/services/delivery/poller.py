from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
import logging

from notifyrelay.persistence.repos.jobs import JobStore
from notifyrelay.services.delivery.processor import JobProcessor


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueuePoller:
    """Fixed-interval scheduler that feeds due jobs to the processor.

    A tick only selects and launches; processing runs in background tasks so a
    slow provider never delays the next tick. Ticks start every ``interval_s``
    measured from the previous tick's start. At most ``batch_size`` jobs are in
    flight at once and a job already in flight is never launched twice.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        processor: JobProcessor,
        max_attempts: int,
        interval_s: float = 5.0,
        batch_size: int = 5,
    ) -> None:
        self._jobs = jobs
        self._processor = processor
        self._max_attempts = max_attempts
        self._interval_s = max(0.01, float(interval_s))
        self._batch_size = max(1, int(batch_size))
        self._in_flight: dict[int, asyncio.Task[None]] = {}
        self._paused = False
        self._stop_event = asyncio.Event()

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._in_flight)

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def stop(self) -> None:
        self._stop_event.set()

    async def tick(self) -> list[int]:
        if self._paused:
            return []
        await self._processor.recover_stale(limit=self._batch_size, skip=self.in_flight)
        capacity = self._batch_size - len(self._in_flight)
        if capacity <= 0:
            return []
        due = await self._jobs.list_due(now=_utc_now(), limit=self._batch_size, max_attempts=self._max_attempts)
        launched: list[int] = []
        for job in due:
            if len(launched) >= capacity:
                break
            if job.id in self._in_flight:
                continue
            task = asyncio.create_task(self._run_job(job.id), name=f"notify-job-{job.id}")
            self._in_flight[job.id] = task
            task.add_done_callback(lambda _task, job_id=job.id: self._in_flight.pop(job_id, None))
            launched.append(job.id)
        if launched:
            logger.debug("notify_poller_launched job_ids=%s", launched)
        return launched

    async def drain(self) -> None:
        # Wait until every launched job has settled, including ones launched meanwhile.
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)
        await self._processor.settle()

    async def run(self) -> None:
        self._stop_event.clear()
        logger.info(
            "notify_poller_started interval_s=%s batch_size=%s max_attempts=%s",
            self._interval_s,
            self._batch_size,
            self._max_attempts,
        )
        try:
            loop = asyncio.get_running_loop()
            while not self._stop_event.is_set():
                started = loop.time()
                try:
                    await self.tick()
                except Exception:
                    # Keep polling even if one cycle fails (for example a DB blip).
                    logger.exception("notify_poller_tick_failed")
                remaining = max(0.0, self._interval_s - (loop.time() - started))
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
        finally:
            if self._in_flight:
                logger.info("notify_poller_draining in_flight=%s", len(self._in_flight))
            await self.drain()
            logger.info("notify_poller_stopped")

    async def _run_job(self, job_id: int) -> None:
        try:
            outcome = await self._processor.process(job_id)
        except Exception:
            logger.exception("notify_job_processing_failed job_id=%s", job_id)
            return
        logger.debug("notify_job_processed job_id=%s status=%s", job_id, outcome.status)
