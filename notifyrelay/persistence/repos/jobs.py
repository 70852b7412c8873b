from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import json
import logging
from typing import Any, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.domain.models import NotificationJob
from notifyrelay.domain.state import (
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    CLAIMABLE_STATUSES,
    STATUS_COMPLETED,
    STATUS_DEAD,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    JobRecord,
)
from notifyrelay.persistence.sessions import as_utc, session_scope


logger = logging.getLogger(__name__)


class JobStore(Protocol):
    # Every transition after a claim is conditional on status == processing so a
    # job can only be moved by the worker that claimed it.
    async def enqueue(
        self,
        *,
        user_id: str,
        type: str,
        channel: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> JobRecord: ...

    async def get(self, job_id: int) -> JobRecord | None: ...

    async def list_due(self, *, now: datetime, limit: int, max_attempts: int) -> list[JobRecord]: ...

    async def claim(self, job_id: int, *, now: datetime, max_attempts: int) -> JobRecord | None: ...

    async def list_stale(self, *, claimed_before: datetime, limit: int) -> list[JobRecord]: ...

    async def reclaim_stale(self, job_id: int, *, now: datetime, claimed_before: datetime) -> JobRecord | None: ...

    async def complete(self, job_id: int) -> bool: ...

    async def schedule_retry(self, job_id: int, *, next_attempt_at: datetime) -> bool: ...

    async def fall_back_to_email(self, job_id: int, *, now: datetime) -> bool: ...

    async def mark_dead(self, job_id: int) -> bool: ...

    async def list_completed_for_user(self, user_id: str, *, limit: int) -> list[JobRecord]: ...


def encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def decode_payload(raw: str | None, *, job_id: int | None = None) -> dict[str, Any]:
    # Corrupt payloads still flow through dispatch and fail there instead of blocking the poller.
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("notify_job_payload_invalid job_id=%s", job_id)
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _is_due(record: JobRecord, *, now: datetime, max_attempts: int) -> bool:
    return (
        record.status in CLAIMABLE_STATUSES
        and record.attempts < max_attempts
        and record.next_attempt_at <= now
    )


def _is_stale(record: JobRecord, *, claimed_before: datetime) -> bool:
    # Rows claimed before the lease column existed carry no claimed_at and count as stale.
    return record.status == STATUS_PROCESSING and (
        record.claimed_at is None or record.claimed_at <= claimed_before
    )


def _to_record(row: NotificationJob) -> JobRecord:
    return JobRecord(
        id=int(row.id),
        user_id=row.user_id,
        type=row.type,
        channel=row.channel,
        payload=decode_payload(row.payload, job_id=row.id),
        status=row.status,
        attempts=int(row.attempts),
        next_attempt_at=as_utc(row.next_attempt_at),
        created_at=as_utc(row.created_at),
        claimed_at=as_utc(row.claimed_at),
    )


class InMemoryJobStore:
    # Dict-backed store for deterministic engine tests; each method runs without awaiting so it is atomic on the loop.
    def __init__(self) -> None:
        self._rows: dict[int, JobRecord] = {}
        self._next_id = 1

    async def enqueue(
        self,
        *,
        user_id: str,
        type: str,
        channel: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> JobRecord:
        record = JobRecord(
            id=self._next_id,
            user_id=user_id,
            type=type,
            channel=channel,
            payload=dict(payload),
            status=STATUS_PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        self._rows[record.id] = record
        self._next_id += 1
        return record

    async def get(self, job_id: int) -> JobRecord | None:
        return self._rows.get(job_id)

    async def list_due(self, *, now: datetime, limit: int, max_attempts: int) -> list[JobRecord]:
        due = [row for row in self._rows.values() if _is_due(row, now=now, max_attempts=max_attempts)]
        due.sort(key=lambda row: (row.next_attempt_at, row.id))
        return due[: max(0, limit)]

    async def claim(self, job_id: int, *, now: datetime, max_attempts: int) -> JobRecord | None:
        row = self._rows.get(job_id)
        if row is None or not _is_due(row, now=now, max_attempts=max_attempts):
            return None
        claimed = replace(row, status=STATUS_PROCESSING, attempts=row.attempts + 1, claimed_at=now)
        self._rows[job_id] = claimed
        return claimed

    async def list_stale(self, *, claimed_before: datetime, limit: int) -> list[JobRecord]:
        stale = [row for row in self._rows.values() if _is_stale(row, claimed_before=claimed_before)]
        stale.sort(key=lambda row: (row.claimed_at or row.created_at, row.id))
        return stale[: max(0, limit)]

    async def reclaim_stale(self, job_id: int, *, now: datetime, claimed_before: datetime) -> JobRecord | None:
        row = self._rows.get(job_id)
        if row is None or not _is_stale(row, claimed_before=claimed_before):
            return None
        reclaimed = replace(row, claimed_at=now)
        self._rows[job_id] = reclaimed
        return reclaimed

    def _transition(self, job_id: int, *, only_channel: str | None = None, **changes: Any) -> bool:
        row = self._rows.get(job_id)
        if row is None or row.status != STATUS_PROCESSING:
            return False
        if only_channel is not None and row.channel != only_channel:
            return False
        self._rows[job_id] = replace(row, **changes)
        return True

    async def complete(self, job_id: int) -> bool:
        return self._transition(job_id, status=STATUS_COMPLETED)

    async def schedule_retry(self, job_id: int, *, next_attempt_at: datetime) -> bool:
        return self._transition(job_id, status=STATUS_FAILED, next_attempt_at=next_attempt_at)

    async def fall_back_to_email(self, job_id: int, *, now: datetime) -> bool:
        return self._transition(
            job_id,
            only_channel=CHANNEL_PUSH,
            channel=CHANNEL_EMAIL,
            status=STATUS_PENDING,
            attempts=0,
            next_attempt_at=now,
        )

    async def mark_dead(self, job_id: int) -> bool:
        return self._transition(job_id, status=STATUS_DEAD)

    async def list_completed_for_user(self, user_id: str, *, limit: int) -> list[JobRecord]:
        rows = [
            row
            for row in self._rows.values()
            if row.user_id == user_id and row.status == STATUS_COMPLETED
        ]
        rows.sort(key=lambda row: (row.created_at, row.id), reverse=True)
        return rows[: max(0, limit)]

    def all(self) -> list[JobRecord]:
        return sorted(self._rows.values(), key=lambda row: row.id)


class SqlJobStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def enqueue(
        self,
        *,
        user_id: str,
        type: str,
        channel: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> JobRecord:
        row = NotificationJob(
            user_id=user_id,
            type=type,
            channel=channel,
            payload=encode_payload(payload),
            status=STATUS_PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        async with session_scope(self._session_factory) as session:
            session.add(row)
            await session.flush()
            record = _to_record(row)
        return record

    async def get(self, job_id: int) -> JobRecord | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(NotificationJob, job_id)
            return _to_record(row) if row is not None else None

    async def list_due(self, *, now: datetime, limit: int, max_attempts: int) -> list[JobRecord]:
        # Oldest-due first with id as tie-breaker keeps batches deterministic.
        stmt = (
            select(NotificationJob)
            .where(
                NotificationJob.status.in_(CLAIMABLE_STATUSES),
                NotificationJob.attempts < max_attempts,
                NotificationJob.next_attempt_at <= now,
            )
            .order_by(NotificationJob.next_attempt_at.asc(), NotificationJob.id.asc())
            .limit(max(0, limit))
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def claim(self, job_id: int, *, now: datetime, max_attempts: int) -> JobRecord | None:
        # Single conditional UPDATE; rowcount 0 means another claimer won or the job is no longer due.
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.id == job_id,
                NotificationJob.status.in_(CLAIMABLE_STATUSES),
                NotificationJob.attempts < max_attempts,
                NotificationJob.next_attempt_at <= now,
            )
            .values(status=STATUS_PROCESSING, attempts=NotificationJob.attempts + 1, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            row = (
                await session.execute(select(NotificationJob).where(NotificationJob.id == job_id))
            ).scalar_one()
            return _to_record(row)

    async def list_stale(self, *, claimed_before: datetime, limit: int) -> list[JobRecord]:
        stmt = (
            select(NotificationJob)
            .where(
                NotificationJob.status == STATUS_PROCESSING,
                or_(NotificationJob.claimed_at.is_(None), NotificationJob.claimed_at <= claimed_before),
            )
            .order_by(NotificationJob.claimed_at.asc(), NotificationJob.id.asc())
            .limit(max(0, limit))
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def reclaim_stale(self, job_id: int, *, now: datetime, claimed_before: datetime) -> JobRecord | None:
        # Refreshing claimed_at under the same staleness predicate lets exactly one reclaimer win.
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.id == job_id,
                NotificationJob.status == STATUS_PROCESSING,
                or_(NotificationJob.claimed_at.is_(None), NotificationJob.claimed_at <= claimed_before),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            row = (
                await session.execute(select(NotificationJob).where(NotificationJob.id == job_id))
            ).scalar_one()
            return _to_record(row)

    async def _transition(self, job_id: int, *, extra_where: tuple = (), **values: Any) -> bool:
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.id == job_id,
                NotificationJob.status == STATUS_PROCESSING,
                *extra_where,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def complete(self, job_id: int) -> bool:
        return await self._transition(job_id, status=STATUS_COMPLETED)

    async def schedule_retry(self, job_id: int, *, next_attempt_at: datetime) -> bool:
        return await self._transition(job_id, status=STATUS_FAILED, next_attempt_at=next_attempt_at)

    async def fall_back_to_email(self, job_id: int, *, now: datetime) -> bool:
        # Guarding on channel == push limits every job to one channel switch.
        return await self._transition(
            job_id,
            extra_where=(NotificationJob.channel == CHANNEL_PUSH,),
            channel=CHANNEL_EMAIL,
            status=STATUS_PENDING,
            attempts=0,
            next_attempt_at=now,
        )

    async def mark_dead(self, job_id: int) -> bool:
        return await self._transition(job_id, status=STATUS_DEAD)

    async def list_completed_for_user(self, user_id: str, *, limit: int) -> list[JobRecord]:
        stmt = (
            select(NotificationJob)
            .where(NotificationJob.user_id == user_id, NotificationJob.status == STATUS_COMPLETED)
            .order_by(NotificationJob.created_at.desc(), NotificationJob.id.desc())
            .limit(max(0, limit))
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]
