from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.domain.models import NotificationLog
from notifyrelay.domain.state import LogRecord
from notifyrelay.persistence.sessions import as_utc, session_scope


class LogStore(Protocol):
    # Append-only audit trail.
    async def append(self, *, queue_id: int, status: str, response: str | None, now: datetime) -> LogRecord: ...

    async def list_recent(self, *, limit: int) -> list[LogRecord]: ...

    async def list_for_job(self, queue_id: int) -> list[LogRecord]: ...


def _to_record(row: NotificationLog) -> LogRecord:
    return LogRecord(
        id=int(row.id),
        queue_id=int(row.queue_id),
        status=row.status,
        response=row.response,
        created_at=as_utc(row.created_at),
    )


class InMemoryLogStore:
    def __init__(self) -> None:
        self._rows: list[LogRecord] = []

    async def append(self, *, queue_id: int, status: str, response: str | None, now: datetime) -> LogRecord:
        record = LogRecord(
            id=len(self._rows) + 1,
            queue_id=queue_id,
            status=status,
            response=response,
            created_at=now,
        )
        self._rows.append(record)
        return record

    async def list_recent(self, *, limit: int) -> list[LogRecord]:
        return list(reversed(self._rows))[: max(0, limit)]

    async def list_for_job(self, queue_id: int) -> list[LogRecord]:
        return [row for row in self._rows if row.queue_id == queue_id]

    def statuses(self, queue_id: int) -> list[str]:
        return [row.status for row in self._rows if row.queue_id == queue_id]


class SqlLogStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, *, queue_id: int, status: str, response: str | None, now: datetime) -> LogRecord:
        row = NotificationLog(queue_id=queue_id, status=status, response=response, created_at=now)
        async with session_scope(self._session_factory) as session:
            session.add(row)
            await session.flush()
            return _to_record(row)

    async def list_recent(self, *, limit: int) -> list[LogRecord]:
        stmt = select(NotificationLog).order_by(NotificationLog.id.desc()).limit(max(0, limit))
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def list_for_job(self, queue_id: int) -> list[LogRecord]:
        stmt = (
            select(NotificationLog)
            .where(NotificationLog.queue_id == queue_id)
            .order_by(NotificationLog.id.asc())
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]
