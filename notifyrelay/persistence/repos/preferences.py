from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.domain.models import Preference
from notifyrelay.domain.state import PreferenceRecord
from notifyrelay.persistence.sessions import as_utc, session_scope


class PreferenceStore(Protocol):
    async def get(self, user_id: str) -> PreferenceRecord | None: ...

    async def upsert(
        self,
        *,
        user_id: str,
        allow_push: bool,
        allow_email: bool,
        categories: str,
        now: datetime,
    ) -> PreferenceRecord: ...


def _to_record(row: Preference) -> PreferenceRecord:
    return PreferenceRecord(
        user_id=row.user_id,
        allow_push=bool(row.allow_push),
        allow_email=bool(row.allow_email),
        categories=row.categories or "all",
        updated_at=as_utc(row.updated_at),
    )


class InMemoryPreferenceStore:
    def __init__(self) -> None:
        self._rows: dict[str, PreferenceRecord] = {}

    async def get(self, user_id: str) -> PreferenceRecord | None:
        return self._rows.get(user_id)

    async def upsert(
        self,
        *,
        user_id: str,
        allow_push: bool,
        allow_email: bool,
        categories: str,
        now: datetime,
    ) -> PreferenceRecord:
        record = PreferenceRecord(
            user_id=user_id,
            allow_push=allow_push,
            allow_email=allow_email,
            categories=categories,
            updated_at=now,
        )
        self._rows[user_id] = record
        return record


class SqlPreferenceStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str) -> PreferenceRecord | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(Preference, user_id)
            return _to_record(row) if row is not None else None

    async def upsert(
        self,
        *,
        user_id: str,
        allow_push: bool,
        allow_email: bool,
        categories: str,
        now: datetime,
    ) -> PreferenceRecord:
        async with session_scope(self._session_factory) as session:
            row = await session.get(Preference, user_id)
            if row is None:
                row = Preference(user_id=user_id)
                session.add(row)
            row.allow_push = allow_push
            row.allow_email = allow_email
            row.categories = categories
            row.updated_at = now
            await session.flush()
            return _to_record(row)
