from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.domain.models import Subscription
from notifyrelay.domain.state import SubscriptionRecord
from notifyrelay.persistence.sessions import as_utc, session_scope


class SubscriptionStore(Protocol):
    # is_active only moves true -> false; nothing in the engine reactivates a row.
    async def register(
        self,
        *,
        user_id: str,
        platform: str,
        endpoint: str,
        p256dh: str | None,
        auth: str | None,
        now: datetime,
    ) -> SubscriptionRecord: ...

    async def get(self, subscription_id: int) -> SubscriptionRecord | None: ...

    async def list_active(self, user_id: str) -> list[SubscriptionRecord]: ...

    async def deactivate(self, subscription_id: int) -> bool: ...

    async def deactivate_endpoint(self, *, user_id: str, endpoint: str) -> int: ...


def _to_record(row: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=int(row.id),
        user_id=row.user_id,
        platform=row.platform,
        endpoint=row.endpoint,
        p256dh=row.p256dh,
        auth=row.auth,
        is_active=bool(row.is_active),
        created_at=as_utc(row.created_at),
    )


class InMemorySubscriptionStore:
    def __init__(self) -> None:
        self._rows: dict[int, SubscriptionRecord] = {}
        self._next_id = 1

    async def register(
        self,
        *,
        user_id: str,
        platform: str,
        endpoint: str,
        p256dh: str | None,
        auth: str | None,
        now: datetime,
    ) -> SubscriptionRecord:
        # Re-registering a live endpoint returns the existing row.
        for row in self._rows.values():
            if row.user_id == user_id and row.endpoint == endpoint and row.is_active:
                return row
        record = SubscriptionRecord(
            id=self._next_id,
            user_id=user_id,
            platform=platform,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            is_active=True,
            created_at=now,
        )
        self._rows[record.id] = record
        self._next_id += 1
        return record

    async def get(self, subscription_id: int) -> SubscriptionRecord | None:
        return self._rows.get(subscription_id)

    async def list_active(self, user_id: str) -> list[SubscriptionRecord]:
        return [
            row
            for row in sorted(self._rows.values(), key=lambda item: item.id)
            if row.user_id == user_id and row.is_active
        ]

    async def deactivate(self, subscription_id: int) -> bool:
        row = self._rows.get(subscription_id)
        if row is None or not row.is_active:
            return False
        self._rows[subscription_id] = replace(row, is_active=False)
        return True

    async def deactivate_endpoint(self, *, user_id: str, endpoint: str) -> int:
        changed = 0
        for row in list(self._rows.values()):
            if row.user_id == user_id and row.endpoint == endpoint and row.is_active:
                self._rows[row.id] = replace(row, is_active=False)
                changed += 1
        return changed


class SqlSubscriptionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def register(
        self,
        *,
        user_id: str,
        platform: str,
        endpoint: str,
        p256dh: str | None,
        auth: str | None,
        now: datetime,
    ) -> SubscriptionRecord:
        async with session_scope(self._session_factory) as session:
            existing = (
                await session.execute(
                    select(Subscription)
                    .where(
                        Subscription.user_id == user_id,
                        Subscription.endpoint == endpoint,
                        Subscription.is_active.is_(True),
                    )
                    .order_by(Subscription.id.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if existing is not None:
                return _to_record(existing)
            row = Subscription(
                user_id=user_id,
                platform=platform,
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
                is_active=True,
                created_at=now,
            )
            session.add(row)
            await session.flush()
            return _to_record(row)

    async def get(self, subscription_id: int) -> SubscriptionRecord | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(Subscription, subscription_id)
            return _to_record(row) if row is not None else None

    async def list_active(self, user_id: str) -> list[SubscriptionRecord]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.is_active.is_(True))
            .order_by(Subscription.id.asc())
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def deactivate(self, subscription_id: int) -> bool:
        # Scoped to a single id so a stale endpoint never touches sibling devices.
        stmt = (
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def deactivate_endpoint(self, *, user_id: str, endpoint: str) -> int:
        stmt = (
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.endpoint == endpoint,
                Subscription.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)
