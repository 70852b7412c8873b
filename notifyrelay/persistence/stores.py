from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.persistence.db import SessionLocal
from notifyrelay.persistence.repos.jobs import InMemoryJobStore, JobStore, SqlJobStore
from notifyrelay.persistence.repos.logs import InMemoryLogStore, LogStore, SqlLogStore
from notifyrelay.persistence.repos.preferences import InMemoryPreferenceStore, PreferenceStore, SqlPreferenceStore
from notifyrelay.persistence.repos.subscriptions import (
    InMemorySubscriptionStore,
    SqlSubscriptionStore,
    SubscriptionStore,
)


@dataclass(frozen=True)
class StoreBundle:
    # One set of stores shared by the API, the processor and the poller.
    jobs: JobStore
    subscriptions: SubscriptionStore
    preferences: PreferenceStore
    logs: LogStore


def sql_stores(session_factory: async_sessionmaker[AsyncSession] | None = None) -> StoreBundle:
    factory = session_factory or SessionLocal
    return StoreBundle(
        jobs=SqlJobStore(factory),
        subscriptions=SqlSubscriptionStore(factory),
        preferences=SqlPreferenceStore(factory),
        logs=SqlLogStore(factory),
    )


def in_memory_stores() -> StoreBundle:
    return StoreBundle(
        jobs=InMemoryJobStore(),
        subscriptions=InMemorySubscriptionStore(),
        preferences=InMemoryPreferenceStore(),
        logs=InMemoryLogStore(),
    )
