from __future__ import annotations

from notifyrelay.core.errors import PreferenceBlockedError
from notifyrelay.domain.state import PreferenceRecord
from notifyrelay.persistence.repos.preferences import PreferenceStore


class PreferenceResolver:
    def __init__(self, store: PreferenceStore) -> None:
        self._store = store

    async def resolve(self, user_id: str) -> PreferenceRecord:
        # Users without a stored row get every channel.
        record = await self._store.get(user_id)
        if record is None:
            return PreferenceRecord(user_id=user_id)
        return record

    async def ensure_allowed(self, user_id: str, channel: str) -> PreferenceRecord:
        record = await self.resolve(user_id)
        if not record.allows(channel):
            raise PreferenceBlockedError(channel)
        return record
