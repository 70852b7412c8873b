from __future__ import annotations

from datetime import datetime, timezone
import logging

from notifyrelay.core.errors import DatabaseError
from notifyrelay.domain.state import LogRecord, log_status
from notifyrelay.persistence.repos.logs import LogStore


logger = logging.getLogger(__name__)

# Keep audit rows bounded; provider responses can be arbitrarily large.
_MAX_RESPONSE_CHARS = 2000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResultLogger:
    def __init__(self, store: LogStore) -> None:
        self._store = store

    async def record(self, *, job_id: int, channel: str, outcome: str, response: str | None) -> LogRecord | None:
        # Best-effort: a failed audit write is reported but never changes the job outcome.
        text = response[:_MAX_RESPONSE_CHARS] if response else response
        try:
            return await self._store.append(
                queue_id=job_id,
                status=log_status(channel, outcome),
                response=text,
                now=_utc_now(),
            )
        except DatabaseError as exc:
            logger.warning(
                "notify_result_log_write_failed job_id=%s status=%s",
                job_id,
                log_status(channel, outcome),
                exc_info=exc,
            )
            return None
