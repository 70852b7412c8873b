from __future__ import annotations

import asyncio

from notifyrelay.core.logging import configure_logging
from notifyrelay.workers.notification_worker import run_notification_worker


async def _main() -> None:
    # Dedicated delivery process; the API only enqueues.
    configure_logging()
    await run_notification_worker()


if __name__ == "__main__":
    asyncio.run(_main())
