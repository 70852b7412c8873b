from __future__ import annotations

import asyncio
import logging
import signal

from notifyrelay.core.config import get_settings
from notifyrelay.persistence.stores import StoreBundle, sql_stores
from notifyrelay.services.delivery.engine import DeliveryEngine, build_delivery_engine

logger = logging.getLogger(__name__)


def _install_signal_handlers(engine: DeliveryEngine) -> None:
    # Stop polling on SIGINT/SIGTERM and let in-flight jobs settle before exit.
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.poller.stop)
        except (NotImplementedError, RuntimeError):
            # Platforms without loop signal support fall back to KeyboardInterrupt.
            logger.debug("notification_worker_signal_unsupported signal=%s", sig)


async def run_notification_worker(stores: StoreBundle | None = None, *, handle_signals: bool = True) -> None:
    settings = get_settings()
    engine = build_delivery_engine(stores or sql_stores(), settings=settings)
    if handle_signals:
        _install_signal_handlers(engine)
    logger.info(
        "notification_worker_starting retry_max=%s retry_base_ms=%s poll_interval_s=%s",
        settings.notify_retry_max,
        settings.notify_retry_base_ms,
        settings.notify_poll_interval_s,
    )
    await engine.poller.run()
