from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyrelay.apps.api.errors import (
    database_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from notifyrelay.apps.api.response import API_VERSION
from notifyrelay.apps.api.routes.admin import router as admin_router
from notifyrelay.apps.api.routes.health import router as health_router
from notifyrelay.apps.api.routes.history import router as history_router
from notifyrelay.apps.api.routes.notify import router as notify_router
from notifyrelay.apps.api.routes.preferences import router as preferences_router
from notifyrelay.apps.api.routes.subscriptions import router as subscriptions_router
from notifyrelay.core.config import get_settings
from notifyrelay.core.errors import DatabaseError
from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.stores import StoreBundle, sql_stores
from notifyrelay.services.delivery.engine import build_delivery_engine


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Optionally run the queue poller in-process for single-container deployments.
    task: asyncio.Task[None] | None = None
    engine = None
    if get_settings().embedded_worker_enabled:
        engine = build_delivery_engine(app.state.stores)
        task = asyncio.create_task(engine.poller.run(), name="notify-poller")
        logger.info("embedded_notification_worker_started")
    try:
        yield
    finally:
        if engine is not None and task is not None:
            engine.poller.stop()
            await task


def create_app(stores: StoreBundle | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="notifyrelay API", version=API_VERSION, lifespan=_lifespan)
    app.state.stores = stores or sql_stores()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault("X-Request-Id", request_id)
        logger.debug(
            "api_request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(DatabaseError, database_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(notify_router, prefix=f"/{API_VERSION}")
    app.include_router(subscriptions_router, prefix=f"/{API_VERSION}")
    app.include_router(history_router, prefix=f"/{API_VERSION}")
    app.include_router(preferences_router, prefix=f"/{API_VERSION}")
    # Admin audit and counters; guarded by X-Admin-Key when configured.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    logger.info("api_created app_name=%s", settings.app_name)
    return app


app = create_app()
