from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException

from pnp.apps.hooks.errors import (
    pnp_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
)
from pnp.apps.hooks.routes.health import router as health_router
from pnp.apps.hooks.routes.ingest import router as ingest_router
from pnp.core.config import get_settings
from pnp.core.errors import PnPError
from pnp.core.logging import configure_logging
from pnp.services.bus.connector import BusProducer, SealedPublisher
from pnp.services.hooks.auth import HookAuthenticator
from pnp.services.hooks.health import HookHealthMonitor


logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def create_app(
    *,
    publisher: SealedPublisher | None = None,
    health_monitor: HookHealthMonitor | None = None,
    authenticator: HookAuthenticator | None = None,
    start_background: bool = True,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings()
        owned_producer: BusProducer | None = None
        if app.state.publisher is None:
            owned_producer = BusProducer.from_settings(settings)
            app.state.publisher = owned_producer
        if app.state.health_monitor is None:
            app.state.health_monitor = HookHealthMonitor.from_settings(app.state.publisher.ping, settings)
        if app.state.authenticator is None:
            app.state.authenticator = HookAuthenticator.from_settings(settings)
        monitor_task: asyncio.Task[None] | None = None
        if start_background:
            monitor_task = asyncio.create_task(app.state.health_monitor.run(settings.hooks_health_interval_s))
        logger.info("hook ingestion service started")
        try:
            yield
        finally:
            if monitor_task is not None:
                monitor_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await monitor_task
            if owned_producer is not None:
                await owned_producer.close()
            logger.info("hook ingestion service stopped")

    app = FastAPI(title="PnP Hooks API", lifespan=lifespan)
    app.state.publisher = publisher
    app.state.health_monitor = health_monitor
    app.state.authenticator = authenticator

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(PnPError)
    async def _pnp_exception_handler(request: Request, exc: PnPError):
        return await pnp_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(ingest_router, prefix=API_PREFIX)
    app.include_router(health_router, prefix=API_PREFIX)
    return app


app = create_app()
