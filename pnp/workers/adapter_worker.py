from __future__ import annotations

import asyncio
import logging

from pnp.core.config import get_settings
from pnp.core.errors import FatalConfigError
from pnp.core.logging import configure_logging
from pnp.persistence.db import SessionLocal
from pnp.services.adapter.reconciler import AdapterScheduler
from pnp.services.adapter.sources import sources_from_settings
from pnp.services.bus.connector import BusProducer
from pnp.workers.runtime import drain, install_signal_handlers


logger = logging.getLogger(__name__)


async def run_worker() -> None:
    configure_logging()
    settings = get_settings()
    sources = sources_from_settings(settings)
    if not sources:
        raise FatalConfigError("ADAPTER_SOURCE_URLS lists no sources")
    producer = BusProducer.from_settings(settings)
    scheduler = AdapterScheduler(
        sources,
        publisher=producer,
        session_factory=SessionLocal,
        interval_s=settings.adapter_interval_minutes * 60,
    )
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    task = asyncio.create_task(scheduler.run())
    logger.info("adapter worker polling %s", ", ".join(source.source for source in sources))

    await stop_event.wait()
    logger.info("adapter worker stopping")
    scheduler.stop()
    await drain([task], grace_s=settings.shutdown_grace_s)
    await producer.close()
