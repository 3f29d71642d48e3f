from __future__ import annotations

import asyncio
import logging

from pnp.core.config import get_settings
from pnp.core.logging import configure_logging
from pnp.persistence.db import SessionLocal
from pnp.services.bus.connector import BusConsumer
from pnp.services.bus.topology import QueueBinding
from pnp.services.crypto.envelope import master_key_from_settings
from pnp.services.fanout.delivery import DeliveryPolicy
from pnp.services.fanout.dispatcher import DeliveryScheduler, FanoutHandler
from pnp.workers.runtime import drain, install_signal_handlers


logger = logging.getLogger(__name__)


async def run_worker() -> None:
    configure_logging()
    settings = get_settings()
    handler = FanoutHandler(
        session_factory=SessionLocal,
        master_key=master_key_from_settings(),
        policy=DeliveryPolicy.from_settings(settings),
    )
    scheduler = DeliveryScheduler(
        handler,
        session_factory=SessionLocal,
        poll_interval_s=settings.fanout_poll_interval_s,
        batch_size=settings.fanout_requeue_batch_size,
        in_flight_timeout_s=settings.fanout_in_flight_timeout_s,
    )
    consumer = BusConsumer.from_settings("fanout", settings)
    binding = QueueBinding(queue=settings.fanout_queue, key=settings.fanout_topic)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    tasks = [
        asyncio.create_task(consumer.run(binding, handler.handle)),
        # Retries continue even when no new events arrive.
        asyncio.create_task(scheduler.run()),
    ]
    logger.info("fan-out worker consuming %s", binding.queue)

    await stop_event.wait()
    logger.info("fan-out worker stopping")
    consumer.stop()
    scheduler.stop()
    await drain(tasks, grace_s=settings.shutdown_grace_s)
