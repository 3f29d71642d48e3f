from __future__ import annotations

import asyncio
import logging

from pnp.apps.nq2ds.main import create_app
from pnp.core.config import get_settings
from pnp.core.logging import configure_logging
from pnp.persistence.db import SessionLocal
from pnp.services.adapter.names import DisplayNameResolver
from pnp.services.bus.connector import BusConsumer, BusProducer
from pnp.services.bus.topology import parse_queue_bindings
from pnp.services.crypto.envelope import master_key_from_settings
from pnp.services.liveness import LivenessProbe
from pnp.services.nq2ds.consumer import NQ2DSHandler
from pnp.workers.runtime import build_server, drain, install_signal_handlers


logger = logging.getLogger(__name__)


async def run_worker() -> None:
    configure_logging()
    settings = get_settings()
    master_key = master_key_from_settings()
    bindings = parse_queue_bindings(settings.nq_qkey)
    producer = BusProducer.from_settings(settings)
    handler = NQ2DSHandler.from_settings(
        session_factory=SessionLocal,
        publisher=producer,
        master_key=master_key,
        resolver=DisplayNameResolver.from_settings(settings),
        settings=settings,
    )
    # One consumer per queue binding.
    consumers = [(BusConsumer.from_settings(f"nq2ds-{binding.queue}", settings), binding) for binding in bindings]
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    server = build_server(create_app(probe=LivenessProbe.from_settings(settings)), port=settings.liveness_port)
    server_task = asyncio.create_task(server.serve())
    consumer_tasks = [asyncio.create_task(consumer.run(binding, handler.handle)) for consumer, binding in consumers]
    logger.info("nq2ds worker consuming %s", ", ".join(binding.queue for binding in bindings))

    await stop_event.wait()
    logger.info("nq2ds worker stopping")
    for consumer, _binding in consumers:
        consumer.stop()
    await drain(consumer_tasks, grace_s=settings.shutdown_grace_s)
    await producer.close()
    server.should_exit = True
    await server_task
