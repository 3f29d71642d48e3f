from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from pnp.core.errors import EnvelopeError
from pnp.domain.messages import FanoutEvent
from pnp.persistence.repos.subscriptions import purge_expired_subscriptions
from pnp.services.crypto.envelope import unseal
from pnp.services.fanout.delivery import (
    DEFAULT_IN_FLIGHT_TIMEOUT_S,
    DeliveryPolicy,
    list_due_deliveries,
    plan_deliveries,
    process_delivery,
)
from pnp.services.nq2ds.consumer import IncomingMessage, is_transient_db_error
from pnp.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Any]


class FanoutHandler:
    """Consume downstream events, plan deliveries and make the first attempt right away."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        master_key: bytes,
        policy: DeliveryPolicy,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._master_key = master_key
        self._policy = policy
        self._transport = transport

    async def _plan(self, event: FanoutEvent) -> list[str]:
        async with self._session_factory() as session:
            try:
                deliveries = await plan_deliveries(session, event)
                await session.commit()
            except IntegrityError:
                # Another worker planned the same notification version first.
                await session.rollback()
                increment_counter("fanout_dedupe_races_total")
                return []
            return [delivery.id for delivery in deliveries]

    async def dispatch(self, delivery_ids: list[str]) -> None:
        for delivery_id in delivery_ids:
            async with self._session_factory() as session:
                await process_delivery(session, delivery_id, policy=self._policy, transport=self._transport)

    async def process(self, sealed: bytes) -> list[str]:
        plaintext = unseal(sealed, master_key=self._master_key)
        event = FanoutEvent.model_validate_json(plaintext)
        delivery_ids = await self._plan(event)
        await self.dispatch(delivery_ids)
        return delivery_ids

    async def handle(self, message: IncomingMessage) -> None:
        try:
            await self.process(message.body)
        except (EnvelopeError, ValidationError) as exc:
            increment_counter("fanout_rejected_total")
            logger.error("rejecting downstream event without requeue: %s", exc)
            await message.reject(requeue=False)
            return
        except Exception as exc:  # noqa: BLE001 - non-rejectable failures go back to the queue.
            if not is_transient_db_error(exc):
                raise
            logger.warning("transient failure while planning deliveries; requeueing: %s", exc)
            await message.nack(requeue=True)
            return
        await message.ack()


class DeliveryScheduler:
    """Retries due deliveries and purges expired subscriptions on a fixed poll interval."""

    def __init__(
        self,
        handler: FanoutHandler,
        *,
        session_factory: SessionFactory,
        poll_interval_s: float,
        batch_size: int,
        in_flight_timeout_s: float = DEFAULT_IN_FLIGHT_TIMEOUT_S,
    ) -> None:
        self._handler = handler
        self._session_factory = session_factory
        self._poll_interval_s = poll_interval_s
        self._batch_size = batch_size
        self._in_flight_timeout_s = in_flight_timeout_s
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def tick(self) -> int:
        async with self._session_factory() as session:
            purged = await purge_expired_subscriptions(session, now=datetime.now(timezone.utc))
            await session.commit()
        if purged:
            logger.info("purged %d expired subscriptions", purged)
            increment_counter("fanout_subscriptions_expired_total", purged)
        async with self._session_factory() as session:
            due = await list_due_deliveries(
                session, limit=self._batch_size, in_flight_timeout_s=self._in_flight_timeout_s
            )
        await self._handler.dispatch(due)
        return len(due)

    async def run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("delivery scheduler tick failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval_s)
            except asyncio.TimeoutError:
                continue
