from __future__ import annotations

import asyncio
import logging
import ssl
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractIncomingMessage
from aio_pika.exceptions import AMQPException

from pnp.core.config import Settings, get_settings
from pnp.core.errors import BusTransportError, FatalConfigError
from pnp.services.bus.topology import QueueBinding, build_ssl_context
from pnp.services.crypto.envelope import master_key_from_settings, seal
from pnp.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (AMQPException, ConnectionError, OSError, asyncio.TimeoutError)
# Consumers also reconnect when the endpoint lost its channel or exchange.
_RECONNECT_ERRORS = (*_TRANSPORT_ERRORS, BusTransportError)

MessageHandler = Callable[[AbstractIncomingMessage], Awaitable[None]]


class SealedPublisher(Protocol):
    async def publish_sealed(
        self, topic: str, plaintext: bytes, *, headers: dict[str, Any] | None = None
    ) -> None: ...


def _ssl_context_for(settings: Settings) -> ssl.SSLContext | None:
    if not settings.rabbitmq_enable_messages:
        return None
    if not settings.rabbitmq_tls_cert:
        raise FatalConfigError("RABBITMQ_TLS_CERT is required when RABBITMQ_ENABLE_MESSAGES is true")
    return build_ssl_context(settings.rabbitmq_tls_cert)


class _BusEndpoint:
    """Shared connection bookkeeping for producers and consumers."""

    def __init__(
        self,
        *,
        urls: list[str],
        exchange_name: str,
        exchange_type: str,
        ssl_context: ssl.SSLContext | None = None,
        connect_timeout_s: float = 30.0,
    ) -> None:
        if not urls:
            raise FatalConfigError("no message bus URL configured")
        self._urls = list(urls)
        self._url_index = 0
        self._exchange_name = exchange_name
        self._exchange_type = aio_pika.ExchangeType(exchange_type)
        self._ssl_context = ssl_context
        self._connect_timeout_s = connect_timeout_s
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None

    @property
    def current_url(self) -> str:
        return self._urls[self._url_index]

    def _advance_url(self) -> None:
        self._url_index = (self._url_index + 1) % len(self._urls)

    async def _open(self, url: str) -> None:
        connection = await aio_pika.connect(
            url,
            ssl_context=self._ssl_context,
            timeout=self._connect_timeout_s,
        )
        channel = await connection.channel()
        exchange = await channel.declare_exchange(self._exchange_name, self._exchange_type, durable=True)
        self._connection = connection
        self._channel = channel
        self._exchange = exchange

    async def _connect_with_failover(self) -> None:
        # Try the current URL first, then every other configured URL once.
        last_error: Exception | None = None
        for _ in range(len(self._urls)):
            url = self.current_url
            try:
                await self._open(url)
                logger.info("connected to message bus (url index %d)", self._url_index)
                return
            except _TRANSPORT_ERRORS as exc:
                last_error = exc
                logger.warning("message bus connect failed (url index %d): %s", self._url_index, exc)
                self._advance_url()
        raise BusTransportError(f"unable to connect to any message bus URL: {last_error}")

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None:
            raise BusTransportError("message bus channel is not open")
        return self._channel

    def _require_exchange(self) -> AbstractExchange:
        if self._exchange is None:
            raise BusTransportError("message bus exchange is not declared")
        return self._exchange

    def is_open(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def close(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        self._exchange = None
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except _TRANSPORT_ERRORS:
                logger.debug("ignoring error while closing bus connection", exc_info=True)


class BusProducer(_BusEndpoint):
    def __init__(self, *, master_key: bytes | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._master_key = master_key
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> BusProducer:
        settings = settings or get_settings()
        return cls(
            urls=settings.bus_urls(),
            exchange_name=settings.rabbitmq_exchange_name,
            exchange_type=settings.rabbitmq_exchange_type,
            ssl_context=_ssl_context_for(settings),
            master_key=master_key_from_settings(),
        )

    async def connect(self) -> None:
        async with self._lock:
            if not self.is_open():
                await self._connect_with_failover()

    async def publish(self, topic: str, body: bytes, *, headers: dict[str, Any] | None = None) -> None:
        message = aio_pika.Message(
            body,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            content_type="application/json",
            timestamp=datetime.now(timezone.utc),
            headers=headers or {},
        )
        async with self._lock:
            try:
                if not self.is_open():
                    await self._connect_with_failover()
                await self._require_exchange().publish(message, routing_key=topic)
            except _TRANSPORT_ERRORS as exc:
                # Fail over to the other URL once before surfacing the failure.
                logger.warning("publish to %s failed, reconnecting: %s", topic, exc)
                increment_counter("bus_publish_failover_total")
                await self.close()
                self._advance_url()
                try:
                    await self._connect_with_failover()
                    await self._require_exchange().publish(message, routing_key=topic)
                except _TRANSPORT_ERRORS as retry_exc:
                    raise BusTransportError(f"publish to {topic} failed: {retry_exc}") from retry_exc
        increment_counter("bus_published_total")

    async def publish_sealed(self, topic: str, plaintext: bytes, *, headers: dict[str, Any] | None = None) -> None:
        # Seal failures raise EnvelopeError before any transport work happens.
        if self._master_key is None:
            raise FatalConfigError("producer has no master key for sealing")
        sealed = seal(plaintext, master_key=self._master_key)
        await self.publish(topic, sealed, headers=headers)

    async def ping(self) -> bool:
        # Reconnect lazily so health reflects whether the bus accepts connections now.
        try:
            await self.connect()
        except BusTransportError:
            return False
        return self.is_open()


class BusConsumer(_BusEndpoint):
    def __init__(
        self,
        *,
        name: str,
        prefetch_count: int = 10,
        base_backoff_s: float = 1.0,
        max_backoff_s: float = 60.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.name = name
        self._prefetch_count = prefetch_count
        self._base_backoff_s = base_backoff_s
        self._max_backoff_s = max_backoff_s
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, name: str, settings: Settings | None = None) -> BusConsumer:
        settings = settings or get_settings()
        return cls(
            name=name,
            urls=settings.bus_urls(),
            exchange_name=settings.rabbitmq_exchange_name,
            exchange_type=settings.rabbitmq_exchange_type,
            ssl_context=_ssl_context_for(settings),
            prefetch_count=settings.bus_prefetch_count,
            base_backoff_s=settings.bus_reconnect_base_backoff_s,
            max_backoff_s=settings.bus_reconnect_max_backoff_s,
        )

    def reconnect_delay_s(self, failures: int) -> float:
        return min(self._max_backoff_s, self._base_backoff_s * (2 ** max(0, failures - 1)))

    def stop(self) -> None:
        self._stopping.set()

    async def _settle_failed(self, message: AbstractIncomingMessage) -> None:
        # One requeue for a handler defect; a second failure drops the message.
        if message.redelivered:
            increment_counter("bus_consumer_poison_rejected_total")
            logger.error("consumer %s rejecting redelivered message after handler failure", self.name)
            await message.reject(requeue=False)
            return
        await message.nack(requeue=True)

    async def _next_or_stop(self, messages: AsyncIterator[AbstractIncomingMessage]) -> AbstractIncomingMessage | None:
        next_message = asyncio.ensure_future(messages.__anext__())
        stop_wait = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({next_message, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            pending = not next_message.done()
            if pending:
                next_message.cancel()
        if pending:
            await asyncio.gather(next_message, return_exceptions=True)
            return None
        try:
            return next_message.result()
        except StopAsyncIteration:
            return None

    async def _consume_once(self, binding: QueueBinding, handler: MessageHandler) -> None:
        channel = self._require_channel()
        exchange = self._require_exchange()
        await channel.set_qos(prefetch_count=self._prefetch_count)
        queue = await channel.declare_queue(binding.queue, durable=True)
        await queue.bind(exchange, routing_key=binding.key)
        logger.info("consumer %s listening on %s (key %s)", self.name, binding.queue, binding.key)
        async with queue.iterator() as messages:
            while not self._stopping.is_set():
                message = await self._next_or_stop(messages)
                if message is None:
                    return
                try:
                    await handler(message)
                except _TRANSPORT_ERRORS:
                    raise
                except Exception:  # noqa: BLE001 - a handler defect must not kill the consumer.
                    logger.exception("consumer %s handler failed", self.name)
                    await self._settle_failed(message)

    async def run(self, binding: QueueBinding, handler: MessageHandler) -> None:
        """Consume ``binding`` until stopped, reconnecting with bounded backoff and alternating URLs."""
        failures = 0
        while not self._stopping.is_set():
            try:
                await self._open(self.current_url)
                failures = 0
                await self._consume_once(binding, handler)
            except _RECONNECT_ERRORS as exc:
                failures += 1
                delay = self.reconnect_delay_s(failures)
                increment_counter("bus_consumer_reconnects_total")
                logger.warning(
                    "consumer %s lost its channel (%s); retrying in %.1fs", self.name, exc, delay
                )
                await self.close()
                self._advance_url()
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    continue
        await self.close()
