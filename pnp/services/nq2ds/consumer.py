from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from pnp.core.config import Settings, get_settings
from pnp.core.errors import BusTransportError, EnvelopeError, InputMalformedError, TransientTransportError
from pnp.domain.messages import FanoutEvent, NotificationBatch
from pnp.services.adapter.names import DisplayNameResolver, enrich_display_names
from pnp.services.adapter.normalizers import normalize_raw
from pnp.services.bus.connector import SealedPublisher
from pnp.services.bus.topology import FORMAT_RAW, FORMAT_TYPED, HEADER_FORMAT, HEADER_KIND, HEADER_SOURCE
from pnp.services.crypto.envelope import unseal
from pnp.services.nq2ds.apply import apply_batch
from pnp.services.resilience import RetryPolicy, retry_async
from pnp.services.telemetry import increment_counter
from pnp.services.timestamps import utc_now_timestamp


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Any]

# Postgres serialization failure and deadlock.
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


class IncomingMessage(Protocol):
    body: bytes
    headers: dict[str, Any]

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool = True) -> None: ...

    async def reject(self, requeue: bool = False) -> None: ...


def is_transient_db_error(exc: Exception) -> bool:
    # Connection loss, serialization conflicts and unique-key races are worth another transaction.
    if isinstance(exc, (OperationalError, IntegrityError, TimeoutError, OSError, TransientTransportError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = getattr(exc, "orig", None)
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return sqlstate in _RETRYABLE_SQLSTATES
    return False


def _header(headers: dict[str, Any] | None, name: str) -> str:
    value = (headers or {}).get(name)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value) if value is not None else ""


class NQ2DSHandler:
    """Unseal, decode and apply one bus message; emit downstream events after commit."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        publisher: SealedPublisher,
        master_key: bytes,
        db_policy: RetryPolicy,
        emit_policy: RetryPolicy,
        fanout_topic: str = "notification",
        bypass_local_storage: bool = False,
        resolver: DisplayNameResolver | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._master_key = master_key
        self._db_policy = db_policy
        self._emit_policy = emit_policy
        self._fanout_topic = fanout_topic
        self._bypass_local_storage = bypass_local_storage
        self._resolver = resolver

    @classmethod
    def from_settings(
        cls,
        *,
        session_factory: SessionFactory,
        publisher: SealedPublisher,
        master_key: bytes,
        resolver: DisplayNameResolver | None = None,
        settings: Settings | None = None,
    ) -> NQ2DSHandler:
        settings = settings or get_settings()
        policy = RetryPolicy(
            timeout_ms=settings.nq2ds_db_timeout_ms,
            max_attempts=settings.nq2ds_max_attempts,
            backoff_ms=settings.nq2ds_backoff_ms,
        )
        return cls(
            session_factory=session_factory,
            publisher=publisher,
            master_key=master_key,
            db_policy=policy,
            emit_policy=policy,
            fanout_topic=settings.fanout_topic,
            bypass_local_storage=settings.bypass_local_storage,
            resolver=resolver,
        )

    async def decode(self, plaintext: bytes, headers: dict[str, Any] | None) -> NotificationBatch:
        message_format = _header(headers, HEADER_FORMAT) or FORMAT_TYPED
        if message_format == FORMAT_RAW:
            records = normalize_raw(
                plaintext,
                source=_header(headers, HEADER_SOURCE),
                kind=_header(headers, HEADER_KIND),
            )
            if self._resolver is not None:
                records = await enrich_display_names(records, self._resolver)
            return NotificationBatch(msgtype="update", notifications=records)
        if message_format != FORMAT_TYPED:
            raise InputMalformedError(f"unknown message format {message_format!r}")
        try:
            return NotificationBatch.model_validate_json(plaintext)
        except ValidationError as exc:
            raise InputMalformedError(f"typed message failed validation: {exc.error_count()} errors") from exc

    async def _apply_once(self, batch: NotificationBatch) -> list[FanoutEvent]:
        async with self._session_factory() as session:
            async with session.begin():
                outcomes = await apply_batch(
                    session,
                    batch,
                    now=utc_now_timestamp(),
                    bypass_local_storage=self._bypass_local_storage,
                )
                return [
                    FanoutEvent.from_row(outcome.row, msgtype=batch.msgtype)
                    for outcome in outcomes
                    if outcome.changed and outcome.row is not None
                ]

    async def apply(self, batch: NotificationBatch) -> list[FanoutEvent]:
        return await retry_async(
            lambda: self._apply_once(batch),
            policy=self._db_policy,
            retryable=is_transient_db_error,
            counter="nq2ds_db_retries_total",
        )

    async def emit(self, events: list[FanoutEvent]) -> int:
        """Publish post-commit events; returns how many could not be published."""
        failed = 0
        for event in events:
            body = event.model_dump_json().encode("utf-8")
            try:
                await retry_async(
                    lambda: self._publisher.publish_sealed(self._fanout_topic, body, headers={HEADER_FORMAT: FORMAT_TYPED}),
                    policy=self._emit_policy,
                    counter="nq2ds_emit_retries_total",
                )
            except (BusTransportError, EnvelopeError, TimeoutError) as exc:
                failed += 1
                increment_counter("nq2ds_emit_failures_total")
                logger.error("downstream event for %s could not be published: %s", event.record_id, exc)
                continue
            increment_counter("nq2ds_emitted_total")
        return failed

    async def process(self, sealed: bytes, headers: dict[str, Any] | None) -> list[FanoutEvent]:
        """Run one message end to end; raises the error that decides ack, nack or reject."""
        plaintext = unseal(sealed, master_key=self._master_key)
        batch = await self.decode(plaintext, headers)
        events = await self.apply(batch)
        await self.emit(events)
        return events

    async def handle(self, message: IncomingMessage) -> None:
        try:
            events = await self.process(message.body, message.headers)
        except (EnvelopeError, InputMalformedError) as exc:
            increment_counter("nq2ds_rejected_total")
            logger.error("rejecting message without requeue: %s", exc)
            await message.reject(requeue=False)
            return
        except Exception as exc:  # noqa: BLE001 - non-rejectable failures go back to the queue.
            if not is_transient_db_error(exc):
                raise
            increment_counter("nq2ds_requeued_total")
            logger.warning("transient failure persisted after retries; requeueing: %s", exc)
            await message.nack(requeue=True)
            return
        increment_counter("nq2ds_processed_total")
        logger.debug("applied message with %d downstream events", len(events))
        await message.ack()
