from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pnp.core.config import Settings, get_settings
from pnp.domain.messages import FanoutEvent
from pnp.domain.models import DeliveryAttempt, Notification, Subscription, SubscriptionDelivery
from pnp.persistence.repos.notifications import list_by_incident, list_by_source_record
from pnp.persistence.repos.subscriptions import get_subscription, get_subscription_by_href, list_watches_by_kind
from pnp.services.crypto.utils import sha256_hex
from pnp.services.fanout.collation import apply_tag_policy, collate
from pnp.services.fanout.watches import subscription_is_active, watch_kind_for, watch_matches
from pnp.services.resilience import retry_backoff_ms
from pnp.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_IN_FLIGHT = "in_flight"
STATUS_DELIVERED = "delivered"
STATUS_RETRY_SCHEDULED = "retry_scheduled"
STATUS_FAILED = "failed"
_READY_DELIVERY_STATUSES = (STATUS_PENDING, STATUS_RETRY_SCHEDULED)
# Request timeout and throttling responses are worth retrying.
_NON_TERMINAL_HTTP_4XX = {408, 429}
# In-flight deliveries untouched this long were orphaned by a crashed worker.
DEFAULT_IN_FLIGHT_TIMEOUT_S = 300.0


@dataclass(frozen=True)
class DeliveryPolicy:
    max_attempts: int = 5
    backoff_ms: int = 1000
    backoff_max_ms: int = 60000
    failure_threshold: int = 10
    timeout_s: float = 30.0
    in_flight_timeout_s: float = DEFAULT_IN_FLIGHT_TIMEOUT_S

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DeliveryPolicy:
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.fanout_max_attempts,
            backoff_ms=settings.fanout_backoff_ms,
            backoff_max_ms=settings.fanout_backoff_max_ms,
            failure_threshold=settings.fanout_failure_threshold,
            timeout_s=settings.fanout_http_timeout_s,
            in_flight_timeout_s=settings.fanout_in_flight_timeout_s,
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _claimable(now: datetime, in_flight_timeout_s: float):
    stale_cutoff = now - timedelta(seconds=max(1.0, in_flight_timeout_s))
    return or_(
        and_(
            SubscriptionDelivery.status.in_(_READY_DELIVERY_STATUSES),
            SubscriptionDelivery.next_attempt_at <= now,
        ),
        and_(
            SubscriptionDelivery.status == STATUS_IN_FLIGHT,
            SubscriptionDelivery.updated_at <= stale_cutoff,
        ),
    )


def delivery_dedupe_key(*, subscription_record_id: str, record_id: str, pnp_update_time: str) -> str:
    # One delivery per subscription and collated notification version.
    return sha256_hex(f"{subscription_record_id}:{record_id}:{pnp_update_time}".encode("utf-8"))


async def load_related_rows(session: AsyncSession, event: FanoutEvent) -> list[Notification]:
    # Incidents collate across every BSPN sharing the incident id.
    if event.type == "incident" and event.incident_id:
        return await list_by_incident(session, incident_id=event.incident_id)
    return await list_by_source_record(session, source=event.source, source_id=event.source_id)


async def _delivery_exists(session: AsyncSession, dedupe_key: str) -> bool:
    result = await session.execute(
        select(SubscriptionDelivery.id).where(SubscriptionDelivery.dedupe_key == dedupe_key)
    )
    return result.scalar_one_or_none() is not None


async def plan_deliveries(
    session: AsyncSession,
    event: FanoutEvent,
    *,
    now: datetime | None = None,
) -> list[SubscriptionDelivery]:
    """Create pending deliveries for every active subscription whose watches match the event's record."""
    now = now or _utc_now()
    rows = await load_related_rows(session, event)
    if not rows:
        logger.info("no stored rows for %s/%s; nothing to fan out", event.source, event.source_id)
        return []
    created: list[SubscriptionDelivery] = []
    planned: set[str] = set()
    for notification in collate(rows):
        for watch in await list_watches_by_kind(session, watch_kind_for(notification.type)):
            if not watch_matches(watch, notification):
                continue
            payload = apply_tag_policy(notification, watch.tags)
            if payload is None:
                continue
            subscription = await get_subscription_by_href(session, watch.subscription_url)
            if subscription is None or not subscription_is_active(subscription, now=now):
                continue
            dedupe_key = delivery_dedupe_key(
                subscription_record_id=subscription.record_id,
                record_id=payload.record_id,
                pnp_update_time=payload.pnp_update_time,
            )
            if dedupe_key in planned or await _delivery_exists(session, dedupe_key):
                continue
            planned.add(dedupe_key)
            delivery = SubscriptionDelivery(
                id=uuid4().hex,
                dedupe_key=dedupe_key,
                subscription_record_id=subscription.record_id,
                notification_record_id=payload.record_id,
                source=payload.source,
                source_id=payload.source_id,
                status=STATUS_PENDING,
                attempt_count=0,
                next_attempt_at=now,
                last_error=None,
                payload_json=payload.model_dump(mode="json"),
            )
            session.add(delivery)
            created.append(delivery)
    if created:
        await session.flush()
        increment_counter("fanout_deliveries_planned_total", len(created))
    return created


def _response_error_reason(response: httpx.Response) -> str:
    return f"http_{int(response.status_code)}"


def _classify_delivery_error(*, exc: Exception) -> tuple[bool, str]:
    # 4xx responses other than timeouts and throttling are terminal.
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
        reason = _response_error_reason(exc.response)
        if 400 <= status_code < 500 and status_code not in _NON_TERMINAL_HTTP_4XX:
            return True, reason
        return False, reason
    return False, "retryable_failure"


async def _deliver(
    *,
    target: str,
    payload_bytes: bytes,
    headers: dict[str, str],
    timeout_s: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            response = await client.post(target, content=payload_bytes, headers=headers)
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"Subscriber rejected notification delivery ({response.status_code})",
                    request=response.request,
                    response=response,
                )
    except httpx.HTTPError:
        record_external_call(integration="subscriber", latency_ms=(time.monotonic() - start) * 1000, success=False)
        raise
    record_external_call(integration="subscriber", latency_ms=(time.monotonic() - start) * 1000, success=True)
    return int(response.status_code)


async def claim_delivery(
    session: AsyncSession,
    delivery_id: str,
    *,
    in_flight_timeout_s: float = DEFAULT_IN_FLIGHT_TIMEOUT_S,
) -> SubscriptionDelivery | None:
    # Row lock so only one worker moves a ready or orphaned delivery into in_flight.
    now = _utc_now()
    row = (
        await session.execute(
            select(SubscriptionDelivery)
            .where(SubscriptionDelivery.id == delivery_id, _claimable(now, in_flight_timeout_s))
            .with_for_update(skip_locked=True)
        )
    ).scalar_one_or_none()
    if row is None:
        await session.rollback()
        return None
    if row.status == STATUS_IN_FLIGHT:
        increment_counter("fanout_in_flight_reclaimed_total")
        logger.warning("reclaiming delivery %s left in flight since %s", row.id, row.updated_at)
    row.status = STATUS_IN_FLIGHT
    row.updated_at = now
    await session.commit()
    await session.refresh(row)
    return row


def _record_subscription_failure(subscription: Subscription, policy: DeliveryPolicy) -> None:
    subscription.failure_count = int(subscription.failure_count or 0) + 1
    if subscription.failure_count >= policy.failure_threshold and not subscription.disabled:
        subscription.disabled = True
        increment_counter("fanout_subscriptions_disabled_total")
        logger.warning(
            "subscription %s disabled after %d consecutive failures",
            subscription.record_id,
            subscription.failure_count,
        )


def _request_headers(subscription: Subscription, delivery: SubscriptionDelivery, attempt_no: int) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-PnP-Delivery-Id": delivery.id,
        "X-PnP-Attempt": str(attempt_no),
    }
    if subscription.target_token:
        # Sent verbatim; subscribers choose their own scheme.
        headers["Authorization"] = subscription.target_token
    return headers


async def process_delivery(
    session: AsyncSession,
    delivery_id: str,
    *,
    policy: DeliveryPolicy | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SubscriptionDelivery | None:
    """Run one delivery attempt and record it; returns None when the delivery is not ready."""
    policy = policy or DeliveryPolicy.from_settings()
    delivery = await claim_delivery(session, delivery_id, in_flight_timeout_s=policy.in_flight_timeout_s)
    if delivery is None:
        return None
    now = _utc_now()
    subscription = await get_subscription(session, delivery.subscription_record_id)
    if subscription is None or not subscription_is_active(subscription, now=now):
        # Subscription went away or was disabled after the delivery was planned.
        delivery.status = STATUS_FAILED
        delivery.last_error = "subscription_inactive"
        delivery.next_attempt_at = now
        await session.commit()
        increment_counter("fanout_failed_total")
        return delivery

    attempt_no = int(delivery.attempt_count) + 1
    attempt = DeliveryAttempt(
        delivery_id=delivery.id,
        attempt_no=attempt_no,
        started_at=now,
        finished_at=None,
        status_code=None,
        outcome="running",
        error=None,
    )
    session.add(attempt)
    await session.flush()
    payload_json: dict[str, Any] = delivery.payload_json if isinstance(delivery.payload_json, dict) else {}
    payload_bytes = json.dumps(payload_json, separators=(",", ":")).encode("utf-8")

    try:
        status_code = await _deliver(
            target=subscription.target_address,
            payload_bytes=payload_bytes,
            headers=_request_headers(subscription, delivery, attempt_no),
            timeout_s=policy.timeout_s,
            transport=transport,
        )
    except Exception as exc:  # noqa: BLE001 - delivery failures are isolated to delivery state updates.
        attempt.finished_at = _utc_now()
        attempt.outcome = "failure"
        attempt.error = str(exc)
        if isinstance(exc, httpx.HTTPStatusError):
            attempt.status_code = int(exc.response.status_code)
        delivery.attempt_count = attempt_no
        delivery.last_error = str(exc)
        terminal, reason = _classify_delivery_error(exc=exc)
        if terminal or attempt_no >= max(1, policy.max_attempts):
            delivery.status = STATUS_FAILED
            delivery.next_attempt_at = attempt.finished_at
            _record_subscription_failure(subscription, policy)
            increment_counter("fanout_failed_total")
            logger.error(
                "delivery %s to subscription %s failed (%s) after %d attempts",
                delivery.id,
                subscription.record_id,
                reason if terminal else "max_attempts_exceeded",
                attempt_no,
            )
        else:
            delay_ms = retry_backoff_ms(
                key=delivery.id,
                attempt_no=attempt_no,
                base_ms=policy.backoff_ms,
                cap_ms=policy.backoff_max_ms,
            )
            delivery.status = STATUS_RETRY_SCHEDULED
            delivery.next_attempt_at = attempt.finished_at + timedelta(milliseconds=delay_ms)
            increment_counter("fanout_retries_total")
            logger.info("delivery %s retry %d scheduled in %dms (%s)", delivery.id, attempt_no, delay_ms, reason)
        await session.commit()
        await session.refresh(delivery)
        return delivery

    attempt.finished_at = _utc_now()
    attempt.outcome = "success"
    attempt.status_code = status_code
    delivery.attempt_count = attempt_no
    delivery.last_error = None
    delivery.status = STATUS_DELIVERED
    delivery.next_attempt_at = attempt.finished_at
    subscription.failure_count = 0
    await session.commit()
    await session.refresh(delivery)
    increment_counter("fanout_delivered_total")
    return delivery


async def list_due_deliveries(
    session: AsyncSession,
    *,
    limit: int = 50,
    in_flight_timeout_s: float = DEFAULT_IN_FLIGHT_TIMEOUT_S,
) -> list[str]:
    """Return ids of due deliveries, including in-flight ones abandoned past ``in_flight_timeout_s``."""
    now = _utc_now()
    rows = (
        await session.execute(
            select(SubscriptionDelivery.id)
            .where(_claimable(now, in_flight_timeout_s))
            .order_by(SubscriptionDelivery.next_attempt_at.asc(), SubscriptionDelivery.created_at.asc())
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    delivery_ids = [str(row) for row in rows]
    if delivery_ids:
        # Orphaned in-flight rows keep their stale timestamp so claim_delivery still accepts them.
        await session.execute(
            update(SubscriptionDelivery)
            .where(
                SubscriptionDelivery.id.in_(delivery_ids),
                SubscriptionDelivery.status.in_(_READY_DELIVERY_STATUSES),
            )
            .values(updated_at=now)
        )
    await session.commit()
    return delivery_ids
