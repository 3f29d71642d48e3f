from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from pnp.apps.hooks.main import create_app
from pnp.domain.messages import FanoutEvent, NotificationBatch, NotificationRecord
from pnp.domain.models import DeliveryAttempt, Notification, Subscription, SubscriptionDelivery, Watch
from pnp.persistence.repos.subscriptions import create_subscription, create_watch
from pnp.services.auth_cache import BadAuthCache, DecisionCache
from pnp.services.crypto.envelope import seal
from pnp.services.fanout.delivery import DeliveryPolicy, plan_deliveries, process_delivery
from pnp.services.fanout.dispatcher import DeliveryScheduler, FanoutHandler
from pnp.services.hooks.auth import HookAuthenticator, StaticTokenVerifier
from pnp.services.hooks.health import HookHealthMonitor
from pnp.services.nq2ds.apply import apply_batch
from pnp.services.nq2ds.consumer import NQ2DSHandler
from pnp.services.resilience import RetryPolicy
from pnp.services.telemetry import counter_value
from pnp.tests.utils.fakes import TEST_MASTER_KEY, FakeMessage, RecordingPublisher


COS_US_SOUTH = "crn:v1:bluemix:public:cloud-object-storage:us-south::::"
COS_EU_DE = "crn:v1:bluemix:public:cloud-object-storage:eu-de::::"
SUBSCRIPTION_HREF = "http://api.test/notifications/subscriptions/s1"
SUBSCRIBER_URL = "http://subscriber.test/pnp"

_POLICY = DeliveryPolicy(max_attempts=3, backoff_ms=60000, backoff_max_ms=120000, failure_threshold=5, timeout_s=5)


class _Subscriber:
    """Answers deliveries with a scripted list of status codes; the last one repeats."""

    def __init__(self, *statuses: int) -> None:
        self._statuses = list(statuses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]
        return httpx.Response(status)

    def payloads(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


def _record(crn: str, *, source_id: str = "MAINT-1", **fields) -> NotificationRecord:
    return NotificationRecord(
        source="doctor",
        source_id=source_id,
        type="maintenance",
        crn_full=crn,
        source_creation_time="2024-03-01T09:00:00Z",
        source_update_time="2024-03-01T10:00:00Z",
        **fields,
    )


async def _store(session_factory, *records: NotificationRecord) -> list[Notification]:
    async with session_factory() as session:
        async with session.begin():
            outcomes = await apply_batch(session, NotificationBatch(notifications=list(records)))
    return [outcome.row for outcome in outcomes]


async def _subscribe(
    session_factory,
    *,
    kind: str = "maintenance",
    crn_masks: list[str] | None = None,
    tags: list[str] | None = None,
    expiration: datetime | None = None,
) -> None:
    async with session_factory() as session:
        await create_subscription(
            session,
            record_id="s1",
            name="ops console",
            href=SUBSCRIPTION_HREF,
            target_address=SUBSCRIBER_URL,
            target_token="Bearer subscriber-token",
            expiration=expiration,
        )
        await create_watch(
            session,
            record_id="w1",
            subscription_url=SUBSCRIPTION_HREF,
            kind=kind,
            crn_masks=crn_masks,
            tags=tags,
        )
        await session.commit()


async def _plan(session_factory, row: Notification) -> list[SubscriptionDelivery]:
    async with session_factory() as session:
        deliveries = await plan_deliveries(session, FanoutEvent.from_row(row, msgtype="update"))
        await session.commit()
    return deliveries


async def _subscription(session_factory) -> Subscription | None:
    async with session_factory() as session:
        return await session.get(Subscription, "s1")


@pytest.mark.asyncio
async def test_collated_notification_is_delivered(session_factory) -> None:
    rows = await _store(session_factory, _record(COS_US_SOUTH), _record(COS_EU_DE))
    await _subscribe(session_factory)
    [delivery] = await _plan(session_factory, rows[0])

    subscriber = _Subscriber(200)
    async with session_factory() as session:
        result = await process_delivery(session, delivery.id, policy=_POLICY, transport=httpx.MockTransport(subscriber))
    assert result.status == "delivered"
    assert result.attempt_count == 1

    [request] = subscriber.requests
    assert request.headers["Authorization"] == "Bearer subscriber-token"
    assert request.headers["X-PnP-Delivery-Id"] == delivery.id
    [payload] = subscriber.payloads()
    assert sorted(payload["crns"]) == sorted([COS_US_SOUTH, COS_EU_DE])
    assert payload["record_id"] == min(row.record_id for row in rows)
    assert "member_record_ids" not in payload

    async with session_factory() as session:
        attempts = (await session.execute(select(DeliveryAttempt))).scalars().all()
    assert [(attempt.outcome, attempt.status_code) for attempt in attempts] == [("success", 200)]


@pytest.mark.asyncio
async def test_server_errors_schedule_a_retry(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory)
    [delivery] = await _plan(session_factory, row)
    transport = httpx.MockTransport(_Subscriber(500))

    async with session_factory() as session:
        result = await process_delivery(session, delivery.id, policy=_POLICY, transport=transport)
    assert result.status == "retry_scheduled"
    assert result.attempt_count == 1
    assert result.last_error

    # Not due yet: a second pass leaves it alone.
    async with session_factory() as session:
        assert await process_delivery(session, delivery.id, policy=_POLICY, transport=transport) is None


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_delivery(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory)
    [delivery] = await _plan(session_factory, row)
    policy = DeliveryPolicy(max_attempts=1, backoff_ms=10, backoff_max_ms=10, failure_threshold=5, timeout_s=5)

    async with session_factory() as session:
        result = await process_delivery(session, delivery.id, policy=policy, transport=httpx.MockTransport(_Subscriber(503)))
    assert result.status == "failed"
    assert (await _subscription(session_factory)).failure_count == 1


@pytest.mark.asyncio
async def test_client_errors_are_terminal_and_disable_at_threshold(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory)
    [delivery] = await _plan(session_factory, row)
    policy = DeliveryPolicy(max_attempts=5, backoff_ms=10, backoff_max_ms=10, failure_threshold=1, timeout_s=5)

    async with session_factory() as session:
        result = await process_delivery(session, delivery.id, policy=policy, transport=httpx.MockTransport(_Subscriber(404)))
    assert result.status == "failed"
    assert result.attempt_count == 1
    subscription = await _subscription(session_factory)
    assert subscription.disabled
    assert subscription.failure_count == 1

    # Disabled subscriptions receive nothing new.
    [updated] = await _store(session_factory, _record(COS_US_SOUTH, tags="changed"))
    assert await _plan(session_factory, updated) == []


@pytest.mark.asyncio
async def test_success_resets_the_failure_count(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory)
    async with session_factory() as session:
        subscription = await session.get(Subscription, "s1")
        subscription.failure_count = 3
        await session.commit()
    [delivery] = await _plan(session_factory, row)

    async with session_factory() as session:
        await process_delivery(session, delivery.id, policy=_POLICY, transport=httpx.MockTransport(_Subscriber(204)))
    assert (await _subscription(session_factory)).failure_count == 0


@pytest.mark.asyncio
async def test_same_notification_version_is_planned_once(session_factory) -> None:
    rows = await _store(session_factory, _record(COS_US_SOUTH), _record(COS_EU_DE))
    await _subscribe(session_factory)
    assert len(await _plan(session_factory, rows[0])) == 1
    # The sibling row's event collates to the same notification version.
    assert await _plan(session_factory, rows[1]) == []


@pytest.mark.asyncio
async def test_watch_filters_select_subscribers(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory, crn_masks=["crn:v1:bluemix:public:kms:::::"])
    assert await _plan(session_factory, row) == []


@pytest.mark.asyncio
async def test_retracted_notifications_only_reach_subscribers_asking_for_them(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH, tags="retract-1"))
    await _subscribe(session_factory)
    assert await _plan(session_factory, row) == []

    async with session_factory() as session:
        watch = await session.get(Watch, "w1")
        watch.tags = ["retract"]
        await session.commit()
    [delivery] = await _plan(session_factory, row)
    assert delivery.payload_json["tags"] == ["retract", "retract-1"]


@pytest.mark.asyncio
async def test_scheduler_purges_expired_subscriptions_and_sends_due_deliveries(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory)
    await _plan(session_factory, row)
    subscriber = _Subscriber(200)
    handler = FanoutHandler(
        session_factory=session_factory,
        master_key=TEST_MASTER_KEY,
        policy=_POLICY,
        transport=httpx.MockTransport(subscriber),
    )
    scheduler = DeliveryScheduler(handler, session_factory=session_factory, poll_interval_s=1, batch_size=10)

    assert await scheduler.tick() == 1
    assert len(subscriber.requests) == 1

    async with session_factory() as session:
        subscription = await session.get(Subscription, "s1")
        subscription.expiration = datetime.now(timezone.utc) - timedelta(minutes=1)
        await session.commit()
    await scheduler.tick()
    assert await _subscription(session_factory) is None
    async with session_factory() as session:
        assert (await session.execute(select(Watch))).scalars().all() == []


@pytest.mark.asyncio
async def test_scheduler_reclaims_deliveries_orphaned_in_flight(session_factory) -> None:
    [row] = await _store(session_factory, _record(COS_US_SOUTH))
    await _subscribe(session_factory)
    [delivery] = await _plan(session_factory, row)
    subscriber = _Subscriber(200)
    handler = FanoutHandler(
        session_factory=session_factory,
        master_key=TEST_MASTER_KEY,
        policy=DeliveryPolicy(
            max_attempts=3, backoff_ms=10, backoff_max_ms=10, failure_threshold=5, timeout_s=5, in_flight_timeout_s=60
        ),
        transport=httpx.MockTransport(subscriber),
    )
    scheduler = DeliveryScheduler(
        handler, session_factory=session_factory, poll_interval_s=1, batch_size=10, in_flight_timeout_s=60
    )

    async def _mark_in_flight(updated_at: datetime) -> None:
        async with session_factory() as session:
            stored = await session.get(SubscriptionDelivery, delivery.id)
            stored.status = "in_flight"
            stored.updated_at = updated_at
            await session.commit()

    # A worker is still working on it.
    await _mark_in_flight(datetime.now(timezone.utc))
    assert await scheduler.tick() == 0
    assert subscriber.requests == []

    # The worker died mid-attempt long ago.
    await _mark_in_flight(datetime.now(timezone.utc) - timedelta(minutes=10))
    assert await scheduler.tick() == 1
    assert len(subscriber.requests) == 1
    assert counter_value("fanout_in_flight_reclaimed_total") == 1
    async with session_factory() as session:
        stored = await session.get(SubscriptionDelivery, delivery.id)
    assert stored.status == "delivered"


@pytest.mark.asyncio
async def test_undecryptable_event_is_rejected(session_factory) -> None:
    handler = FanoutHandler(session_factory=session_factory, master_key=TEST_MASTER_KEY, policy=_POLICY)
    message = FakeMessage(seal(b"{}", master_key=b"\x09" * 32))
    await handler.handle(message)
    assert message.outcome == "reject"


@pytest.mark.asyncio
async def test_hook_to_subscriber_end_to_end(session_factory) -> None:
    await _subscribe(session_factory)

    # 1. Hook receives a Doctor maintenance covering two regions.
    hook_publisher = RecordingPublisher()
    app = create_app(
        publisher=hook_publisher,
        health_monitor=HookHealthMonitor(bus_ping=hook_publisher.ping),
        authenticator=HookAuthenticator(
            verifier=StaticTokenVerifier("unused"),
            bad_auth=BadAuthCache(),
            decisions=DecisionCache(),
            decision_ttl_s=60,
        ),
        start_background=False,
    )
    body = json.dumps(
        {
            "id": "MAINT-77",
            "title": "Storage firmware upgrade",
            "planned_start": "2024-06-01T00:00:00Z",
            "planned_end": "2024-06-01T04:00:00Z",
            "updated_time": "2024-05-20T12:00:00Z",
            "crns": [COS_US_SOUTH, COS_EU_DE],
        }
    ).encode("utf-8")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/v1/doctor/maintenances", content=body)
    assert response.status_code == 200
    [(_topic, raw, raw_headers)] = hook_publisher.messages

    # 2. NQ2DS stores one row per CRN and emits a downstream event per row.
    nq2ds_publisher = RecordingPublisher()
    nq2ds = NQ2DSHandler(
        session_factory=session_factory,
        publisher=nq2ds_publisher,
        master_key=TEST_MASTER_KEY,
        db_policy=RetryPolicy(timeout_ms=5000, max_attempts=1, backoff_ms=1),
        emit_policy=RetryPolicy(timeout_ms=5000, max_attempts=1, backoff_ms=1),
    )
    inbound = FakeMessage(seal(raw, master_key=TEST_MASTER_KEY), headers=raw_headers)
    await nq2ds.handle(inbound)
    assert inbound.outcome == "ack"
    assert len(nq2ds_publisher.messages) == 2

    # 3. Fan-out collates both rows into one notification for the subscriber.
    subscriber = _Subscriber(200)
    fanout = FanoutHandler(
        session_factory=session_factory,
        master_key=TEST_MASTER_KEY,
        policy=_POLICY,
        transport=httpx.MockTransport(subscriber),
    )
    for _fanout_topic, plaintext, _headers in nq2ds_publisher.messages:
        event_message = FakeMessage(seal(plaintext, master_key=TEST_MASTER_KEY))
        await fanout.handle(event_message)
        assert event_message.outcome == "ack"

    [payload] = subscriber.payloads()
    assert payload["source"] == "doctor"
    assert payload["source_id"] == "MAINT-77"
    assert sorted(payload["crns"]) == sorted([COS_US_SOUTH, COS_EU_DE])
    assert payload["short_description"] == [{"name": "Storage firmware upgrade", "language": "en"}]
