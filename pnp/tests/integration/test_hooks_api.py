from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from pnp.apps.hooks.main import create_app
from pnp.core.errors import BusTransportError, EnvelopeError
from pnp.services.auth_cache import BadAuthCache, DecisionCache
from pnp.services.bus.topology import FORMAT_RAW, HEADER_FORMAT, HEADER_KIND, HEADER_SOURCE
from pnp.services.hooks.auth import HookAuthenticator, StaticTokenVerifier
from pnp.services.hooks.health import HEALTHY_DESCRIPTION, HookHealthMonitor
from pnp.tests.utils.fakes import RecordingPublisher


SNOW_TOKEN = "snow-shared-secret"


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _bus_up() -> bool:
    return True


async def _bus_down() -> bool:
    return False


def _make_app(publisher: RecordingPublisher, *, monitor: HookHealthMonitor | None = None):
    authenticator = HookAuthenticator(
        verifier=StaticTokenVerifier(SNOW_TOKEN),
        bad_auth=BadAuthCache(ttl_s=30),
        decisions=DecisionCache(),
        decision_ttl_s=300,
    )
    return create_app(
        publisher=publisher,
        health_monitor=monitor or HookHealthMonitor(bus_ping=_bus_up),
        authenticator=authenticator,
        start_background=False,
    )


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_snow_hook_publishes_sealed_raw_body() -> None:
    publisher = RecordingPublisher()
    body = b'{"id":"BSPN0001","crn":["crn:v1:bluemix:public:cloud-object-storage:us-south::::"]}'
    async with _client(_make_app(publisher)) as client:
        response = await client.post(
            "/api/v1/snow/bspn",
            content=body,
            headers={"Authorization": f"Bearer {SNOW_TOKEN}", "X-Request-Id": "req-1"},
        )
    assert response.status_code == 200
    assert response.json() == {"accepted": True, "topic": "incident"}
    assert response.headers["X-Request-Id"] == "req-1"
    [(topic, plaintext, headers)] = publisher.messages
    assert topic == "incident"
    # Bodies are forwarded untouched; interpretation happens in NQ2DS.
    assert plaintext == body
    assert headers[HEADER_FORMAT] == FORMAT_RAW
    assert headers[HEADER_SOURCE] == "servicenow"
    assert headers[HEADER_KIND] == "bspn"


@pytest.mark.asyncio
async def test_snow_hook_without_valid_token_is_rejected() -> None:
    publisher = RecordingPublisher()
    async with _client(_make_app(publisher)) as client:
        missing = await client.post("/api/v1/snow/incidents", content=b"{}")
        wrong = await client.post("/api/v1/snow/incidents", content=b"{}", headers={"Authorization": "Bearer nope"})
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_doctor_and_ghe_hooks_need_no_token() -> None:
    publisher = RecordingPublisher()
    async with _client(_make_app(publisher)) as client:
        doctor = await client.post("/api/v1/doctor/maintenances", content=b'{"id":"M1"}')
        ghe = await client.post("/api/v1/ghe/announcements", content=b'{"issue":{}}')
    assert doctor.json()["topic"] == "maintenance"
    assert ghe.json()["topic"] == "announcement"
    assert [topic for topic, _body, _headers in publisher.messages] == ["maintenance", "announcement"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "code"),
    [(BusTransportError("broker unreachable"), "PUBLISH_FAILED"), (EnvelopeError("master key is empty"), "ENCRYPTION_FAILED")],
)
async def test_publish_failures_answer_500(error, code: str) -> None:
    publisher = RecordingPublisher(error=error)
    async with _client(_make_app(publisher)) as client:
        response = await client.post("/api/v1/doctor/maintenances", content=b"{}")
    assert response.status_code == 500
    payload = response.json()
    assert payload["error"]["code"] == code
    assert payload["meta"]["request_id"]


@pytest.mark.asyncio
async def test_unknown_path_uses_error_envelope() -> None:
    async with _client(_make_app(RecordingPublisher())) as client:
        response = await client.post("/api/v1/snow/unknown", content=b"{}")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_healthz_reports_healthy_when_every_gate_passes() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "catalog.test":
            return httpx.Response(200, json={"code": 0})
        return httpx.Response(200)

    monitor = HookHealthMonitor(
        bus_ping=_bus_up,
        catalog_url="http://catalog.test/healthz",
        ciebot_urls=["http://ciebot.test/consumer", "http://ciebot.test/webhook"],
        transport=httpx.MockTransport(_handler),
    )
    await monitor.refresh()
    async with _client(_make_app(RecordingPublisher(), monitor=monitor)) as client:
        response = await client.get("/api/v1/pnp/hooks/healthz")
    assert response.status_code == 200
    assert response.json()["code"] == 0
    assert response.json()["description"] == HEALTHY_DESCRIPTION


@pytest.mark.asyncio
async def test_healthz_names_the_failing_gate() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "catalog.test":
            return httpx.Response(200, json={"code": 1})
        return httpx.Response(200)

    monitor = HookHealthMonitor(
        bus_ping=_bus_up,
        catalog_url="http://catalog.test/healthz",
        transport=httpx.MockTransport(_handler),
    )
    await monitor.refresh()
    async with _client(_make_app(RecordingPublisher(), monitor=monitor)) as client:
        response = await client.get("/api/v1/pnp/hooks/healthz")
    assert response.status_code == 503
    assert response.json()["code"] == 1
    assert response.json()["description"].startswith("API Catalog health check failed")


@pytest.mark.asyncio
async def test_bus_gate_is_checked_first() -> None:
    monitor = HookHealthMonitor(bus_ping=_bus_down)
    await monitor.refresh()
    code, description = await monitor.status()
    assert code == 1
    assert description.startswith("MQ health check failed")


@pytest.mark.asyncio
async def test_stale_or_missing_results_are_unhealthy() -> None:
    clock = _Clock()
    monitor = HookHealthMonitor(bus_ping=_bus_up, freshness_s=60, time_source=clock)
    code, description = await monitor.status()
    assert code == 1
    assert "not yet checked" in description

    await monitor.refresh()
    assert (await monitor.status())[0] == 0
    clock.now += 61
    code, description = await monitor.status()
    assert code == 1
    assert "no result within the last 60s" in description


@pytest.mark.asyncio
async def test_ciebot_gate_can_be_skipped() -> None:
    monitor = HookHealthMonitor(
        bus_ping=_bus_up,
        ciebot_urls=["http://ciebot.test/consumer"],
        skip_ciebot=True,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    await monitor.refresh()
    assert (await monitor.status())[0] == 0
