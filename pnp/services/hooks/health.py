from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from pnp.core.config import Settings, get_settings
from pnp.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

HEALTHY_DESCRIPTION = "The API is available and operational."

GATE_BUS = "bus"
GATE_CATALOG = "catalog"
GATE_CIEBOT = "ciebot"
# Evaluation order and the label used in failure descriptions.
_GATE_LABELS: tuple[tuple[str, str], ...] = (
    (GATE_BUS, "MQ"),
    (GATE_CATALOG, "API Catalog"),
    (GATE_CIEBOT, "Ciebot"),
)


@dataclass(frozen=True)
class GateStatus:
    healthy: bool
    description: str
    checked_at: float


class HookHealthMonitor:
    """Probes hook dependencies in the background; requests only read the cached verdict."""

    def __init__(
        self,
        *,
        bus_ping: Callable[[], Awaitable[bool]],
        catalog_url: str = "",
        ciebot_urls: list[str] | None = None,
        skip_ciebot: bool = False,
        probe_timeout_s: float = 15.0,
        freshness_s: float = 60.0,
        time_source: Callable[[], float] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bus_ping = bus_ping
        self._catalog_url = catalog_url
        self._ciebot_urls = [url for url in (ciebot_urls or []) if url]
        self._skip_ciebot = skip_ciebot
        self._probe_timeout_s = probe_timeout_s
        self._freshness_s = freshness_s
        self._time = time_source or time.time
        self._transport = transport
        self._gates: dict[str, GateStatus] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, bus_ping: Callable[[], Awaitable[bool]], settings: Settings | None = None) -> HookHealthMonitor:
        settings = settings or get_settings()
        return cls(
            bus_ping=bus_ping,
            catalog_url=settings.api_catalog_healthz_url,
            ciebot_urls=[
                settings.ciebot_consumer_healthz_url,
                settings.ciebot_webhook_healthz_url,
                settings.ciebot_handler_healthz_url,
            ],
            skip_ciebot=settings.ciebot_skip_health_check,
            probe_timeout_s=settings.health_probe_timeout_s,
            freshness_s=settings.hooks_health_freshness_s,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._probe_timeout_s, transport=self._transport)

    async def _check_bus(self) -> GateStatus:
        try:
            ok = await asyncio.wait_for(self._bus_ping(), timeout=self._probe_timeout_s)
        except Exception as exc:  # noqa: BLE001 - any probe failure marks the gate unhealthy.
            return GateStatus(False, f"unable to reach message bus: {exc}", self._time())
        if not ok:
            return GateStatus(False, "unable to reach message bus", self._time())
        return GateStatus(True, "", self._time())

    async def _check_catalog(self) -> GateStatus:
        if not self._catalog_url:
            return GateStatus(True, "", self._time())
        start = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.get(self._catalog_url)
            if response.status_code != 200:
                raise ValueError(f"expecting 200 OK, got {response.status_code}")
            payload = response.json()
            if not isinstance(payload, dict) or payload.get("code") != 0:
                raise ValueError("expected code=0")
        except (httpx.HTTPError, ValueError) as exc:
            record_external_call(integration="api_catalog", latency_ms=(time.monotonic() - start) * 1000, success=False)
            return GateStatus(False, str(exc), self._time())
        record_external_call(integration="api_catalog", latency_ms=(time.monotonic() - start) * 1000, success=True)
        return GateStatus(True, "", self._time())

    async def _check_one_ciebot(self, client: httpx.AsyncClient, url: str) -> str | None:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            return f"{url}: {exc}"
        if response.status_code != 200:
            return f"{url}: status {response.status_code}"
        return None

    async def _check_ciebot(self) -> GateStatus:
        if self._skip_ciebot or not self._ciebot_urls:
            return GateStatus(True, "", self._time())
        async with self._client() as client:
            failures = await asyncio.gather(*(self._check_one_ciebot(client, url) for url in self._ciebot_urls))
        problems = [failure for failure in failures if failure]
        if problems:
            return GateStatus(False, "; ".join(problems), self._time())
        return GateStatus(True, "", self._time())

    async def refresh(self) -> None:
        bus, catalog, ciebot = await asyncio.gather(self._check_bus(), self._check_catalog(), self._check_ciebot())
        async with self._lock:
            self._gates = {GATE_BUS: bus, GATE_CATALOG: catalog, GATE_CIEBOT: ciebot}
        for name, status in ((GATE_BUS, bus), (GATE_CATALOG, catalog), (GATE_CIEBOT, ciebot)):
            if not status.healthy:
                logger.warning("health gate %s failing: %s", name, status.description)

    async def status(self) -> tuple[int, str]:
        """Return ``(code, description)``; code 0 only when every gate passed within the freshness window."""
        async with self._lock:
            gates = dict(self._gates)
        now = self._time()
        for name, label in _GATE_LABELS:
            gate = gates.get(name)
            if gate is None:
                return 1, f"{label} health check failed: not yet checked"
            if now - gate.checked_at > self._freshness_s:
                return 1, f"{label} health check failed: no result within the last {int(self._freshness_s)}s"
            if not gate.healthy:
                return 1, f"{label} health check failed: {gate.description}"
        return 0, HEALTHY_DESCRIPTION

    async def run(self, interval_s: float) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("hook health refresh failed")
            await asyncio.sleep(interval_s)
