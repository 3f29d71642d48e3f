from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from pnp.core.config import Settings, get_settings
from pnp.core.errors import FatalConfigError, InputMalformedError, PersistentUpstreamError
from pnp.domain.messages import NotificationRecord
from pnp.services.adapter.normalizers import normalize_generic
from pnp.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class NotificationSource(Protocol):
    # Stored rows with this source are compared against the snapshot.
    source: str

    async def fetch(self) -> list[NotificationRecord]: ...


class HttpNotificationSource:
    """Upstream feed returning a JSON list of notifications, one element per upstream record."""

    def __init__(
        self,
        *,
        source: str,
        url: str,
        token: str = "",
        timeout_s: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.source = source
        self._url = url
        self._token = token
        self._timeout_s = timeout_s
        self._transport = transport

    async def _get(self) -> Any:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.get(self._url, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            record_external_call(integration=f"source_{self.source}", latency_ms=(time.monotonic() - start) * 1000, success=False)
            raise PersistentUpstreamError(f"fetch from {self.source} failed: {exc}") from exc
        record_external_call(integration=f"source_{self.source}", latency_ms=(time.monotonic() - start) * 1000, success=True)
        return payload

    async def fetch(self) -> list[NotificationRecord]:
        payload = await self._get()
        items = payload.get("notifications") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise PersistentUpstreamError(f"{self.source} returned an unexpected payload")
        records: list[NotificationRecord] = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning("%s returned a non-object element; skipping", self.source)
                continue
            try:
                records.extend(normalize_generic(item, self.source))
            except InputMalformedError as exc:
                # One bad element must not hide the rest of the snapshot.
                logger.warning("%s element skipped: %s", self.source, exc)
        return records


def sources_from_settings(settings: Settings | None = None) -> list[HttpNotificationSource]:
    settings = settings or get_settings()
    sources: list[HttpNotificationSource] = []
    for raw in settings.adapter_source_urls.split(","):
        entry = raw.strip()
        if not entry:
            continue
        name, sep, url = entry.partition("=")
        if not sep or not name.strip() or not url.strip():
            raise FatalConfigError(f"invalid adapter source {entry!r}; expected name=url")
        sources.append(
            HttpNotificationSource(
                source=name.strip(),
                url=url.strip(),
                token=settings.adapter_source_token,
                timeout_s=settings.internal_http_timeout_s,
            )
        )
    return sources
