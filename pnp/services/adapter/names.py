from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from pnp.core.config import Settings, get_settings
from pnp.domain.messages import DisplayName, NotificationRecord
from pnp.services.crn import normalize_service_name, parse_crn
from pnp.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

# Returns the OSS catalog display name for a service, or None when unknown.
OssNameLookup = Callable[[str], Awaitable[str | None]]


class DisplayNameResolver:
    """Resolve resource display names: catalog overview, OSS record, manual map, then the service name."""

    def __init__(
        self,
        *,
        catalog_overview_url: str = "",
        languages: list[str] | None = None,
        oss_lookup: OssNameLookup | None = None,
        manual_names_url: str = "",
        timeout_s: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._catalog_overview_url = catalog_overview_url.rstrip("/")
        self._languages = languages or ["en"]
        self._oss_lookup = oss_lookup
        self._manual_names_url = manual_names_url
        self._timeout_s = timeout_s
        self._transport = transport
        self._manual_names: dict[str, str] | None = None
        self._manual_lock = asyncio.Lock()
        self._cache: dict[str, list[DisplayName]] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, oss_lookup: OssNameLookup | None = None) -> DisplayNameResolver:
        settings = settings or get_settings()
        return cls(
            catalog_overview_url=settings.catalog_overview_url,
            languages=settings.languages(),
            oss_lookup=oss_lookup,
            manual_names_url=settings.manual_names_url,
            timeout_s=settings.internal_http_timeout_s,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def _from_catalog(self, service_name: str) -> list[DisplayName]:
        if not self._catalog_overview_url:
            return []
        start = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.get(f"{self._catalog_overview_url}/{service_name}")
            if response.status_code == 404:
                return []
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            record_external_call(integration="global_catalog", latency_ms=(time.monotonic() - start) * 1000, success=False)
            logger.warning("global catalog lookup for %s failed: %s", service_name, exc)
            return []
        record_external_call(integration="global_catalog", latency_ms=(time.monotonic() - start) * 1000, success=True)
        overview: dict[str, Any] = {}
        if isinstance(payload, dict) and isinstance(payload.get("overview_ui"), dict):
            overview = payload["overview_ui"]
        english = (overview.get("en") or {}).get("display_name") or ""
        names: list[DisplayName] = []
        for language in self._languages:
            # Languages without their own display name fall back to the English one.
            entry = overview.get(language) or {}
            name = entry.get("display_name") or english
            if name:
                names.append(DisplayName(name=name, language=language))
        return names

    async def _from_oss(self, service_name: str) -> list[DisplayName]:
        if self._oss_lookup is None:
            return []
        try:
            name = await self._oss_lookup(service_name)
        except Exception:  # noqa: BLE001 - fall through to the next source in the chain.
            logger.exception("OSS catalog lookup for %s failed", service_name)
            return []
        return [DisplayName(name=name, language="en")] if name else []

    async def _load_manual_names(self) -> dict[str, str]:
        async with self._manual_lock:
            if self._manual_names is not None:
                return self._manual_names
            names: dict[str, str] = {}
            if self._manual_names_url:
                try:
                    async with self._client() as client:
                        response = await client.get(self._manual_names_url)
                    response.raise_for_status()
                    payload = response.json()
                except (httpx.HTTPError, ValueError) as exc:
                    # Leave the map unloaded so a later lookup tries again.
                    logger.warning("manual name map could not be loaded: %s", exc)
                    return {}
                if isinstance(payload, dict):
                    names = {normalize_service_name(str(key)): str(value) for key, value in payload.items() if value}
            self._manual_names = names
            return names

    async def _from_manual(self, service_name: str) -> list[DisplayName]:
        names = await self._load_manual_names()
        name = names.get(service_name)
        return [DisplayName(name=name, language="en")] if name else []

    async def resolve_service(self, service_name: str) -> list[DisplayName]:
        service_name = normalize_service_name(service_name)
        cached = self._cache.get(service_name)
        if cached is not None:
            return list(cached)
        names = await self._from_catalog(service_name)
        if not names:
            names = await self._from_oss(service_name)
        if not names:
            names = await self._from_manual(service_name)
        if not names:
            names = [DisplayName(name=service_name, language="en")]
        self._cache[service_name] = names
        return list(names)

    async def resolve(self, crn_full: str) -> list[DisplayName]:
        return await self.resolve_service(parse_crn(crn_full).service_name)


async def enrich_display_names(records: list[NotificationRecord], resolver: DisplayNameResolver) -> list[NotificationRecord]:
    # Only rows that arrived without display names are filled in.
    enriched: list[NotificationRecord] = []
    for record in records:
        if record.resource_display_names:
            enriched.append(record)
            continue
        names = await resolver.resolve(record.crn_full)
        enriched.append(record.model_copy(update={"resource_display_names": names}))
    return enriched
