from __future__ import annotations

import logging
from dataclasses import dataclass

from pnp.services.bus.connector import SealedPublisher
from pnp.services.bus.topology import (
    FORMAT_RAW,
    HEADER_FORMAT,
    HEADER_KIND,
    HEADER_RECEIVED_AT,
    HEADER_SOURCE,
    TOPIC_ANNOUNCEMENT,
    TOPIC_CASE,
    TOPIC_CHANGE,
    TOPIC_INCIDENT,
    TOPIC_MAINTENANCE,
)
from pnp.services.telemetry import increment_counter
from pnp.services.timestamps import utc_now_timestamp


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookRoute:
    path: str
    source: str
    # Payload shape understood by the adapter normalizers.
    kind: str
    topic: str
    requires_token: bool


HOOK_ROUTES: tuple[HookRoute, ...] = (
    HookRoute("/doctor/maintenances", "doctor", "maintenance", TOPIC_MAINTENANCE, False),
    HookRoute("/snow/cases", "servicenow", "case", TOPIC_CASE, True),
    HookRoute("/snow/incidents", "servicenow", "incident", TOPIC_INCIDENT, True),
    HookRoute("/snow/bspn", "servicenow", "bspn", TOPIC_INCIDENT, True),
    HookRoute("/snow/changes", "servicenow", "change", TOPIC_CHANGE, True),
    HookRoute("/ghe/announcements", "ghe", "announcement", TOPIC_ANNOUNCEMENT, False),
)


def raw_headers(route: HookRoute, *, received_at: str | None = None) -> dict[str, str]:
    return {
        HEADER_FORMAT: FORMAT_RAW,
        HEADER_SOURCE: route.source,
        HEADER_KIND: route.kind,
        HEADER_RECEIVED_AT: received_at or utc_now_timestamp(),
    }


async def publish_hook_payload(publisher: SealedPublisher, route: HookRoute, body: bytes) -> None:
    """Seal the untouched request body and publish it on the route's topic.

    EnvelopeError and BusTransportError propagate so the caller can answer 500.
    """
    await publisher.publish_sealed(route.topic, body, headers=raw_headers(route))
    increment_counter(f"hooks_published_{route.kind}_total")
    logger.debug("published %d byte %s payload to %s", len(body), route.kind, route.topic)
