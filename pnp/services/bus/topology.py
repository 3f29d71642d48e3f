from __future__ import annotations

import base64
import binascii
import ssl
from dataclasses import dataclass

from pnp.core.errors import FatalConfigError


# Routing keys used across the pipeline; the exchange is direct, so key == topic.
TOPIC_INCIDENT = "incident"
TOPIC_MAINTENANCE = "maintenance"
TOPIC_CASE = "case"
TOPIC_CHANGE = "change"
TOPIC_ANNOUNCEMENT = "announcement"
TOPIC_NOTIFICATION = "notification"

# Message headers describing how the body should be interpreted.
HEADER_FORMAT = "x-pnp-format"
HEADER_SOURCE = "x-pnp-source"
HEADER_KIND = "x-pnp-kind"
HEADER_RECEIVED_AT = "x-pnp-received-at"
FORMAT_RAW = "raw"
FORMAT_TYPED = "typed"


@dataclass(frozen=True)
class QueueBinding:
    queue: str
    key: str


def parse_queue_bindings(value: str) -> list[QueueBinding]:
    """Parse ``queue:key,queue2:key2`` into bindings, rejecting malformed entries."""
    bindings: list[QueueBinding] = []
    for raw in value.split(","):
        entry = raw.strip()
        if not entry:
            continue
        queue, sep, key = entry.partition(":")
        if not sep or not queue.strip() or not key.strip():
            raise FatalConfigError(f"invalid queue binding {entry!r}; expected queue:key")
        bindings.append(QueueBinding(queue=queue.strip(), key=key.strip()))
    return bindings


def topic_for_type(notification_type: str) -> str:
    # Typed messages are routed by notification type; security shares the announcement stream.
    if notification_type == "incident":
        return TOPIC_INCIDENT
    if notification_type == "maintenance":
        return TOPIC_MAINTENANCE
    return TOPIC_ANNOUNCEMENT


def build_ssl_context(cert_b64: str) -> ssl.SSLContext:
    """Build a TLS 1.2+ client context trusting the base64 encoded PEM certificate."""
    try:
        pem = base64.b64decode(cert_b64, validate=True).decode("ascii")
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        raise FatalConfigError("RABBITMQ_TLS_CERT is not valid base64 PEM") from exc
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_verify_locations(cadata=pem)
    except ssl.SSLError as exc:
        raise FatalConfigError(f"RABBITMQ_TLS_CERT could not be loaded: {exc}") from exc
    return context
