from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

from pnp.core.errors import InputMalformedError


logger = logging.getLogger(__name__)

# Date, time, optional fraction and optional zone (Z, +hh, +hhmm or +hh:mm); "T" or " " separator.
_TIMESTAMP_RE = re.compile(
    r"^(?P<date>\d{4}-[01]\d-[0-3]\d)[T ](?P<time>[0-2]\d:[0-5]\d:[0-5]\d)"
    r"(?:\.(?P<fraction>\d+))?\s*(?P<zone>Z|z|[+-][0-2]\d(?::?[0-5]\d)?)?$"
)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now_timestamp() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse the timestamp shapes emitted by upstream sources into an aware UTC datetime.

    Returns None when the value is empty or not recognizable.
    """
    if not value:
        return None
    match = _TIMESTAMP_RE.match(value.strip())
    if match is None:
        return None
    try:
        parsed = datetime.strptime(f"{match['date']}T{match['time']}", "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    fraction = match["fraction"]
    if fraction:
        parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    zone = match["zone"]
    offset = timedelta(0)
    if zone and zone not in {"Z", "z"}:
        digits = zone[1:].replace(":", "")
        hours = int(digits[:2])
        minutes = int(digits[2:4]) if len(digits) >= 4 else 0
        offset = timedelta(hours=hours, minutes=minutes)
        if zone[0] == "-":
            offset = -offset
    # Timestamps without a zone are taken as UTC.
    return (parsed - offset).replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    # Canonical UTC RFC-3339; milliseconds only when present.
    value = value.astimezone(timezone.utc)
    base = value.strftime("%Y-%m-%dT%H:%M:%S")
    millis = value.microsecond // 1000
    if millis:
        return f"{base}.{millis:03d}Z"
    return f"{base}Z"


def normalize_timestamp(value: str) -> str:
    """Convert a source timestamp to canonical UTC RFC-3339, raising on unrecognized input."""
    parsed = parse_timestamp(value)
    if parsed is None:
        raise InputMalformedError(f"timestamp is in wrong format, timestamp=[{value}]")
    return format_timestamp(parsed)


def normalize_optional_timestamp(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    return normalize_timestamp(value)


def compare_timestamps(new: str | None, existing: str | None) -> int:
    """Return 1 when ``new`` is later, -1 when earlier, 0 when equal.

    A side that does not parse loses to one that does; two unparseable values compare equal.
    """
    new_dt = parse_timestamp(new)
    existing_dt = parse_timestamp(existing)
    if new_dt is None and existing_dt is None:
        logger.debug("two bad time formats: new=%r existing=%r", new, existing)
        return 0
    if existing_dt is None:
        return 1
    if new_dt is None:
        return -1
    # Compare at millisecond resolution to match stored precision.
    new_ms = (new_dt - _EPOCH) // timedelta(milliseconds=1)
    existing_ms = (existing_dt - _EPOCH) // timedelta(milliseconds=1)
    if new_ms > existing_ms:
        return 1
    if new_ms < existing_ms:
        return -1
    return 0


def epoch_ms_to_timestamp(value: int | str | None) -> str | None:
    # Some sources send epoch milliseconds instead of strings.
    if value in (None, "", 0, "0"):
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError) as exc:
        raise InputMalformedError(f"invalid epoch milliseconds: {value!r}") from exc
    return format_timestamp(datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc))
