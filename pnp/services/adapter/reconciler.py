from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from pnp.core.errors import BusTransportError, EnvelopeError, PersistentUpstreamError
from pnp.domain.messages import MsgType, NotificationBatch, NotificationRecord
from pnp.domain.models import Notification
from pnp.persistence.repos.notifications import list_by_source
from pnp.services.adapter.sources import NotificationSource
from pnp.services.bus.connector import SealedPublisher
from pnp.services.bus.topology import (
    FORMAT_TYPED,
    HEADER_FORMAT,
    HEADER_RECEIVED_AT,
    HEADER_SOURCE,
    topic_for_type,
)
from pnp.services.telemetry import increment_counter
from pnp.services.timestamps import compare_timestamps, utc_now_timestamp


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Any]


@dataclass
class Differences:
    creates: list[NotificationRecord] = field(default_factory=list)
    updates: list[NotificationRecord] = field(default_factory=list)
    deletes: list[NotificationRecord] = field(default_factory=list)

    def changed(self) -> list[NotificationRecord]:
        return [*self.creates, *self.updates, *self.deletes]


@dataclass
class TickResult:
    source: str
    msgtype: MsgType | None = None
    published: int = 0
    failed: int = 0
    aborted: bool = False


def _first_difference(incoming: NotificationRecord, stored: NotificationRecord) -> str | None:
    incoming_fields = incoming.content_fields()
    stored_fields = stored.content_fields()
    for name, value in incoming_fields.items():
        if stored_fields.get(name) != value:
            return name
    if compare_timestamps(incoming.source_update_time, stored.source_update_time) != 0:
        return "source_update_time"
    return None


def compute_differences(
    snapshot: list[NotificationRecord],
    stored_rows: list[Notification],
    *,
    now: str | None = None,
) -> Differences:
    """Diff an upstream snapshot against stored rows keyed by (source, source_id, crn_full)."""
    now = now or utc_now_timestamp()
    stored = {(row.source, row.source_id, row.crn_full): row for row in stored_rows}
    differences = Differences()
    seen: set[tuple[str, str, str]] = set()
    for record in snapshot:
        key = record.key()
        seen.add(key)
        row = stored.get(key)
        if row is None:
            differences.creates.append(record)
            continue
        existing = NotificationRecord.from_row(row)
        changed_field = _first_difference(record, existing)
        if changed_field is None:
            continue
        logger.debug(
            "%s/%s %s differs at %s: stored=%r incoming=%r",
            record.source,
            record.source_id,
            record.crn_full,
            changed_field,
            existing.content_fields().get(changed_field, existing.source_update_time),
            record.content_fields().get(changed_field, record.source_update_time),
        )
        differences.updates.append(record)
    for key, row in stored.items():
        if key in seen or row.pnp_removed:
            continue
        # Upstream no longer lists the row: tombstone it with a fresh update time.
        tombstone = NotificationRecord.from_row(row).model_copy(
            update={"pnp_removed": True, "source_update_time": now}
        )
        differences.deletes.append(tombstone)
    return differences


def group_by_source_id(records: list[NotificationRecord]) -> list[list[NotificationRecord]]:
    # One bus message per upstream record so NQ2DS applies its CRN rows together.
    groups: OrderedDict[tuple[str, str], list[NotificationRecord]] = OrderedDict()
    for record in records:
        groups.setdefault((record.source, record.source_id), []).append(record)
    return list(groups.values())


def typed_headers(source: str) -> dict[str, str]:
    return {
        HEADER_FORMAT: FORMAT_TYPED,
        HEADER_SOURCE: source,
        HEADER_RECEIVED_AT: utc_now_timestamp(),
    }


async def publish_batch(publisher: SealedPublisher, msgtype: MsgType, records: list[NotificationRecord]) -> str:
    batch = NotificationBatch(msgtype=msgtype, notifications=records)
    topic = topic_for_type(records[0].type)
    await publisher.publish_sealed(topic, batch.model_dump_json().encode("utf-8"), headers=typed_headers(records[0].source))
    return topic


async def run_adapter_tick(
    source: NotificationSource,
    *,
    publisher: SealedPublisher,
    session_factory: SessionFactory,
) -> TickResult:
    result = TickResult(source=source.source)
    try:
        snapshot = await source.fetch()
    except PersistentUpstreamError as exc:
        logger.error("adapter %s fetch failed; nothing published this tick: %s", source.source, exc)
        increment_counter("adapter_fetch_failures_total")
        result.aborted = True
        return result
    try:
        async with session_factory() as session:
            stored_rows = await list_by_source(session, source.source)
    except SQLAlchemyError:
        logger.exception("adapter %s could not load stored rows; retrying next tick", source.source)
        result.aborted = True
        return result

    if not stored_rows:
        result.msgtype = "bulkload"
        changed = snapshot
    else:
        result.msgtype = "update"
        differences = compute_differences(snapshot, stored_rows)
        logger.info(
            "adapter %s: %d create, %d update, %d delete",
            source.source,
            len(differences.creates),
            len(differences.updates),
            len(differences.deletes),
        )
        changed = differences.changed()

    for group in group_by_source_id(changed):
        try:
            await publish_batch(publisher, result.msgtype, group)
        except (BusTransportError, EnvelopeError) as exc:
            # The next tick recomputes the same difference and publishes again.
            logger.error("adapter %s publish of %s failed: %s", source.source, group[0].source_id, exc)
            increment_counter("adapter_publish_failures_total")
            result.failed += 1
            continue
        result.published += 1
    increment_counter(f"adapter_{result.msgtype}_messages_total", result.published)
    return result


class AdapterScheduler:
    """Runs each source on its own loop; ticks of one source never overlap."""

    def __init__(
        self,
        sources: list[NotificationSource],
        *,
        publisher: SealedPublisher,
        session_factory: SessionFactory,
        interval_s: float,
    ) -> None:
        self._sources = sources
        self._publisher = publisher
        self._session_factory = session_factory
        self._interval_s = interval_s
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def _run_source(self, source: NotificationSource) -> None:
        # First tick runs immediately at startup.
        while not self._stopping.is_set():
            try:
                await run_adapter_tick(source, publisher=self._publisher, session_factory=self._session_factory)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("adapter %s tick failed", source.source)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval_s)
            except asyncio.TimeoutError:
                continue

    async def run(self) -> None:
        await asyncio.gather(*(self._run_source(source) for source in self._sources))
