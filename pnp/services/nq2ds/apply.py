from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from pnp.core.errors import InputMalformedError, StateConflictError
from pnp.domain.messages import SOURCE_SERVICENOW, NotificationBatch, NotificationRecord
from pnp.domain.models import Notification
from pnp.persistence.repos.notifications import get_notification_for_update
from pnp.services.crn import normalize_crn
from pnp.services.telemetry import increment_counter
from pnp.services.timestamps import compare_timestamps, normalize_optional_timestamp, utc_now_timestamp


logger = logging.getLogger(__name__)

Action = Literal["created", "updated", "refreshed", "removed", "unchanged", "outdated", "bypassed"]
# Actions that changed the store and therefore emit a downstream event.
CHANGED_ACTIONS: frozenset[str] = frozenset({"created", "updated", "refreshed", "removed"})
# ServiceNow rows of these types are still persisted in bypass mode.
BYPASS_EXEMPT_TYPES: frozenset[str] = frozenset({"announcement", "security"})


@dataclass(frozen=True)
class RowOutcome:
    record_id: str
    action: Action
    row: Notification | None = None

    @property
    def changed(self) -> bool:
        return self.action in CHANGED_ACTIONS


def canonicalize_record(record: NotificationRecord) -> NotificationRecord:
    """Lowercase and validate the CRN, normalize every timestamp and default the creation time."""
    source_update_time = normalize_optional_timestamp(record.source_update_time)
    if source_update_time is None:
        raise InputMalformedError(f"{record.source}/{record.source_id} is missing source_update_time")
    source_creation_time = normalize_optional_timestamp(record.source_creation_time) or source_update_time
    return record.model_copy(
        update={
            "crn_full": normalize_crn(record.crn_full),
            "type": record.type.strip().lower(),
            "source_update_time": source_update_time,
            "source_creation_time": source_creation_time,
            "event_time_start": normalize_optional_timestamp(record.event_time_start),
            "event_time_end": normalize_optional_timestamp(record.event_time_end),
        }
    )


def validate_batch(batch: NotificationBatch) -> list[NotificationRecord]:
    if not batch.notifications:
        raise InputMalformedError("message carries no notifications")
    records = [canonicalize_record(record) for record in batch.notifications]
    identities = {(record.source, record.source_id) for record in records}
    if len(identities) != 1:
        raise InputMalformedError("all rows of one message must share source and source_id")
    # Later duplicates of the same CRN win.
    unique: dict[tuple[str, str, str], NotificationRecord] = {}
    for record in records:
        unique[record.key()] = record
    return list(unique.values())


def is_bypassed(record: NotificationRecord, *, bypass_local_storage: bool) -> bool:
    return bypass_local_storage and record.source == SOURCE_SERVICENOW and record.type not in BYPASS_EXEMPT_TYPES


def check_not_outdated(record: NotificationRecord, existing: Notification) -> int:
    """Order the incoming row against the stored one; raises StateConflictError when it regresses."""
    ordering = compare_timestamps(record.source_update_time, existing.source_update_time)
    if ordering < 0:
        raise StateConflictError(
            f"incoming source_update_time {record.source_update_time} < stored {existing.source_update_time}"
        )
    return ordering


def _later(first: str, second: str | None) -> str:
    return first if compare_timestamps(first, second) >= 0 else second or first


def _assign_content(row: Notification, record: NotificationRecord, content_hash: str) -> None:
    row.type = record.type
    row.category = record.category
    row.incident_id = record.incident_id
    row.short_description = [item.model_dump() for item in record.short_description]
    row.long_description = [item.model_dump() for item in record.long_description]
    row.resource_display_names = [item.model_dump() for item in record.resource_display_names]
    row.tags = record.tags
    row.event_time_start = record.event_time_start
    row.event_time_end = record.event_time_end
    row.source_creation_time = record.source_creation_time or record.source_update_time or ""
    row.source_update_time = record.source_update_time or ""
    row.pnp_removed = record.pnp_removed
    row.content_hash = content_hash


async def apply_record(
    session: AsyncSession,
    record: NotificationRecord,
    *,
    bulkload: bool,
    now: str,
) -> RowOutcome:
    record_id = record.record_id()
    content_hash = record.content_hash()
    existing = await get_notification_for_update(session, record_id)
    if existing is None:
        # Bulk loads keep the upstream creation time; live updates record arrival.
        creation = record.source_creation_time if bulkload and record.source_creation_time else now
        row = Notification(
            record_id=record_id,
            source=record.source,
            source_id=record.source_id,
            crn_full=record.crn_full,
            pnp_creation_time=creation,
            pnp_update_time=now,
        )
        _assign_content(row, record, content_hash)
        session.add(row)
        await session.flush()
        return RowOutcome(record_id, "removed" if record.pnp_removed else "created", row)

    try:
        ordering = check_not_outdated(record, existing)
    except StateConflictError as exc:
        increment_counter("nq2ds_outdated_total")
        logger.info("dropping outdated %s/%s %s: %s", record.source, record.source_id, record.crn_full, exc)
        return RowOutcome(record_id, "outdated", existing)
    if ordering == 0 and existing.content_hash == content_hash:
        return RowOutcome(record_id, "unchanged", existing)

    was_removed = bool(existing.pnp_removed)
    _assign_content(existing, record, content_hash)
    # Never move pnp_update_time backwards even when the local clock does.
    existing.pnp_update_time = _later(now, existing.pnp_update_time)
    await session.flush()
    if record.pnp_removed and not was_removed:
        return RowOutcome(record_id, "removed", existing)
    return RowOutcome(record_id, "refreshed" if ordering == 0 else "updated", existing)


async def apply_batch(
    session: AsyncSession,
    batch: NotificationBatch,
    *,
    now: str | None = None,
    bypass_local_storage: bool = False,
) -> list[RowOutcome]:
    """Apply every row of one message inside the caller's transaction."""
    now = now or utc_now_timestamp()
    bulkload = batch.msgtype == "bulkload"
    outcomes: list[RowOutcome] = []
    for record in validate_batch(batch):
        if is_bypassed(record, bypass_local_storage=bypass_local_storage):
            increment_counter("nq2ds_bypassed_total")
            outcomes.append(RowOutcome(record.record_id(), "bypassed"))
            continue
        outcomes.append(await apply_record(session, record, bulkload=bulkload, now=now))
    return outcomes
