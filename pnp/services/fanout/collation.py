from __future__ import annotations

import re
from collections import OrderedDict

from pydantic import BaseModel, ConfigDict, Field

from pnp.domain.messages import SOURCE_SERVICENOW, DisplayName
from pnp.domain.models import Notification
from pnp.services.timestamps import compare_timestamps


RETRACT_TAG_PREFIX = "retract"


class CollatedNotification(BaseModel):
    """Outbound notification: one upstream record with every CRN it affects."""

    model_config = ConfigDict(extra="ignore")

    record_id: str
    source: str
    source_id: str
    type: str
    category: str | None = None
    incident_id: str | None = None
    crns: list[str]
    tags: list[str] = Field(default_factory=list)
    pnp_creation_time: str
    pnp_update_time: str
    source_creation_time: str | None = None
    source_update_time: str | None = None
    event_time_start: str | None = None
    event_time_end: str | None = None
    short_description: list[DisplayName] = Field(default_factory=list)
    long_description: list[DisplayName] = Field(default_factory=list)
    resource_display_names: list[DisplayName] = Field(default_factory=list)
    pnp_removed: bool = False
    # Record ids of every collapsed row; used for watch filters, never sent.
    member_record_ids: list[str] = Field(default_factory=list, exclude=True)


def _latest(rows: list[Notification]) -> Notification:
    # Latest source_update_time wins; pnp_update_time then record_id break ties.
    best = rows[0]
    for row in rows[1:]:
        ordering = compare_timestamps(row.source_update_time, best.source_update_time)
        if ordering == 0:
            ordering = compare_timestamps(row.pnp_update_time, best.pnp_update_time)
        if ordering > 0 or (ordering == 0 and row.record_id < best.record_id):
            best = row
    return best


def _collapse(rows: list[Notification]) -> CollatedNotification:
    """Collapse rows of one upstream record onto the smallest record id with the union of CRNs."""
    # Tombstoned CRNs drop out unless the whole record is removed.
    active = [row for row in rows if not row.pnp_removed]
    members = sorted(active or rows, key=lambda row: row.record_id)
    primary = members[0]
    crns: list[str] = []
    for row in members:
        if row.crn_full not in crns:
            crns.append(row.crn_full)
    pnp_update_time = primary.pnp_update_time
    for row in members[1:]:
        if compare_timestamps(row.pnp_update_time, pnp_update_time) > 0:
            pnp_update_time = row.pnp_update_time
    return CollatedNotification(
        record_id=primary.record_id,
        source=primary.source,
        source_id=primary.source_id,
        type=primary.type,
        category=primary.category,
        incident_id=primary.incident_id,
        crns=crns,
        tags=primary.tag_list(),
        pnp_creation_time=primary.pnp_creation_time,
        pnp_update_time=pnp_update_time,
        source_creation_time=primary.source_creation_time,
        source_update_time=primary.source_update_time,
        event_time_start=primary.event_time_start,
        event_time_end=primary.event_time_end,
        short_description=primary.short_description or [],
        long_description=primary.long_description or [],
        resource_display_names=primary.resource_display_names or [],
        pnp_removed=not active,
        member_record_ids=[row.record_id for row in members],
    )


def collate(rows: list[Notification]) -> list[CollatedNotification]:
    """Group persisted rows into outbound notifications.

    ServiceNow maintenance rows stay one per row. Incident rows are grouped by
    incident id and only the most recently updated BSPN survives. Everything
    else is grouped by (source, source_id).
    """
    singles: list[CollatedNotification] = []
    incidents: OrderedDict[str, list[Notification]] = OrderedDict()
    records: OrderedDict[tuple[str, str], list[Notification]] = OrderedDict()
    for row in sorted(rows, key=lambda item: item.record_id):
        if row.source == SOURCE_SERVICENOW and row.type == "maintenance":
            singles.append(_collapse([row]))
        elif row.type == "incident":
            incidents.setdefault(row.incident_id or f"{row.source}:{row.source_id}", []).append(row)
        else:
            records.setdefault((row.source, row.source_id), []).append(row)
    collated = list(singles)
    for group in incidents.values():
        latest = _latest(group)
        collated.append(
            _collapse([row for row in group if (row.source, row.source_id) == (latest.source, latest.source_id)])
        )
    for group in records.values():
        collated.append(_collapse(group))
    return collated


def is_retracted(tags: list[str]) -> bool:
    return any(tag.startswith(RETRACT_TAG_PREFIX) for tag in tags)


def match_tags(stored: list[str], requested: list[str]) -> list[str] | None:
    """Return the requested tags each followed by the stored tags they matched, or None on a miss.

    A requested tag matches a stored tag exactly or as ``<tag>-<digits>``.
    """
    result: list[str] = []
    for tag in requested:
        pattern = re.compile(rf"{re.escape(tag)}(-\d+)?")
        matches = [item for item in stored if pattern.fullmatch(item)]
        if not matches:
            return None
        for item in [tag, *matches]:
            if item not in result:
                result.append(item)
    return result


def apply_tag_policy(notification: CollatedNotification, requested: list[str] | None) -> CollatedNotification | None:
    # Without requested tags, retracted notifications are hidden.
    requested = [tag.strip() for tag in requested or [] if tag.strip()]
    if not requested:
        return None if is_retracted(notification.tags) else notification
    matched = match_tags(notification.tags, requested)
    if matched is None:
        return None
    return notification.model_copy(update={"tags": matched})
