from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from pnp.domain.models import Notification
from pnp.services.crypto.utils import sha256_hex, stable_json


MsgType = Literal["bulkload", "update"]
NotificationType = Literal["security", "announcement", "incident", "maintenance"]

NOTIFICATION_TYPES: tuple[str, ...] = ("security", "announcement", "incident", "maintenance")
SOURCE_SERVICENOW = "servicenow"


class DisplayName(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    language: str = "en"


class NotificationRecord(BaseModel):
    """One notification row as it travels on the bus: a single CRN of an upstream record."""

    model_config = ConfigDict(extra="ignore")

    source: str
    source_id: str
    type: str
    category: str | None = None
    incident_id: str | None = None
    crn_full: str
    resource_display_names: list[DisplayName] = Field(default_factory=list)
    short_description: list[DisplayName] = Field(default_factory=list)
    long_description: list[DisplayName] = Field(default_factory=list)
    # Comma separated, ordered.
    tags: str = ""
    event_time_start: str | None = None
    event_time_end: str | None = None
    source_creation_time: str | None = None
    source_update_time: str | None = None
    pnp_removed: bool = False

    def key(self) -> tuple[str, str, str]:
        return (self.source, self.source_id, self.crn_full)

    def record_id(self) -> str:
        return compute_record_id(
            source=self.source,
            source_id=self.source_id,
            crn_full=self.crn_full,
            notification_type=self.type,
            incident_id=self.incident_id,
        )

    def content_fields(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "category": self.category or "",
            "incident_id": self.incident_id or "",
            "crn_full": self.crn_full,
            "resource_display_names": [item.model_dump() for item in self.resource_display_names],
            "short_description": [item.model_dump() for item in self.short_description],
            "long_description": [item.model_dump() for item in self.long_description],
            "tags": self.tags,
            "event_time_start": self.event_time_start or "",
            "event_time_end": self.event_time_end or "",
            "source_creation_time": self.source_creation_time or "",
            "pnp_removed": self.pnp_removed,
        }

    def content_hash(self) -> str:
        return sha256_hex(stable_json(self.content_fields()))

    @classmethod
    def from_row(cls, row: Notification) -> NotificationRecord:
        return cls(
            source=row.source,
            source_id=row.source_id,
            type=row.type,
            category=row.category,
            incident_id=row.incident_id,
            crn_full=row.crn_full,
            resource_display_names=row.resource_display_names or [],
            short_description=row.short_description or [],
            long_description=row.long_description or [],
            tags=row.tags or "",
            event_time_start=row.event_time_start,
            event_time_end=row.event_time_end,
            source_creation_time=row.source_creation_time,
            source_update_time=row.source_update_time,
            pnp_removed=bool(row.pnp_removed),
        )


class NotificationBatch(BaseModel):
    """Typed bus message: every row of one upstream record, applied in one transaction."""

    model_config = ConfigDict(extra="ignore")

    msgtype: MsgType = "update"
    notifications: list[NotificationRecord]


class FanoutEvent(BaseModel):
    """Downstream event published after NQ2DS commits a change."""

    model_config = ConfigDict(extra="ignore")

    msgtype: MsgType
    record_id: str
    source: str
    source_id: str
    type: str
    category: str | None = None
    incident_id: str | None = None
    crn_full: str
    tags: str = ""
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

    @classmethod
    def from_row(cls, row: Notification, *, msgtype: str) -> FanoutEvent:
        return cls(
            msgtype=msgtype,
            record_id=row.record_id,
            source=row.source,
            source_id=row.source_id,
            type=row.type,
            category=row.category,
            incident_id=row.incident_id,
            crn_full=row.crn_full,
            tags=row.tags or "",
            pnp_creation_time=row.pnp_creation_time,
            pnp_update_time=row.pnp_update_time,
            source_creation_time=row.source_creation_time,
            source_update_time=row.source_update_time,
            event_time_start=row.event_time_start,
            event_time_end=row.event_time_end,
            short_description=row.short_description or [],
            long_description=row.long_description or [],
            resource_display_names=row.resource_display_names or [],
            pnp_removed=bool(row.pnp_removed),
        )


def compute_record_id(
    *,
    source: str,
    source_id: str,
    crn_full: str,
    notification_type: str,
    incident_id: str | None,
) -> str:
    # ServiceNow maintenance shares source ids across changes, so the incident id disambiguates.
    key = f"{source}{source_id}{crn_full}"
    if source == SOURCE_SERVICENOW and notification_type == "maintenance":
        key += incident_id or ""
    return sha256_hex(key.encode("utf-8"))
