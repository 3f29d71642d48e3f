from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("source", "source_id", "crn_full", name="uq_notifications_source_crn"),
        Index("ix_notifications_source_source_id", "source", "source_id"),
    )

    # sha256 of source, source id and CRN (plus incident id for ServiceNow maintenance).
    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source: Mapped[str] = mapped_column(String(64))
    source_id: Mapped[str] = mapped_column(String(255))
    crn_full: Mapped[str] = mapped_column(String(1024))
    # One of security, announcement, incident, maintenance.
    type: Mapped[str] = mapped_column(String(32), index=True)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # BSPNs of the same incident share this id.
    incident_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    short_description: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    long_description: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    resource_display_names: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    # Ordered tags, comma separated.
    tags: Mapped[str] = mapped_column(Text, default="")
    # Timestamps are canonical UTC RFC-3339 strings; compare them with compare_timestamps.
    event_time_start: Mapped[str | None] = mapped_column(String(32), nullable=True)
    event_time_end: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_creation_time: Mapped[str] = mapped_column(String(32))
    source_update_time: Mapped[str] = mapped_column(String(32))
    pnp_creation_time: Mapped[str] = mapped_column(String(32))
    pnp_update_time: Mapped[str] = mapped_column(String(32))
    # Tombstone; rows are never physically deleted by the pipeline.
    pnp_removed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Hash of content fields used to detect refreshes at equal source update time.
    content_hash: Mapped[str] = mapped_column(String(64))

    def tag_list(self) -> list[str]:
        return [tag for tag in (self.tags or "").split(",") if tag]


class Subscription(Base):
    __tablename__ = "subscriptions"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    # Canonical URL of the subscription; watches refer to it by this value only.
    href: Mapped[str] = mapped_column(String(1024), unique=True, index=True)
    target_address: Mapped[str] = mapped_column(String(2048))
    # Sent verbatim in the Authorization header on delivery.
    target_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expiration: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Consecutive permanent failures; reaching the threshold disables the subscription.
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Watch(Base):
    __tablename__ = "watches"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Weak reference to Subscription.href, resolved at delivery time.
    subscription_url: Mapped[str] = mapped_column(String(1024), index=True)
    # One of case, incident, maintenance, notification.
    kind: Mapped[str] = mapped_column(String(32), index=True)
    path: Mapped[str] = mapped_column(String(1024), default="")
    crn_masks: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # Optional restriction to specific notification record ids.
    record_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # Tags requested by the subscriber; requesting retract tags opts into retractions.
    tags: Mapped[list[str]] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SubscriptionDelivery(Base):
    __tablename__ = "subscription_deliveries"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # Guards against duplicate emissions of the same notification version.
    dedupe_key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    subscription_record_id: Mapped[str] = mapped_column(String(64), index=True)
    notification_record_id: Mapped[str] = mapped_column(String(64), index=True)
    source: Mapped[str] = mapped_column(String(64))
    source_id: Mapped[str] = mapped_column(String(255))
    # pending, in_flight, delivered, retry_scheduled, failed.
    status: Mapped[str] = mapped_column(String(32), index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DeliveryAttempt(Base):
    __tablename__ = "delivery_attempts"

    # Immutable attempt history for delivery forensics.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    delivery_id: Mapped[str] = mapped_column(String(32), index=True)
    attempt_no: Mapped[int] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # running, success, failure.
    outcome: Mapped[str] = mapped_column(String(32))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
