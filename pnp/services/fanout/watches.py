from __future__ import annotations

from datetime import datetime, timezone

from pnp.domain.models import Subscription, Watch
from pnp.services.crn import crn_matches
from pnp.services.fanout.collation import CollatedNotification


# Notification type -> watch kind.
_WATCH_KINDS: dict[str, str] = {
    "incident": "incident",
    "maintenance": "maintenance",
    "security": "notification",
    "announcement": "notification",
}


def watch_kind_for(notification_type: str) -> str:
    return _WATCH_KINDS.get(notification_type, "notification")


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def subscription_is_active(subscription: Subscription, *, now: datetime) -> bool:
    if subscription.disabled:
        return False
    if subscription.expiration is not None and as_utc(subscription.expiration) <= now:
        return False
    return True


def watch_matches(watch: Watch, notification: CollatedNotification) -> bool:
    if watch.kind != watch_kind_for(notification.type):
        return False
    masks = [mask for mask in watch.crn_masks or [] if mask is not None]
    # A watch without masks selects every resource.
    if masks and not any(crn_matches(mask, crn) for mask in masks for crn in notification.crns):
        return False
    if watch.record_ids:
        wanted = set(watch.record_ids)
        if notification.record_id not in wanted and wanted.isdisjoint(notification.member_record_ids):
            return False
    return True
