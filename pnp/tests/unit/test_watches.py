from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pnp.domain.models import Subscription, Watch
from pnp.services.fanout.collation import CollatedNotification
from pnp.services.fanout.watches import subscription_is_active, watch_kind_for, watch_matches


COS_US_SOUTH = "crn:v1:bluemix:public:cloud-object-storage:us-south::::"


def _notification(**overrides) -> CollatedNotification:
    fields = {
        "record_id": "r1",
        "source": "doctor",
        "source_id": "M1",
        "type": "maintenance",
        "crns": [COS_US_SOUTH],
        "pnp_creation_time": "2024-03-01T09:00:00Z",
        "pnp_update_time": "2024-03-01T10:00:00Z",
        "member_record_ids": ["r1", "r2"],
    }
    fields.update(overrides)
    return CollatedNotification(**fields)


def _watch(**overrides) -> Watch:
    fields = {
        "record_id": "w1",
        "subscription_url": "http://subs.test/s1",
        "kind": "maintenance",
        "crn_masks": [],
        "record_ids": [],
        "tags": [],
    }
    fields.update(overrides)
    return Watch(**fields)


def test_watch_kinds() -> None:
    assert watch_kind_for("incident") == "incident"
    assert watch_kind_for("maintenance") == "maintenance"
    assert watch_kind_for("security") == "notification"
    assert watch_kind_for("announcement") == "notification"


def test_watch_without_masks_matches_every_resource() -> None:
    assert watch_matches(_watch(), _notification())
    assert not watch_matches(_watch(kind="incident"), _notification())


def test_watch_masks_select_resources() -> None:
    assert watch_matches(_watch(crn_masks=["crn:v1:bluemix:public:cloud-object-storage:::::"]), _notification())
    assert not watch_matches(_watch(crn_masks=["crn:v1:bluemix:public:kms:::::"]), _notification())


def test_watch_record_ids_match_any_collapsed_member() -> None:
    assert watch_matches(_watch(record_ids=["r2"]), _notification())
    assert not watch_matches(_watch(record_ids=["r9"]), _notification())


def test_subscription_activity() -> None:
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    active = Subscription(record_id="s1", name="s", href="h", target_address="t", disabled=False, expiration=None)
    assert subscription_is_active(active, now=now)
    # Naive expirations are read as UTC.
    expired = Subscription(
        record_id="s2", name="s", href="h2", target_address="t", disabled=False, expiration=datetime(2024, 3, 1, 11, 0)
    )
    assert not subscription_is_active(expired, now=now)
    future = Subscription(
        record_id="s3", name="s", href="h3", target_address="t", disabled=False, expiration=now + timedelta(days=1)
    )
    assert subscription_is_active(future, now=now)
    disabled = Subscription(record_id="s4", name="s", href="h4", target_address="t", disabled=True, expiration=None)
    assert not subscription_is_active(disabled, now=now)
