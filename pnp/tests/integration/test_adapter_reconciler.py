from __future__ import annotations

import pytest

from pnp.core.errors import BusTransportError, PersistentUpstreamError
from pnp.domain.messages import NotificationBatch, NotificationRecord
from pnp.domain.models import Notification
from pnp.services.adapter.reconciler import compute_differences, run_adapter_tick
from pnp.services.nq2ds.apply import apply_batch
from pnp.tests.utils.fakes import RecordingPublisher


COS_US_SOUTH = "crn:v1:bluemix:public:cloud-object-storage:us-south::::"
COS_EU_DE = "crn:v1:bluemix:public:cloud-object-storage:eu-de::::"


class _StaticSource:
    def __init__(self, records: list[NotificationRecord] | None = None, *, error: Exception | None = None) -> None:
        self.source = "doctor"
        self._records = records or []
        self._error = error

    async def fetch(self) -> list[NotificationRecord]:
        if self._error is not None:
            raise self._error
        return list(self._records)


def _record(source_id: str, crn: str = COS_US_SOUTH, *, updated: str = "2024-03-01T10:00:00Z", **fields) -> NotificationRecord:
    fields.setdefault("type", "maintenance")
    return NotificationRecord(
        source="doctor",
        source_id=source_id,
        crn_full=crn,
        source_creation_time="2024-03-01T09:00:00Z",
        source_update_time=updated,
        **fields,
    )


async def _store(session_factory, *records: NotificationRecord) -> None:
    async with session_factory() as session:
        async with session.begin():
            await apply_batch(session, NotificationBatch(msgtype="bulkload", notifications=list(records)))


def _published(publisher: RecordingPublisher) -> list[tuple[str, NotificationBatch]]:
    return [(topic, NotificationBatch.model_validate_json(body)) for topic, body, _headers in publisher.messages]


@pytest.mark.asyncio
async def test_first_tick_against_empty_store_is_a_bulkload(session_factory) -> None:
    publisher = RecordingPublisher()
    source = _StaticSource(
        [
            _record("M1"),
            _record("M1", COS_EU_DE),
            _record("A1", type="announcement"),
        ]
    )
    result = await run_adapter_tick(source, publisher=publisher, session_factory=session_factory)

    assert result.msgtype == "bulkload"
    assert result.published == 2
    published = _published(publisher)
    assert [topic for topic, _batch in published] == ["maintenance", "announcement"]
    # Rows of one upstream record travel together.
    assert [len(batch.notifications) for _topic, batch in published] == [2, 1]
    assert {batch.msgtype for _topic, batch in published} == {"bulkload"}


@pytest.mark.asyncio
async def test_later_ticks_publish_only_differences(session_factory) -> None:
    await _store(session_factory, _record("M1"))
    await _store(session_factory, _record("M2"))
    await _store(session_factory, _record("M3"))
    publisher = RecordingPublisher()
    source = _StaticSource(
        [
            _record("M1"),
            _record("M2", updated="2024-03-01T11:00:00Z"),
            _record("M4"),
        ]
    )
    result = await run_adapter_tick(source, publisher=publisher, session_factory=session_factory)

    assert result.msgtype == "update"
    batches = {batch.notifications[0].source_id: batch for _topic, batch in _published(publisher)}
    assert set(batches) == {"M2", "M3", "M4"}
    assert batches["M3"].notifications[0].pnp_removed
    assert not batches["M2"].notifications[0].pnp_removed
    assert {batch.msgtype for batch in batches.values()} == {"update"}


@pytest.mark.asyncio
async def test_removed_rows_are_not_tombstoned_twice(session_factory) -> None:
    await _store(session_factory, _record("M1", pnp_removed=True))
    await _store(session_factory, _record("M2"))
    publisher = RecordingPublisher()
    await run_adapter_tick(_StaticSource([_record("M2")]), publisher=publisher, session_factory=session_factory)
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_failed_fetch_publishes_nothing(session_factory) -> None:
    await _store(session_factory, _record("M1"))
    publisher = RecordingPublisher()
    source = _StaticSource(error=PersistentUpstreamError("feed returned 502"))
    result = await run_adapter_tick(source, publisher=publisher, session_factory=session_factory)
    assert result.aborted
    # An unreachable feed must not read as "everything was deleted".
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_publish_failures_are_counted_and_retried_next_tick(session_factory) -> None:
    publisher = RecordingPublisher(error=BusTransportError("broker unreachable"))
    result = await run_adapter_tick(_StaticSource([_record("M1")]), publisher=publisher, session_factory=session_factory)
    assert result.published == 0
    assert result.failed == 1


def test_compute_differences_detects_content_changes() -> None:
    stored = Notification(
        record_id="r1",
        source="doctor",
        source_id="M1",
        crn_full=COS_US_SOUTH,
        type="maintenance",
        category=None,
        incident_id=None,
        short_description=[{"name": "Old title", "language": "en"}],
        long_description=[],
        resource_display_names=[],
        tags="",
        event_time_start=None,
        event_time_end=None,
        source_creation_time="2024-03-01T09:00:00Z",
        source_update_time="2024-03-01T10:00:00Z",
        pnp_creation_time="2024-03-01T09:00:00Z",
        pnp_update_time="2024-03-01T10:00:00Z",
        pnp_removed=False,
        content_hash="x",
    )
    unchanged = compute_differences([_record("M1", short_description=[{"name": "Old title"}])], [stored])
    assert unchanged.changed() == []
    retitled = compute_differences([_record("M1", short_description=[{"name": "New title"}])], [stored])
    assert [record.source_id for record in retitled.updates] == ["M1"]
    deleted = compute_differences([], [stored], now="2024-03-02T00:00:00Z")
    assert deleted.deletes[0].pnp_removed
    assert deleted.deletes[0].source_update_time == "2024-03-02T00:00:00Z"
