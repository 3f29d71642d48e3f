from __future__ import annotations

import httpx
import pytest

from pnp.core.config import get_settings
from pnp.core.errors import FatalConfigError, PersistentUpstreamError
from pnp.services.adapter.sources import HttpNotificationSource, sources_from_settings


COS_US_SOUTH = "crn:v1:bluemix:public:cloud-object-storage:us-south::::"


@pytest.mark.asyncio
async def test_fetch_skips_bad_elements_and_keeps_the_rest() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer feed-token"
        return httpx.Response(
            200,
            json={
                "notifications": [
                    {
                        "source_id": "M1",
                        "type": "maintenance",
                        "crn": [COS_US_SOUTH],
                        "source_update_time": "2024-01-01T00:00:00Z",
                    },
                    {"source_id": "M2", "type": "unknown", "crn": [COS_US_SOUTH]},
                    "not an object",
                ]
            },
        )

    source = HttpNotificationSource(
        source="doctor", url="http://feed.test/", token="feed-token", transport=httpx.MockTransport(_handler)
    )
    records = await source.fetch()
    assert [(record.source, record.source_id) for record in records] == [("doctor", "M1")]


@pytest.mark.asyncio
async def test_fetch_failure_is_reported_as_upstream_error() -> None:
    source = HttpNotificationSource(
        source="doctor",
        url="http://feed.test/",
        transport=httpx.MockTransport(lambda request: httpx.Response(502)),
    )
    with pytest.raises(PersistentUpstreamError):
        await source.fetch()


def test_sources_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("ADAPTER_SOURCE_URLS", "doctor=http://doctor.test/feed, ghe=http://ghe.test/feed")
    get_settings.cache_clear()
    assert [source.source for source in sources_from_settings()] == ["doctor", "ghe"]

    monkeypatch.setenv("ADAPTER_SOURCE_URLS", "http://missing-name.test")
    get_settings.cache_clear()
    with pytest.raises(FatalConfigError):
        sources_from_settings()
