from __future__ import annotations

import pytest

from pnp.core.config import DEFAULT_NQ_QKEY
from pnp.core.errors import FatalConfigError
from pnp.services.bus.topology import QueueBinding, build_ssl_context, parse_queue_bindings, topic_for_type


def test_default_bindings_cover_each_inbound_topic() -> None:
    bindings = parse_queue_bindings(DEFAULT_NQ_QKEY)
    assert bindings[0] == QueueBinding(queue="incident.nq2ds", key="incident")
    assert [binding.key for binding in bindings] == ["incident", "maintenance", "change", "announcement"]


def test_blank_entries_are_ignored() -> None:
    assert parse_queue_bindings(" a:b , ,") == [QueueBinding(queue="a", key="b")]


@pytest.mark.parametrize("value", ["queue-without-key", ":key", "queue:"])
def test_malformed_bindings_are_fatal(value: str) -> None:
    with pytest.raises(FatalConfigError):
        parse_queue_bindings(value)


def test_topic_for_type() -> None:
    assert topic_for_type("incident") == "incident"
    assert topic_for_type("maintenance") == "maintenance"
    assert topic_for_type("security") == "announcement"
    assert topic_for_type("announcement") == "announcement"


def test_invalid_tls_certificate_is_fatal() -> None:
    with pytest.raises(FatalConfigError):
        build_ssl_context("not base64!")
