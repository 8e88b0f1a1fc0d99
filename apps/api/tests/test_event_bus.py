from __future__ import annotations

import logging
from collections.abc import Generator

import pytest

from app import events
from app.context import correlation_scope
from app.core.events import InProcessEventBus, InternalEvent, event_bus


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def test_failing_subscriber_is_logged_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    bus = InProcessEventBus()
    received: list[InternalEvent] = []

    def broken(event: InternalEvent) -> None:
        raise RuntimeError("mailer offline")

    bus.subscribe("clients.account.deleted", broken)
    bus.subscribe("clients.account.deleted", received.append)

    with caplog.at_level(logging.ERROR, logger="app.events"):
        bus.publish("clients.account.deleted", {"user_id": "u-1"})

    assert [event.payload["user_id"] for event in received] == ["u-1"]
    assert any(record.getMessage() == "event.handler_failed" for record in caplog.records)


def test_unsubscribed_handler_no_longer_receives_events() -> None:
    bus = InProcessEventBus()
    received: list[str] = []

    def handler(event: InternalEvent) -> None:
        received.append(event.name)

    bus.subscribe("clients.submission.converted", handler)
    bus.subscribe("clients.submission.converted", handler)
    bus.publish("clients.submission.converted", {})
    bus.unsubscribe("clients.submission.converted", handler)
    bus.publish("clients.submission.converted", {})

    assert received == ["clients.submission.converted"]


def test_publish_fills_correlation_and_source() -> None:
    received: list[InternalEvent] = []
    event_bus.subscribe("clients.account.reactivated", received.append)
    try:
        with correlation_scope("corr-bus-1"):
            events.publish({"event_type": "clients.account.reactivated", "payload": {"user_id": "u-2"}})
    finally:
        event_bus.unsubscribe("clients.account.reactivated", received.append)

    envelope = events.published_events[-1]
    assert envelope["correlation_id"] == "corr-bus-1"
    assert envelope["meta"] == {"source": "studio-portal-api"}
    assert received and received[0].payload is envelope
