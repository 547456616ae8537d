from __future__ import annotations

from collections.abc import Generator

import pytest

from salespipe import events
from salespipe.context import correlation_scope
from salespipe.core.events import DomainEvent, DomainEventBus, event_bus


@pytest.fixture(autouse=True)
def clear_published() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def test_bus_dispatches_exact_and_aggregate_subscribers() -> None:
    bus = DomainEventBus()
    exact: list[str] = []
    aggregate: list[str] = []
    bus.subscribe("crm.activity.deleted", lambda event: exact.append(event.event_type))
    bus.subscribe("crm.activity.*", lambda event: aggregate.append(event.event_type))

    bus.publish(DomainEvent(event_type="crm.activity.deleted", actor_user_id="u1", payload={}))
    bus.publish(DomainEvent(event_type="crm.activity.restored", actor_user_id="u1", payload={}))
    bus.publish(DomainEvent(event_type="crm.opportunity.archived", actor_user_id="u1", payload={}))

    assert exact == ["crm.activity.deleted"]
    assert aggregate == ["crm.activity.deleted", "crm.activity.restored"]


def test_subscribing_twice_dispatches_once() -> None:
    bus = DomainEventBus()
    seen: list[str] = []

    def handler(event: DomainEvent) -> None:
        seen.append(event.event_id)

    bus.subscribe("crm.opportunity.*", handler)
    bus.subscribe("crm.opportunity.*", handler)
    bus.publish(DomainEvent(event_type="crm.opportunity.created", actor_user_id="u1", payload={}))

    assert len(seen) == 1

    bus.unsubscribe("crm.opportunity.*", handler)
    bus.publish(DomainEvent(event_type="crm.opportunity.created", actor_user_id="u1", payload={}))
    assert len(seen) == 1


def test_subject_ids_keep_identifier_fields_only() -> None:
    event = DomainEvent(
        event_type="crm.opportunity.stage_changed",
        actor_user_id="u1",
        payload={"opportunity_id": "o-1", "stage_id": "s-2", "loss_reason": "price", "win_reason": None},
    )

    assert event.aggregate == "crm.opportunity"
    assert event.subject_ids() == {"opportunity_id": "o-1", "stage_id": "s-2"}


def test_publish_stamps_ambient_correlation_id() -> None:
    received: list[DomainEvent] = []
    event_bus.subscribe("crm.activity.created", received.append)

    try:
        with correlation_scope("corr-bus-1"):
            published = events.publish(
                DomainEvent(event_type="crm.activity.created", actor_user_id="u1", payload={"activity_id": "a-1"})
            )
    finally:
        event_bus.unsubscribe("crm.activity.created", received.append)

    assert published.correlation_id == "corr-bus-1"
    assert received[-1] is published
    assert events.published_events[-1]["correlation_id"] == "corr-bus-1"
    assert events.published_events[-1]["payload"] == {"activity_id": "a-1"}
