from __future__ import annotations

from dataclasses import replace
from typing import Any

from salespipe.context import get_correlation_id
from salespipe.core.events import DomainEvent, event_bus

published_events: list[dict[str, Any]] = []


def publish(event: DomainEvent) -> DomainEvent:
    if event.correlation_id is None:
        event = replace(event, correlation_id=get_correlation_id())

    published_events.append(event.as_dict())
    event_bus.publish(event)
    return event
