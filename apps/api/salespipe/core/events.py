from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DomainEvent:
    """One committed change to a pipeline, opportunity or activity."""

    event_type: str
    actor_user_id: str
    payload: dict[str, Any]
    correlation_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: str = field(default_factory=_now_iso)
    version: int = 1

    @property
    def aggregate(self) -> str:
        """``crm.opportunity.stage_changed`` -> ``crm.opportunity``."""
        return self.event_type.rsplit(".", 1)[0]

    def subject_ids(self) -> dict[str, str]:
        return {
            key: str(value)
            for key, value in self.payload.items()
            if key.endswith("_id") and value is not None
        }

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


EventHandler = Callable[[DomainEvent], None]


class DomainEventBus:
    """Synchronous in-process dispatch.

    Handlers subscribe to an exact event type or to every event of an
    aggregate with a ``crm.activity.*`` pattern. Handler errors propagate to
    the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers[pattern]
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        aggregate = event_type.rsplit(".", 1)[0]
        return [
            *self._subscribers.get(event_type, []),
            *self._subscribers.get(f"{aggregate}.*", []),
        ]

    def publish(self, event: DomainEvent) -> None:
        for handler in self.handlers_for(event.event_type):
            handler(event)


event_bus = DomainEventBus()
