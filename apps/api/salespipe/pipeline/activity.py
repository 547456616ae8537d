from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class ActivityType(StrEnum):
    NOTE = "NOTE"
    CALL = "CALL"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    MEETING = "MEETING"
    TASK = "TASK"
    REMINDER = "REMINDER"
    STAGE_CHANGE = "STAGE_CHANGE"


GATED_TYPES = frozenset({ActivityType.TASK, ActivityType.MEETING})
USER_CREATABLE_TYPES = frozenset(ActivityType) - {ActivityType.STAGE_CHANGE}


@dataclass(frozen=True)
class Activity:
    id: uuid.UUID
    opportunity_id: uuid.UUID
    activity_type: ActivityType
    created_at: datetime
    created_by: str
    content: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    due_at: datetime | None = None
    location: str | None = None
    completed: bool = False
    completed_by: str | None = None
    completed_at: datetime | None = None
    assigned_to: str | None = None
    from_stage_id: uuid.UUID | None = None
    to_stage_id: uuid.UUID | None = None
    deleted_at: datetime | None = None
    row_version: int = 1

    def __post_init__(self) -> None:
        if self.completed and (self.completed_at is None or self.completed_by is None):
            raise ValueError("completed activity requires completed_at and completed_by")

    @property
    def is_gated(self) -> bool:
        return self.activity_type in GATED_TYPES

    @property
    def is_system(self) -> bool:
        return self.activity_type is ActivityType.STAGE_CHANGE

    @property
    def schedule_at(self) -> datetime | None:
        """Moment that decides whether the activity is still upcoming."""
        if self.activity_type is ActivityType.MEETING:
            return self.start_at
        if self.activity_type is ActivityType.TASK:
            return self.due_at
        return None

    @property
    def gate_at(self) -> datetime | None:
        """Moment whose calendar date controls completion and overdue status."""
        if self.activity_type is ActivityType.MEETING:
            return self.end_at
        if self.activity_type is ActivityType.TASK:
            return self.due_at
        return None


def stage_change_activity(
    *,
    opportunity_id: uuid.UUID,
    from_stage_id: uuid.UUID,
    from_stage_name: str,
    to_stage_id: uuid.UUID,
    to_stage_name: str,
    actor_user_id: str,
    now: datetime,
) -> Activity:
    return Activity(
        id=uuid.uuid4(),
        opportunity_id=opportunity_id,
        activity_type=ActivityType.STAGE_CHANGE,
        created_at=now,
        created_by=actor_user_id,
        content=f"{from_stage_name} → {to_stage_name}",
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
    )
