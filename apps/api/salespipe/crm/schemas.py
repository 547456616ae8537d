from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from salespipe.pipeline.activity import USER_CREATABLE_TYPES, ActivityType


StageRoleLiteral = Literal["NORMAL", "WON", "LOST"]


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    is_default: bool = False
    is_active: bool = True


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=1)
    system_role: StageRoleLiteral = "NORMAL"
    color_hint: str | None = None
    is_active: bool = True


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    system_role: str
    color_hint: str | None
    is_active: bool
    created_at: datetime
    row_version: int


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int
    stages: list[PipelineStageRead] = Field(default_factory=list)


class OpportunityCreate(BaseModel):
    contact_id: UUID
    pipeline_id: UUID
    title: str = Field(min_length=1)
    stage_id: UUID | None = None
    description: str | None = None
    estimated_amount: Decimal | None = Field(default=None, ge=0)
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    owner_user_id: str | None = None


class OpportunityUpdate(BaseModel):
    row_version: int = Field(ge=1)
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    estimated_amount: Decimal | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    owner_user_id: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    title: str
    description: str | None
    estimated_amount: Decimal | None
    probability: int
    expected_close_date: date | None
    owner_user_id: str | None
    archived: bool
    archived_at: datetime | None
    loss_reason: str | None
    win_reason: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OpportunityMoveRequest(BaseModel):
    stage_id: UUID
    reason: str | None = None
    row_version: int = Field(ge=1)


class OpportunityArchiveRequest(BaseModel):
    archived: bool = True
    row_version: int = Field(ge=1)


class BoardColumnRead(BaseModel):
    stage: PipelineStageRead
    count: int
    total_amount: Decimal
    weighted_amount: Decimal
    opportunities: list[OpportunityRead] = Field(default_factory=list)


class BoardRead(BaseModel):
    pipeline_id: UUID
    columns: list[BoardColumnRead] = Field(default_factory=list)


class StageForecastRead(BaseModel):
    stage_id: UUID
    stage_name: str
    system_role: str
    count: int
    total_amount: Decimal
    weighted_amount: Decimal


class ForecastRead(BaseModel):
    pipeline_id: UUID
    per_stage: list[StageForecastRead] = Field(default_factory=list)
    pipeline_total: Decimal
    pipeline_weighted_total: Decimal
    open_count: int
    won_count: int
    lost_count: int
    won_amount: Decimal
    lost_amount: Decimal


class ActivityCreate(BaseModel):
    activity_type: ActivityType
    content: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    due_at: datetime | None = None
    location: str | None = None
    assigned_to: str | None = None

    @model_validator(mode="after")
    def _check_schedule(self) -> ActivityCreate:
        if self.activity_type not in USER_CREATABLE_TYPES:
            raise ValueError("STAGE_CHANGE activities are system generated")
        if self.activity_type == ActivityType.TASK and self.due_at is None:
            raise ValueError("TASK requires due_at")
        if self.activity_type == ActivityType.MEETING:
            if self.start_at is None or self.end_at is None:
                raise ValueError("MEETING requires start_at and end_at")
            if self.end_at < self.start_at:
                raise ValueError("end_at must not be before start_at")
        return self


class ActivityUpdate(BaseModel):
    row_version: int = Field(ge=1)
    content: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    due_at: datetime | None = None
    location: str | None = None
    assigned_to: str | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    opportunity_id: UUID
    activity_type: str
    content: str | None
    start_at: datetime | None
    end_at: datetime | None
    due_at: datetime | None
    location: str | None
    completed: bool
    completed_by: str | None
    completed_at: datetime | None
    assigned_to: str | None
    from_stage_id: UUID | None
    to_stage_id: UUID | None
    created_by: str
    created_at: datetime
    deleted_at: datetime | None
    row_version: int
    is_overdue: bool = False
    completion_state: str | None = None


class CompleteActivityRequest(BaseModel):
    completed: bool | None = None
    row_version: int = Field(ge=1)


class RestoreActivityRequest(BaseModel):
    row_version: int = Field(ge=1)


class TimelineGroupRead(BaseModel):
    label: str
    day: date | None
    is_upcoming: bool
    activities: list[ActivityRead] = Field(default_factory=list)


class TimelineRead(BaseModel):
    opportunity_id: UUID
    reference_date: date
    groups: list[TimelineGroupRead] = Field(default_factory=list)
