from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum

from salespipe.pipeline.results import PipelineConfigurationError


class StageRole(StrEnum):
    NORMAL = "NORMAL"
    WON = "WON"
    LOST = "LOST"

    @property
    def is_terminal(self) -> bool:
        return self is not StageRole.NORMAL


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Stage:
    id: uuid.UUID
    pipeline_id: uuid.UUID
    name: str
    order: int
    system_role: StageRole
    color_hint: str | None = None
    is_active: bool = True
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.system_role.is_terminal


def parse_stage_role(pipeline_id: uuid.UUID, raw: str) -> StageRole:
    try:
        return StageRole(raw)
    except ValueError as exc:
        raise PipelineConfigurationError(pipeline_id, f"unknown stage role {raw!r}") from exc


def _sort_key(stage: Stage) -> tuple[int, datetime, str]:
    created_at = stage.created_at or _EPOCH
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (stage.order, created_at, str(stage.id))


class StageCatalog:
    """Ordered stages of one pipeline, looked up by id."""

    def __init__(self, pipeline_id: uuid.UUID, stages: Iterable[Stage]) -> None:
        self.pipeline_id = pipeline_id
        ordered = sorted((stage for stage in stages if stage.pipeline_id == pipeline_id), key=_sort_key)
        if not ordered:
            raise PipelineConfigurationError(pipeline_id, "pipeline has no stages")
        self._ordered = tuple(ordered)
        self._by_id = {stage.id: stage for stage in ordered}

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._by_id

    def ordered(self, include_inactive: bool = False) -> list[Stage]:
        if include_inactive:
            return list(self._ordered)
        return [stage for stage in self._ordered if stage.is_active]

    def get(self, stage_id: uuid.UUID) -> Stage | None:
        return self._by_id.get(stage_id)

    def role_of(self, stage_id: uuid.UUID) -> StageRole | None:
        stage = self._by_id.get(stage_id)
        return stage.system_role if stage is not None else None

    def default_open_stage(self) -> Stage:
        for stage in self._ordered:
            if stage.is_active and stage.system_role is StageRole.NORMAL:
                return stage
        raise PipelineConfigurationError(self.pipeline_id, "pipeline has no active normal stage")
