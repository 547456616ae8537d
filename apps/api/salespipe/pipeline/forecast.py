from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from salespipe.pipeline.opportunity import Opportunity
from salespipe.pipeline.stages import Stage, StageCatalog, StageRole

_ZERO = Decimal(0)


@dataclass(frozen=True)
class StageForecast:
    stage_id: uuid.UUID
    stage_name: str
    system_role: StageRole
    count: int = 0
    total_amount: Decimal = _ZERO
    weighted_amount: Decimal = _ZERO


@dataclass(frozen=True)
class Forecast:
    pipeline_id: uuid.UUID
    per_stage: list[StageForecast] = field(default_factory=list)
    pipeline_total: Decimal = _ZERO
    pipeline_weighted_total: Decimal = _ZERO
    open_count: int = 0
    won_count: int = 0
    lost_count: int = 0
    won_amount: Decimal = _ZERO
    lost_amount: Decimal = _ZERO


@dataclass(frozen=True)
class BoardColumn:
    stage: Stage
    opportunities: list[Opportunity] = field(default_factory=list)
    total_amount: Decimal = _ZERO
    weighted_amount: Decimal = _ZERO

    @property
    def count(self) -> int:
        return len(self.opportunities)


@dataclass(frozen=True)
class Board:
    pipeline_id: uuid.UUID
    columns: list[BoardColumn] = field(default_factory=list)


def _live(catalog: StageCatalog, opportunities: Iterable[Opportunity]) -> list[Opportunity]:
    return [
        opportunity
        for opportunity in opportunities
        if not opportunity.archived
        and opportunity.pipeline_id == catalog.pipeline_id
        and opportunity.stage_id in catalog
    ]


def compute_forecast(catalog: StageCatalog, opportunities: Iterable[Opportunity]) -> Forecast:
    """Aggregate raw and probability-weighted totals per stage and per role.

    Sums run in ascending opportunity id order so that the result does not
    depend on the order of ``opportunities``.
    """
    live = sorted(_live(catalog, opportunities), key=lambda item: str(item.id))

    counts: dict[uuid.UUID, int] = {}
    totals: dict[uuid.UUID, Decimal] = {}
    weighted: dict[uuid.UUID, Decimal] = {}
    for opportunity in live:
        stage_id = opportunity.stage_id
        counts[stage_id] = counts.get(stage_id, 0) + 1
        totals[stage_id] = totals.get(stage_id, _ZERO) + opportunity.amount
        weighted[stage_id] = weighted.get(stage_id, _ZERO) + opportunity.weighted_amount

    per_stage: list[StageForecast] = []
    pipeline_total = _ZERO
    pipeline_weighted_total = _ZERO
    open_count = won_count = lost_count = 0
    won_amount = lost_amount = _ZERO
    for stage in catalog.ordered(include_inactive=True):
        count = counts.get(stage.id, 0)
        total = totals.get(stage.id, _ZERO)
        stage_weighted = weighted.get(stage.id, _ZERO)
        if stage.is_active or count:
            per_stage.append(
                StageForecast(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    system_role=stage.system_role,
                    count=count,
                    total_amount=total,
                    weighted_amount=stage_weighted,
                )
            )
        match stage.system_role:
            case StageRole.NORMAL:
                open_count += count
                pipeline_total += total
                pipeline_weighted_total += stage_weighted
            case StageRole.WON:
                won_count += count
                won_amount += total
            case StageRole.LOST:
                lost_count += count
                lost_amount += total

    return Forecast(
        pipeline_id=catalog.pipeline_id,
        per_stage=per_stage,
        pipeline_total=pipeline_total,
        pipeline_weighted_total=pipeline_weighted_total,
        open_count=open_count,
        won_count=won_count,
        lost_count=lost_count,
        won_amount=won_amount,
        lost_amount=lost_amount,
    )


def build_board(
    catalog: StageCatalog,
    opportunities: Iterable[Opportunity],
    *,
    owner_user_id: str | None = None,
) -> Board:
    """Kanban columns for every active stage, empty ones included."""
    live = _live(catalog, opportunities)
    if owner_user_id is not None:
        live = [opportunity for opportunity in live if opportunity.owner_user_id == owner_user_id]

    buckets: dict[uuid.UUID, list[Opportunity]] = {}
    for opportunity in live:
        buckets.setdefault(opportunity.stage_id, []).append(opportunity)

    columns: list[BoardColumn] = []
    for stage in catalog.ordered():
        cards = buckets.get(stage.id, [])
        ordered_for_sum = sorted(cards, key=lambda item: str(item.id))
        columns.append(
            BoardColumn(
                stage=stage,
                opportunities=cards,
                total_amount=sum((item.amount for item in ordered_for_sum), _ZERO),
                weighted_amount=sum((item.weighted_amount for item in ordered_for_sum), _ZERO),
            )
        )
    return Board(pipeline_id=catalog.pipeline_id, columns=columns)
