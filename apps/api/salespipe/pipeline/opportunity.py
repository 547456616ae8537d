from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal

PROBABILITY_MIN = 0
PROBABILITY_MAX = 100

_HUNDRED = Decimal(100)


def validate_probability(probability: int) -> int:
    if isinstance(probability, bool) or not isinstance(probability, int):
        raise ValueError("probability must be an integer")
    if not PROBABILITY_MIN <= probability <= PROBABILITY_MAX:
        raise ValueError(f"probability must be between {PROBABILITY_MIN} and {PROBABILITY_MAX}")
    return probability


@dataclass(frozen=True)
class Opportunity:
    id: uuid.UUID
    contact_id: uuid.UUID
    pipeline_id: uuid.UUID
    stage_id: uuid.UUID
    title: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    estimated_amount: Decimal | None = None
    probability: int = 0
    expected_close_date: date | None = None
    owner_user_id: str | None = None
    archived: bool = False
    archived_at: datetime | None = None
    loss_reason: str | None = None
    win_reason: str | None = None
    row_version: int = 1

    def __post_init__(self) -> None:
        validate_probability(self.probability)
        if self.estimated_amount is not None and not isinstance(self.estimated_amount, Decimal):
            object.__setattr__(self, "estimated_amount", Decimal(str(self.estimated_amount)))

    @property
    def amount(self) -> Decimal:
        return self.estimated_amount if self.estimated_amount is not None else Decimal(0)

    @property
    def weighted_amount(self) -> Decimal:
        return self.amount * self.probability / _HUNDRED


def set_archived(opportunity: Opportunity, archived: bool, *, now: datetime) -> Opportunity:
    """Flip the archived flag; stage and reasons are left alone."""
    if opportunity.archived == archived:
        return opportunity
    return replace(
        opportunity,
        archived=archived,
        archived_at=now if archived else None,
        updated_at=now,
    )
