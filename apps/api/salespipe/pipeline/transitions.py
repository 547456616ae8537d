from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime

from salespipe.pipeline.activity import Activity, stage_change_activity
from salespipe.pipeline.opportunity import Opportunity
from salespipe.pipeline.results import Err, Ok, Result, TransitionError, TransitionErrorCode
from salespipe.pipeline.stages import StageCatalog, StageRole

LOSS_REASON_CODES = frozenset(
    {"price", "competitor", "no_response", "not_interested", "timing", "budget", "other"}
)
WIN_REASON_CODES = frozenset(
    {"price", "quality", "schedule", "referral", "location", "relationship", "other"}
)


@dataclass(frozen=True)
class StageMove:
    opportunity: Opportunity
    previous_stage_id: uuid.UUID | None = None
    stage_change: Activity | None = None

    @property
    def changed(self) -> bool:
        return self.stage_change is not None


def reason_codes_for(role: StageRole) -> frozenset[str]:
    if role is StageRole.LOST:
        return LOSS_REASON_CODES
    if role is StageRole.WON:
        return WIN_REASON_CODES
    return frozenset()


def _check_reason(role: StageRole, reason: str | None) -> TransitionError | None:
    cleaned = (reason or "").strip()
    if not cleaned:
        return TransitionError(
            code=TransitionErrorCode.REASON_REQUIRED,
            message=f"a reason is required to move into a {role.value} stage",
            details={"system_role": role.value},
        )
    allowed = reason_codes_for(role)
    if cleaned not in allowed:
        return TransitionError(
            code=TransitionErrorCode.INVALID_REASON,
            message=f"reason {cleaned!r} is not a valid {role.value.lower()} reason",
            details={"system_role": role.value, "allowed": sorted(allowed)},
        )
    return None


def move_opportunity(
    catalog: StageCatalog,
    opportunity: Opportunity,
    target_stage_id: uuid.UUID,
    reason: str | None = None,
    *,
    actor_user_id: str,
    now: datetime,
) -> Result[StageMove, TransitionError]:
    """Move ``opportunity`` into ``target_stage_id``.

    Terminal stages demand a reason from the matching closed set before the
    move is applied. On success a STAGE_CHANGE activity describing the move is
    returned next to the new opportunity; on failure nothing is changed.
    """
    if target_stage_id == opportunity.stage_id:
        return Ok(StageMove(opportunity=opportunity, previous_stage_id=opportunity.stage_id))

    target = catalog.get(target_stage_id) if catalog.pipeline_id == opportunity.pipeline_id else None
    if target is None:
        return Err(
            TransitionError(
                code=TransitionErrorCode.UNKNOWN_STAGE,
                message="target stage does not belong to the opportunity pipeline",
                details={"stage_id": str(target_stage_id), "pipeline_id": str(opportunity.pipeline_id)},
            )
        )
    if not target.is_active:
        return Err(
            TransitionError(
                code=TransitionErrorCode.INACTIVE_STAGE,
                message=f"stage {target.name!r} is inactive",
                details={"stage_id": str(target.id)},
            )
        )

    loss_reason: str | None = None
    win_reason: str | None = None
    if target.system_role.is_terminal:
        error = _check_reason(target.system_role, reason)
        if error is not None:
            return Err(error)
        if target.system_role is StageRole.LOST:
            loss_reason = reason.strip()
        else:
            win_reason = reason.strip()

    previous = catalog.get(opportunity.stage_id)
    moved = replace(
        opportunity,
        stage_id=target.id,
        loss_reason=loss_reason,
        win_reason=win_reason,
        updated_at=now,
    )
    activity = stage_change_activity(
        opportunity_id=opportunity.id,
        from_stage_id=opportunity.stage_id,
        from_stage_name=previous.name if previous is not None else str(opportunity.stage_id),
        to_stage_id=target.id,
        to_stage_name=target.name,
        actor_user_id=actor_user_id,
        now=now,
    )
    return Ok(StageMove(opportunity=moved, previous_stage_id=opportunity.stage_id, stage_change=activity))
