from salespipe.pipeline.activity import Activity, ActivityType
from salespipe.pipeline.clock import business_zone, civil_date, today
from salespipe.pipeline.forecast import Board, BoardColumn, Forecast, StageForecast, build_board, compute_forecast
from salespipe.pipeline.opportunity import Opportunity, set_archived
from salespipe.pipeline.results import (
    Err,
    GateError,
    GateErrorCode,
    Ok,
    PipelineConfigurationError,
    TransitionError,
    TransitionErrorCode,
)
from salespipe.pipeline.stages import Stage, StageCatalog, StageRole
from salespipe.pipeline.timeline import (
    CompletionState,
    TimelineGroup,
    can_toggle_completion,
    completion_state,
    group_timeline,
    is_overdue,
    toggle_completion,
)
from salespipe.pipeline.transitions import LOSS_REASON_CODES, WIN_REASON_CODES, StageMove, move_opportunity

__all__ = [
    "Activity",
    "ActivityType",
    "Board",
    "BoardColumn",
    "CompletionState",
    "Err",
    "Forecast",
    "GateError",
    "GateErrorCode",
    "LOSS_REASON_CODES",
    "Ok",
    "Opportunity",
    "PipelineConfigurationError",
    "Stage",
    "StageCatalog",
    "StageForecast",
    "StageMove",
    "StageRole",
    "TimelineGroup",
    "TransitionError",
    "TransitionErrorCode",
    "WIN_REASON_CODES",
    "build_board",
    "business_zone",
    "can_toggle_completion",
    "civil_date",
    "completion_state",
    "compute_forecast",
    "group_timeline",
    "is_overdue",
    "move_opportunity",
    "set_archived",
    "toggle_completion",
    "today",
]
