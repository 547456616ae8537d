from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from salespipe.context import get_correlation_id
from salespipe.core.auth import AuthUser, get_current_user as get_auth_user
from salespipe.core.config import get_settings
from salespipe.core.database import get_db
from salespipe.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    BoardRead,
    CompleteActivityRequest,
    ForecastRead,
    OpportunityArchiveRequest,
    OpportunityCreate,
    OpportunityMoveRequest,
    OpportunityRead,
    OpportunityUpdate,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    RestoreActivityRequest,
    TimelineRead,
)
from salespipe.crm.service import ActivityService, ActorUser, OpportunityService, PipelineService
from salespipe.pipeline.activity import ActivityType
from salespipe.pipeline.clock import business_zone, today

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
pipeline_service = PipelineService()
opportunity_service = OpportunityService()
activity_service = ActivityService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def get_reference_date() -> date:
    """Business "today", resolved once per request."""
    return today(business_zone(get_settings().business_timezone))


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_create_failed")


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.add_stage(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_stage_create_failed")


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return pipeline_service.list_pipelines(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_list_failed")


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return pipeline_service.get_pipeline(db, pipeline_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_get_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return pipeline_service.list_stages(db, pipeline_id, include_inactive=include_inactive)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_stages_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/board", response_model=BoardRead)
def get_pipeline_board(
    request: Request,
    pipeline_id: uuid.UUID,
    only_mine: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_board(db, user, pipeline_id, only_mine=only_mine)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_board_failed")


@pipelines_router.get("/board", response_model=BoardRead)
def get_default_board(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    only_mine: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_board(db, user, pipeline_id, only_mine=only_mine)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_board_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/forecast", response_model=ForecastRead)
def get_pipeline_forecast(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ForecastRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_forecast(db, pipeline_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_forecast_failed")


@pipelines_router.get("/forecast", response_model=ForecastRead)
def get_default_forecast(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ForecastRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_forecast(db, pipeline_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_pipeline_forecast_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    archived: bool | None = Query(default=None),
    only_mine: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            db,
            user,
            filters={
                "pipeline_id": pipeline_id,
                "stage_id": stage_id,
                "contact_id": contact_id,
                "archived": archived,
                "only_mine": only_mine,
            },
            offset=offset,
            limit=limit,
        )
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_opportunity(db, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.update")
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_update_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/move", response_model=OpportunityRead)
def move_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.move")
        return opportunity_service.move_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_move_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/archive", response_model=OpportunityRead)
def archive_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityArchiveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.archive")
        return opportunity_service.archive_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_archive_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/timeline", response_model=TimelineRead)
def get_opportunity_timeline(
    request: Request,
    opportunity_id: uuid.UUID,
    activity_type: ActivityType | None = Query(default=None),
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TimelineRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.get_timeline(db, opportunity_id, reference_date, activity_type)
    except HTTPException as exc:
        return _failure(request, exc, "crm_timeline_failed")


@opportunities_router.post(
    "/opportunities/{opportunity_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_activity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: ActivityCreate,
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.create")
        return activity_service.create_activity(db, user, opportunity_id, dto, reference_date)
    except HTTPException as exc:
        return _failure(request, exc, "crm_activity_create_failed")


@activities_router.get("/activities/pending", response_model=list[ActivityRead])
def list_pending_activities(
    request: Request,
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.list_pending(db, user, reference_date)
    except HTTPException as exc:
        return _failure(request, exc, "crm_activity_pending_failed")


@activities_router.patch("/activities/{activity_id}", response_model=ActivityRead)
def update_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityUpdate,
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.update")
        return activity_service.update_activity(db, user, activity_id, dto, reference_date)
    except HTTPException as exc:
        return _failure(request, exc, "crm_activity_update_failed")


@activities_router.delete("/activities/{activity_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    row_version: int = Query(ge=1),
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.activities.delete")
        activity_service.delete_activity(db, user, activity_id, row_version, reference_date)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failure(request, exc, "crm_activity_delete_failed")


@activities_router.post("/activities/{activity_id}/restore", response_model=ActivityRead)
def restore_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: RestoreActivityRequest,
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.delete")
        return activity_service.restore_activity(db, user, activity_id, dto, reference_date)
    except HTTPException as exc:
        return _failure(request, exc, "crm_activity_restore_failed")


@activities_router.post("/activities/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: CompleteActivityRequest,
    reference_date: date = Depends(get_reference_date),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.complete")
        return activity_service.complete_activity(db, user, activity_id, dto, reference_date)
    except HTTPException as exc:
        return _failure(request, exc, "crm_activity_complete_failed")
