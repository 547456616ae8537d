from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from fastapi import HTTPException, status
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salespipe import audit, events
from salespipe.core.config import get_settings
from salespipe.core.events import DomainEvent
from salespipe.crm.models import CRMActivity, CRMOpportunity, CRMPipeline, CRMPipelineStage
from salespipe.crm.repositories import (
    ActivityRepository,
    OpportunityRepository,
    PipelineRepository,
    activity_from_row,
    activity_to_row,
    opportunity_from_row,
)
from salespipe.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    BoardColumnRead,
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
    StageForecastRead,
    TimelineGroupRead,
    TimelineRead,
)
from salespipe.metrics import observe_completion_toggle, observe_stage_transition
from salespipe.otel import get_tracer
from salespipe.pipeline.activity import Activity, ActivityType
from salespipe.pipeline.clock import as_aware, business_zone, civil_date, to_utc
from salespipe.pipeline.forecast import build_board, compute_forecast
from salespipe.pipeline.opportunity import set_archived
from salespipe.pipeline.results import (
    Err,
    GateError,
    PipelineConfigurationError,
    TransitionError,
    TransitionErrorCode,
)
from salespipe.pipeline.stages import StageCatalog, StageRole, parse_stage_role
from salespipe.pipeline.timeline import (
    can_restore,
    completion_state,
    filter_by_type,
    group_timeline,
    is_locked,
    is_overdue,
    pending_for_user,
    toggle_completion,
)
from salespipe.pipeline.transitions import move_opportunity

logger = logging.getLogger("salespipe.crm")
tracer = get_tracer("salespipe.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def resolve_zone() -> ZoneInfo:
    return business_zone(get_settings().business_timezone)


def configuration_error(exc: PipelineConfigurationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"code": "PIPELINE_MISCONFIGURED", "message": exc.message, "pipeline_id": str(exc.pipeline_id)},
    )


def transition_error(error: TransitionError) -> HTTPException:
    status_code = (
        status.HTTP_404_NOT_FOUND
        if error.code is TransitionErrorCode.UNKNOWN_STAGE
        else status.HTTP_422_UNPROCESSABLE_ENTITY
    )
    return HTTPException(
        status_code=status_code,
        detail={"code": error.code.value, "message": error.message, **error.details},
    )


def gate_error(error: GateError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"code": error.code.value, "message": error.message, **error.details},
    )


def _conflict() -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")


def _envelope(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> DomainEvent:
    return DomainEvent(
        event_type=event_type,
        actor_user_id=actor_user.user_id,
        correlation_id=actor_user.correlation_id,
        payload=payload,
    )


class PipelineService:
    entity_type = "crm.pipeline"

    def __init__(self) -> None:
        self.repository = PipelineRepository()

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        if dto.is_default and not dto.is_active:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="the default pipeline must be active",
            )
        pipeline = CRMPipeline(name=dto.name.strip(), is_default=dto.is_default, is_active=dto.is_active)
        session.add(pipeline)
        session.flush()

        if dto.is_default:
            for other in session.scalars(
                select(CRMPipeline).where(and_(CRMPipeline.id != pipeline.id, CRMPipeline.is_default.is_(True)))
            ):
                other.is_default = False

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={"name": pipeline.name, "is_default": pipeline.is_default, "is_active": pipeline.is_active},
            correlation_id=actor_user.correlation_id,
        )
        read = PipelineRead.model_validate(pipeline)
        session.commit()
        return read

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        if self.repository.get_pipeline(session, pipeline_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")

        role = parse_stage_role(pipeline_id, dto.system_role)
        existing = self.repository.stage_rows(session, pipeline_id)
        if role.is_terminal and any(row.system_role == role.value for row in existing):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"pipeline already has a {role.value} stage",
            )
        if any(row.position == dto.position for row in existing):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage position already in use")
        if any(row.name == dto.name.strip() for row in existing):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage name already in use")

        stage = CRMPipelineStage(
            pipeline_id=pipeline_id,
            name=dto.name.strip(),
            position=dto.position,
            system_role=role.value,
            color_hint=dto.color_hint,
            is_active=dto.is_active,
        )
        session.add(stage)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage already exists") from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="create",
            before=None,
            after={
                "pipeline_id": str(stage.pipeline_id),
                "name": stage.name,
                "position": stage.position,
                "system_role": stage.system_role,
            },
            correlation_id=actor_user.correlation_id,
        )
        read = PipelineStageRead.model_validate(stage)
        session.commit()
        return read

    def list_pipelines(self, session: Session, include_inactive: bool = False) -> list[PipelineRead]:
        return [
            PipelineRead.model_validate(pipeline)
            for pipeline in self.repository.list_pipelines(session, include_inactive=include_inactive)
        ]

    def resolve_pipeline_id(self, session: Session, pipeline_id: uuid.UUID | None) -> uuid.UUID:
        """Explicit ids pass through; ``None`` means the active default pipeline."""
        if pipeline_id is not None:
            return pipeline_id
        pipeline = self.repository.get_default_pipeline(session)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no default pipeline configured")
        return pipeline.id

    def get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = self.repository.get_pipeline(session, pipeline_id)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        read = PipelineRead.model_validate(pipeline)
        read.stages = self.list_stages(session, pipeline_id, include_inactive=True)
        return read

    def list_stages(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        include_inactive: bool = False,
    ) -> list[PipelineStageRead]:
        rows_by_id = {row.id: row for row in self.repository.stage_rows(session, pipeline_id)}
        catalog = self.load_catalog(session, pipeline_id)
        return [
            PipelineStageRead.model_validate(rows_by_id[stage.id])
            for stage in catalog.ordered(include_inactive=include_inactive)
        ]

    def load_catalog(self, session: Session, pipeline_id: uuid.UUID) -> StageCatalog:
        if self.repository.get_pipeline(session, pipeline_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        try:
            return self.repository.load_catalog(session, pipeline_id)
        except PipelineConfigurationError as exc:
            logger.error(
                "crm.pipeline.misconfigured",
                extra={"pipeline_id": str(pipeline_id), "error": exc.message},
            )
            raise configuration_error(exc) from exc


class OpportunityService:
    entity_type = "crm.opportunity"

    def __init__(self) -> None:
        self.repository = OpportunityRepository()
        self.pipelines = PipelineService()
        self.stage_rows = PipelineRepository()

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        catalog = self.pipelines.load_catalog(session, dto.pipeline_id)
        if dto.stage_id is not None:
            stage = catalog.get(dto.stage_id)
            if stage is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
            if not stage.is_active:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail={"code": "INACTIVE_STAGE", "message": f"stage {stage.name!r} is inactive"},
                )
            if stage.system_role is not StageRole.NORMAL:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="opportunities must be created in a NORMAL stage",
                )
        else:
            try:
                stage = catalog.default_open_stage()
            except PipelineConfigurationError as exc:
                raise configuration_error(exc) from exc

        now = utcnow()
        opportunity = CRMOpportunity(
            contact_id=dto.contact_id,
            pipeline_id=dto.pipeline_id,
            stage_id=stage.id,
            title=dto.title.strip(),
            description=dto.description,
            estimated_amount=dto.estimated_amount,
            probability=dto.probability,
            expected_close_date=dto.expected_close_date,
            owner_user_id=dto.owner_user_id or actor_user.user_id,
            created_at=now,
            updated_at=now,
        )
        session.add(opportunity)
        session.flush()

        created = OpportunityRead.model_validate(opportunity)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _envelope(
                "crm.opportunity.created",
                actor_user,
                {
                    "opportunity_id": str(opportunity.id),
                    "pipeline_id": str(opportunity.pipeline_id),
                    "stage_id": str(opportunity.stage_id),
                },
            )
        )
        session.commit()
        return created

    def list_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        offset: int,
        limit: int,
    ) -> list[OpportunityRead]:
        resolved = dict(filters)
        if resolved.pop("only_mine", False):
            resolved["owner_user_id"] = actor_user.user_id
        rows = self.repository.search(session, resolved, offset, limit)
        return [OpportunityRead.model_validate(row) for row in rows]

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        return OpportunityRead.model_validate(self._get_row(session, opportunity_id))

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self._get_row(session, opportunity_id)
        before = OpportunityRead.model_validate(opportunity)

        payload = dto.model_dump(exclude_unset=True)
        payload.pop("row_version", None)
        if "title" in payload:
            if payload["title"] is None:
                payload.pop("title")
            else:
                payload["title"] = payload["title"].strip()
        if "probability" in payload and payload["probability"] is None:
            payload.pop("probability")
        if not payload:
            return before

        payload["updated_at"] = utcnow()
        if not self.repository.compare_and_swap(session, opportunity.id, dto.row_version, payload):
            session.rollback()
            raise _conflict()
        session.refresh(opportunity)
        updated = OpportunityRead.model_validate(opportunity)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="update",
            before=before.model_dump(mode="json"),
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _envelope(
                "crm.opportunity.updated",
                actor_user,
                {"opportunity_id": str(opportunity.id), "fields": sorted(key for key in payload if key != "updated_at")},
            )
        )
        session.commit()
        return updated

    def move_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityMoveRequest,
    ) -> OpportunityRead:
        with tracer.start_as_current_span("crm.opportunity.move") as span:
            span.set_attribute("opportunity_id", str(opportunity_id))
            span.set_attribute("stage_id", str(dto.stage_id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            row = self._get_row(session, opportunity_id)
            catalog = self.pipelines.load_catalog(session, row.pipeline_id)
            snapshot = opportunity_from_row(row)
            now = utcnow()

            result = move_opportunity(
                catalog,
                snapshot,
                dto.stage_id,
                dto.reason,
                actor_user_id=actor_user.user_id,
                now=now,
            )
            if isinstance(result, Err):
                outcome = result.error.code.value.lower()
                observe_stage_transition(outcome)
                span.set_status(Status(StatusCode.ERROR, result.error.code.value))
                logger.info(
                    "crm.opportunity.move_rejected",
                    extra={
                        "opportunity_id": str(opportunity_id),
                        "stage_id": str(dto.stage_id),
                        "error_code": result.error.code.value,
                    },
                )
                raise transition_error(result.error)

            move = result.value
            if not move.changed:
                observe_stage_transition("noop")
                return OpportunityRead.model_validate(row)

            before = OpportunityRead.model_validate(row).model_dump(mode="json")
            moved = move.opportunity
            swapped = self.repository.compare_and_swap(
                session,
                row.id,
                dto.row_version,
                {
                    "stage_id": moved.stage_id,
                    "loss_reason": moved.loss_reason,
                    "win_reason": moved.win_reason,
                    "updated_at": moved.updated_at,
                },
            )
            if not swapped:
                session.rollback()
                observe_stage_transition("conflict")
                span.set_status(Status(StatusCode.ERROR, "row_version conflict"))
                raise _conflict()

            session.add(activity_to_row(move.stage_change))
            session.flush()
            session.refresh(row)
            updated = OpportunityRead.model_validate(row)

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(row.id),
                action="move",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                _envelope(
                    "crm.opportunity.stage_changed",
                    actor_user,
                    {
                        "opportunity_id": str(row.id),
                        "from_stage_id": str(move.previous_stage_id),
                        "stage_id": str(moved.stage_id),
                        "system_role": catalog.role_of(moved.stage_id).value,
                        "loss_reason": moved.loss_reason,
                        "win_reason": moved.win_reason,
                    },
                )
            )
            session.commit()
            observe_stage_transition("moved")
            logger.info(
                "crm.opportunity.moved",
                extra={"opportunity_id": str(row.id), "stage_id": str(moved.stage_id)},
            )
            return updated

    def archive_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityArchiveRequest,
    ) -> OpportunityRead:
        row = self._get_row(session, opportunity_id)
        snapshot = opportunity_from_row(row)
        archived = set_archived(snapshot, dto.archived, now=utcnow())
        if archived is snapshot:
            return OpportunityRead.model_validate(row)

        before = OpportunityRead.model_validate(row).model_dump(mode="json")
        swapped = self.repository.compare_and_swap(
            session,
            row.id,
            dto.row_version,
            {"archived": archived.archived, "archived_at": archived.archived_at, "updated_at": archived.updated_at},
        )
        if not swapped:
            session.rollback()
            raise _conflict()
        session.refresh(row)
        updated = OpportunityRead.model_validate(row)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="archive" if archived.archived else "unarchive",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _envelope(
                "crm.opportunity.archived",
                actor_user,
                {"opportunity_id": str(row.id), "archived": archived.archived},
            )
        )
        session.commit()
        return updated

    def get_board(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID | None,
        only_mine: bool = False,
    ) -> BoardRead:
        pipeline_id = self.pipelines.resolve_pipeline_id(session, pipeline_id)
        catalog = self.pipelines.load_catalog(session, pipeline_id)
        rows = self.repository.list_for_pipeline(session, pipeline_id)
        rows_by_id = {row.id: row for row in rows}
        stage_rows = {row.id: row for row in self.stage_rows.stage_rows(session, pipeline_id)}
        board = build_board(
            catalog,
            [opportunity_from_row(row) for row in rows],
            owner_user_id=actor_user.user_id if only_mine else None,
        )
        return BoardRead(
            pipeline_id=pipeline_id,
            columns=[
                BoardColumnRead(
                    stage=PipelineStageRead.model_validate(stage_rows[column.stage.id]),
                    count=column.count,
                    total_amount=column.total_amount,
                    weighted_amount=column.weighted_amount,
                    opportunities=[OpportunityRead.model_validate(rows_by_id[item.id]) for item in column.opportunities],
                )
                for column in board.columns
            ],
        )

    def get_forecast(self, session: Session, pipeline_id: uuid.UUID | None) -> ForecastRead:
        pipeline_id = self.pipelines.resolve_pipeline_id(session, pipeline_id)
        catalog = self.pipelines.load_catalog(session, pipeline_id)
        rows = self.repository.list_for_pipeline(session, pipeline_id)
        forecast = compute_forecast(catalog, [opportunity_from_row(row) for row in rows])
        return ForecastRead(
            pipeline_id=forecast.pipeline_id,
            per_stage=[
                StageForecastRead(
                    stage_id=item.stage_id,
                    stage_name=item.stage_name,
                    system_role=item.system_role.value,
                    count=item.count,
                    total_amount=item.total_amount,
                    weighted_amount=item.weighted_amount,
                )
                for item in forecast.per_stage
            ],
            pipeline_total=forecast.pipeline_total,
            pipeline_weighted_total=forecast.pipeline_weighted_total,
            open_count=forecast.open_count,
            won_count=forecast.won_count,
            lost_count=forecast.lost_count,
            won_amount=forecast.won_amount,
            lost_amount=forecast.lost_amount,
        )

    def _get_row(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = self.repository.get(session, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity


class ActivityService:
    entity_type = "crm.activity"

    def __init__(self) -> None:
        self.repository = ActivityRepository()
        self.opportunities = OpportunityRepository()

    def get_timeline(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        reference_date: date,
        activity_type: ActivityType | None = None,
    ) -> TimelineRead:
        if self.opportunities.get(session, opportunity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        zone = resolve_zone()
        limit = get_settings().timeline_page_limit
        rows = self.repository.list_for_opportunity(session, opportunity_id, limit)
        rows_by_id = {row.id: row for row in rows}
        activities = filter_by_type([activity_from_row(row) for row in rows], activity_type)
        groups = group_timeline(activities, reference_date, zone)
        return TimelineRead(
            opportunity_id=opportunity_id,
            reference_date=reference_date,
            groups=[
                TimelineGroupRead(
                    label=group.label,
                    day=group.day,
                    is_upcoming=group.is_upcoming,
                    activities=[
                        self._to_read(rows_by_id[item.id], reference_date, zone) for item in group.activities
                    ],
                )
                for group in groups
            ],
        )

    def list_pending(self, session: Session, actor_user: ActorUser, reference_date: date) -> list[ActivityRead]:
        zone = resolve_zone()
        rows_by_id = {row.id: row for row in self.repository.list_open_gated(session)}
        pending = pending_for_user((activity_from_row(row) for row in rows_by_id.values()), actor_user.user_id)
        return [self._to_read(rows_by_id[item.id], reference_date, zone) for item in pending]

    def create_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: ActivityCreate,
        reference_date: date,
    ) -> ActivityRead:
        if self.opportunities.get(session, opportunity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")

        activity = Activity(
            id=uuid.uuid4(),
            opportunity_id=opportunity_id,
            activity_type=dto.activity_type,
            created_at=utcnow(),
            created_by=actor_user.user_id,
            content=dto.content,
            start_at=to_utc(dto.start_at) if dto.activity_type is ActivityType.MEETING else None,
            end_at=to_utc(dto.end_at) if dto.activity_type is ActivityType.MEETING else None,
            due_at=to_utc(dto.due_at) if dto.activity_type is ActivityType.TASK else None,
            location=dto.location,
            assigned_to=dto.assigned_to,
        )
        row = activity_to_row(activity)
        session.add(row)
        session.flush()

        created = self._to_read(row, reference_date, resolve_zone())
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _envelope(
                "crm.activity.created",
                actor_user,
                {
                    "activity_id": str(row.id),
                    "opportunity_id": str(opportunity_id),
                    "activity_type": row.activity_type,
                },
            )
        )
        session.commit()
        return created

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
        reference_date: date,
    ) -> ActivityRead:
        row = self._get_live_row(session, activity_id)
        self._ensure_user_editable(row)
        zone = resolve_zone()
        self._ensure_unlocked(row, reference_date, zone)
        before = self._to_read(row, reference_date, zone)

        payload = dto.model_dump(exclude_unset=True)
        payload.pop("row_version", None)
        if row.activity_type != ActivityType.MEETING.value:
            payload.pop("start_at", None)
            payload.pop("end_at", None)
        if row.activity_type != ActivityType.TASK.value:
            payload.pop("due_at", None)
        elif "due_at" in payload and payload["due_at"] is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="TASK requires due_at")
        for key in ("start_at", "end_at", "due_at"):
            if key in payload:
                payload[key] = to_utc(payload[key])
        if row.activity_type == ActivityType.MEETING.value:
            start_at = payload.get("start_at", row.start_at)
            end_at = payload.get("end_at", row.end_at)
            if start_at is None or end_at is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="MEETING requires start_at and end_at",
                )
            if as_aware(start_at) > as_aware(end_at):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="end_at must not be before start_at",
                )
        if not payload:
            return before

        payload["updated_at"] = utcnow()
        if not self.repository.compare_and_swap(session, row.id, dto.row_version, payload):
            session.rollback()
            raise _conflict()
        session.refresh(row)
        updated = self._to_read(row, reference_date, zone)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="update",
            before=before.model_dump(mode="json"),
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(_envelope("crm.activity.updated", actor_user, {"activity_id": str(row.id)}))
        session.commit()
        return updated

    def delete_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        row_version: int,
        reference_date: date,
    ) -> None:
        row = self._get_live_row(session, activity_id)
        self._ensure_user_editable(row)
        self._ensure_unlocked(row, reference_date, resolve_zone())

        now = utcnow()
        if not self.repository.compare_and_swap(
            session,
            row.id,
            row_version,
            {"deleted_at": now, "updated_at": now},
        ):
            session.rollback()
            raise _conflict()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="delete",
            before={"deleted_at": None},
            after={"deleted_at": now.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(_envelope("crm.activity.deleted", actor_user, {"activity_id": str(row.id)}))
        session.commit()

    def restore_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: RestoreActivityRequest,
        reference_date: date,
    ) -> ActivityRead:
        row = self.repository.get(session, activity_id)
        if row is None or row.deleted_at is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deleted activity not found")
        zone = resolve_zone()
        if not can_restore(activity_from_row(row), reference_date, zone):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="overdue activities cannot be restored",
            )

        if not self.repository.compare_and_swap(
            session,
            row.id,
            dto.row_version,
            {"deleted_at": None, "updated_at": utcnow()},
        ):
            session.rollback()
            raise _conflict()
        session.refresh(row)
        restored = self._to_read(row, reference_date, zone)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="restore",
            before=None,
            after=restored.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(_envelope("crm.activity.restored", actor_user, {"activity_id": str(row.id)}))
        session.commit()
        return restored

    def complete_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: CompleteActivityRequest,
        reference_date: date,
    ) -> ActivityRead:
        with tracer.start_as_current_span("crm.activity.complete") as span:
            span.set_attribute("activity_id", str(activity_id))
            span.set_attribute("reference_date", reference_date.isoformat())
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            row = self._get_live_row(session, activity_id)
            zone = resolve_zone()
            snapshot = activity_from_row(row)
            result = toggle_completion(
                snapshot,
                actor_user.user_id,
                reference_date,
                zone,
                now=utcnow(),
                desired=dto.completed,
            )
            if isinstance(result, Err):
                observe_completion_toggle(result.error.code.value.lower())
                span.set_status(Status(StatusCode.ERROR, result.error.code.value))
                logger.info(
                    "crm.activity.toggle_rejected",
                    extra={"activity_id": str(activity_id), "error_code": result.error.code.value},
                )
                raise gate_error(result.error)

            toggled = result.value
            if toggled is snapshot:
                observe_completion_toggle("noop")
                return self._to_read(row, reference_date, zone)

            before = self._to_read(row, reference_date, zone)
            swapped = self.repository.compare_and_swap(
                session,
                row.id,
                dto.row_version,
                {
                    "completed": toggled.completed,
                    "completed_by": toggled.completed_by,
                    "completed_at": toggled.completed_at,
                    "updated_at": utcnow(),
                },
            )
            if not swapped:
                session.rollback()
                observe_completion_toggle("conflict")
                span.set_status(Status(StatusCode.ERROR, "row_version conflict"))
                raise _conflict()
            session.refresh(row)
            updated = self._to_read(row, reference_date, zone)

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(row.id),
                action="complete" if toggled.completed else "reopen",
                before=before.model_dump(mode="json"),
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                _envelope(
                    "crm.activity.completion_toggled",
                    actor_user,
                    {"activity_id": str(row.id), "completed": toggled.completed},
                )
            )
            session.commit()
            observe_completion_toggle("completed" if toggled.completed else "reopened")
            return updated

    def _get_live_row(self, session: Session, activity_id: uuid.UUID) -> CRMActivity:
        row = self.repository.get(session, activity_id)
        if row is None or row.deleted_at is not None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="activity not found")
        return row

    @staticmethod
    def _ensure_user_editable(row: CRMActivity) -> None:
        if activity_from_row(row).is_system:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="stage change activities are read-only",
            )

    @staticmethod
    def _ensure_unlocked(row: CRMActivity, reference_date: date, zone: ZoneInfo) -> None:
        activity = activity_from_row(row)
        if is_locked(activity, reference_date, zone):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={
                    "code": "ACTIVITY_LOCKED",
                    "message": "overdue activities can no longer be changed",
                    "activity_date": civil_date(activity.gate_at, zone).isoformat() if activity.gate_at else None,
                    "reference_date": reference_date.isoformat(),
                },
            )

    @staticmethod
    def _to_read(row: CRMActivity, reference_date: date, zone: ZoneInfo) -> ActivityRead:
        activity = activity_from_row(row)
        state = completion_state(activity, reference_date, zone)
        return ActivityRead.model_validate(row).model_copy(
            update={
                "is_overdue": is_overdue(activity, reference_date, zone),
                "completion_state": state.value if state is not None else None,
            }
        )
