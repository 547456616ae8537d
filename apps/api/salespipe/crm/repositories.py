from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from salespipe.crm.models import CRMActivity, CRMOpportunity, CRMPipeline, CRMPipelineStage
from salespipe.pipeline.activity import Activity, ActivityType
from salespipe.pipeline.opportunity import Opportunity
from salespipe.pipeline.results import PipelineConfigurationError
from salespipe.pipeline.stages import Stage, StageCatalog, parse_stage_role


def stage_from_row(row: CRMPipelineStage) -> Stage:
    return Stage(
        id=row.id,
        pipeline_id=row.pipeline_id,
        name=row.name,
        order=row.position,
        system_role=parse_stage_role(row.pipeline_id, row.system_role),
        color_hint=row.color_hint,
        is_active=row.is_active,
        created_at=row.created_at,
    )


def opportunity_from_row(row: CRMOpportunity) -> Opportunity:
    return Opportunity(
        id=row.id,
        contact_id=row.contact_id,
        pipeline_id=row.pipeline_id,
        stage_id=row.stage_id,
        title=row.title,
        description=row.description,
        estimated_amount=row.estimated_amount,
        probability=row.probability,
        expected_close_date=row.expected_close_date,
        owner_user_id=row.owner_user_id,
        archived=row.archived,
        archived_at=row.archived_at,
        loss_reason=row.loss_reason,
        win_reason=row.win_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
        row_version=row.row_version,
    )


def activity_from_row(row: CRMActivity) -> Activity:
    return Activity(
        id=row.id,
        opportunity_id=row.opportunity_id,
        activity_type=ActivityType(row.activity_type),
        created_at=row.created_at,
        created_by=row.created_by,
        content=row.content,
        start_at=row.start_at,
        end_at=row.end_at,
        due_at=row.due_at,
        location=row.location,
        completed=row.completed,
        completed_by=row.completed_by,
        completed_at=row.completed_at,
        assigned_to=row.assigned_to,
        from_stage_id=row.from_stage_id,
        to_stage_id=row.to_stage_id,
        deleted_at=row.deleted_at,
        row_version=row.row_version,
    )


def activity_to_row(activity: Activity) -> CRMActivity:
    return CRMActivity(
        id=activity.id,
        opportunity_id=activity.opportunity_id,
        activity_type=activity.activity_type.value,
        content=activity.content,
        start_at=activity.start_at,
        end_at=activity.end_at,
        due_at=activity.due_at,
        location=activity.location,
        completed=activity.completed,
        completed_by=activity.completed_by,
        completed_at=activity.completed_at,
        assigned_to=activity.assigned_to,
        from_stage_id=activity.from_stage_id,
        to_stage_id=activity.to_stage_id,
        created_by=activity.created_by,
        created_at=activity.created_at,
        row_version=activity.row_version,
    )


class PipelineRepository:
    def get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return session.scalar(select(CRMPipeline).where(CRMPipeline.id == pipeline_id))

    def list_pipelines(self, session: Session, include_inactive: bool = False) -> list[CRMPipeline]:
        stmt = select(CRMPipeline)
        if not include_inactive:
            stmt = stmt.where(CRMPipeline.is_active.is_(True))
        stmt = stmt.order_by(CRMPipeline.is_default.desc(), CRMPipeline.name.asc(), CRMPipeline.id.asc())
        return list(session.scalars(stmt).all())

    def get_default_pipeline(self, session: Session) -> CRMPipeline | None:
        return session.scalar(
            select(CRMPipeline)
            .where(and_(CRMPipeline.is_default.is_(True), CRMPipeline.is_active.is_(True)))
            .limit(1)
        )

    def stage_rows(self, session: Session, pipeline_id: uuid.UUID) -> list[CRMPipelineStage]:
        return list(
            session.scalars(
                select(CRMPipelineStage)
                .where(CRMPipelineStage.pipeline_id == pipeline_id)
                .order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.created_at.asc())
            ).all()
        )

    def load_catalog(self, session: Session, pipeline_id: uuid.UUID) -> StageCatalog:
        rows = self.stage_rows(session, pipeline_id)
        if not rows:
            raise PipelineConfigurationError(pipeline_id, "pipeline has no stages")
        return StageCatalog(pipeline_id, [stage_from_row(row) for row in rows])


class OpportunityRepository:
    def get(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity | None:
        return session.scalar(select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id))

    def list_for_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> list[CRMOpportunity]:
        return list(
            session.scalars(
                select(CRMOpportunity)
                .where(and_(CRMOpportunity.pipeline_id == pipeline_id, CRMOpportunity.archived.is_(False)))
                .order_by(CRMOpportunity.updated_at.desc(), CRMOpportunity.id.asc())
            ).all()
        )

    def search(self, session: Session, filters: dict[str, Any], offset: int, limit: int) -> list[CRMOpportunity]:
        stmt = select(CRMOpportunity)
        if filters.get("pipeline_id"):
            stmt = stmt.where(CRMOpportunity.pipeline_id == filters["pipeline_id"])
        if filters.get("stage_id"):
            stmt = stmt.where(CRMOpportunity.stage_id == filters["stage_id"])
        if filters.get("contact_id"):
            stmt = stmt.where(CRMOpportunity.contact_id == filters["contact_id"])
        if filters.get("owner_user_id"):
            stmt = stmt.where(CRMOpportunity.owner_user_id == filters["owner_user_id"])
        if filters.get("archived") is not None:
            stmt = stmt.where(CRMOpportunity.archived.is_(bool(filters["archived"])))
        stmt = stmt.order_by(CRMOpportunity.created_at.desc(), CRMOpportunity.id.asc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def compare_and_swap(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        expected_row_version: int,
        values: dict[str, Any],
    ) -> bool:
        result = session.execute(
            update(CRMOpportunity)
            .where(and_(CRMOpportunity.id == opportunity_id, CRMOpportunity.row_version == expected_row_version))
            .values(**values, row_version=CRMOpportunity.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class ActivityRepository:
    def get(self, session: Session, activity_id: uuid.UUID) -> CRMActivity | None:
        return session.scalar(select(CRMActivity).where(CRMActivity.id == activity_id))

    def list_for_opportunity(self, session: Session, opportunity_id: uuid.UUID, limit: int) -> list[CRMActivity]:
        return list(
            session.scalars(
                select(CRMActivity)
                .where(and_(CRMActivity.opportunity_id == opportunity_id, CRMActivity.deleted_at.is_(None)))
                .order_by(CRMActivity.created_at.desc(), CRMActivity.id.asc())
                .limit(limit)
            ).all()
        )

    def list_open_gated(self, session: Session) -> list[CRMActivity]:
        return list(
            session.scalars(
                select(CRMActivity).where(
                    and_(
                        CRMActivity.activity_type.in_([ActivityType.TASK.value, ActivityType.MEETING.value]),
                        CRMActivity.completed.is_(False),
                        CRMActivity.deleted_at.is_(None),
                    )
                )
            ).all()
        )

    def compare_and_swap(
        self,
        session: Session,
        activity_id: uuid.UUID,
        expected_row_version: int,
        values: dict[str, Any],
    ) -> bool:
        result = session.execute(
            update(CRMActivity)
            .where(and_(CRMActivity.id == activity_id, CRMActivity.row_version == expected_row_version))
            .values(**values, row_version=CRMActivity.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
