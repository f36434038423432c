from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.automation.outbox import announce_enqueued, enqueue_event
from app.automation.schemas import (
    DomainEvent,
    LeadMarkedLostEvent,
    LeadMarkedSoldEvent,
    LeadResponsibleAssignedEvent,
    LeadSnapshot,
    LeadStageChangedEvent,
)
from app.crm.models import (
    LEAD_STATUS_LOST,
    LEAD_STATUS_SOLD,
    CRMCustomFieldDefinition,
    CRMCustomFieldValue,
    CRMLead,
    CRMPipeline,
    CRMPipelineStage,
    CRMTask,
)
from app.crm.schemas import (
    LeadAssignResponsibleRequest,
    LeadRead,
    LeadStageChangeRequest,
    LeadUpdate,
    TaskRead,
)

logger = logging.getLogger("app.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str | None
    permissions: set[str]
    is_super_admin: bool = False
    correlation_id: str | None = None


def _as_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def lead_snapshot(lead: CRMLead) -> LeadSnapshot:
    return LeadSnapshot(
        id=str(lead.id),
        tenant_id=lead.tenant_id,
        name=lead.name,
        company=lead.company,
        email=lead.email,
        phone=lead.phone,
        value=_as_float(lead.value),
        origin=lead.origin,
        status=lead.status,
        pipeline_id=str(lead.pipeline_id) if lead.pipeline_id else None,
        stage_id=str(lead.stage_id) if lead.stage_id else None,
        responsible_uuid=lead.responsible_uuid,
        created_at=lead.created_at,
        sold_at=lead.sold_at,
        sold_value=_as_float(lead.sold_value),
        sale_notes=lead.sale_notes,
        lost_at=lead.lost_at,
        loss_reason_category=lead.loss_reason_category,
        loss_reason_notes=lead.loss_reason_notes,
    )


EventBuilder = Callable[[ActorUser, LeadSnapshot, LeadSnapshot], list[DomainEvent]]


class LeadService:
    """Lead mutations that raise automation events.

    Every mutation commits the lead change and its outbox rows together, then
    announces the new rows on the in-process event bus. ``skip_automations``
    suppresses the outbox rows; automation actions pass it so their own writes
    never re-enter the rule engine.
    """

    entity_type = "crm.lead"

    def _get_lead_row(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead:
        stmt = select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None)))
        if not actor_user.is_super_admin:
            if not actor_user.tenant_id:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="tenant not resolved")
            stmt = stmt.where(CRMLead.tenant_id == actor_user.tenant_id)
        lead = session.scalar(stmt)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _custom_values(self, session: Session, lead: CRMLead) -> dict[str, Any]:
        rows = session.execute(
            select(CRMCustomFieldDefinition.name, CRMCustomFieldValue.value)
            .join(CRMCustomFieldValue, CRMCustomFieldValue.field_id == CRMCustomFieldDefinition.id)
            .where(
                and_(
                    CRMCustomFieldValue.lead_id == lead.id,
                    CRMCustomFieldDefinition.tenant_id == lead.tenant_id,
                    CRMCustomFieldDefinition.is_active.is_(True),
                )
            )
            .order_by(CRMCustomFieldDefinition.position.asc())
        ).all()
        return {name: value for name, value in rows}

    def _to_read(self, session: Session, lead: CRMLead) -> LeadRead:
        read = LeadRead.model_validate(lead)
        read.custom_fields = self._custom_values(session, lead)
        return read

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return self._to_read(session, self._get_lead_row(session, actor_user, lead_id))

    def get_snapshot(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadSnapshot:
        return lead_snapshot(self._get_lead_row(session, actor_user, lead_id))

    def list_tasks(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[TaskRead]:
        lead = self._get_lead_row(session, actor_user, lead_id)
        tasks = session.scalars(
            select(CRMTask)
            .where(and_(CRMTask.lead_id == lead.id, CRMTask.deleted_at.is_(None)))
            .order_by(CRMTask.due_date.asc(), CRMTask.due_time.asc(), CRMTask.created_at.asc())
        ).all()
        return [TaskRead.model_validate(task) for task in tasks]

    def _resolve_stage(
        self,
        session: Session,
        lead: CRMLead,
        stage_id: uuid.UUID,
        pipeline_id: uuid.UUID | None,
    ) -> CRMPipelineStage:
        stage = session.scalar(
            select(CRMPipelineStage)
            .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
            .where(
                and_(
                    CRMPipelineStage.id == stage_id,
                    CRMPipelineStage.deleted_at.is_(None),
                    CRMPipeline.deleted_at.is_(None),
                    CRMPipeline.tenant_id == lead.tenant_id,
                )
            )
        )
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        if pipeline_id is not None and stage.pipeline_id != pipeline_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="stage does not belong to pipeline",
            )
        return stage

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
        *,
        skip_automations: bool = False,
    ) -> LeadRead:
        lead = self._get_lead_row(session, actor_user, lead_id)
        values = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if values.get("name", "") is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")
        if values.get("stage_id") is not None:
            stage = self._resolve_stage(session, lead, values["stage_id"], values.get("pipeline_id"))
            values["pipeline_id"] = stage.pipeline_id
        elif "stage_id" in values:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage_id cannot be cleared")

        return self._commit_mutation(
            session,
            actor_user,
            lead,
            values,
            action="update",
            row_version=dto.row_version,
            skip_automations=skip_automations,
            build_events=self._change_events,
        )

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadStageChangeRequest,
        *,
        skip_automations: bool = False,
    ) -> LeadRead:
        lead = self._get_lead_row(session, actor_user, lead_id)
        stage = self._resolve_stage(session, lead, dto.stage_id, dto.pipeline_id)
        return self._commit_mutation(
            session,
            actor_user,
            lead,
            {"pipeline_id": stage.pipeline_id, "stage_id": stage.id},
            action="change_stage",
            row_version=dto.row_version,
            skip_automations=skip_automations,
            build_events=self._change_events,
        )

    def assign_responsible(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadAssignResponsibleRequest,
        *,
        skip_automations: bool = False,
    ) -> LeadRead:
        lead = self._get_lead_row(session, actor_user, lead_id)
        return self._commit_mutation(
            session,
            actor_user,
            lead,
            {"responsible_uuid": dto.responsible_uuid.strip()},
            action="assign_responsible",
            row_version=dto.row_version,
            skip_automations=skip_automations,
            build_events=self._change_events,
        )

    def mark_sold(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        sold_value: Decimal | float,
        sale_notes: str | None,
        *,
        skip_automations: bool = False,
    ) -> LeadRead:
        amount = Decimal(str(sold_value))
        if amount < 0:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="sold value must be >= 0")
        lead = self._get_lead_row(session, actor_user, lead_id)
        notes = (sale_notes or "").strip() or None

        def build_events(actor: ActorUser, before: LeadSnapshot, after: LeadSnapshot) -> list[DomainEvent]:
            return [
                LeadMarkedSoldEvent(
                    lead=after,
                    actor_user_id=actor.user_id,
                    sold_value=float(amount),
                    sale_notes=notes,
                )
            ]

        return self._commit_mutation(
            session,
            actor_user,
            lead,
            {"sold_value": amount, "sale_notes": notes, "sold_at": utcnow(), "status": LEAD_STATUS_SOLD},
            action="mark_sold",
            row_version=None,
            skip_automations=skip_automations,
            build_events=build_events,
        )

    def mark_lost(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        loss_reason_category: str,
        loss_reason_notes: str | None,
        *,
        skip_automations: bool = False,
    ) -> LeadRead:
        reason = (loss_reason_category or "").strip()
        if not reason:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="loss reason is required")
        lead = self._get_lead_row(session, actor_user, lead_id)
        notes = (loss_reason_notes or "").strip() or None

        def build_events(actor: ActorUser, before: LeadSnapshot, after: LeadSnapshot) -> list[DomainEvent]:
            return [
                LeadMarkedLostEvent(
                    lead=after,
                    actor_user_id=actor.user_id,
                    loss_reason_category=reason,
                    loss_reason_notes=notes,
                )
            ]

        return self._commit_mutation(
            session,
            actor_user,
            lead,
            {
                "loss_reason_category": reason,
                "loss_reason_notes": notes,
                "lost_at": utcnow(),
                "status": LEAD_STATUS_LOST,
            },
            action="mark_lost",
            row_version=None,
            skip_automations=skip_automations,
            build_events=build_events,
        )

    def _change_events(self, actor_user: ActorUser, before: LeadSnapshot, after: LeadSnapshot) -> list[DomainEvent]:
        domain_events: list[DomainEvent] = []
        if before.stage_id and after.stage_id and before.stage_id != after.stage_id:
            domain_events.append(
                LeadStageChangedEvent(
                    lead=after,
                    actor_user_id=actor_user.user_id,
                    previous_stage_id=before.stage_id,
                    new_stage_id=after.stage_id,
                )
            )
        if after.responsible_uuid and before.responsible_uuid != after.responsible_uuid:
            domain_events.append(
                LeadResponsibleAssignedEvent(
                    lead=after,
                    actor_user_id=actor_user.user_id,
                    previous_responsible_uuid=before.responsible_uuid,
                    new_responsible_uuid=after.responsible_uuid,
                )
            )
        return domain_events

    def _commit_mutation(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        values: dict[str, Any],
        *,
        action: str,
        row_version: int | None,
        skip_automations: bool,
        build_events: EventBuilder,
    ) -> LeadRead:
        changed = {key: value for key, value in values.items() if getattr(lead, key) != value}
        if not changed:
            return self._to_read(session, lead)

        before = lead_snapshot(lead)
        before_read = self._to_read(session, lead).model_dump(mode="json")

        conditions = [CRMLead.id == lead.id, CRMLead.tenant_id == lead.tenant_id, CRMLead.deleted_at.is_(None)]
        if row_version is not None:
            conditions.append(CRMLead.row_version == row_version)
        result = session.execute(
            update(CRMLead)
            .where(and_(*conditions))
            .values(**changed, updated_at=utcnow(), row_version=CRMLead.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.refresh(lead)
        after = lead_snapshot(lead)
        updated = self._to_read(session, lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action=action,
            before=before_read,
            after=updated.model_dump(mode="json"),
            tenant_id=lead.tenant_id,
            correlation_id=actor_user.correlation_id,
        )

        outbox_rows = []
        if not skip_automations:
            outbox_rows = [enqueue_event(session, event) for event in build_events(actor_user, before, after)]

        events.publish(
            events.build_envelope(
                f"crm.lead.{action}",
                {"lead_id": str(lead.id), "changed": sorted(changed), "skip_automations": skip_automations},
                tenant_id=lead.tenant_id,
            )
        )
        session.commit()
        announce_enqueued(outbox_rows)
        return updated
