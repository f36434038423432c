from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.automation.actions import ActionExecutor
from app.automation.engine import RuleEngine
from app.automation.models import AutomationRule
from app.automation.ports import CustomFieldDef, CustomFieldValueRef, StageRef
from app.automation.prompts import PromptService, prompt_broker
from app.automation.schemas import AutomationRuleRecord, LeadSnapshot
from app.automation.webhooks import WebhookDispatcher
from app.context import get_actor_user_id
from app.crm.models import CRMCustomFieldDefinition, CRMCustomFieldValue, CRMLead, CRMPipeline, CRMPipelineStage, CRMTask
from app.crm.schemas import LeadUpdate
from app.crm.service import ActorUser, LeadService

SYSTEM_ACTOR_ID = "system"


def _uuid_or_none(value: Any) -> uuid.UUID | None:
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@contextmanager
def _rollback_on_error(session: Session) -> Iterator[None]:
    # A failed flush leaves the session unusable; later rules and the outbox commit share it.
    try:
        yield
    except Exception:
        session.rollback()
        raise


class SqlRuleRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def active_rules(self, tenant_id: str, event_type: str) -> list[AutomationRuleRecord]:
        rows = self.session.scalars(
            select(AutomationRule)
            .where(
                and_(
                    AutomationRule.tenant_id == tenant_id,
                    AutomationRule.event_type == event_type,
                    AutomationRule.active.is_(True),
                    AutomationRule.deleted_at.is_(None),
                )
            )
            .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
        ).all()
        return [AutomationRuleRecord.model_validate(row) for row in rows]


class ContextIdentityProvider:
    def current_actor_id(self) -> str | None:
        return get_actor_user_id()


class SqlLeadStore:
    """Lead store backed by the CRM lead service, acting as the current automation actor."""

    def __init__(self, session: Session, identity: ContextIdentityProvider | None = None) -> None:
        self.session = session
        self.identity = identity or ContextIdentityProvider()
        self.lead_service = LeadService()

    def _actor(self, tenant_id: str) -> ActorUser:
        return ActorUser(
            user_id=self.identity.current_actor_id() or SYSTEM_ACTOR_ID,
            tenant_id=tenant_id,
            permissions={"crm.leads.read", "crm.leads.update"},
        )

    def _lead_uuid(self, lead_id: str) -> uuid.UUID:
        parsed = _uuid_or_none(lead_id)
        if parsed is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return parsed

    def get_lead(self, lead_id: str, tenant_id: str) -> LeadSnapshot | None:
        parsed = _uuid_or_none(lead_id)
        if parsed is None:
            return None
        try:
            return self.lead_service.get_snapshot(self.session, self._actor(tenant_id), parsed)
        except HTTPException as exc:
            if exc.status_code == status.HTTP_404_NOT_FOUND:
                return None
            raise

    def update_lead(
        self, lead_id: str, tenant_id: str, fields: dict[str, Any], *, skip_automations: bool = False
    ) -> LeadSnapshot:
        actor = self._actor(tenant_id)
        parsed = self._lead_uuid(lead_id)
        with _rollback_on_error(self.session):
            self.lead_service.update_lead(
                self.session, actor, parsed, LeadUpdate(**fields), skip_automations=skip_automations
            )
        return self.lead_service.get_snapshot(self.session, actor, parsed)

    def mark_sold(
        self, lead_id: str, tenant_id: str, value: float, notes: str | None, *, skip_automations: bool = False
    ) -> LeadSnapshot:
        actor = self._actor(tenant_id)
        parsed = self._lead_uuid(lead_id)
        with _rollback_on_error(self.session):
            self.lead_service.mark_sold(self.session, actor, parsed, value, notes, skip_automations=skip_automations)
        return self.lead_service.get_snapshot(self.session, actor, parsed)

    def mark_lost(
        self, lead_id: str, tenant_id: str, reason: str, notes: str | None, *, skip_automations: bool = False
    ) -> LeadSnapshot:
        actor = self._actor(tenant_id)
        parsed = self._lead_uuid(lead_id)
        with _rollback_on_error(self.session):
            self.lead_service.mark_lost(self.session, actor, parsed, reason, notes, skip_automations=skip_automations)
        return self.lead_service.get_snapshot(self.session, actor, parsed)


class SqlStageDirectory:
    def __init__(self, session: Session) -> None:
        self.session = session

    def stages_of(self, pipeline_id: str, tenant_id: str) -> list[StageRef]:
        parsed = _uuid_or_none(pipeline_id)
        if parsed is None:
            return []
        stages = self.session.scalars(
            select(CRMPipelineStage)
            .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
            .where(
                and_(
                    CRMPipelineStage.pipeline_id == parsed,
                    CRMPipelineStage.deleted_at.is_(None),
                    CRMPipeline.tenant_id == tenant_id,
                )
            )
            .order_by(CRMPipelineStage.position.asc())
        ).all()
        return [
            StageRef(id=str(stage.id), pipeline_id=str(stage.pipeline_id), name=stage.name, position=stage.position)
            for stage in stages
        ]

    def pipeline_of(self, stage_id: str, tenant_id: str) -> str | None:
        parsed = _uuid_or_none(stage_id)
        if parsed is None:
            return None
        pipeline_id = self.session.scalar(
            select(CRMPipelineStage.pipeline_id)
            .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
            .where(and_(CRMPipelineStage.id == parsed, CRMPipeline.tenant_id == tenant_id))
        )
        return str(pipeline_id) if pipeline_id else None


class SqlTaskStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _build(self, fields: dict[str, Any]) -> CRMTask:
        due_date = fields.get("due_date")
        return CRMTask(
            tenant_id=fields["tenant_id"],
            lead_id=_uuid_or_none(fields.get("lead_id")),
            pipeline_id=_uuid_or_none(fields.get("pipeline_id")),
            title=fields["title"],
            description=fields.get("description"),
            priority=fields.get("priority"),
            task_type_id=fields.get("task_type_id"),
            assigned_to=fields.get("assigned_to"),
            due_date=date.fromisoformat(due_date) if due_date else None,
            due_time=fields.get("due_time"),
            created_by_automation_id=_uuid_or_none(fields.get("created_by_automation_id")),
        )

    def create_task(self, fields: dict[str, Any]) -> str:
        return self.create_tasks([fields])[0]

    def create_tasks(self, series: list[dict[str, Any]]) -> list[str]:
        tasks = [self._build(fields) for fields in series]
        with _rollback_on_error(self.session):
            self.session.add_all(tasks)
            self.session.commit()
        return [str(task.id) for task in tasks]


class SqlCustomFieldStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def custom_fields_for(self, tenant_id: str, pipeline_id: str | None) -> list[CustomFieldDef]:
        scope = CRMCustomFieldDefinition.pipeline_id.is_(None)
        parsed = _uuid_or_none(pipeline_id)
        if parsed is not None:
            scope = or_(scope, CRMCustomFieldDefinition.pipeline_id == parsed)
        definitions = self.session.scalars(
            select(CRMCustomFieldDefinition)
            .where(
                and_(
                    CRMCustomFieldDefinition.tenant_id == tenant_id,
                    CRMCustomFieldDefinition.is_active.is_(True),
                    scope,
                )
            )
            .order_by(CRMCustomFieldDefinition.position.asc())
        ).all()
        return [
            CustomFieldDef(
                id=str(item.id),
                name=item.name,
                field_type=item.field_type,
                pipeline_id=str(item.pipeline_id) if item.pipeline_id else None,
            )
            for item in definitions
        ]

    def custom_values_for(self, tenant_id: str, lead_id: str) -> list[CustomFieldValueRef]:
        parsed = _uuid_or_none(lead_id)
        if parsed is None:
            return []
        values = self.session.scalars(
            select(CRMCustomFieldValue).where(
                and_(CRMCustomFieldValue.tenant_id == tenant_id, CRMCustomFieldValue.lead_id == parsed)
            )
        ).all()
        return [CustomFieldValueRef(field_id=str(item.field_id), value=item.value) for item in values]


class LeadTenantResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def tenant_of(self, lead: LeadSnapshot) -> str | None:
        if lead.tenant_id:
            return lead.tenant_id
        parsed = _uuid_or_none(lead.id)
        if parsed is None:
            return None
        return self.session.scalar(select(CRMLead.tenant_id).where(CRMLead.id == parsed))


def build_rule_engine(
    session: Session,
    *,
    prompts: PromptService | None = prompt_broker,
    dispatcher: WebhookDispatcher | None = None,
) -> RuleEngine:
    identity = ContextIdentityProvider()
    leads = SqlLeadStore(session, identity)
    executor = ActionExecutor(
        leads=leads,
        tasks=SqlTaskStore(session),
        custom_fields=SqlCustomFieldStore(session),
        identity=identity,
        dispatcher=dispatcher or WebhookDispatcher(),
        prompts=prompts,
    )
    return RuleEngine(
        rules=SqlRuleRepository(session),
        leads=leads,
        stages=SqlStageDirectory(session),
        tenants=LeadTenantResolver(session),
        executor=executor,
    )
