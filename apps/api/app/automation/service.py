from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit
from app.automation.actions import validate_action
from app.automation.conditions import parse_condition
from app.automation.errors import AutomationConfigError
from app.automation.models import AutomationRule
from app.automation.schemas import AutomationRuleCreate, AutomationRuleRead, AutomationRuleUpdate
from app.crm.service import ActorUser


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_DAY_OFFSET_FIELDS = ("due_in_days", "task_interval_days")


def _day_offsets_as_text(action: dict[str, Any]) -> dict[str, Any]:
    """Stores day offsets as text so the digits after the decimal point survive.

    A JSON number has already lost its trailing zeros by the time it is parsed,
    so fractional offsets must be sent as strings.
    """
    if not isinstance(action, dict) or action.get("type") != "create_task":
        return action
    normalized = dict(action)
    for field in _DAY_OFFSET_FIELDS:
        value = normalized.get(field)
        if value is None or isinstance(value, (bool, str)):
            continue
        if isinstance(value, float) and not value.is_integer():
            raise AutomationConfigError(
                f"{field} with a fraction must be sent as a string, e.g. \"2.10\"", field=field
            )
        if isinstance(value, (int, float)):
            normalized[field] = str(int(value))
    return normalized


class AutomationRuleService:
    entity_type = "automation.rule"

    def _tenant_of(self, actor_user: ActorUser) -> str:
        if not actor_user.tenant_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="tenant not resolved")
        return actor_user.tenant_id

    def _load_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRule:
        rule = session.scalar(
            select(AutomationRule).where(
                and_(
                    AutomationRule.id == rule_id,
                    AutomationRule.tenant_id == self._tenant_of(actor_user),
                    AutomationRule.deleted_at.is_(None),
                )
            )
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation rule not found")
        return rule

    def _to_read(self, rule: AutomationRule) -> AutomationRuleRead:
        actions = list(rule.actions or [])
        if not actions and rule.action:
            actions = [rule.action]
        return AutomationRuleRead(
            id=rule.id,
            tenant_id=rule.tenant_id,
            name=rule.name,
            description=rule.description,
            active=rule.active,
            event_type=rule.event_type,
            condition=dict(rule.condition or {}),
            actions=actions,
            created_by_user_id=rule.created_by_user_id,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
            row_version=rule.row_version,
        )

    def _validate(
        self, event_type: str, condition: dict[str, Any], actions: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        try:
            parse_condition(event_type, condition)
        except AutomationConfigError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": str(exc), "field": exc.field or "condition"},
            ) from exc

        normalized: list[dict[str, Any]] = []
        for index, action in enumerate(actions):
            try:
                normalized.append(_day_offsets_as_text(action))
                validate_action(action)
            except AutomationConfigError as exc:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail={"message": str(exc), "field": exc.field, "action_index": index},
                ) from exc
        return normalized

    def list_rules(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        event_type: str | None = None,
        active: bool | None = None,
    ) -> list[AutomationRuleRead]:
        stmt = select(AutomationRule).where(
            and_(AutomationRule.tenant_id == self._tenant_of(actor_user), AutomationRule.deleted_at.is_(None))
        )
        if event_type:
            stmt = stmt.where(AutomationRule.event_type == event_type)
        if active is not None:
            stmt = stmt.where(AutomationRule.active.is_(active))
        rules = session.scalars(stmt.order_by(AutomationRule.created_at.desc())).all()
        return [self._to_read(rule) for rule in rules]

    def get_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRuleRead:
        return self._to_read(self._load_rule(session, actor_user, rule_id))

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AutomationRuleCreate) -> AutomationRuleRead:
        actions = self._validate(dto.event_type, dto.condition, list(dto.actions or []))

        rule = AutomationRule(
            tenant_id=self._tenant_of(actor_user),
            name=dto.name.strip(),
            description=dto.description,
            active=dto.active,
            event_type=dto.event_type,
            condition=dto.condition,
            actions=actions,
            action=None,
            created_by_user_id=actor_user.user_id,
        )
        session.add(rule)
        session.flush()
        created = self._to_read(rule)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="automation.rule.created",
            before=None,
            after=created.model_dump(mode="json"),
            tenant_id=rule.tenant_id,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._to_read(rule)

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: AutomationRuleUpdate,
    ) -> AutomationRuleRead:
        rule = self._load_rule(session, actor_user, rule_id)
        if dto.row_version is not None and dto.row_version != rule.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        before = self._to_read(rule).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        condition = changes.get("condition", rule.condition or {})
        actions = changes.get("actions") or before["actions"]
        if "condition" in changes or "actions" in changes:
            actions = self._validate(rule.event_type, condition or {}, actions)

        if "name" in changes and changes["name"] is not None:
            rule.name = changes["name"].strip()
        if "description" in changes:
            rule.description = changes["description"]
        if changes.get("active") is not None:
            rule.active = changes["active"]
        if "condition" in changes:
            rule.condition = condition or {}
        if "actions" in changes:
            rule.actions = actions
            rule.action = None
        rule.row_version = rule.row_version + 1
        rule.updated_at = utcnow()
        session.flush()

        updated = self._to_read(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="automation.rule.updated",
            before=before,
            after=updated.model_dump(mode="json"),
            tenant_id=rule.tenant_id,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._to_read(rule)

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._load_rule(session, actor_user, rule_id)
        before = self._to_read(rule).model_dump(mode="json")
        rule.deleted_at = utcnow()
        rule.active = False
        rule.row_version = rule.row_version + 1
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="automation.rule.deleted",
            before=before,
            after=None,
            tenant_id=rule.tenant_id,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
