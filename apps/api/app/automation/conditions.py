from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ValidationError

from app.automation.errors import AutomationConfigError
from app.automation.ports import StageDirectory
from app.automation.schemas import (
    CONDITION_MODELS,
    LeadMarkedLostEvent,
    LeadMarkedSoldEvent,
    LeadResponsibleAssignedEvent,
    LeadStageChangedEvent,
    LossCondition,
    ResponsibleAssignedCondition,
    SaleCondition,
    StageChangedCondition,
)


def parse_condition(event_type: str, payload: dict[str, Any] | None) -> BaseModel:
    model = CONDITION_MODELS.get(event_type)
    if model is None:
        raise AutomationConfigError(f"unsupported event type: {event_type}", field="event_type")
    if payload is not None and not isinstance(payload, dict):
        raise AutomationConfigError("condition must be an object", field="condition")
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise AutomationConfigError(f"invalid condition: {exc.errors()[0]['msg']}", field="condition") from exc


def _allowed(candidates: list[str] | None, value: str | None) -> bool:
    if not candidates:
        return True
    return value in candidates


def _stage_changed(
    condition: StageChangedCondition, event: LeadStageChangedEvent, stages: StageDirectory, tenant_id: str
) -> bool:
    if condition.from_stage_id and condition.from_stage_id != event.previous_stage_id:
        return False
    if condition.to_stage_id and condition.to_stage_id != event.new_stage_id:
        return False
    if not _allowed(condition.from_pipeline_ids, event.lead.pipeline_id):
        return False
    if condition.to_pipeline_ids:
        target_pipeline = stages.pipeline_of(event.new_stage_id, tenant_id)
        if target_pipeline not in condition.to_pipeline_ids:
            return False
    return True


def condition_matches(
    event_type: str,
    condition_payload: dict[str, Any] | None,
    event: Any,
    stage_directory: StageDirectory,
    tenant_id: str | None = None,
) -> bool:
    """Whether ``event`` satisfies the rule condition.

    ``tenant_id`` is the tenant the engine resolved and scopes directory lookups;
    without it the tenant carried on the lead snapshot is used.
    """
    condition = parse_condition(event_type, condition_payload)
    if event.type != event_type:
        return False

    if isinstance(condition, StageChangedCondition) and isinstance(event, LeadStageChangedEvent):
        return _stage_changed(condition, event, stage_directory, tenant_id or event.lead.tenant_id or "")

    if isinstance(condition, LossCondition) and isinstance(event, LeadMarkedLostEvent):
        if condition.pipeline_id and condition.pipeline_id != event.lead.pipeline_id:
            return False
        return _allowed(condition.loss_reason_ids, event.loss_reason_category)

    if isinstance(condition, SaleCondition) and isinstance(event, LeadMarkedSoldEvent):
        return not condition.pipeline_id or condition.pipeline_id == event.lead.pipeline_id

    if isinstance(condition, ResponsibleAssignedCondition) and isinstance(event, LeadResponsibleAssignedEvent):
        if condition.pipeline_id and condition.pipeline_id != event.lead.pipeline_id:
            return False
        return _allowed(condition.responsible_uuids, event.new_responsible_uuid)

    return False
