from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, get_args

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from app.automation.errors import AutomationConfigError


LEAD_STATUS_OPEN = "open"
LEAD_STATUS_SOLD = "sold"
LEAD_STATUS_LOST = "lost"

EventType = Literal[
    "lead_stage_changed",
    "lead_marked_sold",
    "lead_marked_lost",
    "lead_responsible_assigned",
]
EVENT_TYPES: tuple[str, ...] = get_args(EventType)

ActionType = Literal["move_lead", "assign_responsible", "create_task", "mark_as_sold", "mark_as_lost", "call_webhook"]
ACTION_TYPES: tuple[str, ...] = get_args(ActionType)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _opaque_id(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _opaque_id_list(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if item not in (None, "")]
    return value


OpaqueId = Annotated[str | None, BeforeValidator(_opaque_id)]
OpaqueIdList = Annotated[list[str] | None, BeforeValidator(_opaque_id_list)]


def _day_encoding_text(value: Any) -> Any:
    # Offsets keep the text the rule author typed: "2.10" and "2.1" encode different hour counts.
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("day offset must be a number")
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        text = value.strip().replace(",", ".")
        try:
            Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"invalid day offset: {value!r}") from exc
        return text
    raise ValueError("day offset must be a number")


DayEncoding = Annotated[str, BeforeValidator(_day_encoding_text)]


class LeadSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    tenant_id: OpaqueId = None
    name: str | None = None
    company: str | None = None
    email: str | None = None
    phone: str | None = None
    value: float | None = None
    origin: str | None = None
    status: str | None = None
    pipeline_id: OpaqueId = None
    stage_id: OpaqueId = None
    responsible_uuid: OpaqueId = None
    created_at: datetime | None = None
    sold_at: datetime | None = None
    sold_value: float | None = None
    sale_notes: str | None = None
    lost_at: datetime | None = None
    loss_reason_category: str | None = None
    loss_reason_notes: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, uuid.UUID) else value


class _LeadEventBase(BaseModel):
    lead: LeadSnapshot
    actor_user_id: OpaqueId = None
    occurred_at: datetime = Field(default_factory=utcnow)


class LeadStageChangedEvent(_LeadEventBase):
    type: Literal["lead_stage_changed"] = "lead_stage_changed"
    previous_stage_id: OpaqueId = None
    new_stage_id: str

    @field_validator("new_stage_id", mode="before")
    @classmethod
    def _coerce_stage(cls, value: Any) -> Any:
        return str(value) if isinstance(value, uuid.UUID) else value


class LeadMarkedSoldEvent(_LeadEventBase):
    type: Literal["lead_marked_sold"] = "lead_marked_sold"
    sold_value: float
    sale_notes: str | None = None


class LeadMarkedLostEvent(_LeadEventBase):
    type: Literal["lead_marked_lost"] = "lead_marked_lost"
    loss_reason_category: str
    loss_reason_notes: str | None = None


class LeadResponsibleAssignedEvent(_LeadEventBase):
    type: Literal["lead_responsible_assigned"] = "lead_responsible_assigned"
    previous_responsible_uuid: OpaqueId = None
    new_responsible_uuid: str

    @field_validator("new_responsible_uuid", mode="before")
    @classmethod
    def _coerce_responsible(cls, value: Any) -> Any:
        return str(value) if isinstance(value, uuid.UUID) else value


DomainEvent = Annotated[
    LeadStageChangedEvent | LeadMarkedSoldEvent | LeadMarkedLostEvent | LeadResponsibleAssignedEvent,
    Field(discriminator="type"),
]

_domain_event_adapter = TypeAdapter(DomainEvent)


def parse_domain_event(payload: dict[str, Any]) -> DomainEvent:
    return _domain_event_adapter.validate_python(payload)


class StageChangedCondition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    from_stage_id: OpaqueId = None
    to_stage_id: OpaqueId = None
    from_pipeline_ids: OpaqueIdList = None
    to_pipeline_ids: OpaqueIdList = None


class SaleCondition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pipeline_id: OpaqueId = None


class LossCondition(SaleCondition):
    loss_reason_ids: OpaqueIdList = None


class ResponsibleAssignedCondition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pipeline_id: OpaqueId = None
    responsible_uuids: OpaqueIdList = None


CONDITION_MODELS: dict[str, type[BaseModel]] = {
    "lead_stage_changed": StageChangedCondition,
    "lead_marked_sold": SaleCondition,
    "lead_marked_lost": LossCondition,
    "lead_responsible_assigned": ResponsibleAssignedCondition,
}


class MoveLeadAction(BaseModel):
    type: Literal["move_lead"]
    target_pipeline_id: OpaqueId = None
    target_stage_id: OpaqueId = None


class AssignResponsibleAction(BaseModel):
    type: Literal["assign_responsible"]
    responsible_uuid: OpaqueId = None


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    title: str | None = None
    priority: str | None = None
    task_type_id: OpaqueId = None
    assigned_to: OpaqueId = None
    task_count: int = 1
    due_date_mode: Literal["fixed", "manual"] = "manual"
    due_in_days: DayEncoding | None = None
    due_time: str | None = None
    task_interval_days: DayEncoding = "0"


class MarkAsSoldAction(BaseModel):
    type: Literal["mark_as_sold"]


class MarkAsLostAction(BaseModel):
    type: Literal["mark_as_lost"]


class WebhookHeader(BaseModel):
    key: str
    value: str = ""


class CallWebhookAction(BaseModel):
    type: Literal["call_webhook"]
    url: str | None = None
    method: str = "POST"
    headers: list[WebhookHeader] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)


AutomationAction = Annotated[
    MoveLeadAction
    | AssignResponsibleAction
    | CreateTaskAction
    | MarkAsSoldAction
    | MarkAsLostAction
    | CallWebhookAction,
    Field(discriminator="type"),
]

_action_adapter = TypeAdapter(AutomationAction)


def parse_action(payload: Any) -> AutomationAction:
    if not isinstance(payload, dict):
        raise AutomationConfigError("action must be an object")
    action_type = payload.get("type")
    if action_type not in ACTION_TYPES:
        raise AutomationConfigError(f"unknown action type: {action_type!r}", field="type")
    try:
        return _action_adapter.validate_python(payload)
    except ValidationError as exc:
        raise AutomationConfigError(f"invalid {action_type} action: {exc.errors()[0]['msg']}") from exc


class AutomationRuleRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    active: bool = True
    event_type: EventType
    condition: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
    action: dict[str, Any] | None = None
    created_at: datetime | None = None

    @field_validator("id", "tenant_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return str(value) if isinstance(value, uuid.UUID) else value

    def effective_actions(self) -> list[dict[str, Any]]:
        if self.actions:
            return list(self.actions)
        if self.action:
            return [self.action]
        return []


PromptKind = Literal["create_task", "mark_sold", "mark_lost"]


class TaskSchedulePrompt(BaseModel):
    rule_id: str
    lead_id: str
    pipeline_id: str | None = None
    default_title: str | None = None
    default_priority: str | None = None
    default_assigned_to: str | None = None
    default_due_date: str | None = None
    default_due_time: str | None = None


class TaskScheduleAnswer(BaseModel):
    due_date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    due_time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class SalePrompt(BaseModel):
    rule_id: str
    lead_id: str
    lead_name: str | None = None
    estimated_value: float | None = None


class SaleAnswer(BaseModel):
    sold_value: float = Field(ge=0)
    sale_notes: str | None = None


class LossPrompt(BaseModel):
    rule_id: str
    lead_id: str
    lead_name: str | None = None
    pipeline_id: str | None = None


class LossAnswer(BaseModel):
    loss_reason_category: str = Field(min_length=1)
    loss_reason_notes: str | None = None


class WebhookRequest(BaseModel):
    url: str
    method: Literal["GET", "POST"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any]


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    active: bool = True
    event_type: EventType
    condition: dict[str, Any] = Field(default_factory=dict)
    actions: list[dict[str, Any]] | None = None
    action: dict[str, Any] | None = None

    @model_validator(mode="after")
    def normalize_actions(self) -> AutomationRuleCreate:
        if not self.actions:
            if self.action is None:
                raise ValueError("at least one action is required")
            self.actions = [self.action]
        self.action = None
        return self


class AutomationRuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    active: bool | None = None
    condition: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
    row_version: int | None = None

    @model_validator(mode="after")
    def validate_actions(self) -> AutomationRuleUpdate:
        if self.actions is not None and not self.actions:
            raise ValueError("at least one action is required")
        return self


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    name: str
    description: str | None
    active: bool
    event_type: EventType
    condition: dict[str, Any]
    actions: list[dict[str, Any]]
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class PendingPromptRead(BaseModel):
    id: str
    kind: PromptKind
    payload: dict[str, Any]
    created_at: datetime


class PromptResponseRequest(BaseModel):
    answer: dict[str, Any]
