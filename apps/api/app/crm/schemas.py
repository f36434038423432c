from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    pipeline_id: UUID | None
    stage_id: UUID | None
    responsible_uuid: str | None
    name: str
    company: str | None
    email: str | None
    phone: str | None
    value: Decimal | None
    origin: str | None
    status: str
    sold_at: datetime | None
    sold_value: Decimal | None
    sale_notes: str | None
    lost_at: datetime | None
    loss_reason_category: str | None
    loss_reason_notes: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    company: str | None = None
    email: str | None = None
    phone: str | None = None
    value: Decimal | None = Field(default=None, ge=0)
    origin: str | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    responsible_uuid: str | None = None
    row_version: int | None = None

    @model_validator(mode="after")
    def validate_pipeline_move(self) -> LeadUpdate:
        if self.pipeline_id is not None and self.stage_id is None:
            raise ValueError("stage_id is required when pipeline_id changes")
        return self


class LeadStageChangeRequest(BaseModel):
    stage_id: UUID
    pipeline_id: UUID | None = None
    row_version: int | None = None


class LeadAssignResponsibleRequest(BaseModel):
    responsible_uuid: str = Field(min_length=1)
    row_version: int | None = None


class LeadMarkSoldRequest(BaseModel):
    sold_value: Decimal = Field(ge=0)
    sale_notes: str | None = None
    skip_automations: bool = False


class LeadMarkLostRequest(BaseModel):
    loss_reason_category: str = Field(min_length=1)
    loss_reason_notes: str | None = None
    skip_automations: bool = False


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    lead_id: UUID | None
    pipeline_id: UUID | None
    title: str
    description: str | None
    priority: str | None
    task_type_id: str | None
    assigned_to: str | None
    due_date: date | None
    due_time: str | None
    status: str
    created_by_automation_id: UUID | None
    created_at: datetime
