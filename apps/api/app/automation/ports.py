from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from app.automation.schemas import AutomationRuleRecord, LeadSnapshot


@dataclass(frozen=True)
class StageRef:
    id: str
    pipeline_id: str
    name: str
    position: int = 0


@dataclass(frozen=True)
class CustomFieldDef:
    id: str
    name: str
    field_type: str
    pipeline_id: str | None = None


@dataclass(frozen=True)
class CustomFieldValueRef:
    field_id: str
    value: Any


class RuleRepository(Protocol):
    def active_rules(self, tenant_id: str, event_type: str) -> list[AutomationRuleRecord]: ...


class LeadStore(Protocol):
    def get_lead(self, lead_id: str, tenant_id: str) -> LeadSnapshot | None: ...

    def update_lead(
        self, lead_id: str, tenant_id: str, fields: dict[str, Any], *, skip_automations: bool = False
    ) -> LeadSnapshot: ...

    def mark_sold(
        self, lead_id: str, tenant_id: str, value: float, notes: str | None, *, skip_automations: bool = False
    ) -> LeadSnapshot: ...

    def mark_lost(
        self, lead_id: str, tenant_id: str, reason: str, notes: str | None, *, skip_automations: bool = False
    ) -> LeadSnapshot: ...


class StageDirectory(Protocol):
    def stages_of(self, pipeline_id: str, tenant_id: str) -> list[StageRef]: ...

    def pipeline_of(self, stage_id: str, tenant_id: str) -> str | None: ...


class TaskStore(Protocol):
    def create_task(self, fields: dict[str, Any]) -> str: ...

    def create_tasks(self, series: list[dict[str, Any]]) -> list[str]:
        """Creates a whole series atomically: either every task exists afterwards or none does."""
        ...


class CustomFieldStore(Protocol):
    def custom_fields_for(self, tenant_id: str, pipeline_id: str | None) -> list[CustomFieldDef]: ...

    def custom_values_for(self, tenant_id: str, lead_id: str) -> list[CustomFieldValueRef]: ...


class IdentityProvider(Protocol):
    def current_actor_id(self) -> str | None: ...


class TenantResolver(Protocol):
    def tenant_of(self, lead: LeadSnapshot) -> str | None: ...
