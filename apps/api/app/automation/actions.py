from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app import audit
from app.automation.due_dates import fixed_due, is_clock, local_now, parse_day_encoding, shift_due
from app.automation.errors import AutomationConfigError
from app.automation.ports import CustomFieldStore, IdentityProvider, LeadStore, TaskStore
from app.automation.prompts import PromptService, ask_loss, ask_sale, ask_task_schedule
from app.automation.schemas import (
    AssignResponsibleAction,
    AutomationAction,
    LEAD_STATUS_LOST,
    LEAD_STATUS_SOLD,
    AutomationRuleRecord,
    CallWebhookAction,
    CreateTaskAction,
    LeadSnapshot,
    LossPrompt,
    MarkAsLostAction,
    MarkAsSoldAction,
    MoveLeadAction,
    SalePrompt,
    TaskSchedulePrompt,
    parse_action,
)
from app.automation.webhooks import (
    WebhookDispatcher,
    build_webhook_payload,
    build_webhook_request,
    requested_custom_field_ids,
    validate_webhook_action,
)

logger = logging.getLogger("app.automation")

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_SKIPPED = "skipped"
OUTCOME_CANCELLED = "cancelled"


@dataclass
class EvaluationState:
    """Lead state shared by every rule and action of one evaluation."""

    tenant_id: str
    lead: LeadSnapshot


def _check_day_encoding(value: Any, field_name: str) -> None:
    try:
        parse_day_encoding(value)
    except ValueError as exc:
        raise AutomationConfigError(str(exc), field=field_name) from exc


def validate_action(action: AutomationAction | dict[str, Any]) -> AutomationAction:
    parsed = parse_action(action) if isinstance(action, dict) else action

    if isinstance(parsed, MoveLeadAction):
        if not parsed.target_pipeline_id or not parsed.target_stage_id:
            raise AutomationConfigError("move_lead requires target_pipeline_id and target_stage_id")
    elif isinstance(parsed, AssignResponsibleAction):
        if not parsed.responsible_uuid:
            raise AutomationConfigError("assign_responsible requires responsible_uuid", field="responsible_uuid")
    elif isinstance(parsed, CreateTaskAction):
        if not parsed.title or not parsed.title.strip():
            raise AutomationConfigError("create_task requires a title", field="title")
        if parsed.task_count < 1:
            raise AutomationConfigError("task_count must be at least 1", field="task_count")
        if parsed.due_time and not is_clock(parsed.due_time):
            raise AutomationConfigError("due_time must be HH:MM", field="due_time")
        _check_day_encoding(parsed.due_in_days, "due_in_days")
        _check_day_encoding(parsed.task_interval_days, "task_interval_days")
    elif isinstance(parsed, CallWebhookAction):
        validate_webhook_action(parsed)
    return parsed


class ActionExecutor:
    def __init__(
        self,
        *,
        leads: LeadStore,
        tasks: TaskStore,
        custom_fields: CustomFieldStore,
        identity: IdentityProvider,
        dispatcher: WebhookDispatcher,
        prompts: PromptService | None = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.leads = leads
        self.tasks = tasks
        self.custom_fields = custom_fields
        self.identity = identity
        self.dispatcher = dispatcher
        self.prompts = prompts
        self.clock = clock

    async def execute(self, payload: dict[str, Any], rule: AutomationRuleRecord, event: Any, state: EvaluationState) -> str:
        action = validate_action(payload)
        if isinstance(action, MoveLeadAction):
            outcome = self._apply_move_lead(action, rule, event, state)
        elif isinstance(action, AssignResponsibleAction):
            outcome = self._apply_assign_responsible(action, rule, event, state)
        elif isinstance(action, CreateTaskAction):
            outcome = await self._apply_create_task(action, rule, event, state)
        elif isinstance(action, MarkAsSoldAction):
            outcome = await self._apply_mark_as_sold(rule, event, state)
        elif isinstance(action, MarkAsLostAction):
            outcome = await self._apply_mark_as_lost(rule, event, state)
        else:
            outcome = await self._apply_call_webhook(action, rule, event, state)
        return outcome

    def _record(
        self,
        action_type: str,
        rule: AutomationRuleRecord,
        event: Any,
        state: EvaluationState,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            event.actor_user_id,
            "crm.lead",
            state.lead.id,
            f"automation.action.{action_type}",
            before,
            {**(after or {}), "rule_id": rule.id},
            tenant_id=state.tenant_id,
        )

    def _apply_move_lead(
        self, action: MoveLeadAction, rule: AutomationRuleRecord, event: Any, state: EvaluationState
    ) -> str:
        lead = state.lead
        if lead.pipeline_id == action.target_pipeline_id and lead.stage_id == action.target_stage_id:
            return OUTCOME_SKIPPED

        before = {"pipeline_id": lead.pipeline_id, "stage_id": lead.stage_id}
        state.lead = self.leads.update_lead(
            lead.id,
            state.tenant_id,
            {"pipeline_id": action.target_pipeline_id, "stage_id": action.target_stage_id},
            skip_automations=True,
        )
        self._record(
            "move_lead",
            rule,
            event,
            state,
            before,
            {"pipeline_id": state.lead.pipeline_id, "stage_id": state.lead.stage_id},
        )
        return OUTCOME_SUCCEEDED

    def _apply_assign_responsible(
        self, action: AssignResponsibleAction, rule: AutomationRuleRecord, event: Any, state: EvaluationState
    ) -> str:
        lead = state.lead
        if lead.responsible_uuid == action.responsible_uuid:
            return OUTCOME_SKIPPED

        before = {"responsible_uuid": lead.responsible_uuid}
        state.lead = self.leads.update_lead(
            lead.id,
            state.tenant_id,
            {"responsible_uuid": action.responsible_uuid},
            skip_automations=True,
        )
        self._record("assign_responsible", rule, event, state, before, {"responsible_uuid": state.lead.responsible_uuid})
        return OUTCOME_SUCCEEDED

    def _resolve_assignee(self, action: CreateTaskAction, event: Any, lead: LeadSnapshot) -> str | None:
        return action.assigned_to or event.actor_user_id or self.identity.current_actor_id() or lead.responsible_uuid

    async def _apply_create_task(
        self, action: CreateTaskAction, rule: AutomationRuleRecord, event: Any, state: EvaluationState
    ) -> str:
        lead = state.lead
        title = (action.title or "").strip()
        count = action.task_count
        assigned_to = self._resolve_assignee(action, event, lead)
        now = self.clock()

        if action.due_date_mode == "fixed" and action.due_in_days is not None:
            schedule: list[tuple[str | None, str | None]] = []
            for index in range(count):
                slot = fixed_due(now, action.due_in_days, action.task_interval_days, index, action.due_time)
                schedule.append((slot.due_date, slot.due_time))
        else:
            default_date: str | None = None
            default_time = action.due_time
            if action.due_in_days is not None:
                default_slot = fixed_due(now, action.due_in_days, 0, 0, action.due_time)
                default_date, default_time = default_slot.due_date, default_slot.due_time

            answer = await ask_task_schedule(
                self.prompts,
                TaskSchedulePrompt(
                    rule_id=rule.id,
                    lead_id=lead.id,
                    pipeline_id=lead.pipeline_id,
                    default_title=title,
                    default_priority=action.priority,
                    default_assigned_to=assigned_to,
                    default_due_date=default_date,
                    default_due_time=default_time,
                ),
            )
            if answer is None:
                return OUTCOME_CANCELLED

            confirmed_date = answer.due_date or default_date
            confirmed_time = answer.due_time or default_time
            if confirmed_date is None:
                schedule = [(None, confirmed_time)] * count
            else:
                schedule = []
                for index in range(count):
                    slot = shift_due(confirmed_date, confirmed_time, action.task_interval_days, index)
                    schedule.append((slot.due_date, slot.due_time))

        series = [
            {
                "tenant_id": state.tenant_id,
                "title": f"{title} ({index}/{count})" if count > 1 else title,
                "description": rule.description or None,
                "lead_id": lead.id,
                "pipeline_id": lead.pipeline_id,
                "priority": action.priority,
                "due_date": due_date,
                "due_time": due_time,
                "assigned_to": assigned_to,
                "task_type_id": action.task_type_id,
                "created_by_automation_id": rule.id,
            }
            for index, (due_date, due_time) in enumerate(schedule, start=1)
        ]
        task_ids = self.tasks.create_tasks(series)

        logger.info(
            "automation.tasks.created",
            extra={"rule_id": rule.id, "lead_id": lead.id, "task_count": len(task_ids)},
        )
        self._record("create_task", rule, event, state, None, {"task_ids": task_ids, "mode": action.due_date_mode})
        return OUTCOME_SUCCEEDED

    async def _apply_mark_as_sold(self, rule: AutomationRuleRecord, event: Any, state: EvaluationState) -> str:
        lead = state.lead
        if lead.status == LEAD_STATUS_SOLD:
            return OUTCOME_SKIPPED

        answer = await ask_sale(
            self.prompts,
            SalePrompt(rule_id=rule.id, lead_id=lead.id, lead_name=lead.name, estimated_value=lead.value),
        )
        if answer is None:
            return OUTCOME_CANCELLED

        before = {"status": lead.status}
        state.lead = self.leads.mark_sold(
            lead.id, state.tenant_id, answer.sold_value, answer.sale_notes, skip_automations=True
        )
        self._record(
            "mark_as_sold", rule, event, state, before, {"status": state.lead.status, "sold_value": answer.sold_value}
        )
        return OUTCOME_SUCCEEDED

    async def _apply_mark_as_lost(self, rule: AutomationRuleRecord, event: Any, state: EvaluationState) -> str:
        lead = state.lead
        if lead.status == LEAD_STATUS_LOST:
            return OUTCOME_SKIPPED

        answer = await ask_loss(
            self.prompts,
            LossPrompt(rule_id=rule.id, lead_id=lead.id, lead_name=lead.name, pipeline_id=lead.pipeline_id),
        )
        if answer is None:
            return OUTCOME_CANCELLED

        before = {"status": lead.status}
        state.lead = self.leads.mark_lost(
            lead.id,
            state.tenant_id,
            answer.loss_reason_category,
            answer.loss_reason_notes,
            skip_automations=True,
        )
        self._record(
            "mark_as_lost",
            rule,
            event,
            state,
            before,
            {"status": state.lead.status, "loss_reason_category": answer.loss_reason_category},
        )
        return OUTCOME_SUCCEEDED

    async def _apply_call_webhook(
        self, action: CallWebhookAction, rule: AutomationRuleRecord, event: Any, state: EvaluationState
    ) -> str:
        lead = state.lead
        custom_defs = []
        custom_values = []
        if requested_custom_field_ids(action.fields):
            custom_defs = self.custom_fields.custom_fields_for(state.tenant_id, lead.pipeline_id)
            custom_values = self.custom_fields.custom_values_for(state.tenant_id, lead.id)

        payload = build_webhook_payload(event.type, rule, lead, action.fields, custom_defs, custom_values, self.clock())
        status_code = await self.dispatcher.dispatch(build_webhook_request(action, payload), rule_id=rule.id)
        self._record("call_webhook", rule, event, state, None, {"url": action.url, "status_code": status_code})
        return OUTCOME_SUCCEEDED
