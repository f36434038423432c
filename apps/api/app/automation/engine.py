from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from app.automation.actions import ActionExecutor, EvaluationState
from app.automation.conditions import condition_matches
from app.automation.errors import AutomationConfigError
from app.automation.ports import LeadStore, RuleRepository, StageDirectory, TenantResolver
from app.automation.schemas import AutomationRuleRecord, DomainEvent
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.metrics import observe_action, observe_evaluation_duration, observe_rule_evaluation
from app.otel import annotate_span, get_tracer

logger = logging.getLogger("app.automation")


class RuleEngine:
    """Evaluates the tenant's active rules for one domain event.

    Rules run one after another in load order and the actions of a matching rule
    run strictly in list order, each awaited before the next. A failing action
    stops the rest of its rule; later rules still run. Nothing raised by a rule
    or an action reaches the caller.
    """

    def __init__(
        self,
        *,
        rules: RuleRepository,
        leads: LeadStore,
        stages: StageDirectory,
        tenants: TenantResolver,
        executor: ActionExecutor,
    ) -> None:
        self.rules = rules
        self.leads = leads
        self.stages = stages
        self.tenants = tenants
        self.executor = executor
        self._tracer = get_tracer("app.automation")

    async def evaluate(self, event: DomainEvent) -> None:
        token = None
        if not get_correlation_id():
            token = set_correlation_id(str(uuid.uuid4()))
        started = time.perf_counter()
        try:
            with self._tracer.start_as_current_span("automation.evaluate") as span:
                annotate_span(span, event_type=event.type, lead_id=event.lead.id)
                await self._evaluate(event, span)
        finally:
            observe_evaluation_duration(event.type, time.perf_counter() - started)
            if token is not None:
                reset_correlation_id(token)

    async def _evaluate(self, event: DomainEvent, span: Any) -> None:
        tenant_id = self.tenants.tenant_of(event.lead)
        if not tenant_id:
            logger.warning(
                "automation.evaluate.skipped",
                extra={"event_type": event.type, "lead_id": event.lead.id, "reason": "tenant_unresolved"},
            )
            return
        annotate_span(span, tenant_id=tenant_id)

        rules = self.rules.active_rules(tenant_id, event.type)
        if not rules:
            logger.debug("automation.evaluate.no_rules", extra={"event_type": event.type, "tenant_id": tenant_id})
            return

        current = self.leads.get_lead(event.lead.id, tenant_id)
        if current is None:
            logger.warning(
                "automation.evaluate.skipped",
                extra={"event_type": event.type, "lead_id": event.lead.id, "reason": "lead_not_found"},
            )
            return

        state = EvaluationState(tenant_id=tenant_id, lead=current)
        logger.info(
            "automation.evaluate.started",
            extra={"event_type": event.type, "lead_id": event.lead.id, "tenant_id": tenant_id},
        )
        for rule in rules:
            await self._evaluate_rule(rule, event, state)

    async def _evaluate_rule(self, rule: AutomationRuleRecord, event: DomainEvent, state: EvaluationState) -> None:
        log_fields = {"rule_id": rule.id, "event_type": event.type, "lead_id": state.lead.id}
        if not rule.active or rule.event_type != event.type:
            return

        with self._tracer.start_as_current_span("automation.rule") as span:
            annotate_span(span, rule_id=rule.id, event_type=event.type)
            try:
                matched = condition_matches(
                    rule.event_type, rule.condition, event, self.stages, tenant_id=state.tenant_id
                )
            except AutomationConfigError as exc:
                observe_rule_evaluation(event.type, "misconfigured")
                logger.error("automation.rule.misconfigured", extra={**log_fields, "error": str(exc)})
                return
            except Exception as exc:
                observe_rule_evaluation(event.type, "failed")
                logger.exception("automation.rule.failed", extra={**log_fields, "error": str(exc)})
                return

            if not matched:
                observe_rule_evaluation(event.type, "not_matched")
                logger.debug("automation.rule.skipped", extra={**log_fields, "reason": "condition_not_met"})
                return

            actions = rule.effective_actions()
            if not actions:
                observe_rule_evaluation(event.type, "misconfigured")
                logger.warning("automation.rule.misconfigured", extra={**log_fields, "reason": "no_actions"})
                return

            observe_rule_evaluation(event.type, "matched")
            for index, payload in enumerate(actions):
                if not await self._run_action(index, payload, rule, event, state):
                    logger.warning(
                        "automation.rule.aborted",
                        extra={**log_fields, "action_index": index, "reason": "action_failed"},
                    )
                    break

    async def _run_action(
        self,
        index: int,
        payload: Any,
        rule: AutomationRuleRecord,
        event: DomainEvent,
        state: EvaluationState,
    ) -> bool:
        action_type = payload.get("type") if isinstance(payload, dict) else None
        log_fields = {
            "rule_id": rule.id,
            "action_type": action_type,
            "action_index": index,
            "lead_id": state.lead.id,
        }
        metric_type = action_type if isinstance(action_type, str) else "unknown"

        with self._tracer.start_as_current_span("automation.action") as span:
            annotate_span(span, rule_id=rule.id, action_type=action_type, action_index=index)
            try:
                outcome = await self.executor.execute(payload, rule, event, state)
            except AutomationConfigError as exc:
                observe_action(metric_type, "config_error")
                logger.error("automation.action.config_error", extra={**log_fields, "error": str(exc)})
                return True
            except Exception as exc:
                observe_action(metric_type, "failed")
                logger.exception("automation.action.failed", extra={**log_fields, "error": str(exc)})
                return False

            annotate_span(span, outcome=outcome)
            observe_action(metric_type, outcome)
            logger.info("automation.action.completed", extra={**log_fields, "outcome": outcome})
            return True
