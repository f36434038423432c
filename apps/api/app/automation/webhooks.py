from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from typing import Any

import httpx

from app.automation.errors import AutomationConfigError, WebhookDeliveryError
from app.automation.ports import CustomFieldDef, CustomFieldValueRef
from app.automation.schemas import AutomationRuleRecord, CallWebhookAction, LeadSnapshot, WebhookRequest
from app.core.config import get_settings
from app.metrics import observe_webhook_attempt
from app.otel import annotate_span, get_tracer

logger = logging.getLogger("app.automation.webhooks")

URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
CUSTOM_FIELD_PREFIX = "custom_fields."
STANDARD_LEAD_FIELDS: tuple[str, ...] = (
    "id",
    "name",
    "company",
    "email",
    "phone",
    "value",
    "origin",
    "status",
    "pipeline_id",
    "stage_id",
    "responsible_uuid",
    "created_at",
    "sold_value",
    "sale_notes",
    "loss_reason_category",
    "loss_reason_notes",
)
_RETRYABLE_STATUS = {429}


def validate_webhook_action(action: CallWebhookAction) -> None:
    if not action.url or not URL_PATTERN.match(action.url.strip()):
        raise AutomationConfigError("webhook url must start with http:// or https://", field="url")
    if action.method.upper() not in {"GET", "POST"}:
        raise AutomationConfigError(f"unsupported webhook method: {action.method}", field="method")
    if not action.fields:
        raise AutomationConfigError("webhook must select at least one field", field="fields")
    for name in action.fields:
        if name.startswith(CUSTOM_FIELD_PREFIX):
            if not name[len(CUSTOM_FIELD_PREFIX) :]:
                raise AutomationConfigError("custom field reference is missing its id", field="fields")
        elif name not in STANDARD_LEAD_FIELDS:
            raise AutomationConfigError(f"unknown lead field: {name}", field="fields")


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def requested_custom_field_ids(fields: list[str]) -> list[str]:
    return [name[len(CUSTOM_FIELD_PREFIX) :] for name in fields if name.startswith(CUSTOM_FIELD_PREFIX)]


def build_webhook_payload(
    event_type: str,
    rule: AutomationRuleRecord,
    lead: LeadSnapshot,
    fields: list[str],
    custom_defs: list[CustomFieldDef],
    custom_values: list[CustomFieldValueRef],
    now: datetime,
) -> dict[str, Any]:
    lead_data = {name: _json_value(getattr(lead, name, None)) for name in fields if name in STANDARD_LEAD_FIELDS}
    payload: dict[str, Any] = {
        "event_type": event_type,
        "automation_name": rule.name,
        "timestamp": now.isoformat(),
        "lead": lead_data,
    }

    custom_ids = requested_custom_field_ids(fields)
    if custom_ids:
        definitions = {definition.id: definition for definition in custom_defs}
        values = {item.field_id: item.value for item in custom_values}
        payload["custom_fields"] = {
            definitions[field_id].name: _json_value(values.get(field_id))
            for field_id in custom_ids
            if field_id in definitions
        }
    return payload


def build_webhook_request(action: CallWebhookAction, payload: dict[str, Any]) -> WebhookRequest:
    headers = {header.key.strip(): header.value for header in action.headers if header.key.strip()}
    return WebhookRequest(
        url=(action.url or "").strip(),
        method=action.method.upper(),
        headers=headers,
        payload=payload,
    )


class WebhookDispatcher:
    """Delivers webhook requests through the authenticated egress proxy.

    Transport errors, 429 and 5xx answers are retried with capped exponential
    backoff; any other non-2xx answer fails immediately.
    """

    def __init__(
        self,
        *,
        egress_url: str | None = None,
        egress_token: str | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.egress_url = egress_url or settings.webhook_egress_url
        self.egress_token = egress_token if egress_token is not None else settings.webhook_egress_token
        self.timeout_seconds = timeout_seconds or settings.webhook_timeout_seconds
        self.max_attempts = max(1, max_attempts or settings.webhook_max_attempts)
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.webhook_backoff_base_seconds
        )
        self.backoff_max_seconds = (
            backoff_max_seconds if backoff_max_seconds is not None else settings.webhook_backoff_max_seconds
        )
        self._transport = transport
        self._sleep = sleep
        self._tracer = get_tracer("app.automation.webhooks")

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.egress_token:
            headers["Authorization"] = f"Bearer {self.egress_token}"
        return headers

    async def dispatch(self, request: WebhookRequest, *, rule_id: str | None = None) -> int:
        body = request.model_dump(mode="json")
        with self._tracer.start_as_current_span("automation.webhook.dispatch") as span:
            annotate_span(span, rule_id=rule_id, method=request.method)
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                last_status: int | None = None
                last_error = ""
                for attempt in range(1, self.max_attempts + 1):
                    try:
                        response = await client.post(self.egress_url, json=body, headers=self._headers())
                    except httpx.TransportError as exc:
                        last_status, last_error = None, str(exc) or exc.__class__.__name__
                        observe_webhook_attempt("transport_error")
                    else:
                        last_status = response.status_code
                        if response.is_success:
                            observe_webhook_attempt("succeeded")
                            annotate_span(span, status_code=last_status, attempts=attempt)
                            logger.info(
                                "automation.webhook.delivered",
                                extra={"rule_id": rule_id, "status_code": last_status, "attempt": attempt},
                            )
                            return last_status
                        last_error = f"HTTP {last_status}"
                        if last_status not in _RETRYABLE_STATUS and last_status < 500:
                            observe_webhook_attempt("rejected")
                            annotate_span(span, status_code=last_status, attempts=attempt)
                            raise WebhookDeliveryError(
                                f"webhook rejected by egress: {last_error}", status_code=last_status, attempts=attempt
                            )
                        observe_webhook_attempt("retryable_error")

                    if attempt < self.max_attempts:
                        logger.warning(
                            "automation.webhook.retry",
                            extra={
                                "rule_id": rule_id,
                                "attempt": attempt,
                                "max_attempts": self.max_attempts,
                                "status_code": last_status,
                                "error": last_error,
                            },
                        )
                        await self._sleep(self._backoff(attempt))

            annotate_span(span, status_code=last_status, attempts=self.max_attempts)
            raise WebhookDeliveryError(
                f"webhook delivery failed after {self.max_attempts} attempts: {last_error}",
                status_code=last_status,
                attempts=self.max_attempts,
            )
