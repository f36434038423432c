from __future__ import annotations

import asyncio
import json
from collections.abc import Generator
from datetime import datetime, timezone

import httpx
import pytest

from app.automation.errors import AutomationConfigError, WebhookDeliveryError
from app.automation.ports import CustomFieldDef, CustomFieldValueRef
from app.automation.schemas import AutomationRuleRecord, CallWebhookAction, LeadSnapshot, WebhookRequest
from app.automation.webhooks import WebhookDispatcher, build_webhook_payload, validate_webhook_action
from app.core.config import get_settings


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
EGRESS_URL = "https://egress.test/v1/webhooks/dispatch"


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def lead() -> LeadSnapshot:
    return LeadSnapshot(
        id="lead-1",
        tenant_id="t1",
        name="Acme Corp",
        email="buyer@acme.test",
        value=900.0,
        status="open",
        pipeline_id="P1",
        stage_id="S1",
        created_at=datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc),
    )


@pytest.fixture()
def rule() -> AutomationRuleRecord:
    return AutomationRuleRecord(id="rule-1", tenant_id="t1", name="Send to ERP", event_type="lead_marked_sold")


def _request() -> WebhookRequest:
    return WebhookRequest(url="https://hooks.test/in", method="POST", headers={"X-Key": "1"}, payload={"a": 1})


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_payload_contains_only_selected_standard_fields(lead: LeadSnapshot, rule: AutomationRuleRecord) -> None:
    payload = build_webhook_payload("lead_marked_sold", rule, lead, ["name", "created_at", "value"], [], [], NOW)

    assert payload == {
        "event_type": "lead_marked_sold",
        "automation_name": "Send to ERP",
        "timestamp": "2026-03-10T12:00:00+00:00",
        "lead": {"name": "Acme Corp", "created_at": "2026-03-01T08:30:00+00:00", "value": 900.0},
    }
    assert "custom_fields" not in payload


def test_payload_custom_fields_keyed_by_definition_name(lead: LeadSnapshot, rule: AutomationRuleRecord) -> None:
    definitions = [
        CustomFieldDef(id="cf-1", name="Budget", field_type="number"),
        CustomFieldDef(id="cf-2", name="Segment", field_type="text"),
    ]
    values = [CustomFieldValueRef(field_id="cf-1", value="5000")]

    payload = build_webhook_payload(
        "lead_marked_sold",
        rule,
        lead,
        ["email", "custom_fields.cf-1", "custom_fields.cf-2", "custom_fields.cf-missing"],
        definitions,
        values,
        NOW,
    )

    assert payload["lead"] == {"email": "buyer@acme.test"}
    assert payload["custom_fields"] == {"Budget": "5000", "Segment": None}


@pytest.mark.parametrize(
    "action",
    [
        {"type": "call_webhook", "url": None, "fields": ["name"]},
        {"type": "call_webhook", "url": "hooks.test/in", "fields": ["name"]},
        {"type": "call_webhook", "url": "https://hooks.test/in", "fields": []},
        {"type": "call_webhook", "url": "https://hooks.test/in", "method": "DELETE", "fields": ["name"]},
        {"type": "call_webhook", "url": "https://hooks.test/in", "fields": ["custom_fields."]},
    ],
)
def test_invalid_webhook_configuration(action: dict) -> None:
    with pytest.raises(AutomationConfigError):
        validate_webhook_action(CallWebhookAction.model_validate(action))


def test_dispatch_posts_to_egress_with_service_token() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    dispatcher = WebhookDispatcher(
        egress_url=EGRESS_URL,
        egress_token="svc-token",
        transport=httpx.MockTransport(handler),
    )
    status_code = asyncio.run(dispatcher.dispatch(_request(), rule_id="rule-1"))

    assert status_code == 202
    assert len(captured) == 1
    sent = captured[0]
    assert str(sent.url) == EGRESS_URL
    assert sent.method == "POST"
    assert sent.headers["authorization"] == "Bearer svc-token"
    assert json.loads(sent.content) == {
        "url": "https://hooks.test/in",
        "method": "POST",
        "headers": {"X-Key": "1"},
        "payload": {"a": 1},
    }


def test_dispatch_retries_server_errors_with_backoff() -> None:
    statuses = iter([503, 429, 200])
    sleep = SleepRecorder()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    dispatcher = WebhookDispatcher(
        egress_url=EGRESS_URL,
        egress_token="svc-token",
        max_attempts=3,
        backoff_base_seconds=0.5,
        backoff_max_seconds=8,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
    )

    assert asyncio.run(dispatcher.dispatch(_request(), rule_id="rule-1")) == 200
    assert sleep.delays == [0.5, 1.0]


def test_dispatch_retries_transport_errors_then_fails() -> None:
    sleep = SleepRecorder()
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("egress unreachable", request=request)

    dispatcher = WebhookDispatcher(
        egress_url=EGRESS_URL,
        egress_token="svc-token",
        max_attempts=4,
        backoff_base_seconds=1,
        backoff_max_seconds=3,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
    )

    with pytest.raises(WebhookDeliveryError) as exc_info:
        asyncio.run(dispatcher.dispatch(_request(), rule_id="rule-1"))

    assert calls["count"] == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.status_code is None
    assert sleep.delays == [1, 2, 3]


def test_dispatch_does_not_retry_client_errors() -> None:
    sleep = SleepRecorder()
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, json={"detail": "url not allowed"})

    dispatcher = WebhookDispatcher(
        egress_url=EGRESS_URL,
        egress_token="svc-token",
        max_attempts=3,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
    )

    with pytest.raises(WebhookDeliveryError) as exc_info:
        asyncio.run(dispatcher.dispatch(_request()))

    assert calls["count"] == 1
    assert exc_info.value.status_code == 400
    assert sleep.delays == []


def test_dispatcher_reads_defaults_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_EGRESS_URL", "https://proxy.internal/dispatch")
    monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "5")
    get_settings.cache_clear()

    dispatcher = WebhookDispatcher()
    assert dispatcher.egress_url == "https://proxy.internal/dispatch"
    assert dispatcher.max_attempts == 5
