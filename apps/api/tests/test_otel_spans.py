from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.automation.models import AutomationRule
from app.automation.outbox import AutomationOutboxDispatcher
from app.automation.stores import build_rule_engine
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMLead, CRMPipeline, CRMPipelineStage
from app.crm.service import ActorUser
from app.main import app
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.update",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_RUN_AUTOMATION_JOBS", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id="t1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def lead_ids(db_session: Session) -> dict[str, uuid.UUID]:
    pipeline = CRMPipeline(tenant_id="t1", name="Sales")
    db_session.add(pipeline)
    db_session.flush()
    first = CRMPipelineStage(pipeline_id=pipeline.id, name="New", position=0)
    second = CRMPipelineStage(pipeline_id=pipeline.id, name="Qualified", position=1)
    db_session.add_all([first, second])
    db_session.flush()
    lead = CRMLead(tenant_id="t1", name="OTel Lead", pipeline_id=pipeline.id, stage_id=first.id)
    rule = AutomationRule(
        tenant_id="t1",
        name="Qualified owner",
        event_type="lead_stage_changed",
        condition={"to_stage_id": str(second.id)},
        actions=[{"type": "assign_responsible", "responsible_uuid": "owner-2"}],
    )
    db_session.add_all([lead, rule])
    db_session.commit()
    return {"lead": lead.id, "S2": second.id, "rule": rule.id}


def test_request_span_contains_correlation_id(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    lead_ids: dict[str, uuid.UUID],
) -> None:
    response = client.get(f"/api/crm/leads/{lead_ids['lead']}", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_automation_spans_carry_rule_and_action(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
    lead_ids: dict[str, uuid.UUID],
) -> None:
    response = client.post(
        f"/api/crm/leads/{lead_ids['lead']}/stage",
        json={"stage_id": str(lead_ids["S2"])},
        headers={"X-Correlation-Id": "otel-job-corr-1"},
    )
    assert response.status_code == 200

    AutomationOutboxDispatcher(lambda session: build_rule_engine(session, prompts=None)).run_pending(db_session)

    spans = span_exporter.get_finished_spans()
    evaluate_spans = [span for span in spans if span.name == "automation.evaluate"]
    assert any(
        span.attributes.get("event_type") == "lead_stage_changed"
        and span.attributes.get("lead_id") == str(lead_ids["lead"])
        and span.attributes.get("tenant_id") == "t1"
        and span.attributes.get("correlation_id") == "otel-job-corr-1"
        for span in evaluate_spans
    )

    rule_spans = [span for span in spans if span.name == "automation.rule"]
    assert any(span.attributes.get("rule_id") == str(lead_ids["rule"]) for span in rule_spans)

    action_spans = [span for span in spans if span.name == "automation.action"]
    assert any(
        span.attributes.get("action_type") == "assign_responsible"
        and span.attributes.get("action_index") == 0
        and span.attributes.get("outcome") == "succeeded"
        for span in action_spans
    )
