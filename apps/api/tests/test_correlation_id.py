from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.models import AutomationOutboxEvent
from app.automation.outbox import AutomationOutboxDispatcher
from app.automation.stores import build_rule_engine
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMLead, CRMPipeline, CRMPipelineStage
from app.crm.service import ActorUser
from app.main import app


ALL_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.update",
    "crm.automations.read",
    "crm.automations.manage",
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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_RUN_AUTOMATION_JOBS", "false")
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


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
    lead = CRMLead(tenant_id="t1", name="Corr Lead", pipeline_id=pipeline.id, stage_id=first.id)
    db_session.add(lead)
    db_session.commit()
    return {"lead": lead.id, "pipeline": pipeline.id, "S1": first.id, "S2": second.id}


def _change_stage(client: TestClient, lead_ids: dict[str, uuid.UUID], correlation_id: str) -> None:
    response = client.post(
        f"/api/crm/leads/{lead_ids['lead']}/stage",
        json={"stage_id": str(lead_ids["S2"])},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/automations/rules/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, lead_ids: dict[str, uuid.UUID]) -> None:
    _change_stage(client, lead_ids, "corr-audit-1")

    lead_audits = audit.entries_for("crm.lead", str(lead_ids["lead"]))
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient, lead_ids: dict[str, uuid.UUID]) -> None:
    _change_stage(client, lead_ids, "corr-event-1")

    stage_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.change_stage"]
    assert stage_events
    assert stage_events[-1].get("correlation_id") == "corr-event-1"


def test_outbox_dispatch_keeps_request_correlation_id(
    client: TestClient,
    db_session: Session,
    lead_ids: dict[str, uuid.UUID],
) -> None:
    rule = client.post(
        "/api/automations/rules",
        json={
            "name": "Assign qualified leads",
            "event_type": "lead_stage_changed",
            "condition": {"to_stage_id": str(lead_ids["S2"])},
            "actions": [{"type": "assign_responsible", "responsible_uuid": "owner-4"}],
        },
    )
    assert rule.status_code == 201

    _change_stage(client, lead_ids, "corr-job-1")

    row = db_session.scalar(select(AutomationOutboxEvent))
    assert row is not None
    assert row.correlation_id == "corr-job-1"

    AutomationOutboxDispatcher(lambda session: build_rule_engine(session, prompts=None)).run_pending(db_session)

    action_audits = [
        entry for entry in audit.audit_entries if entry["action"] == "automation.action.assign_responsible"
    ]
    assert action_audits
    assert all(entry["correlation_id"] == "corr-job-1" for entry in action_audits)
