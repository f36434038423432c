from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.models import AutomationRule
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMLead, CRMPipeline, CRMPipelineStage
from app.crm.service import ActorUser
from app.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("AUTO_RUN_AUTOMATION_JOBS", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            tenant_id="t1",
            permissions={"crm.leads.read", "crm.leads.update"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _seed_lead(session: Session) -> dict[str, uuid.UUID]:
    pipeline = CRMPipeline(tenant_id="t1", name="Metrics Pipeline")
    session.add(pipeline)
    session.flush()
    first = CRMPipelineStage(pipeline_id=pipeline.id, name="New", position=0)
    second = CRMPipelineStage(pipeline_id=pipeline.id, name="Won", position=1)
    session.add_all([first, second])
    session.flush()
    lead = CRMLead(tenant_id="t1", name="Metrics Lead", pipeline_id=pipeline.id, stage_id=first.id)
    session.add(lead)
    session.add(
        AutomationRule(
            tenant_id="t1",
            name="Metrics owner",
            event_type="lead_stage_changed",
            condition={},
            actions=[{"type": "assign_responsible", "responsible_uuid": "owner-m"}],
        )
    )
    session.commit()
    return {"lead": lead.id, "S2": second.id}


def test_metrics_endpoint_exposes_http_and_automation_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    ids = _seed_lead(db_session)
    moved = client.post(f"/api/crm/leads/{ids['lead']}/stage", json={"stage_id": str(ids["S2"])})
    assert moved.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_outbox_jobs_total" in body
    assert "automation_outbox_job_duration_seconds" in body
    assert "automation_actions_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}/stage"' in body
    assert 'event_type="lead_stage_changed"' in body
    assert 'action_type="assign_responsible"' in body


def test_metrics_require_role(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")
    assert response.status_code == 403
