from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.models import (
    OUTBOX_STATUS_FAILED,
    OUTBOX_STATUS_QUEUED,
    OUTBOX_STATUS_SUCCEEDED,
    AutomationOutboxEvent,
    AutomationRule,
)
from app.automation.outbox import OUTBOX_ENQUEUED_EVENT, AutomationOutboxDispatcher
from app.automation.prompts import prompt_broker
from app.automation.stores import SqlTaskStore, build_rule_engine
from app.context import get_actor_user_id, get_correlation_id, reset_correlation_id, set_correlation_id
from app.core import celery_app
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import CRMLead, CRMPipeline, CRMPipelineStage, CRMTask
from app.crm.schemas import LeadAssignResponsibleRequest, LeadStageChangeRequest, LeadUpdate
from app.crm.service import ActorUser, LeadService


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
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="user-1", tenant_id="t1", permissions={"crm.leads.read", "crm.leads.update"})


def _seed(session: Session, *, stage_key: str | None = "S1") -> dict[str, uuid.UUID]:
    sales = CRMPipeline(tenant_id="t1", name="Sales", position=0)
    onboarding = CRMPipeline(tenant_id="t1", name="Onboarding", position=1)
    session.add_all([sales, onboarding])
    session.flush()

    stages = {
        "S1": CRMPipelineStage(pipeline_id=sales.id, name="New", position=0),
        "S2": CRMPipelineStage(pipeline_id=sales.id, name="Proposal", position=1),
        "S3": CRMPipelineStage(pipeline_id=onboarding.id, name="Kickoff", position=0),
    }
    session.add_all(stages.values())
    session.flush()

    lead = CRMLead(
        tenant_id="t1",
        name="Acme Corp",
        email="buyer@acme.test",
        value=Decimal("1200.00"),
        pipeline_id=sales.id if stage_key else None,
        stage_id=stages[stage_key].id if stage_key else None,
    )
    session.add(lead)
    session.commit()

    ids = {key: stage.id for key, stage in stages.items()}
    ids.update({"P1": sales.id, "P2": onboarding.id, "lead": lead.id})
    return ids


def _add_rule(session: Session, event_type: str, condition: dict, actions: list[dict]) -> AutomationRule:
    rule = AutomationRule(
        tenant_id="t1",
        name=f"{event_type} rule",
        event_type=event_type,
        condition=condition,
        actions=actions,
    )
    session.add(rule)
    session.commit()
    return rule


def _outbox_rows(session: Session) -> list[AutomationOutboxEvent]:
    return list(session.scalars(select(AutomationOutboxEvent).order_by(AutomationOutboxEvent.created_at.asc())).all())


def _engine_without_prompts(session: Session):
    return build_rule_engine(session, prompts=None)


def test_stage_change_enqueues_event_in_same_commit(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)

    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    rows = _outbox_rows(db_session)
    assert len(rows) == 1
    assert rows[0].event_type == "lead_stage_changed"
    assert rows[0].status == OUTBOX_STATUS_QUEUED
    assert rows[0].tenant_id == "t1"
    assert rows[0].lead_id == str(ids["lead"])
    assert rows[0].actor_user_id == "user-1"

    announced = [item for item in events.published_events if item["event_type"] == OUTBOX_ENQUEUED_EVENT]
    assert len(announced) == 1
    assert announced[0]["payload"]["outbox_ids"] == [str(rows[0].id)]


def test_first_stage_assignment_is_not_a_stage_change(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session, stage_key=None)

    LeadService().update_lead(db_session, actor, ids["lead"], LeadUpdate(stage_id=ids["S1"]))

    assert _outbox_rows(db_session) == []
    lead = db_session.get(CRMLead, ids["lead"])
    assert lead is not None and lead.pipeline_id == ids["P1"]


def test_responsible_assignment_enqueues_event(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)
    service = LeadService()

    service.assign_responsible(db_session, actor, ids["lead"], LeadAssignResponsibleRequest(responsible_uuid="owner-1"))
    service.assign_responsible(db_session, actor, ids["lead"], LeadAssignResponsibleRequest(responsible_uuid="owner-1"))

    rows = _outbox_rows(db_session)
    assert [row.event_type for row in rows] == ["lead_responsible_assigned"]


def test_skip_automations_suppresses_outbox_rows(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)
    service = LeadService()

    service.mark_sold(db_session, actor, ids["lead"], 1500, "signed", skip_automations=True)
    assert _outbox_rows(db_session) == []

    other = _seed(db_session)
    service.mark_lost(db_session, actor, other["lead"], "price", None)
    rows = _outbox_rows(db_session)
    assert [row.event_type for row in rows] == ["lead_marked_lost"]


def test_dispatcher_runs_matching_rule_and_marks_row_succeeded(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)
    rule = _add_rule(
        db_session,
        "lead_stage_changed",
        {"to_stage_id": str(ids["S2"])},
        [
            {"type": "move_lead", "target_pipeline_id": str(ids["P2"]), "target_stage_id": str(ids["S3"])},
            {"type": "assign_responsible", "responsible_uuid": "owner-9"},
        ],
    )
    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    processed = AutomationOutboxDispatcher(_engine_without_prompts).run_pending(db_session)

    assert len(processed) == 1
    assert processed[0].status == OUTBOX_STATUS_SUCCEEDED
    assert processed[0].attempts == 1
    assert processed[0].processed_at is not None

    lead = db_session.get(CRMLead, ids["lead"])
    assert lead is not None
    assert lead.pipeline_id == ids["P2"]
    assert lead.stage_id == ids["S3"]
    assert lead.responsible_uuid == "owner-9"

    # Writes made by actions never enqueue further automation events.
    assert len(_outbox_rows(db_session)) == 1

    actions = [entry["action"] for entry in audit.entries_for("crm.lead", str(ids["lead"]))]
    assert "automation.action.move_lead" in actions
    assert "automation.action.assign_responsible" in actions
    move_entry = next(
        entry
        for entry in audit.audit_entries
        if entry["action"] == "automation.action.move_lead"
    )
    assert move_entry["after"]["rule_id"] == str(rule.id)

    assert AutomationOutboxDispatcher(_engine_without_prompts).run_pending(db_session) == []


def test_dispatcher_skips_rules_whose_condition_does_not_match(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)
    _add_rule(
        db_session,
        "lead_stage_changed",
        {"to_stage_id": str(ids["S1"])},
        [{"type": "assign_responsible", "responsible_uuid": "owner-9"}],
    )
    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    processed = AutomationOutboxDispatcher(_engine_without_prompts).run_pending(db_session)

    assert processed[0].status == OUTBOX_STATUS_SUCCEEDED
    lead = db_session.get(CRMLead, ids["lead"])
    assert lead is not None and lead.responsible_uuid is None


def test_create_task_in_fixed_mode_persists_tasks(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)
    _add_rule(
        db_session,
        "lead_marked_sold",
        {},
        [
            {
                "type": "create_task",
                "title": "Kickoff call",
                "task_count": 2,
                "due_date_mode": "fixed",
                "due_in_days": 1,
                "task_interval_days": 7,
                "due_time": "10:00",
            }
        ],
    )
    LeadService().mark_sold(db_session, actor, ids["lead"], 900, None)

    AutomationOutboxDispatcher(_engine_without_prompts).run_pending(db_session)

    tasks = LeadService().list_tasks(db_session, actor, ids["lead"])
    assert [task.title for task in tasks] == ["Kickoff call (1/2)", "Kickoff call (2/2)"]
    assert all(task.assigned_to == "user-1" for task in tasks)
    assert all(task.due_time == "10:00" for task in tasks)
    assert (tasks[1].due_date - tasks[0].due_date).days == 7


def test_failed_evaluation_is_retried_then_marked_failed(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOMATION_OUTBOX_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    ids = _seed(db_session)
    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    def broken_engine(session: Session):
        raise RuntimeError("rule store unavailable")

    dispatcher = AutomationOutboxDispatcher(broken_engine)

    first = dispatcher.run_pending(db_session)
    assert first[0].status == OUTBOX_STATUS_QUEUED
    assert first[0].attempts == 1
    assert first[0].last_error == "rule store unavailable"

    second = dispatcher.run_pending(db_session)
    assert second[0].status == OUTBOX_STATUS_FAILED
    assert second[0].attempts == 2
    assert second[0].processed_at is not None

    assert dispatcher.run_pending(db_session) == []
    failed = db_session.scalar(
        select(func.count()).select_from(AutomationOutboxEvent).where(AutomationOutboxEvent.status == OUTBOX_STATUS_FAILED)
    )
    assert failed == 1


def test_dispatcher_restores_request_context_of_enqueued_event(db_session: Session, actor: ActorUser) -> None:
    ids = _seed(db_session)
    token = set_correlation_id("corr-outbox")
    try:
        LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))
    finally:
        reset_correlation_id(token)

    assert _outbox_rows(db_session)[0].correlation_id == "corr-outbox"

    seen: dict[str, str | None] = {}

    def recording_engine(session: Session):
        seen["correlation_id"] = get_correlation_id()
        seen["actor_user_id"] = get_actor_user_id()
        return build_rule_engine(session, prompts=None)

    AutomationOutboxDispatcher(recording_engine).run_pending(db_session)

    assert seen == {"correlation_id": "corr-outbox", "actor_user_id": "user-1"}
    assert get_correlation_id() is None
    assert get_actor_user_id() is None


def test_celery_task_drains_outbox_with_its_own_session(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    ids = _seed(db_session)
    _add_rule(db_session, "lead_stage_changed", {}, [{"type": "assign_responsible", "responsible_uuid": "owner-2"}])
    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    worker_sessions = sessionmaker(bind=db_session.get_bind(), autocommit=False, autoflush=False)
    monkeypatch.setattr(celery_app, "SessionLocal", worker_sessions)

    assert celery_app.dispatch_automation_outbox() == {OUTBOX_STATUS_SUCCEEDED: 1}

    db_session.expire_all()
    lead = db_session.get(CRMLead, ids["lead"])
    assert lead is not None and lead.responsible_uuid == "owner-2"


def test_celery_worker_cancels_prompting_actions_without_waiting(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    ids = _seed(db_session)
    _add_rule(
        db_session,
        "lead_stage_changed",
        {},
        [
            {"type": "create_task", "title": "Confirm demo", "due_date_mode": "manual"},
            {"type": "mark_as_sold"},
            {"type": "assign_responsible", "responsible_uuid": "owner-3"},
        ],
    )
    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    asked: list[str] = []

    async def never_answered(kind: str, payload: dict) -> dict | None:
        asked.append(kind)
        return None

    monkeypatch.setattr(prompt_broker, "request", never_answered)
    worker_sessions = sessionmaker(bind=db_session.get_bind(), autocommit=False, autoflush=False)
    monkeypatch.setattr(celery_app, "SessionLocal", worker_sessions)

    assert celery_app.dispatch_automation_outbox() == {OUTBOX_STATUS_SUCCEEDED: 1}

    assert asked == []
    db_session.expire_all()
    lead = db_session.get(CRMLead, ids["lead"])
    assert lead is not None
    assert lead.status == "open"
    assert lead.responsible_uuid == "owner-3"
    assert db_session.scalar(select(func.count()).select_from(CRMTask)) == 0


def test_failed_task_series_rolls_back_and_later_rules_still_commit(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    ids = _seed(db_session)
    first_created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    db_session.add_all(
        [
            AutomationRule(
                tenant_id="t1",
                name="Follow-up series",
                event_type="lead_stage_changed",
                condition={},
                actions=[
                    {
                        "type": "create_task",
                        "title": "Follow up",
                        "task_count": 2,
                        "due_date_mode": "fixed",
                        "due_in_days": 1,
                        "task_interval_days": 1,
                    }
                ],
                created_at=first_created,
            ),
            AutomationRule(
                tenant_id="t1",
                name="Hand over",
                event_type="lead_stage_changed",
                condition={},
                actions=[{"type": "assign_responsible", "responsible_uuid": "owner-9"}],
                created_at=first_created + timedelta(minutes=1),
            ),
        ]
    )
    db_session.commit()
    LeadService().change_stage(db_session, actor, ids["lead"], LeadStageChangeRequest(stage_id=ids["S2"]))

    build_task = SqlTaskStore._build
    built: list[int] = []

    def second_task_violates_not_null(store: SqlTaskStore, fields: dict) -> CRMTask:
        built.append(1)
        task = build_task(store, fields)
        if len(built) == 2:
            task.tenant_id = None
        return task

    monkeypatch.setattr(SqlTaskStore, "_build", second_task_violates_not_null)

    processed = AutomationOutboxDispatcher(_engine_without_prompts).run_pending(db_session)

    assert [row.status for row in processed] == [OUTBOX_STATUS_SUCCEEDED]
    assert db_session.scalar(select(func.count()).select_from(CRMTask)) == 0
    lead = db_session.get(CRMLead, ids["lead"])
    assert lead is not None and lead.responsible_uuid == "owner-9"
    assert AutomationOutboxDispatcher(_engine_without_prompts).run_pending(db_session) == []
