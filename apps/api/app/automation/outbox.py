from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app import events
from app.automation.engine import RuleEngine
from app.automation.models import (
    OUTBOX_STATUS_FAILED,
    OUTBOX_STATUS_QUEUED,
    OUTBOX_STATUS_RUNNING,
    OUTBOX_STATUS_SUCCEEDED,
    AutomationOutboxEvent,
)
from app.automation.schemas import DomainEvent, parse_domain_event
from app.context import (
    get_correlation_id,
    reset_actor_user_id,
    reset_correlation_id,
    set_actor_user_id,
    set_correlation_id,
)
from app.core.config import get_settings
from app.metrics import observe_outbox_job

logger = logging.getLogger("app.automation.outbox")

OUTBOX_ENQUEUED_EVENT = "automation.outbox.enqueued"

EngineFactory = Callable[[Session], RuleEngine]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enqueue_event(session: Session, event: DomainEvent) -> AutomationOutboxEvent:
    """Stage ``event`` in the caller's transaction; it becomes visible when the caller commits."""
    row = AutomationOutboxEvent(
        tenant_id=event.lead.tenant_id,
        event_type=event.type,
        lead_id=event.lead.id,
        payload_json=event.model_dump_json(),
        actor_user_id=event.actor_user_id,
        correlation_id=get_correlation_id(),
    )
    session.add(row)
    session.flush()
    return row


def announce_enqueued(rows: list[AutomationOutboxEvent]) -> None:
    if not rows:
        return
    events.publish(
        events.build_envelope(
            OUTBOX_ENQUEUED_EVENT,
            {
                "outbox_ids": [str(row.id) for row in rows],
                "event_types": [row.event_type for row in rows],
                "lead_id": rows[0].lead_id,
            },
            tenant_id=rows[0].tenant_id,
        )
    )


class AutomationOutboxDispatcher:
    """Drains queued domain events into the rule engine, oldest first.

    A row is claimed by flipping it from Queued to Running, so two workers never
    evaluate the same row. Failed evaluations go back to Queued until the
    attempt budget is spent, then the row is marked Failed.
    """

    def __init__(self, engine_factory: EngineFactory) -> None:
        self.engine_factory = engine_factory

    def run_pending(self, session: Session, limit: int | None = None) -> list[AutomationOutboxEvent]:
        batch_size = limit or get_settings().automation_outbox_batch_size
        queued_ids = session.scalars(
            select(AutomationOutboxEvent.id)
            .where(AutomationOutboxEvent.status == OUTBOX_STATUS_QUEUED)
            .order_by(AutomationOutboxEvent.created_at.asc())
            .limit(batch_size)
        ).all()

        processed: list[AutomationOutboxEvent] = []
        for outbox_id in queued_ids:
            row = self.run_one(session, outbox_id)
            if row is not None:
                processed.append(row)
        return processed

    def _claim(self, session: Session, outbox_id: uuid.UUID) -> bool:
        result = session.execute(
            update(AutomationOutboxEvent)
            .where(
                and_(
                    AutomationOutboxEvent.id == outbox_id,
                    AutomationOutboxEvent.status == OUTBOX_STATUS_QUEUED,
                )
            )
            .values(
                status=OUTBOX_STATUS_RUNNING,
                attempts=AutomationOutboxEvent.attempts + 1,
                started_at=utcnow(),
            )
        )
        session.commit()
        return result.rowcount == 1

    def run_one(self, session: Session, outbox_id: uuid.UUID) -> AutomationOutboxEvent | None:
        settings = get_settings()
        row = session.get(AutomationOutboxEvent, outbox_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="outbox event not found")
        if row.status != OUTBOX_STATUS_QUEUED or not self._claim(session, outbox_id):
            return None

        session.refresh(row)
        event_type = row.event_type
        correlation_token = set_correlation_id(row.correlation_id or str(uuid.uuid4()))
        actor_token = set_actor_user_id(row.actor_user_id)
        started = time.perf_counter()
        final_status = OUTBOX_STATUS_FAILED

        try:
            event = parse_domain_event(json.loads(row.payload_json or "{}"))
            engine = self.engine_factory(session)
            asyncio.run(engine.evaluate(event))

            row = session.get(AutomationOutboxEvent, outbox_id)
            if row is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="outbox event not found")
            row.status = OUTBOX_STATUS_SUCCEEDED
            row.last_error = None
            row.processed_at = utcnow()
            session.add(row)
            session.commit()
            final_status = OUTBOX_STATUS_SUCCEEDED
            logger.info(
                "automation.outbox.processed",
                extra={"outbox_id": str(outbox_id), "event_type": event_type, "status": final_status},
            )
            return row
        except Exception as exc:
            session.rollback()
            row = session.get(AutomationOutboxEvent, outbox_id)
            if row is None:
                raise
            row.last_error = str(exc)[:2000]
            if row.attempts >= settings.automation_outbox_max_attempts:
                row.status = OUTBOX_STATUS_FAILED
                row.processed_at = utcnow()
            else:
                row.status = OUTBOX_STATUS_QUEUED
            session.add(row)
            session.commit()
            final_status = row.status
            logger.warning(
                "automation.outbox.failed",
                extra={
                    "outbox_id": str(outbox_id),
                    "event_type": event_type,
                    "status": final_status,
                    "attempt": row.attempts,
                    "max_attempts": settings.automation_outbox_max_attempts,
                    "error": str(exc),
                },
            )
            return row
        finally:
            observe_outbox_job(event_type=event_type, status=final_status, duration=time.perf_counter() - started)
            reset_actor_user_id(actor_token)
            reset_correlation_id(correlation_token)
