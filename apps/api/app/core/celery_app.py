from celery import Celery
from sqlalchemy.orm import Session

from app.automation.engine import RuleEngine
from app.automation.outbox import AutomationOutboxDispatcher
from app.automation.stores import build_rule_engine
from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("leadflow_api", broker=settings.redis_url, backend=settings.redis_url)


def build_worker_engine(session: Session) -> RuleEngine:
    # Pending prompts live in the API process, so nobody could answer one raised here.
    # Prompting actions resolve as cancelled; interactive rules need AUTO_RUN_AUTOMATION_JOBS.
    return build_rule_engine(session, prompts=None)


automation_outbox_dispatcher = AutomationOutboxDispatcher(build_worker_engine)


@celery_app.task(name="app.tasks.dispatch_automation_outbox")
def dispatch_automation_outbox(limit: int | None = None) -> dict[str, int]:
    session = SessionLocal()
    try:
        processed = automation_outbox_dispatcher.run_pending(session, limit=limit)
        counts: dict[str, int] = {}
        for row in processed:
            counts[row.status] = counts.get(row.status, 0) + 1
        return counts
    finally:
        session.close()
