from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from app.automation.schemas import (
    LossAnswer,
    LossPrompt,
    SaleAnswer,
    SalePrompt,
    TaskScheduleAnswer,
    TaskSchedulePrompt,
)
from app.context import get_actor_user_id
from app.core.config import get_settings
from app.metrics import observe_prompt_request

logger = logging.getLogger("app.automation.prompts")

PromptHandler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]]
AnswerT = TypeVar("AnswerT", bound=BaseModel)


class PromptService(Protocol):
    async def request(self, kind: str, payload: dict[str, Any]) -> dict[str, Any] | None: ...


def _resolve_timeout(configured: float | None) -> float | None:
    timeout = configured if configured is not None else get_settings().automation_prompt_timeout_seconds
    if timeout is None or timeout <= 0:
        return None
    return timeout


class PromptBridge:
    """One registered handler per process; the last registration wins.

    A request resolves to ``None`` when nothing is registered, when the handler
    raises, or when it does not answer within the timeout.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._handler: PromptHandler | None = None
        self._timeout_seconds = timeout_seconds

    def register(self, handler: PromptHandler) -> None:
        self._handler = handler

    def unregister(self, handler: PromptHandler | None = None) -> None:
        if handler is None or handler is self._handler:
            self._handler = None

    @property
    def registered(self) -> bool:
        return self._handler is not None

    async def request(self, kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        handler = self._handler
        if handler is None:
            logger.info("automation.prompt.unhandled", extra={"prompt_kind": kind})
            return None

        timeout = _resolve_timeout(self._timeout_seconds)
        try:
            if timeout is None:
                return await handler(kind, payload)
            return await asyncio.wait_for(handler(kind, payload), timeout)
        except asyncio.TimeoutError:
            logger.warning("automation.prompt.timeout", extra={"prompt_kind": kind})
            return None
        except Exception as exc:
            logger.warning("automation.prompt.handler_failed", extra={"prompt_kind": kind, "error": str(exc)})
            return None


@dataclass
class PendingPrompt:
    id: str
    kind: str
    actor_user_id: str
    payload: dict[str, Any]
    created_at: datetime
    future: asyncio.Future = field(repr=False)
    loop: asyncio.AbstractEventLoop = field(repr=False)


def _settle(future: asyncio.Future, answer: dict[str, Any] | None) -> None:
    if not future.done():
        future.set_result(answer)


class PendingPromptBroker:
    """Prompts parked per acting user until that user answers or cancels them.

    The evaluation awaiting an answer usually runs on another thread than the
    HTTP request answering it, so answers are handed to the waiting loop with
    ``call_soon_threadsafe``.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._pending: dict[str, PendingPrompt] = {}

    async def request(self, kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        actor_user_id = get_actor_user_id()
        if not actor_user_id:
            logger.info("automation.prompt.no_actor", extra={"prompt_kind": kind})
            return None

        loop = asyncio.get_running_loop()
        prompt = PendingPrompt(
            id=str(uuid.uuid4()),
            kind=kind,
            actor_user_id=actor_user_id,
            payload=payload,
            created_at=datetime.now(timezone.utc),
            future=loop.create_future(),
            loop=loop,
        )
        with self._lock:
            self._pending[prompt.id] = prompt
        logger.info(
            "automation.prompt.pending",
            extra={"prompt_id": prompt.id, "prompt_kind": kind, "actor_user_id": actor_user_id},
        )

        timeout = _resolve_timeout(self._timeout_seconds)
        try:
            if timeout is None:
                return await prompt.future
            return await asyncio.wait_for(prompt.future, timeout)
        except asyncio.TimeoutError:
            logger.warning("automation.prompt.timeout", extra={"prompt_id": prompt.id, "prompt_kind": kind})
            return None
        finally:
            with self._lock:
                self._pending.pop(prompt.id, None)

    def list_for_actor(self, actor_user_id: str) -> list[PendingPrompt]:
        with self._lock:
            prompts = [prompt for prompt in self._pending.values() if prompt.actor_user_id == actor_user_id]
        return sorted(prompts, key=lambda prompt: prompt.created_at)

    def get(self, prompt_id: str) -> PendingPrompt | None:
        with self._lock:
            return self._pending.get(prompt_id)

    def respond(self, prompt_id: str, actor_user_id: str, answer: dict[str, Any]) -> bool:
        return self._settle(prompt_id, actor_user_id, answer)

    def cancel(self, prompt_id: str, actor_user_id: str) -> bool:
        return self._settle(prompt_id, actor_user_id, None)

    def _settle(self, prompt_id: str, actor_user_id: str, answer: dict[str, Any] | None) -> bool:
        with self._lock:
            prompt = self._pending.get(prompt_id)
            if prompt is None or prompt.actor_user_id != actor_user_id:
                return False
            self._pending.pop(prompt_id, None)
        prompt.loop.call_soon_threadsafe(_settle, prompt.future, answer)
        return True


prompt_broker = PendingPromptBroker()


async def _ask(
    prompts: PromptService | None,
    kind: str,
    prompt: BaseModel,
    answer_model: type[AnswerT],
) -> AnswerT | None:
    if prompts is None:
        observe_prompt_request(kind, "cancelled")
        return None

    raw = await prompts.request(kind, prompt.model_dump(mode="json"))
    if raw is None:
        observe_prompt_request(kind, "cancelled")
        logger.info("automation.prompt.cancelled", extra={"prompt_kind": kind})
        return None

    try:
        answer = answer_model.model_validate(raw)
    except ValidationError as exc:
        observe_prompt_request(kind, "invalid")
        logger.warning("automation.prompt.invalid_answer", extra={"prompt_kind": kind, "error": str(exc)})
        return None

    observe_prompt_request(kind, "answered")
    return answer


async def ask_task_schedule(prompts: PromptService | None, prompt: TaskSchedulePrompt) -> TaskScheduleAnswer | None:
    return await _ask(prompts, "create_task", prompt, TaskScheduleAnswer)


async def ask_sale(prompts: PromptService | None, prompt: SalePrompt) -> SaleAnswer | None:
    return await _ask(prompts, "mark_sold", prompt, SaleAnswer)


async def ask_loss(prompts: PromptService | None, prompt: LossPrompt) -> LossAnswer | None:
    return await _ask(prompts, "mark_lost", prompt, LossAnswer)
