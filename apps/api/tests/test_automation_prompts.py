from __future__ import annotations

import asyncio
from collections.abc import Generator
from typing import Any

import pytest

from app.automation.prompts import PendingPromptBroker, PromptBridge, ask_loss, ask_sale, ask_task_schedule
from app.automation.schemas import LossPrompt, SalePrompt, TaskSchedulePrompt
from app.context import reset_actor_user_id, set_actor_user_id
from app.core.config import get_settings


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_PROMPT_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_bridge_without_handler_resolves_to_none() -> None:
    bridge = PromptBridge()
    assert not bridge.registered
    assert asyncio.run(bridge.request("mark_sold", {"lead_id": "lead-1"})) is None


def test_bridge_returns_handler_answer() -> None:
    bridge = PromptBridge()
    seen: list[tuple[str, dict[str, Any]]] = []

    async def handler(kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        seen.append((kind, payload))
        return {"sold_value": 99}

    bridge.register(handler)
    assert asyncio.run(bridge.request("mark_sold", {"lead_id": "lead-1"})) == {"sold_value": 99}
    assert seen == [("mark_sold", {"lead_id": "lead-1"})]


def test_bridge_last_registration_wins() -> None:
    bridge = PromptBridge()

    async def first(kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        return {"from": "first"}

    async def second(kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        return {"from": "second"}

    bridge.register(first)
    bridge.register(second)
    assert asyncio.run(bridge.request("mark_lost", {})) == {"from": "second"}

    bridge.unregister(first)
    assert bridge.registered
    bridge.unregister()
    assert not bridge.registered


def test_bridge_handler_error_resolves_to_none() -> None:
    bridge = PromptBridge()

    async def broken(kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        raise RuntimeError("ui session closed")

    bridge.register(broken)
    assert asyncio.run(bridge.request("create_task", {})) is None


def test_bridge_timeout_resolves_to_none() -> None:
    bridge = PromptBridge(timeout_seconds=0.01)

    async def slow(kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        await asyncio.sleep(1)
        return {"sold_value": 1}

    bridge.register(slow)
    assert asyncio.run(bridge.request("mark_sold", {})) is None


def test_broker_without_actor_resolves_to_none() -> None:
    broker = PendingPromptBroker()
    assert asyncio.run(broker.request("mark_sold", {})) is None
    assert broker.list_for_actor("user-1") == []


def _with_actor(actor_user_id: str, coroutine_factory: Any) -> Any:
    async def runner() -> Any:
        token = set_actor_user_id(actor_user_id)
        try:
            return await coroutine_factory()
        finally:
            reset_actor_user_id(token)

    return asyncio.run(runner())


def test_broker_answer_resolves_pending_prompt() -> None:
    broker = PendingPromptBroker()

    async def scenario() -> tuple[Any, bool, bool]:
        waiter = asyncio.create_task(broker.request("mark_sold", {"lead_id": "lead-1"}))
        while not broker.list_for_actor("user-1"):
            await asyncio.sleep(0)
        pending = broker.list_for_actor("user-1")[0]
        assert pending.kind == "mark_sold"
        assert pending.payload == {"lead_id": "lead-1"}
        wrong_actor = broker.respond(pending.id, "user-2", {"sold_value": 1})
        accepted = broker.respond(pending.id, "user-1", {"sold_value": 10})
        return await waiter, wrong_actor, accepted

    answer, wrong_actor, accepted = _with_actor("user-1", scenario)

    assert wrong_actor is False
    assert accepted is True
    assert answer == {"sold_value": 10}
    assert broker.list_for_actor("user-1") == []


def test_broker_cancel_resolves_to_none() -> None:
    broker = PendingPromptBroker()

    async def scenario() -> Any:
        waiter = asyncio.create_task(broker.request("mark_lost", {}))
        while not broker.list_for_actor("user-1"):
            await asyncio.sleep(0)
        assert broker.cancel(broker.list_for_actor("user-1")[0].id, "user-1")
        return await waiter

    assert _with_actor("user-1", scenario) is None


def test_broker_timeout_drops_prompt() -> None:
    broker = PendingPromptBroker(timeout_seconds=0.01)

    async def scenario() -> Any:
        return await broker.request("create_task", {})

    assert _with_actor("user-1", scenario) is None
    assert broker.list_for_actor("user-1") == []


def test_prompts_are_scoped_per_actor() -> None:
    broker = PendingPromptBroker()

    async def scenario() -> tuple[int, int]:
        waiter = asyncio.create_task(broker.request("mark_sold", {}))
        while not broker.list_for_actor("user-1"):
            await asyncio.sleep(0)
        counts = (len(broker.list_for_actor("user-1")), len(broker.list_for_actor("user-2")))
        broker.cancel(broker.list_for_actor("user-1")[0].id, "user-1")
        await waiter
        return counts

    assert _with_actor("user-1", scenario) == (1, 0)


class StaticPrompts:
    def __init__(self, answer: dict[str, Any] | None) -> None:
        self.answer = answer

    async def request(self, kind: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        return self.answer


def test_typed_helpers_validate_answers() -> None:
    sale_prompt = SalePrompt(rule_id="r1", lead_id="lead-1")
    loss_prompt = LossPrompt(rule_id="r1", lead_id="lead-1")
    task_prompt = TaskSchedulePrompt(rule_id="r1", lead_id="lead-1")

    sale = asyncio.run(ask_sale(StaticPrompts({"sold_value": "150.5", "sale_notes": "ok"}), sale_prompt))
    assert sale is not None and sale.sold_value == 150.5

    assert asyncio.run(ask_sale(StaticPrompts({"sold_value": -1}), sale_prompt)) is None
    assert asyncio.run(ask_loss(StaticPrompts({"loss_reason_category": ""}), loss_prompt)) is None
    assert asyncio.run(ask_task_schedule(StaticPrompts({"due_date": "01/04/2026"}), task_prompt)) is None
    assert asyncio.run(ask_task_schedule(None, task_prompt)) is None

    schedule = asyncio.run(ask_task_schedule(StaticPrompts({"due_time": "08:15"}), task_prompt))
    assert schedule is not None and schedule.due_date is None and schedule.due_time == "08:15"
