"""
Unit tests for handler scopes and dispatch.
"""

from __future__ import annotations

import asyncio
import re

import pytest

from tgbot_runtime.context import Context
from tgbot_runtime.errors import BotError
from tgbot_runtime.events import Dispatcher
from tgbot_runtime.types import Update, UpdateType


def _message(update_id: int, text: str, chat_id: int = 1) -> Update:
    return Update.model_validate(
        {
            "update_id": update_id,
            "message": {
                "message_id": update_id,
                "date": 1700000000,
                "chat": {"id": chat_id, "type": "private"},
                "text": text,
            },
        }
    )


def _callback(update_id: int, data: str) -> Update:
    return Update.model_validate(
        {
            "update_id": update_id,
            "callback_query": {"id": f"cb{update_id}", "from": {"id": 7, "first_name": "Ann"}, "data": data},
        }
    )


def _recorder(fired: list[str], label: str):
    async def handler(ctx: Context) -> None:
        fired.append(label)

    return handler


# ============================================================
#  Priority and uniqueness
# ============================================================


@pytest.mark.asyncio
async def test_later_registration_wins() -> None:
    """'/start' goes to the later, more general rule."""
    dispatcher = Dispatcher()
    fired: list[str] = []
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: ctx.text == "/start", _recorder(fired, "A"))
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: (ctx.text or "").startswith("/"), _recorder(fired, "B"))

    scope = await dispatcher.dispatch(_message(1, "/start"))

    assert fired == ["B"]
    assert scope is dispatcher.scopes[1]


@pytest.mark.asyncio
async def test_at_most_one_handler_fires() -> None:
    dispatcher = Dispatcher()
    fired: list[str] = []
    for label in "ABCD":
        dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder(fired, label))

    await dispatcher.dispatch(_message(1, "anything"))
    await dispatcher.dispatch(_message(2, "again"))

    assert fired == ["D", "D"]


@pytest.mark.asyncio
async def test_falls_through_to_earlier_rule_when_later_does_not_match() -> None:
    dispatcher = Dispatcher()
    fired: list[str] = []
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder(fired, "fallback"))
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: ctx.text == "ping", _recorder(fired, "ping"))

    await dispatcher.dispatch(_message(1, "hello"))

    assert fired == ["fallback"]


@pytest.mark.asyncio
async def test_only_eligible_types_are_considered() -> None:
    dispatcher = Dispatcher()
    fired: list[str] = []
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder(fired, "message"))
    dispatcher.register(UpdateType.CALLBACK_QUERY, lambda ctx: True, _recorder(fired, "callback"))

    await dispatcher.dispatch(_callback(1, "yes"))
    await dispatcher.dispatch(_message(2, "hi"))

    assert fired == ["callback", "message"]


@pytest.mark.asyncio
async def test_unmatched_update_is_dropped() -> None:
    dispatcher = Dispatcher()
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: False, _recorder([], "never"))

    assert await dispatcher.dispatch(_message(1, "hi")) is None
    assert await dispatcher.dispatch(_callback(2, "x")) is None


# ============================================================
#  Gates and patterns
# ============================================================


@pytest.mark.asyncio
async def test_gate_claims_update_silently() -> None:
    dispatcher = Dispatcher()
    fired: list[str] = []
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder(fired, "general"))
    gate = dispatcher.register(UpdateType.MESSAGE, lambda ctx: ctx.text == "42", is_gate=True, name="gate")

    assert await dispatcher.dispatch(_message(1, "42")) is gate
    assert fired == []

    await dispatcher.dispatch(_message(2, "other"))
    assert fired == ["general"]


@pytest.mark.asyncio
async def test_gate_below_a_matching_handler_does_not_block_it() -> None:
    dispatcher = Dispatcher()
    fired: list[str] = []
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, is_gate=True)
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder(fired, "newer"))

    await dispatcher.dispatch(_message(1, "hi"))

    assert fired == ["newer"]


@pytest.mark.asyncio
async def test_pattern_matches_exposed_to_handler() -> None:
    dispatcher = Dispatcher()
    captured: list[list[str]] = []
    pattern = re.compile(r"(\d+)")

    async def handler(ctx: Context) -> None:
        captured.append([m.group(1) for m in ctx.matches])

    dispatcher.register(
        UpdateType.MESSAGE,
        lambda ctx: pattern.search(ctx.text or "") is not None,
        handler,
        pattern=pattern,
    )

    await dispatcher.dispatch(_message(1, "order 12 and 34"))

    assert captured == [["12", "34"]]


# ============================================================
#  Errors
# ============================================================


@pytest.mark.asyncio
async def test_handler_error_propagates_without_hook() -> None:
    dispatcher = Dispatcher()

    async def broken(ctx: Context) -> None:
        raise RuntimeError("boom")

    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, broken)

    with pytest.raises(RuntimeError):
        await dispatcher.dispatch(_message(1, "hi"))


@pytest.mark.asyncio
async def test_handler_error_goes_to_hook_with_context() -> None:
    dispatcher = Dispatcher()
    errors: list[BotError] = []
    fired: list[str] = []

    async def broken(ctx: Context) -> None:
        raise RuntimeError("boom")

    async def on_error(err: BotError) -> None:
        errors.append(err)

    dispatcher.on_error(on_error)
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder(fired, "older"))
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, broken)

    await dispatcher.dispatch(_message(7, "hi"))

    assert fired == []
    assert len(errors) == 1
    assert isinstance(errors[0].error, RuntimeError)
    assert errors[0].context is not None
    assert errors[0].context.update.update_id == 7


# ============================================================
#  Registry changes
# ============================================================


@pytest.mark.asyncio
async def test_deregister_by_name_and_predicate() -> None:
    dispatcher = Dispatcher()
    noop = _recorder([], "x")
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, noop, name="menu-a")
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, noop, name="menu-b")
    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, noop, name="other")

    assert dispatcher.deregister("other") == 1
    assert dispatcher.deregister_where(lambda s: (s.name or "").startswith("menu-")) == 2
    assert dispatcher.scopes == ()


@pytest.mark.asyncio
async def test_handler_may_change_registry_mid_dispatch() -> None:
    dispatcher = Dispatcher()
    fired: list[str] = []

    async def self_removing(ctx: Context) -> None:
        fired.append("once")
        dispatcher.deregister("once")
        dispatcher.register(UpdateType.MESSAGE, lambda c: True, _recorder(fired, "added"))

    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, self_removing, name="once")

    await dispatcher.dispatch(_message(1, "a"))
    await dispatcher.dispatch(_message(2, "b"))

    assert fired == ["once", "added"]
    assert [s.name for s in dispatcher.scopes] == [None]


@pytest.mark.asyncio
async def test_dispatch_is_serialised() -> None:
    """A second update waits for the first handler to finish."""
    dispatcher = Dispatcher()
    events: list[str] = []
    release = asyncio.Event()

    async def slow(ctx: Context) -> None:
        events.append(f"start {ctx.update.update_id}")
        if ctx.update.update_id == 1:
            await release.wait()
        events.append(f"end {ctx.update.update_id}")

    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, slow)
    first = asyncio.create_task(dispatcher.dispatch(_message(1, "a")))
    second = asyncio.create_task(dispatcher.dispatch(_message(2, "b")))
    await asyncio.sleep(0.01)
    release.set()
    await asyncio.gather(first, second)

    assert events == ["start 1", "end 1", "start 2", "end 2"]


@pytest.mark.asyncio
async def test_dispatch_accepts_context_factory() -> None:
    dispatcher = Dispatcher()
    built: list[int] = []

    def factory(update: Update) -> Context:
        built.append(update.update_id)
        return Context(update)

    dispatcher.register(UpdateType.MESSAGE, lambda ctx: True, _recorder([], "x"))
    await dispatcher.dispatch(_message(3, "hi"), factory)

    assert built == [3]
