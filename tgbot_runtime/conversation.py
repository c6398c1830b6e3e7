"""
Conversation flows built on gate scopes.

A waiting conversation registers a gate for its chat. The first matching
update resolves the wait and is claimed, so no regular handler sees it.

Run a flow outside the handler that starts it, e.g. with
``asyncio.create_task``: updates are dispatched one at a time, so a handler
waiting for the next update would block its own delivery.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Iterable

from tgbot_runtime.context import Context
from tgbot_runtime.events import Predicate
from tgbot_runtime.types import UpdateType

if TYPE_CHECKING:
    from tgbot_runtime.client import Bot


class Conversation:
    """Wait for follow-up updates in a chat."""

    def __init__(self, bot: Bot, name: str = "conversation") -> None:
        self._bot = bot
        self._name = name
        self._ids = itertools.count(1)

    async def wait_for(
        self,
        chat_id: int,
        predicate: Predicate | None = None,
        *,
        types: Iterable[UpdateType] = (UpdateType.MESSAGE,),
        timeout: float | None = None,
    ) -> Context:
        """Return the context of the next update in ``chat_id`` that matches.

        Raises :class:`asyncio.TimeoutError` if none arrives in ``timeout``
        seconds.
        """
        future: asyncio.Future[Context] = asyncio.get_running_loop().create_future()
        scope_name = f"{self._name}-{chat_id}-{next(self._ids)}"

        def claim(ctx: Context) -> bool:
            if future.done():
                return False
            chat = ctx.chat
            if chat is None or chat.id != chat_id:
                return False
            if predicate is not None and not predicate(ctx):
                return False
            future.set_result(ctx)
            return True

        self._bot.dispatcher.register(types, claim, name=scope_name, is_gate=True)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._bot.dispatcher.deregister(scope_name)

    async def wait_for_text(self, chat_id: int, timeout: float | None = None) -> Context:
        return await self.wait_for(chat_id, lambda ctx: ctx.text is not None, timeout=timeout)

    async def wait_for_callback_query(
        self,
        chat_id: int,
        data: str | None = None,
        timeout: float | None = None,
    ) -> Context:
        def matches(ctx: Context) -> bool:
            query = ctx.callback_query
            return query is not None and (data is None or query.data == data)

        return await self.wait_for(
            chat_id,
            matches,
            types=(UpdateType.CALLBACK_QUERY,),
            timeout=timeout,
        )
