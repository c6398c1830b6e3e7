"""
Per-update context handed to predicates and handlers.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from tgbot_runtime.errors import TelegramRuntimeError
from tgbot_runtime.types import (
    CallbackQuery,
    Chat,
    InlineQuery,
    Message,
    Update,
    UpdateType,
    User,
)

if TYPE_CHECKING:
    from tgbot_runtime.client import Bot, BotAPI


class Context:
    """Wraps one update together with the bot that received it."""

    def __init__(self, update: Update, bot: Bot | None = None) -> None:
        self.update = update
        self.bot = bot
        # Filled by the dispatcher for rules that carry a text pattern.
        self.matches: list[re.Match[str]] = []

    def __repr__(self) -> str:
        return f"Context(update_id={self.update.update_id}, type={self.update_type.value})"

    @property
    def api(self) -> BotAPI:
        if self.bot is None:
            raise TelegramRuntimeError("Context is not bound to a bot")
        return self.bot.api

    @property
    def update_type(self) -> UpdateType:
        return self.update.type

    @property
    def message(self) -> Message | None:
        return self.update.message

    @property
    def msg(self) -> Message | None:
        """The message this update is about, whatever its kind."""
        update = self.update
        for message in (
            update.message,
            update.edited_message,
            update.channel_post,
            update.edited_channel_post,
        ):
            if message is not None:
                return message
        if update.callback_query is not None:
            return update.callback_query.message
        return None

    @property
    def callback_query(self) -> CallbackQuery | None:
        return self.update.callback_query

    @property
    def inline_query(self) -> InlineQuery | None:
        return self.update.inline_query

    @property
    def chat(self) -> Chat | None:
        msg = self.msg
        if msg is not None:
            return msg.chat
        update = self.update
        for holder in (
            update.my_chat_member,
            update.chat_member,
            update.chat_join_request,
            update.message_reaction,
        ):
            if holder is not None:
                return holder.chat
        return None

    @property
    def from_user(self) -> User | None:
        payload = self.update.payload
        user = getattr(payload, "from_user", None)
        if user is None:
            user = getattr(payload, "user", None)
        return user

    @property
    def text(self) -> str | None:
        msg = self.msg
        return msg.text if msg is not None else None

    # ---- Replies ----

    async def reply(self, text: str, **kwargs: Any) -> Message:
        """Send ``text`` to the chat this update came from."""
        chat = self.chat
        if chat is None:
            raise TelegramRuntimeError(
                f"Cannot reply to a {self.update_type.value} update: no chat"
            )
        return await self.api.send_message(chat.id, text, **kwargs)

    async def answer(self, text: str | None = None, show_alert: bool = False) -> bool:
        """Answer the callback query carried by this update."""
        query = self.callback_query
        if query is None:
            raise TelegramRuntimeError("Update does not carry a callback query")
        return await self.api.answer_callback_query(query.id, text=text, show_alert=show_alert)
