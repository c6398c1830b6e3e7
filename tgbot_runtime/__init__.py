"""
Telegram Bot Runtime for Python.

Fetches updates from the Telegram Bot API (long polling or webhook) and
dispatches each one to at most one registered handler.

Example::

    from tgbot_runtime import Bot

    bot = Bot("123456:ABC-your-token")

    async def on_start(ctx):
        await ctx.reply("Welcome!")

    async def on_error(err):
        print("Something went wrong:", err)

    bot.on_error(on_error)
    await bot.start(on_start)
"""

from tgbot_runtime.client import Bot, BotAPI
from tgbot_runtime.context import Context
from tgbot_runtime.conversation import Conversation
from tgbot_runtime.errors import (
    BotError,
    IdentityError,
    RateLimitedError,
    SourceRejectedError,
    TelegramRuntimeError,
    TransportError,
)
from tgbot_runtime.events import Dispatcher, HandlerScope
from tgbot_runtime.fetch import Fetcher, LongPolling, UpdateFeed, Webhook
from tgbot_runtime.identity import IdentityResolver, IdentityStatus, PendingCall
from tgbot_runtime.types import (
    BotConfig,
    PollingConfig,
    RetryConfig,
    WebhookConfig,
    Update,
    UpdateType,
    Message,
    Chat,
    User,
    MessageEntity,
    CallbackQuery,
    InlineQuery,
    WebhookInfo,
)

__all__ = [
    "Bot",
    "BotAPI",
    "Context",
    "Conversation",
    "BotError",
    "IdentityError",
    "RateLimitedError",
    "SourceRejectedError",
    "TelegramRuntimeError",
    "TransportError",
    "Dispatcher",
    "HandlerScope",
    "Fetcher",
    "LongPolling",
    "UpdateFeed",
    "Webhook",
    "IdentityResolver",
    "IdentityStatus",
    "PendingCall",
    "BotConfig",
    "PollingConfig",
    "RetryConfig",
    "WebhookConfig",
    "Update",
    "UpdateType",
    "Message",
    "Chat",
    "User",
    "MessageEntity",
    "CallbackQuery",
    "InlineQuery",
    "WebhookInfo",
]

__version__ = "0.1.0"
