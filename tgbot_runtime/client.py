"""
Telegram Bot Runtime — Python client.

Talks to the Bot API over ``httpx`` and wires a fetcher, the dispatcher and
identity resolution together behind :class:`Bot`.

Usage::

    from tgbot_runtime import Bot

    bot = Bot("123456:ABC-your-token")

    async def greet(ctx):
        await ctx.reply("Hello!")

    bot.hears(r"^hi\\b", greet)
    await bot.start()
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Iterable, Mapping

import httpx

from tgbot_runtime.context import Context
from tgbot_runtime.errors import (
    BotError,
    ErrorHandler,
    IdentityError,
    RateLimitedError,
    SourceRejectedError,
    TelegramRuntimeError,
    TransportError,
)
from tgbot_runtime.events import Dispatcher, Handler, HandlerScope, Predicate
from tgbot_runtime.fetch import Fetcher, LongPolling, Webhook
from tgbot_runtime.identity import IdentityResolver, IdentityStatus
from tgbot_runtime.types import (
    BotConfig,
    Message,
    ResponseParameters,
    Update,
    UpdateType,
    User,
    WebhookInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.telegram.org"


class BotAPI:
    """Thin wrapper around httpx for Bot API requests."""

    def __init__(self, token: str, base_url: str = DEFAULT_BASE_URL, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def __repr__(self) -> str:
        return f"BotAPI(base_url={self.base_url!r})"

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        _retries: int = 4,
        _attempt: int = 0,
    ) -> Any:
        """Call a Bot API method and return its ``result``.

        Retries on 429 after the ``retry_after`` the API asks for. Pass
        ``_retries=0`` to get a :class:`RateLimitedError` instead.
        """
        body = {key: value for key, value in (params or {}).items() if value is not None}
        extra: dict[str, Any] = {"timeout": timeout} if timeout is not None else {}
        try:
            response = await self._client.post(f"/bot{self._token}/{method}", json=body, **extra)
        except httpx.TransportError as exc:
            # Don't format the exception itself: its request URL holds the token.
            raise TransportError(f"{method} failed: {type(exc).__name__}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {"ok": False, "error_code": response.status_code, "description": "Invalid response"}

        if data.get("ok"):
            return data.get("result")

        error_code = int(data.get("error_code") or response.status_code)
        description = data.get("description", "Request failed")
        parameters = ResponseParameters(**(data.get("parameters") or {}))

        if error_code == 429:
            retry_after = parameters.retry_after
            if _retries > 0:
                delay = retry_after if retry_after is not None else min(5 * (2 ** _attempt), 60)
                logger.info(
                    "Rate limited on %s — retrying in %ss (attempt %d/%d)",
                    method, delay, _attempt + 1, _attempt + _retries,
                )
                await asyncio.sleep(delay)
                return await self.request(
                    method, params, timeout=timeout, _retries=_retries - 1, _attempt=_attempt + 1
                )
            raise RateLimitedError(retry_after or 0, description)

        if error_code >= 500:
            raise TransportError(f"{method} failed ({error_code}): {description}")

        raise SourceRejectedError(error_code, description)

    async def close(self) -> None:
        await self._client.aclose()

    # ---- Methods ----

    async def get_me(self) -> User:
        data = await self.request("getMe")
        return User(**data)

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int = 30,
        limit: int = 100,
        allowed_updates: list[str] | None = None,
    ) -> list[Update]:
        """Long-poll for pending updates.

        Rate limits are raised, not retried: the caller owns the wait.
        """
        data = await self.request(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout,
                "limit": limit,
                "allowed_updates": allowed_updates,
            },
            # The server holds the request open for up to ``timeout`` seconds.
            timeout=timeout + 10.0,
            _retries=0,
        )
        return [Update.model_validate(item) for item in data or []]

    async def set_webhook(
        self,
        url: str,
        secret_token: str | None = None,
        allowed_updates: list[str] | None = None,
        max_connections: int | None = None,
        drop_pending_updates: bool = False,
    ) -> bool:
        return bool(
            await self.request(
                "setWebhook",
                {
                    "url": url,
                    "secret_token": secret_token,
                    "allowed_updates": allowed_updates,
                    "max_connections": max_connections,
                    "drop_pending_updates": drop_pending_updates or None,
                },
            )
        )

    async def delete_webhook(self, drop_pending_updates: bool = False) -> bool:
        return bool(
            await self.request(
                "deleteWebhook", {"drop_pending_updates": drop_pending_updates or None}
            )
        )

    async def get_webhook_info(self) -> WebhookInfo:
        data = await self.request("getWebhookInfo")
        return WebhookInfo(**data)

    async def send_message(self, chat_id: int | str, text: str, **kwargs: Any) -> Message:
        data = await self.request("sendMessage", {"chat_id": chat_id, "text": text, **kwargs})
        return Message.model_validate(data)

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> bool:
        return bool(
            await self.request(
                "answerCallbackQuery",
                {
                    "callback_query_id": callback_query_id,
                    "text": text,
                    "show_alert": show_alert or None,
                },
            )
        )


# ============================================================
#  Main Bot
# ============================================================


class Bot:
    """
    A bot instance: one fetcher feeding one dispatcher.

    Handlers are registered with the builder methods below (or directly on
    :attr:`dispatcher`). The most recently registered matching handler wins
    and at most one handler runs per update.
    """

    def __init__(
        self,
        token: str,
        fetcher: Fetcher | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        if not token:
            raise ValueError("A bot token is required")

        self.api = BotAPI(token, base_url=base_url, timeout=timeout)
        self.fetcher = fetcher or LongPolling()
        self.fetcher.attach_api(self.api)
        self.dispatcher = Dispatcher(context_factory=self._build_context)

        self._identity = IdentityResolver(self.api.get_me)
        self._error_handler: ErrorHandler | None = None
        self._unsubscribe: Any | None = None
        self._closed = False

        # Begin getMe right away when constructed inside a running loop, so
        # identity-dependent registrations made next are queued, not lost.
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            self._identity.begin()

    @classmethod
    def from_config(cls, config: BotConfig) -> Bot:
        """Build a bot from config. A webhook section selects the webhook fetcher."""
        fetcher: Fetcher
        if config.webhook is not None:
            fetcher = Webhook.from_config(config.webhook)
        else:
            fetcher = LongPolling.from_config(config.polling)
        return cls(config.token, fetcher, base_url=config.base_url, timeout=config.timeout)

    @property
    def me(self) -> User:
        """The bot's own user (set once ``getMe`` has completed)."""
        return self._identity.me

    @property
    def identity_status(self) -> IdentityStatus:
        return self._identity.status

    @property
    def initialized(self) -> bool:
        """Whether the bot's identity has been resolved."""
        return self._identity.is_completed

    @property
    def is_running(self) -> bool:
        return self.fetcher.is_active

    async def get_me(self) -> User:
        """Resolve (once) and return the bot's own user."""
        return await self._identity.resolve()

    async def start(self, handler: Handler | None = None) -> None:
        """
        Start fetching and dispatching updates.

        With long polling this runs until :meth:`stop` is called. With a
        webhook it returns once the webhook is registered.

        Args:
            handler: Optional handler for the ``/start`` command.

        Raises:
            TelegramRuntimeError: If the bot was stopped with
                ``close_client=True``.
        """
        if self._closed:
            raise TelegramRuntimeError(
                "Bot was stopped and its HTTP client closed; create a new Bot to start again"
            )
        self._identity.begin()
        if handler is not None:
            self.command("start", handler)

        try:
            await self._identity.resolve()
        except IdentityError as exc:
            if not await self._report(exc):
                raise

        if self._unsubscribe is None:
            self._unsubscribe = self.fetcher.updates.subscribe(self.dispatcher.dispatch)
        await self.fetcher.start()

    async def stop(self, close_client: bool = True) -> None:
        """Stop fetching updates and optionally close the HTTP client.

        A bot whose client was closed cannot be started again. Pass
        ``close_client=False`` to pause and resume with :meth:`start`.
        """
        await self.fetcher.stop()
        if close_client:
            self._closed = True
            await self.api.close()

    async def handle_update(self, update: Update | Mapping[str, Any]) -> HandlerScope | None:
        """Dispatch an update without a fetcher (serverless deployments)."""
        if not isinstance(update, Update):
            update = Update.model_validate(update)
        return await self.dispatcher.dispatch(update)

    def on_error(self, handler: ErrorHandler) -> None:
        """
        Route failures to ``handler`` instead of raising them.

        Covers handler errors (with the update's context), polling failures
        and identity resolution. Rate-limit waits are applied by the
        fetcher; the handler does not need to sleep.
        """
        self._error_handler = handler
        self.fetcher.on_error(handler)
        self.dispatcher.on_error(handler)

    async def _report(self, error: BaseException) -> bool:
        if self._error_handler is None:
            return False
        await self._error_handler(BotError(error))
        return True

    def _build_context(self, update: Update) -> Context:
        return Context(update, bot=self)

    # ---- Registration ----

    def on(self, update_type: UpdateType, handler: Handler, *, name: str | None = None) -> None:
        """Handle every update of ``update_type``."""
        self.dispatcher.register(update_type, _always, handler, name=name)

    def filter(self, predicate: Predicate, handler: Handler, *, name: str | None = None) -> None:
        """Handle any update for which ``predicate`` is true."""
        self.dispatcher.register(tuple(UpdateType), predicate, handler, name=name)

    def text(self, text: str, handler: Handler) -> None:
        """Handle messages whose text is exactly ``text``."""
        self.dispatcher.register(
            UpdateType.MESSAGE,
            lambda ctx: ctx.message is not None and ctx.message.text == text,
            handler,
        )

    def hears(self, pattern: str | re.Pattern[str], handler: Handler) -> None:
        """Handle messages whose text matches ``pattern``.

        Matches are exposed to the handler as ``ctx.matches``.
        """
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.dispatcher.register(
            UpdateType.MESSAGE,
            lambda ctx: compiled.search(_message_text(ctx)) is not None,
            handler,
            pattern=compiled,
        )

    def command(self, command: str | re.Pattern[str], handler: Handler) -> None:
        """Handle ``/command`` and ``/command@bot_username`` messages.

        Needs the bot's username: while ``getMe`` is in flight the call is
        queued and replayed afterwards.
        """
        if not self._identity.ready(self.command, command, handler):
            return
        username = self.me.username

        def predicate(ctx: Context) -> bool:
            if ctx.message is None or ctx.message.text is None:
                return False
            text = ctx.message.text
            if isinstance(command, re.Pattern):
                return command.search(text) is not None
            first = text.split(" ", 1)[0]
            return first == f"/{command}" or (username is not None and first == f"/{command}@{username}")

        self.dispatcher.register(UpdateType.MESSAGE, predicate, handler)

    def on_command(
        self,
        handler: Handler,
        *,
        include_channel_posts: bool = False,
        name: str | None = None,
    ) -> None:
        """Handle any message that starts with a bot command."""
        types = [UpdateType.MESSAGE]
        if include_channel_posts:
            types.append(UpdateType.CHANNEL_POST)

        def predicate(ctx: Context) -> bool:
            entities = ctx.msg.entities if ctx.msg is not None else None
            return any(e.type == "bot_command" and e.offset == 0 for e in entities or [])

        self.dispatcher.register(types, predicate, handler, name=name)

    def callback_query(
        self,
        data: str | re.Pattern[str],
        handler: Handler,
        *,
        name: str | None = None,
    ) -> None:
        """Handle callback queries carrying ``data``."""

        def predicate(ctx: Context) -> bool:
            query = ctx.callback_query
            if query is None or query.data is None:
                return False
            if isinstance(data, re.Pattern):
                return data.search(query.data) is not None
            return query.data == data

        self.dispatcher.register(UpdateType.CALLBACK_QUERY, predicate, handler, name=name)

    def inline_query(self, query: str | re.Pattern[str], handler: Handler) -> None:
        """Handle inline queries matching ``query`` (a regular expression)."""
        compiled = re.compile(query) if isinstance(query, str) else query
        self.dispatcher.register(
            UpdateType.INLINE_QUERY,
            lambda ctx: ctx.inline_query is not None and compiled.search(ctx.inline_query.query) is not None,
            handler,
        )

    def chat_type(self, chat_types: str | Iterable[str], handler: Handler) -> None:
        """Handle messages from chats of the given type(s), e.g. ``"private"``."""
        wanted = {chat_types} if isinstance(chat_types, str) else set(chat_types)
        self.dispatcher.register(
            UpdateType.MESSAGE,
            lambda ctx: ctx.message is not None and ctx.message.chat.type in wanted,
            handler,
        )

    def entity(self, entity_type: str, handler: Handler, *, content: str | None = None) -> None:
        """Handle messages containing an entity of ``entity_type``."""
        self.dispatcher.register(
            UpdateType.MESSAGE,
            lambda ctx: _has_entity(ctx, entity_type, content),
            handler,
        )

    def on_mention(
        self,
        handler: Handler,
        *,
        username: str | None = None,
        user_id: int | None = None,
    ) -> None:
        """Handle mentions, optionally of a specific ``username`` or ``user_id``."""
        if user_id is not None and username is None:

            def predicate(ctx: Context) -> bool:
                entities = ctx.message.entities if ctx.message is not None else None
                return any(
                    e.type == "text_mention" and e.user is not None and e.user.id == user_id
                    for e in entities or []
                )

            self.dispatcher.register(UpdateType.MESSAGE, predicate, handler)
            return
        self.entity("mention", handler, content=username)

    def when_mentioned(self, handler: Handler) -> None:
        """Handle messages that mention this bot. Needs the bot's username."""
        if not self._identity.ready(self.when_mentioned, handler):
            return
        self.on_mention(handler, username=self.me.username)

    def set_next_step(self, message: Message, handler: Handler) -> None:
        """Handle the next message in the chat of ``message``, once.

        The next message is the one right after ``message``, or the one
        after that when the bot's own reply sits in between.
        """
        scope_name = f"next-step-{message.message_id}"
        chat_id = message.chat.id
        expected = {message.message_id + 1, message.message_id + 2}

        def predicate(ctx: Context) -> bool:
            msg = ctx.message
            return msg is not None and msg.chat.id == chat_id and msg.message_id in expected

        async def run_once(ctx: Context) -> None:
            try:
                await handler(ctx)
            finally:
                self.dispatcher.deregister(scope_name)

        self.dispatcher.register(tuple(UpdateType), predicate, run_once, name=scope_name)

    def remove_scopes(self, prefix: str) -> int:
        """Remove every scope whose name starts with ``prefix``."""
        return self.dispatcher.deregister_where(
            lambda scope: scope.name is not None and scope.name.startswith(prefix)
        )


def _always(ctx: Context) -> bool:
    return True


def _message_text(ctx: Context) -> str:
    msg = ctx.message
    if msg is None:
        return ""
    return msg.text or ""


def _has_entity(ctx: Context, entity_type: str, content: str | None) -> bool:
    msg = ctx.message
    if msg is None or not msg.entities:
        return False
    if content is not None:
        prefix = {"mention": "@", "hashtag": "#"}.get(entity_type, "")
        content = f"{prefix}{content}"
    text = msg.text or ""
    return any(
        e.type == entity_type and (content is None or e.extract(text) == content)
        for e in msg.entities
    )
