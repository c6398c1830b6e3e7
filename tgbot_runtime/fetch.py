"""
Update fetchers for the Telegram Bot Runtime.

A fetcher turns the Bot API into two feeds: one emitting each update, one
emitting the batches they arrived in. Two strategies are provided:

- :class:`LongPolling` repeatedly calls ``getUpdates`` and recovers from
  transient failures on its own.
- :class:`Webhook` registers a webhook URL and accepts updates handed to
  :meth:`Webhook.deliver` by whatever terminates the inbound HTTP request.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, Iterable, Mapping, TypeVar

from tgbot_runtime.errors import (
    BotError,
    ErrorHandler,
    RateLimitedError,
    SourceRejectedError,
    TelegramRuntimeError,
    TransportError,
)
from tgbot_runtime.types import PollingConfig, RetryConfig, Update, WebhookConfig

if TYPE_CHECKING:
    from tgbot_runtime.client import BotAPI
    from tgbot_runtime.context import Context

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpdateFeed(Generic[T]):
    """Subscribe-only feed. Subscribers are awaited one after another."""

    def __init__(self) -> None:
        self._subscribers: list[Callable[[T], Awaitable[Any]]] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Callable[[T], Awaitable[Any]]) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _emit(self, item: T) -> None:
        for callback in list(self._subscribers):
            await callback(item)


class Fetcher(ABC):
    """Base class for update fetchers."""

    def __init__(self) -> None:
        self.updates: UpdateFeed[Update] = UpdateFeed()
        self.batches: UpdateFeed[list[Update]] = UpdateFeed()
        self._api: BotAPI | None = None
        self._error_handler: ErrorHandler | None = None

    @property
    def api(self) -> BotAPI:
        if self._api is None:
            raise TelegramRuntimeError(f"{type(self).__name__} has no BotAPI attached")
        return self._api

    def attach_api(self, api: BotAPI) -> None:
        self._api = api

    def on_error(self, handler: ErrorHandler | None) -> None:
        """Install the error handler used for fetch failures."""
        self._error_handler = handler

    @property
    @abstractmethod
    def is_active(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    async def _publish(
        self,
        updates: list[Update],
        running: Callable[[], bool] | None = None,
    ) -> None:
        """Emit a batch, then each of its updates in order.

        Emission stops as soon as ``running`` (default: :attr:`is_active`)
        turns false.
        """
        running = running or (lambda: self.is_active)
        if not updates or not running():
            return
        await self.batches._emit(list(updates))
        for update in updates:
            if not running():
                logger.debug("Fetcher stopped, not emitting update %d", update.update_id)
                return
            await self.updates._emit(update)

    async def _report(self, error: BaseException, context: Context | None = None) -> bool:
        """Hand ``error`` to the error handler. Returns False if there is none."""
        if self._error_handler is None:
            return False
        await self._error_handler(BotError(error, context))
        return True


# ============================================================
#  Long polling
# ============================================================


class LongPolling(Fetcher):
    """Fetch updates with ``getUpdates``.

    ``offset`` is the next update id to request. It only moves forward after
    a successful call, so updates from a failed call are fetched again.
    """

    def __init__(
        self,
        *,
        timeout: int = 30,
        limit: int = 100,
        allowed_updates: list[str] | None = None,
        retry: RetryConfig | None = None,
        offset: int = 0,
    ) -> None:
        super().__init__()
        self.timeout = timeout
        self.limit = limit
        self.allowed_updates = allowed_updates
        self.offset = offset
        self._retry = retry or RetryConfig()
        self._delay_ms = self._retry.initial_delay_ms
        self._active = False
        self._token: object | None = None
        self._exited: asyncio.Event | None = None
        self._fetch_task: asyncio.Future[list[Update]] | None = None
        self._wakeup: asyncio.Event | None = None

    @classmethod
    def from_config(cls, config: PollingConfig) -> LongPolling:
        return cls(
            timeout=config.timeout,
            limit=config.limit,
            allowed_updates=config.allowed_updates,
            retry=config.retry,
        )

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(self) -> None:
        """Poll until :meth:`stop` is called.

        Transient failures are retried. A rejected request ends polling: it
        is raised from here unless an error handler is installed.

        After :meth:`stop`, a new call waits for the previous loop to finish
        its current update before polling again. Restart from inside a
        subscriber with a task, not by awaiting ``start()`` directly.
        """
        if self._active:
            return
        while self._exited is not None:
            await self._exited.wait()
            if self._active:
                return

        token = object()
        exited = asyncio.Event()
        self._token = token
        self._exited = exited
        self._active = True
        self._wakeup = asyncio.Event()
        logger.info("Long polling started at offset %d", self.offset)
        try:
            while self._token is token:
                if not await self._cycle(token):
                    break
        finally:
            if self._token is token:
                self._active = False
                self._token = None
            if self._exited is exited:
                self._exited = None
            exited.set()
            logger.info("Long polling stopped at offset %d", self.offset)

    async def stop(self) -> None:
        """Stop polling. An in-flight ``getUpdates`` request is abandoned."""
        if not self._active:
            return
        self._active = False
        self._token = None
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()
        if self._wakeup is not None:
            self._wakeup.set()

    async def _cycle(self, token: object) -> bool:
        try:
            updates = await self._fetch(token)
        except RateLimitedError as exc:
            await self._recover(exc, float(exc.retry_after))
            return True
        except TransportError as exc:
            await self._recover(exc, self._next_delay())
            return True
        except SourceRejectedError as exc:
            if self._token is token:
                self._active = False
            if not await self._report(exc):
                raise
            logger.error("Long polling halted: %s", exc)
            return False

        # Stopped while the request completed: leave the offset for the next run.
        if updates is None or self._token is not token:
            return False

        self._delay_ms = self._retry.initial_delay_ms
        if updates:
            self.offset = max(update.update_id for update in updates) + 1
            await self._publish(updates, lambda: self._token is token)
        return True

    async def _fetch(self, token: object) -> list[Update] | None:
        task = asyncio.ensure_future(
            self.api.get_updates(
                offset=self.offset,
                timeout=self.timeout,
                limit=self.limit,
                allowed_updates=self.allowed_updates,
            )
        )
        self._fetch_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._token is token:
                raise
            return None
        finally:
            if self._fetch_task is task:
                self._fetch_task = None

    async def _recover(self, error: TelegramRuntimeError, delay: float) -> None:
        if not await self._report(error):
            logger.warning("getUpdates failed (%s), retrying in %.1fs", error, delay)
        await self._pause(delay)

    def _next_delay(self) -> float:
        delay = self._delay_ms / 1000.0
        self._delay_ms = min(self._delay_ms * 2, self._retry.max_delay_ms)
        return delay

    async def _pause(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until :meth:`stop` is called."""
        if seconds <= 0 or self._wakeup is None:
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# ============================================================
#  Webhook
# ============================================================


class Webhook(Fetcher):
    """Receive updates pushed by Telegram to a webhook URL.

    Serving the URL is up to the caller: decode each request body and pass
    it to :meth:`deliver`.
    """

    SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

    def __init__(
        self,
        url: str,
        *,
        secret_token: str | None = None,
        allowed_updates: list[str] | None = None,
        max_connections: int | None = None,
        drop_pending_updates: bool = False,
    ) -> None:
        super().__init__()
        self.url = url
        self.secret_token = secret_token
        self.allowed_updates = allowed_updates
        self.max_connections = max_connections
        self.drop_pending_updates = drop_pending_updates
        self._active = False

    @classmethod
    def from_config(cls, config: WebhookConfig) -> Webhook:
        return cls(
            config.url,
            secret_token=config.secret_token,
            allowed_updates=config.allowed_updates,
            max_connections=config.max_connections,
            drop_pending_updates=config.drop_pending_updates,
        )

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(self) -> None:
        """Register the webhook. Failures are raised to the caller."""
        if self._active:
            return
        await self.api.set_webhook(
            self.url,
            secret_token=self.secret_token,
            allowed_updates=self.allowed_updates,
            max_connections=self.max_connections,
            drop_pending_updates=self.drop_pending_updates,
        )
        self._active = True
        logger.info("Webhook set to %s", self.url)

    async def stop(self) -> None:
        """Stop accepting deliveries and remove the webhook."""
        if not self._active:
            return
        self._active = False
        await self.api.delete_webhook()
        logger.info("Webhook deleted")

    def verify_secret(self, header_value: str | None) -> bool:
        """Check the secret token header sent with a delivery."""
        if self.secret_token is None:
            return True
        if header_value is None:
            return False
        return hmac.compare_digest(header_value.encode(), self.secret_token.encode())

    async def deliver(
        self,
        payload: Update | Mapping[str, Any] | Iterable[Update | Mapping[str, Any]],
    ) -> None:
        """Feed one delivered update (or a list of them) into the fetcher."""
        if isinstance(payload, (Update, Mapping)):
            items = [payload]
        else:
            items = list(payload)
        updates = [
            item if isinstance(item, Update) else Update.model_validate(item)
            for item in items
        ]
        if not self._active:
            logger.warning("Dropping %d update(s) delivered to an inactive webhook", len(updates))
            return
        await self._publish(updates)
