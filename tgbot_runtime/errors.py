"""
Error taxonomy for the Telegram Bot Runtime.

Transport and rate-limit failures are transient and retried by the polling
fetcher. Everything else the Bot API rejects is fatal unless an error
handler absorbs it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from tgbot_runtime.context import Context


class TelegramRuntimeError(Exception):
    """Base class for every error raised by the runtime."""


class TransportError(TelegramRuntimeError):
    """Network failure, timeout or 5xx response. Safe to retry."""


class RateLimitedError(TelegramRuntimeError):
    """The Bot API asked us to wait ``retry_after`` seconds (HTTP 429)."""

    def __init__(self, retry_after: float, description: str = "Too Many Requests") -> None:
        super().__init__(f"{description} (retry after {retry_after}s)")
        self.retry_after = retry_after
        self.description = description


class SourceRejectedError(TelegramRuntimeError):
    """The Bot API rejected the request (bad token, webhook conflict, ...)."""

    def __init__(self, error_code: int, description: str) -> None:
        super().__init__(f"Bot API request failed ({error_code}): {description}")
        self.error_code = error_code
        self.description = description


class IdentityError(TelegramRuntimeError):
    """The initial ``getMe`` call failed, so the bot's identity is unknown."""


@dataclass
class BotError:
    """A failure handed to the error handler.

    ``context`` is set when the failure happened while dispatching an
    update (handler errors); fetcher failures carry no context.
    """

    error: BaseException
    context: Context | None = None

    @property
    def is_transient(self) -> bool:
        return isinstance(self.error, (TransportError, RateLimitedError))

    def __str__(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


# Type alias for error handlers
ErrorHandler = Callable[[BotError], Awaitable[Any]]
