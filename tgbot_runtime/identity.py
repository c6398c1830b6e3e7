"""
Resolution of the bot's own identity (``getMe``).

Some registrations need the bot's username, e.g. ``/start@my_bot``
commands. Calls made while ``getMe`` is in flight are queued and replayed
once it completes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from tgbot_runtime.errors import IdentityError
from tgbot_runtime.types import User

logger = logging.getLogger(__name__)


class IdentityStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class PendingCall:
    """A registration call deferred until the identity is known."""

    fn: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)

    def __call__(self) -> Any:
        return self.fn(*self.args, **self.kwargs)


class IdentityResolver:
    """Fetches the bot's ``User`` once and gates calls that depend on it."""

    def __init__(self, fetch_me: Callable[[], Awaitable[User]]) -> None:
        self._fetch_me = fetch_me
        self._status = IdentityStatus.NOT_STARTED
        self._me: User | None = None
        self._pending: list[PendingCall] = []
        self._task: asyncio.Task[User] | None = None

    @property
    def status(self) -> IdentityStatus:
        return self._status

    @property
    def is_completed(self) -> bool:
        return self._status is IdentityStatus.COMPLETED

    @property
    def me(self) -> User:
        """The bot's own user. Raises until resolution has completed."""
        if self._me is None:
            raise IdentityError(
                "Bot information not found: getMe has not completed yet"
            )
        return self._me

    @property
    def pending(self) -> tuple[PendingCall, ...]:
        return tuple(self._pending)

    def begin(self) -> asyncio.Task[User]:
        """Start resolution in the background. Needs a running event loop."""
        if self._task is None:
            if self._status is IdentityStatus.NOT_STARTED:
                self._status = IdentityStatus.PENDING
            self._task = asyncio.ensure_future(self._resolve())
            self._task.add_done_callback(self._on_done)
        return self._task

    async def resolve(self) -> User:
        """Return the bot's user, fetching it if needed."""
        if self._me is not None:
            return self._me
        return await self.begin()

    def ready(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Return True if the caller can use the identity right now.

        While resolution is pending, ``fn(*args, **kwargs)`` is queued for
        replay and False is returned. Before resolution has started there
        is nowhere to queue the call, so it is dropped.
        """
        if self._status is IdentityStatus.COMPLETED:
            return True
        if self._status is IdentityStatus.PENDING:
            self._pending.append(PendingCall(fn, args, kwargs))
            return False
        logger.warning(
            "Dropping %s(): bot identity resolution has not started",
            getattr(fn, "__name__", fn),
        )
        return False

    async def _resolve(self) -> User:
        try:
            me = await self._fetch_me()
        except Exception as exc:
            # Stay pending so queued calls survive a later retry.
            self._task = None
            raise IdentityError(f"getMe request failed: {exc}") from exc

        self._me = me
        self._status = IdentityStatus.COMPLETED
        logger.info("Resolved bot identity @%s (%d)", me.username, me.id)

        calls, self._pending = self._pending, []
        for call in calls:
            try:
                call()
            except Exception:
                logger.exception(
                    "Deferred call %s() failed", getattr(call.fn, "__name__", call.fn)
                )
        return me

    @staticmethod
    def _on_done(task: asyncio.Task[User]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Bot identity resolution failed: %s", exc)
