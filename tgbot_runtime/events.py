"""
Handler registry and dispatch for the Telegram Bot Runtime.

Rules are evaluated newest first and at most one handler runs per update,
so a rule registered later shadows earlier, more general ones.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from tgbot_runtime.context import Context
from tgbot_runtime.errors import BotError, ErrorHandler
from tgbot_runtime.types import Update, UpdateType

logger = logging.getLogger(__name__)

# Type aliases for handlers and predicates
Handler = Callable[[Context], Awaitable[Any]]
Predicate = Callable[[Context], bool]
ScopeFilter = Callable[["HandlerScope"], bool]


@dataclass(frozen=True)
class HandlerScope:
    """A registered rule: which updates it accepts and what runs for them.

    Gate scopes carry no handler. When a gate's predicate matches, the
    update is claimed and nothing else is tried for it.
    """

    types: frozenset[UpdateType]
    predicate: Predicate
    handler: Handler | None = None
    name: str | None = None
    is_gate: bool = False
    pattern: re.Pattern[str] | None = None


class Dispatcher:
    """Owns the handler scopes and routes each update to one of them."""

    def __init__(self, context_factory: Callable[[Update], Context] | None = None) -> None:
        self._scopes: list[HandlerScope] = []
        self._context_factory = context_factory or Context
        self._error_handler: ErrorHandler | None = None
        self._lock = asyncio.Lock()

    @property
    def scopes(self) -> tuple[HandlerScope, ...]:
        """Registered scopes in insertion order."""
        return tuple(self._scopes)

    def on_error(self, handler: ErrorHandler | None) -> None:
        """Route handler failures to ``handler`` instead of raising them."""
        self._error_handler = handler

    def register(
        self,
        types: UpdateType | Iterable[UpdateType],
        predicate: Predicate,
        handler: Handler | None = None,
        *,
        name: str | None = None,
        pattern: re.Pattern[str] | None = None,
        is_gate: bool = False,
    ) -> HandlerScope:
        """Append a scope for the given update types."""
        if isinstance(types, UpdateType):
            types = (types,)
        scope = HandlerScope(
            types=frozenset(types),
            predicate=predicate,
            handler=handler,
            name=name,
            is_gate=is_gate,
            pattern=pattern,
        )
        self._scopes.append(scope)
        return scope

    def deregister(self, name: str) -> int:
        """Remove every scope registered under ``name``."""
        return self.deregister_where(lambda scope: scope.name == name)

    def deregister_where(self, predicate: ScopeFilter) -> int:
        """Remove every scope for which ``predicate`` is true."""
        kept = [scope for scope in self._scopes if not predicate(scope)]
        removed = len(self._scopes) - len(kept)
        # Rebind rather than mutate: a dispatch in progress keeps its snapshot.
        self._scopes = kept
        return removed

    async def dispatch(
        self,
        update: Update,
        context_factory: Callable[[Update], Context] | None = None,
    ) -> HandlerScope | None:
        """Dispatch one update and return the scope that took it, if any.

        ``context_factory`` overrides the dispatcher's own for this update.

        Updates are processed one at a time; a second call waits until the
        handler chosen for the first one has finished.
        """
        async with self._lock:
            return await self._dispatch(update, context_factory or self._context_factory)

    async def _dispatch(
        self,
        update: Update,
        context_factory: Callable[[Update], Context],
    ) -> HandlerScope | None:
        kind = update.type
        candidates = [scope for scope in reversed(self._scopes) if kind in scope.types]
        if not candidates:
            logger.debug("No scope accepts %s update %d", kind.value, update.update_id)
            return None

        ctx = context_factory(update)
        for scope in candidates:
            if scope.is_gate and scope.predicate(ctx):
                logger.debug("Update %d claimed by gate %s", update.update_id, scope.name)
                return scope

            if scope.handler is None:
                continue

            ctx.matches = []
            if scope.pattern is not None:
                ctx.matches = list(scope.pattern.finditer(ctx.text or ""))

            if not scope.predicate(ctx):
                continue

            try:
                await scope.handler(ctx)
            except Exception as exc:
                if self._error_handler is None:
                    raise
                await self._error_handler(BotError(exc, ctx))
            return scope

        logger.debug("Update %d (%s) matched no handler", update.update_id, kind.value)
        return None
