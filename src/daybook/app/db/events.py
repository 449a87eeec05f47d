from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Iterable, List

EventHandler = Callable[..., Awaitable[None]]

ENTRY_CREATED_EVENT = "entry.created"
ENTRY_UPDATED_EVENT = "entry.updated"
ENTRY_DELETED_EVENT = "entry.deleted"

ENTRY_EVENTS = (ENTRY_CREATED_EVENT, ENTRY_UPDATED_EVENT, ENTRY_DELETED_EVENT)


class RepositoryEventBus:
    """Simple async event bus for cross-repository notifications."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._logger = logging.getLogger(__name__)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Register a handler to be invoked when *event* is emitted."""
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        """Remove *handler* from *event* if it is registered."""
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return

    async def emit(self, event: str, *args, **kwargs) -> None:
        """Emit *event* and await all registered handlers.

        Handler failures are logged and never reach the emitter.
        """
        handlers = list(self._handlers.get(event, ()))
        if not handlers:
            return

        coroutines = [handler(*args, **kwargs) for handler in handlers]
        results = await asyncio.gather(*coroutines, return_exceptions=True)

        for result in results:
            if isinstance(result, Exception):
                self._logger.error(
                    "Repository event handler failed for event '%s'",
                    event,
                    exc_info=result,
                )

    async def emit_for_entry_dates(
        self,
        event: str,
        *,
        user_id: str,
        entry_id: str,
        dates: Iterable[str],
    ) -> None:
        """Emit an entry event carrying every calendar date it touched."""

        unique = tuple(dict.fromkeys(d for d in dates if d))
        if not unique:
            return
        await self.emit(event, user_id=user_id, entry_id=entry_id, dates=unique)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
