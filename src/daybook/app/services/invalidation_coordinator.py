"""Bridge entry mutation events into day-summary invalidation.

Entry stores emit ``entry.*`` events on the shared ``RepositoryEventBus``
carrying every calendar date a write touched. The coordinator re-reads the
clear-text mood column for each date and marks the owner's summary dirty,
so no payload ever needs decrypting here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger

from daybook.app.db.entries import EntriesRepository
from daybook.app.db.events import ENTRY_EVENTS, RepositoryEventBus
from daybook.app.services.day_summary_cache import DaySummaryCache

logger = getLogger(__name__)


@dataclass(slots=True)
class InvalidationCoordinator:
    """Runtime adapter from entry events to cache invalidation for one owner."""

    event_bus: RepositoryEventBus
    entries: EntriesRepository
    cache: DaySummaryCache
    _subscribed: bool = field(default=False, init=False)

    @property
    def owner_id(self) -> str:
        return self.cache.owner_id

    def subscribe(self) -> None:
        if self._subscribed:
            return
        for event_name in ENTRY_EVENTS:
            self.event_bus.subscribe(event_name, self._on_entry_changed)
        self._subscribed = True

    def unsubscribe(self) -> None:
        if not self._subscribed:
            return
        for event_name in ENTRY_EVENTS:
            self.event_bus.unsubscribe(event_name, self._on_entry_changed)
        self._subscribed = False

    async def _on_entry_changed(
        self,
        *,
        user_id: str,
        entry_id: str,
        dates: tuple[str, ...] = (),
        **_: object,
    ) -> None:
        if user_id != self.owner_id:
            return
        for entry_date in dates:
            moods = await self.entries.mood_scores_for_date(user_id, entry_date)
            logger.debug(
                "Entry %s changed %s; %d entries remain",
                entry_id,
                entry_date,
                len(moods),
            )
            await self.cache.invalidate(entry_date, len(moods), moods)


__all__ = ["InvalidationCoordinator"]
