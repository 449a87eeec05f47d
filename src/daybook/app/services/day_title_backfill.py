"""Generate AI titles for multi-entry days that have none yet."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable

from daybook.app.db.day_summaries import DaySummariesRepository
from daybook.app.db.entries import EntriesRepository
from daybook.app.services.day_summary_cache import DaySummaryCache
from daybook.app.services.entry_store import EntryStore
from daybook.app.services.time import utc_now_iso

logger = logging.getLogger(__name__)


class BackfillInProgress(RuntimeError):
    """Raised when a second backfill starts for an owner already running one."""


@dataclass(slots=True)
class BackfillProgress:
    total: int = 0
    processed: int = 0
    current: str | None = None
    errors: int = 0
    completed: bool = False


@dataclass(slots=True, frozen=True)
class BackfillStats:
    days_with_multiple_entries: int
    days_with_titles: int
    days_needing_backfill: int


ProgressCallback = Callable[[BackfillProgress], None]


class DayTitleBackfill:
    """Batch regeneration over every day that lacks a fresh summary."""

    def __init__(
        self,
        owner_id: str,
        *,
        entries: EntriesRepository,
        summaries: DaySummariesRepository,
        entry_store: EntryStore,
        cache: DaySummaryCache,
    ) -> None:
        self.owner_id = owner_id
        self._entries = entries
        self._summaries = summaries
        self._entry_store = entry_store
        self._cache = cache
        self._running = False
        self._progress = BackfillProgress()

    @property
    def running(self) -> bool:
        return self._running

    def progress(self) -> BackfillProgress:
        return replace(self._progress)

    async def _multi_entry_days(self) -> list[str]:
        counts = await self._entries.day_counts(self.owner_id, min_count=2)
        return [day for day, _ in counts]

    async def days_needing_backfill(self) -> list[str]:
        days = await self._multi_entry_days()
        fresh = await self._summaries.fresh_dates(self.owner_id)
        return sorted(day for day in days if day not in fresh)

    async def stats(self) -> BackfillStats:
        days = await self._multi_entry_days()
        fresh = await self._summaries.fresh_dates(self.owner_id)
        titled = sum(1 for day in days if day in fresh)
        return BackfillStats(
            days_with_multiple_entries=len(days),
            days_with_titles=titled,
            days_needing_backfill=len(days) - titled,
        )

    async def run(
        self,
        *,
        batch_size: int = 5,
        delay: float = 1.0,
        on_progress: ProgressCallback | None = None,
    ) -> BackfillProgress:
        if self._running:
            raise BackfillInProgress(f"backfill already running for {self.owner_id}")
        self._running = True
        try:
            return await self._run(max(int(batch_size), 1), delay, on_progress)
        finally:
            self._running = False

    async def _run(
        self,
        batch_size: int,
        delay: float,
        on_progress: ProgressCallback | None,
    ) -> BackfillProgress:
        days = await self.days_needing_backfill()
        progress = self._progress = BackfillProgress(total=len(days))
        logger.info("Backfilling %d day titles for %s", len(days), self.owner_id)
        self._report(on_progress)

        for offset in range(0, len(days), batch_size):
            batch = days[offset : offset + batch_size]
            await asyncio.gather(
                *(self._backfill_day(day, on_progress) for day in batch)
            )
            if delay > 0 and offset + batch_size < len(days):
                await asyncio.sleep(delay)

        progress.current = None
        progress.completed = True
        logger.info(
            "Backfill finished for %s: %d processed, %d errors",
            self.owner_id,
            progress.processed,
            progress.errors,
        )
        self._report(on_progress)
        return replace(progress)

    async def _backfill_day(
        self, day: str, on_progress: ProgressCallback | None
    ) -> None:
        progress = self._progress
        progress.current = day
        self._report(on_progress)
        try:
            day_entries = await self._entry_store.entries_for_date(day)
            if len(day_entries) > 1:
                summary = await self._cache.analyze(day, day_entries)
                if summary.needs_regeneration:
                    raise RuntimeError(f"analysis for {day} fell back")
            progress.processed += 1
        except Exception:
            logger.exception("Failed to backfill day title for %s", day)
            progress.errors += 1
        self._report(on_progress)

    def _report(self, on_progress: ProgressCallback | None) -> None:
        if on_progress is None:
            return
        try:
            on_progress(replace(self._progress))
        except Exception:
            logger.exception("Backfill progress callback failed")

    async def force_regenerate_all(
        self,
        *,
        batch_size: int = 5,
        delay: float = 1.0,
        on_progress: ProgressCallback | None = None,
    ) -> BackfillProgress:
        """Mark every cached summary dirty, then backfill all of them."""

        if self._running:
            raise BackfillInProgress(f"backfill already running for {self.owner_id}")
        marked = await self._summaries.mark_all_dirty(self.owner_id, utc_now_iso())
        logger.info("Marked %d day summaries for regeneration", marked)
        return await self.run(batch_size=batch_size, delay=delay, on_progress=on_progress)


__all__ = [
    "BackfillInProgress",
    "BackfillProgress",
    "BackfillStats",
    "DayTitleBackfill",
    "ProgressCallback",
]
