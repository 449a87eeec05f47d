"""Lazily regenerated AI summaries for multi-entry days.

Per (owner, date) a row moves between three states:

* absent: no row, the day has at most one entry
* fresh: ``needs_regeneration`` is false and the stored count matches
* dirty: ``needs_regeneration`` is true

Every entry mutation marks the affected day dirty (or deletes the row when
the day drops to one entry). Reads never wait for the model on the title
path; they return a deterministic fallback and regenerate in the background.
Each cache keeps at most one regeneration task per date.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from functools import partial
from typing import Any, Sequence

from daybook.app.db.day_summaries import DaySummariesRepository
from daybook.app.services.day_summary import (
    DaySummary,
    analysis_request,
    fallback_analysis,
    fallback_title,
    summary_from_analysis,
)
from daybook.app.services.entry_store import EntryStore
from daybook.app.services.journal_entry import Entry, single_entry_title
from daybook.app.services.service_pulse import ServicePulse
from daybook.app.services.time import utc_now_iso
from daybook.llm.period_analyzer import AnalysisError, PeriodAnalyzer, average_mood

logger = logging.getLogger(__name__)


class DaySummaryCache:
    def __init__(
        self,
        owner_id: str,
        *,
        repository: DaySummariesRepository,
        entry_store: EntryStore,
        analyzer: PeriodAnalyzer,
        ai_timeout: float = 30.0,
        service_pulse: ServicePulse | None = None,
    ) -> None:
        self.owner_id = owner_id
        self._repository = repository
        self._entry_store = entry_store
        self._analyzer = analyzer
        self._ai_timeout = ai_timeout
        self._service_pulse = service_pulse
        self._inflight: dict[str, asyncio.Task[DaySummary]] = {}
        # Mark serial and entry count each in-flight regeneration started from.
        self._inflight_basis: dict[str, tuple[int, int]] = {}
        # Serial of the latest invalidation per date, with the count and moods it saw.
        self._serial = 0
        self._marks: dict[str, tuple[int, int, list[int]]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_cached(self, summary_date: str) -> DaySummary | None:
        record = await self._repository.get(self.owner_id, summary_date)
        return DaySummary.from_record(record) if record else None

    @staticmethod
    def _is_fresh(cached: DaySummary | None, entry_count: int) -> bool:
        return (
            cached is not None
            and not cached.needs_regeneration
            and cached.entry_count == entry_count
        )

    async def get_title(
        self,
        summary_date: str,
        day_entries: Sequence[Entry],
        *,
        allow_stale: bool = False,
    ) -> str:
        """Return a display title without waiting on the model.

        Single-entry days use the entry's own title and never touch the cache.
        With ``allow_stale`` a dirty row's last generated title is preferred
        over the mood-bucket fallback.
        """

        if len(day_entries) <= 1:
            return single_entry_title(day_entries[0]) if day_entries else ""

        cached = await self.get_cached(summary_date)
        if self._is_fresh(cached, len(day_entries)):
            assert cached is not None
            return cached.title

        self.schedule_regeneration(summary_date, day_entries)
        if allow_stale and cached is not None and not cached.is_placeholder:
            return cached.title
        return fallback_title([e.mood for e in day_entries])

    async def analyze(
        self, summary_date: str, day_entries: Sequence[Entry]
    ) -> DaySummary:
        """Return a complete summary, regenerating and waiting when needed."""

        if len(day_entries) <= 1:
            entry = day_entries[0] if day_entries else None
            return DaySummary(
                owner_id=self.owner_id,
                date=summary_date,
                entry_count=len(day_entries),
                title=single_entry_title(entry) if entry else "",
                summary=entry.body if entry else "",
                average_mood=float(entry.mood) if entry and entry.mood else None,
            )

        cached = await self.get_cached(summary_date)
        if self._is_fresh(cached, len(day_entries)):
            assert cached is not None
            return cached

        task = self.schedule_regeneration(summary_date, day_entries)
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Regeneration
    # ------------------------------------------------------------------

    def schedule_regeneration(
        self, summary_date: str, day_entries: Sequence[Entry]
    ) -> asyncio.Task[DaySummary]:
        """Start a regeneration unless one for ``summary_date`` is running.

        A running regeneration is joined only when it started from the same
        invalidation and entry count. Otherwise the new regeneration waits
        for it to settle and then runs over ``day_entries``.
        """

        basis = (self._mark_serial(summary_date), len(day_entries))
        previous = self._inflight.get(summary_date)
        if previous is not None and not previous.done():
            if self._inflight_basis.get(summary_date) == basis:
                logger.debug("Joining in-flight regeneration for %s", summary_date)
                return previous
            logger.debug(
                "In-flight regeneration for %s is stale, queueing another",
                summary_date,
            )
            coro = self._regenerate_after(previous, summary_date, list(day_entries))
        else:
            coro = self._regenerate(summary_date, list(day_entries), basis[0])

        task = asyncio.create_task(coro, name=f"daybook-day-summary-{summary_date}")
        self._inflight[summary_date] = task
        self._inflight_basis[summary_date] = basis
        task.add_done_callback(partial(self._on_regeneration_done, summary_date))
        return task

    async def _regenerate_after(
        self,
        previous: asyncio.Task[DaySummary],
        summary_date: str,
        day_entries: Sequence[Entry],
    ) -> DaySummary:
        try:
            await asyncio.wait({previous})
        except asyncio.CancelledError:
            previous.cancel()
            raise
        return await self._regenerate(
            summary_date, day_entries, self._mark_serial(summary_date)
        )

    def _on_regeneration_done(
        self, summary_date: str, task: asyncio.Task[DaySummary]
    ) -> None:
        if self._inflight.get(summary_date) is task:
            del self._inflight[summary_date]
            self._inflight_basis.pop(summary_date, None)
        if task.cancelled():
            logger.debug("Regeneration for %s was cancelled", summary_date)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background regeneration for %s failed", summary_date, exc_info=exc
            )

    def _mark_serial(self, summary_date: str) -> int:
        mark = self._marks.get(summary_date)
        return mark[0] if mark else 0

    async def regenerate_and_cache(
        self, summary_date: str, day_entries: Sequence[Entry]
    ) -> DaySummary:
        """Ask the model for a fresh summary and upsert it.

        Model failures return an unsaved fallback summary that stays dirty.
        """

        return await self._regenerate(
            summary_date, day_entries, self._mark_serial(summary_date)
        )

    async def _regenerate(
        self,
        summary_date: str,
        day_entries: Sequence[Entry],
        started_mark: int,
    ) -> DaySummary:
        moods = [e.mood for e in day_entries]
        request = analysis_request(day_entries, "day", summary_date, summary_date)

        try:
            analysis = await asyncio.wait_for(
                self._analyzer.analyze(request), timeout=self._ai_timeout
            )
        except (AnalysisError, asyncio.TimeoutError) as exc:
            logger.warning("Day analysis for %s unavailable: %s", summary_date, exc)
            return self._fallback(summary_date, request, moods, reason=str(exc))
        except Exception as exc:
            logger.exception("Day analysis for %s failed", summary_date)
            return self._fallback(summary_date, request, moods, reason=repr(exc))

        summary = summary_from_analysis(
            self.owner_id,
            summary_date,
            analysis,
            moods,
            generated_at=utc_now_iso(),
            needs_regeneration=False,
        )
        record = await self._repository.upsert(summary.to_record())
        stored = DaySummary.from_record(record)

        latest = self._marks.get(summary_date)
        if latest is not None and latest[0] != started_mark:
            # Entries changed while the model was running.
            stored = await self._reapply_mark(summary_date, stored, latest)

        self._pulse(
            "day_summary.regenerated",
            date=summary_date,
            entry_count=stored.entry_count,
            needs_regeneration=stored.needs_regeneration,
        )
        return stored

    async def _reapply_mark(
        self,
        summary_date: str,
        stored: DaySummary,
        mark: tuple[int, int, list[int]],
    ) -> DaySummary:
        _, count, moods = mark
        if count <= 1:
            await self._repository.delete(self.owner_id, summary_date)
            return replace(stored, entry_count=count, needs_regeneration=True)
        await self._repository.mark_dirty(
            self.owner_id,
            summary_date,
            entry_count=count,
            placeholder_title=fallback_title(moods, count),
            average_mood=average_mood(moods),
            updated_at=utc_now_iso(),
        )
        return replace(stored, entry_count=count, needs_regeneration=True)

    def _fallback(
        self,
        summary_date: str,
        request,
        moods: list[int],
        *,
        reason: str,
    ) -> DaySummary:
        self._pulse("day_summary.fallback", date=summary_date, reason=reason)
        analysis = replace(fallback_analysis(request), title="")
        return summary_from_analysis(
            self.owner_id,
            summary_date,
            analysis,
            moods,
            generated_at=None,
            needs_regeneration=True,
        )

    # ------------------------------------------------------------------
    # Invalidation & maintenance
    # ------------------------------------------------------------------

    async def invalidate(
        self,
        summary_date: str,
        new_entry_count: int,
        moods: Sequence[int] | None = None,
    ) -> None:
        mood_list = list(moods or [])
        self._serial += 1
        self._marks[summary_date] = (self._serial, new_entry_count, mood_list)

        if new_entry_count <= 1:
            removed = await self._repository.delete(self.owner_id, summary_date)
            if removed:
                logger.debug("Dropped day summary for %s", summary_date)
            self._pulse(
                "day_summary.invalidated",
                date=summary_date,
                entry_count=new_entry_count,
                action="deleted",
            )
            return

        await self._repository.mark_dirty(
            self.owner_id,
            summary_date,
            entry_count=new_entry_count,
            placeholder_title=fallback_title(mood_list, new_entry_count),
            average_mood=average_mood(mood_list),
            updated_at=utc_now_iso(),
        )
        self._pulse(
            "day_summary.invalidated",
            date=summary_date,
            entry_count=new_entry_count,
            action="marked",
        )

    async def sweep(self, limit: int) -> int:
        """Regenerate or delete up to ``limit`` dirty rows.

        Cancellation takes effect between rows; a row already being processed
        runs to completion.
        """

        dates = await self._repository.list_dirty_dates(self.owner_id, limit)
        processed = 0
        for summary_date in dates:
            await asyncio.shield(self._sweep_one(summary_date))
            processed += 1
        if processed:
            logger.info("Swept %d dirty day summaries for %s", processed, self.owner_id)
        return processed

    async def _sweep_one(self, summary_date: str) -> bool:
        try:
            entries = await self._entry_store.entries_for_date(summary_date)
            if len(entries) <= 1:
                await self._repository.delete(self.owner_id, summary_date)
                return True
            summary = await self.schedule_regeneration(summary_date, entries)
            return not summary.needs_regeneration
        except Exception:
            logger.exception("Sweep failed for %s", summary_date)
            return False

    async def dirty_count(self) -> int:
        return await self._repository.count_dirty(self.owner_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def pending(self) -> int:
        return sum(1 for task in self._inflight.values() if not task.done())

    async def wait_idle(self) -> None:
        """Wait for every background regeneration to settle."""

        while self._inflight:
            tasks = list(self._inflight.values())
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._inflight.values())
        self._inflight.clear()
        self._inflight_basis.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _pulse(self, topic: str, **payload: Any) -> None:
        if self._service_pulse is None:
            return
        self._service_pulse.emit(topic, {"owner_id": self.owner_id, **payload})


__all__ = ["DaySummaryCache"]
