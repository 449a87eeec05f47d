"""Uncached week, month, all-time and custom range reviews."""

from __future__ import annotations

import asyncio
import logging
from datetime import date

from daybook.app.services.day_summary import analysis_request, fallback_analysis
from daybook.app.services.entry_store import EntryStore
from daybook.app.services.time import month_bounds, week_end, week_start
from daybook.app.services.validators import parse_date_range
from daybook.llm.period_analyzer import AnalysisError, PeriodAnalysis, PeriodAnalyzer

logger = logging.getLogger(__name__)


class PeriodReviews:
    """Every call re-reads the range and asks the model again."""

    def __init__(
        self,
        entry_store: EntryStore,
        analyzer: PeriodAnalyzer,
        *,
        ai_timeout: float = 30.0,
        first_weekday: str = "sunday",
    ) -> None:
        self._entry_store = entry_store
        self._analyzer = analyzer
        self._ai_timeout = ai_timeout
        self._first_weekday = first_weekday

    async def review(self, period_type: str, start: str, end: str) -> PeriodAnalysis:
        start, end = parse_date_range(start, end)
        entries = await self._entry_store.list_by_date_range(start, end)
        entries = [e for e in entries if not e.placeholder]
        # Chronological order reads better in the prompt.
        entries.sort(key=lambda e: (e.date, e.created_at))
        request = analysis_request(entries, period_type, start, end)
        if not entries:
            return fallback_analysis(request)

        try:
            return await asyncio.wait_for(
                self._analyzer.analyze(request), timeout=self._ai_timeout
            )
        except (AnalysisError, asyncio.TimeoutError) as exc:
            logger.warning(
                "%s review for %s..%s unavailable: %s", period_type, start, end, exc
            )
        except Exception:
            logger.exception("%s review for %s..%s failed", period_type, start, end)
        return fallback_analysis(request)

    async def week(self, day: str | date) -> PeriodAnalysis:
        first = self._first_weekday
        return await self.review("week", week_start(day, first), week_end(day, first))

    async def month(self, day: str | date) -> PeriodAnalysis:
        start, end = month_bounds(day)
        return await self.review("month", start, end)

    async def custom(self, start: str, end: str) -> PeriodAnalysis:
        return await self.review("custom", start, end)

    async def all_time(self) -> PeriodAnalysis | None:
        """Review everything from the first to the last entry date.

        Returns ``None`` when the journal is empty.
        """

        dates = [e.date for e in await self._entry_store.list() if e.date]
        if not dates:
            return None
        return await self.review("custom", min(dates), max(dates))


__all__ = ["PeriodReviews"]
