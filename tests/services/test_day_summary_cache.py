from __future__ import annotations

import asyncio
from pathlib import Path

from conftest import FakeAnalyzer, open_journal
from daybook.app.services.day_summary import PLACEHOLDER_SUMMARY
from daybook.app.services.day_summary_cache import DaySummaryCache
from daybook.app.services.service_pulse import ServicePulse

DAY = "2024-05-01"


async def _two_entry_day(j) -> tuple:
    store = j.session.entries
    a = await store.create({"title": "Sunrise walk", "mood": 5, "date": DAY})
    b = await store.create({"title": "Late meeting", "mood": 3, "date": DAY})
    return a, b


def test_single_entry_day_uses_entry_title(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            entry = await j.session.entries.create({"title": "Solo", "date": DAY})
            untitled = await j.session.entries.create({"date": "2024-05-02"})
            cache = j.session.summaries

            day_entries = await j.session.entries.entries_for_date(DAY)
            assert await cache.get_title(DAY, day_entries) == "Solo"
            assert await cache.get_title("2024-05-02", [untitled]) == "Daily Entry"
            assert await cache.get_title("2024-05-03", []) == ""

            summary = await cache.analyze(DAY, [entry])
            assert summary.title == "Solo"
            assert await cache.get_cached(DAY) is None
            assert j.analyzer.calls == []

    asyncio.run(scenario())


def test_fallback_title_then_ai_title_after_regeneration(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await _two_entry_day(j)
            cache = j.session.summaries

            placeholder = await cache.get_cached(DAY)
            assert placeholder is not None
            assert placeholder.needs_regeneration
            assert placeholder.entry_count == 2

            day_entries = await j.session.entries.entries_for_date(DAY)
            assert await cache.get_title(DAY, day_entries) == "Great Day - 2 moments"

            await cache.wait_idle()
            summary = await cache.analyze(DAY, day_entries)
            assert summary.title == "A Productive Day"
            assert summary.needs_regeneration is False
            assert summary.entry_count == 2
            assert summary.themes == ["work"]
            assert summary.average_mood == 4.0
            assert len(j.analyzer.calls) == 1

            assert await cache.get_title(DAY, day_entries) == "A Productive Day"

    asyncio.run(scenario())


def test_deleting_down_to_one_entry_removes_cached_row(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            a, b = await _two_entry_day(j)
            cache = j.session.summaries
            await cache.analyze(DAY, await j.session.entries.entries_for_date(DAY))

            await j.session.entries.delete(a.id)

            assert await cache.get_cached(DAY) is None
            remaining = await j.session.entries.entries_for_date(DAY)
            assert await cache.get_title(DAY, remaining) == "Late meeting"

    asyncio.run(scenario())


def test_mutation_marks_fresh_row_dirty_and_stale_title_is_optional(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await _two_entry_day(j)
            cache = j.session.summaries
            await cache.analyze(DAY, await j.session.entries.entries_for_date(DAY))

            await j.session.entries.create({"title": "Dinner", "mood": 1, "date": DAY})
            row = await cache.get_cached(DAY)
            assert row is not None
            assert row.needs_regeneration
            assert row.entry_count == 3
            assert row.title == "A Productive Day"

            j.analyzer.gate = asyncio.Event()
            day_entries = await j.session.entries.entries_for_date(DAY)
            assert (
                await cache.get_title(DAY, day_entries, allow_stale=True)
                == "A Productive Day"
            )
            assert await cache.get_title(DAY, day_entries) == "Good Day - 3 entries"
            assert cache.pending() == 1

            j.analyzer.gate.set()
            await cache.wait_idle()
            fresh = await cache.get_cached(DAY)
            assert fresh is not None and not fresh.needs_regeneration
            assert fresh.entry_count == 3

    asyncio.run(scenario())


def test_concurrent_requests_share_one_regeneration(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await _two_entry_day(j)
            cache = j.session.summaries
            day_entries = await j.session.entries.entries_for_date(DAY)
            j.analyzer.gate = asyncio.Event()

            await cache.get_title(DAY, day_entries)
            await cache.get_title(DAY, day_entries)
            waiters = [
                asyncio.create_task(cache.analyze(DAY, day_entries)) for _ in range(3)
            ]
            await asyncio.sleep(0.05)
            assert len(j.analyzer.calls) == 1

            j.analyzer.gate.set()
            results = await asyncio.gather(*waiters)
            assert {r.title for r in results} == {"A Productive Day"}
            assert len(j.analyzer.calls) == 1

    asyncio.run(scenario())


def test_invalidation_during_regeneration_leaves_row_dirty(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await _two_entry_day(j)
            cache = j.session.summaries
            day_entries = await j.session.entries.entries_for_date(DAY)
            j.analyzer.gate = asyncio.Event()

            cache.schedule_regeneration(DAY, day_entries)
            await asyncio.sleep(0.05)
            await j.session.entries.create({"title": "Nightcap", "mood": 2, "date": DAY})

            j.analyzer.gate.set()
            await cache.wait_idle()

            row = await cache.get_cached(DAY)
            assert row is not None
            assert row.needs_regeneration
            assert row.entry_count == 3
            assert await cache.dirty_count() == 1

            summary = await cache.analyze(
                DAY, await j.session.entries.entries_for_date(DAY)
            )
            assert not summary.needs_regeneration
            assert summary.entry_count == 3

    asyncio.run(scenario())


def test_ai_failure_returns_unsaved_fallback(tmp_path: Path) -> None:
    analyzer = FakeAnalyzer(fail=True)

    async def scenario() -> None:
        async with open_journal(tmp_path, analyzer=analyzer) as j:
            await _two_entry_day(j)
            pulse = ServicePulse()
            cache = DaySummaryCache(
                "owner-1",
                repository=j.db.day_summaries,
                entry_store=j.session.entries,
                analyzer=analyzer,
                service_pulse=pulse,
            )
            day_entries = await j.session.entries.entries_for_date(DAY)

            summary = await cache.analyze(DAY, day_entries)
            assert summary.needs_regeneration
            assert summary.title == "Great Day - 2 moments"
            assert summary.summary == f"Summary of 2 entries from {DAY}"
            assert summary.mood_trend == "stable"
            assert summary.overall_sentiment == "positive"
            assert summary.emotions == [] and summary.themes == []
            assert summary.is_placeholder

            assert await cache.dirty_count() == 1
            assert pulse.latest("day_summary.fallback")["date"] == DAY
            await cache.close()

    asyncio.run(scenario())


def test_slow_analysis_times_out_to_fallback(tmp_path: Path) -> None:
    analyzer = FakeAnalyzer()

    async def scenario() -> None:
        async with open_journal(tmp_path, analyzer=analyzer, ai_timeout=0.05) as j:
            analyzer.gate = asyncio.Event()
            await _two_entry_day(j)
            day_entries = await j.session.entries.entries_for_date(DAY)

            summary = await j.session.summaries.analyze(DAY, day_entries)
            assert summary.needs_regeneration
            assert summary.title == "Great Day - 2 moments"

    asyncio.run(scenario())


def test_sweep_converges_once_ai_recovers(tmp_path: Path) -> None:
    analyzer = FakeAnalyzer(fail=True)

    async def scenario() -> None:
        async with open_journal(tmp_path, analyzer=analyzer) as j:
            store = j.session.entries
            for day in ("2024-05-01", "2024-05-02"):
                await store.create({"title": "a", "mood": 4, "date": day})
                await store.create({"title": "b", "mood": 2, "date": day})
            cache = j.session.summaries
            assert await cache.dirty_count() == 2

            assert await cache.sweep(1) == 1
            assert await cache.sweep(10) == 2
            assert await cache.dirty_count() == 2

            analyzer.fail = False
            assert await cache.sweep(10) == 2
            assert await cache.dirty_count() == 0
            assert await cache.sweep(10) == 0

    asyncio.run(scenario())


def test_sweep_drops_rows_for_days_with_one_entry(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await j.session.entries.create({"title": "only", "date": DAY})
            await j.db.day_summaries.mark_dirty(
                "owner-1",
                DAY,
                entry_count=2,
                placeholder_title="Good Day - 2 entries",
                average_mood=3.0,
                updated_at="2024-05-01T00:00:00+00:00",
            )

            assert await j.session.summaries.sweep(5) == 1
            assert await j.session.summaries.get_cached(DAY) is None
            assert j.analyzer.calls == []

    asyncio.run(scenario())


def test_other_owners_changes_do_not_touch_cache(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            other = j.open_session("owner-2")
            await other.entries.create({"title": "x", "date": DAY})
            await other.entries.create({"title": "y", "date": DAY})

            assert await j.session.summaries.get_cached(DAY) is None
            assert await other.summaries.get_cached(DAY) is not None

    asyncio.run(scenario())


def test_analyze_after_new_entry_does_not_return_in_flight_result(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await _two_entry_day(j)
            cache = j.session.summaries
            j.analyzer.gate = asyncio.Event()

            await cache.get_title(DAY, await j.session.entries.entries_for_date(DAY))
            await asyncio.sleep(0.05)
            await j.session.entries.create({"title": "Nightcap", "mood": 2, "date": DAY})

            day_entries = await j.session.entries.entries_for_date(DAY)
            waiter = asyncio.create_task(cache.analyze(DAY, day_entries))
            await asyncio.sleep(0.05)
            j.analyzer.gate.set()
            summary = await waiter

            assert not summary.needs_regeneration
            assert summary.entry_count == 3
            assert [len(call.entries) for call in j.analyzer.calls] == [2, 3]
            row = await cache.get_cached(DAY)
            assert row is not None and not row.needs_regeneration
            assert row.entry_count == 3

    asyncio.run(scenario())


def test_placeholder_row_carries_pending_summary_text(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await _two_entry_day(j)

            row = await j.session.summaries.get_cached(DAY)
            assert row is not None
            assert row.summary == PLACEHOLDER_SUMMARY
            assert row.is_placeholder
            assert row.title == "Great Day - 2 moments"

    asyncio.run(scenario())
