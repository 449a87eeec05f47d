from __future__ import annotations

import pytest

from daybook.app.services.day_summary import (
    DaySummary,
    analysis_request,
    fallback_analysis,
    fallback_title,
    sentiment_for_mood,
)
from daybook.app.services.journal_entry import Entry


@pytest.mark.parametrize(
    "moods, expected",
    [
        ([5, 4, 4], "Great Day - 3 moments"),
        ([5, 3], "Great Day - 2 moments"),
        ([3, 4], "Good Day - 2 entries"),
        ([2, 3], "Mixed Day - 2 thoughts"),
        ([1, 2], "Challenging Day - 2 reflections"),
        ([0, 0], "Good Day - 2 entries"),
    ],
)
def test_fallback_title_buckets(moods: list[int], expected: str) -> None:
    assert fallback_title(moods) == expected
    assert fallback_title(moods) == fallback_title(list(moods))


def test_fallback_title_ignores_missing_moods_and_honours_count() -> None:
    assert fallback_title([None, 5, 0], 4) == "Great Day - 4 moments"


@pytest.mark.parametrize(
    "avg, expected",
    [(4.5, "positive"), (3.0, "neutral"), (2.9, "negative"), (None, "neutral")],
)
def test_sentiment_for_mood(avg: float | None, expected: str) -> None:
    assert sentiment_for_mood(avg) == expected


def test_fallback_analysis_describes_the_period() -> None:
    entries = [
        Entry(id="a", owner_id="o", date="2024-05-06", mood=2, body="rain"),
        Entry(id="b", owner_id="o", date="2024-05-07", mood=1, body="more rain"),
    ]
    request = analysis_request(entries, "week", "2024-05-05", "2024-05-11")

    analysis = fallback_analysis(request)

    assert analysis.title == "Week Summary"
    assert analysis.summary == "Summary of 2 entries from 2024-05-05"
    assert analysis.overall_sentiment == "negative"
    assert analysis.average_mood == 1.5
    assert analysis.mood_trend == "stable"


def test_record_conversion_keeps_lists() -> None:
    summary = DaySummary(
        owner_id="owner-1",
        date="2024-05-01",
        entry_count=2,
        title="Busy",
        themes=["work", "family"],
        generated_at="2024-05-01T10:00:00+00:00",
    )

    record = summary.to_record()
    assert record["user_id"] == "owner-1"
    assert record["summary_date"] == "2024-05-01"
    assert DaySummary.from_record(record) == summary
