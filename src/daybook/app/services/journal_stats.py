from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable

from daybook.app.services.journal_entry import DEFAULT_MOOD, Entry

TOP_TAG_LIMIT = 5


@dataclass(slots=True, frozen=True)
class JournalStats:
    total_entries: int = 0
    average_mood: float = 0.0
    top_tags: list[str] = field(default_factory=list)
    total_days: int = 0
    current_streak: int = 0
    longest_streak: int = 0


def current_streak(days: set[str], today: str) -> int:
    """Consecutive journaling days ending today, or yesterday if today is empty."""

    streak = 1 if today in days else 0
    cursor = date.fromisoformat(today) - timedelta(days=1)
    while cursor.isoformat() in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def longest_streak(days: set[str]) -> int:
    longest = 0
    run = 0
    previous: date | None = None
    for value in sorted(days):
        current = date.fromisoformat(value)
        if previous is not None and current - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        longest = max(longest, run)
        previous = current
    return longest


def compute_stats(entries: Iterable[Entry], *, today: str) -> JournalStats:
    entries = [e for e in entries if not e.placeholder]
    if not entries:
        return JournalStats()

    total = len(entries)
    average = sum((e.mood or DEFAULT_MOOD) for e in entries) / total
    tag_counts = Counter(tag for e in entries for tag in e.tags)
    days = {e.date for e in entries if e.date}
    return JournalStats(
        total_entries=total,
        average_mood=round(average, 1),
        top_tags=[name for name, _ in tag_counts.most_common(TOP_TAG_LIMIT)],
        total_days=len(days),
        current_streak=current_streak(days, today),
        longest_streak=longest_streak(days),
    )


__all__ = ["JournalStats", "compute_stats", "current_streak", "longest_streak"]
