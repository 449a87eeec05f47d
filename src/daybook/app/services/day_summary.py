"""Day summary records and the deterministic fallbacks used when AI is absent."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Mapping, Sequence

from daybook.app.db.day_summaries import LIST_COLUMNS, PLACEHOLDER_SUMMARY
from daybook.app.services.journal_entry import Entry, location_label
from daybook.llm.period_analyzer import (
    AnalysisEntry,
    AnalysisRequest,
    PeriodAnalysis,
    average_mood,
)

NEUTRAL_MOOD = 3.0


@dataclass(slots=True)
class DaySummary:
    owner_id: str
    date: str
    entry_count: int
    title: str
    summary: str = ""
    emotions: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    people: list[str] = field(default_factory=list)
    places: list[str] = field(default_factory=list)
    activities: list[str] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    highlights: list[str] = field(default_factory=list)
    challenges: list[str] = field(default_factory=list)
    mood_trend: str = "stable"
    overall_sentiment: str = "neutral"
    average_mood: float | None = None
    needs_regeneration: bool = False
    generated_at: str | None = None
    updated_at: str = ""

    @property
    def is_placeholder(self) -> bool:
        return self.generated_at is None

    def to_record(self) -> dict[str, Any]:
        record = {f.name: getattr(self, f.name) for f in fields(self)}
        record["user_id"] = record.pop("owner_id")
        record["summary_date"] = record.pop("date")
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DaySummary":
        return cls(
            owner_id=str(record["user_id"]),
            date=str(record["summary_date"]),
            entry_count=int(record.get("entry_count") or 0),
            title=str(record.get("title") or ""),
            summary=str(record.get("summary") or ""),
            mood_trend=str(record.get("mood_trend") or "stable"),
            overall_sentiment=str(record.get("overall_sentiment") or "neutral"),
            average_mood=record.get("average_mood"),
            needs_regeneration=bool(record.get("needs_regeneration")),
            generated_at=record.get("generated_at"),
            updated_at=str(record.get("updated_at") or ""),
            **{column: list(record.get(column) or []) for column in LIST_COLUMNS},
        )


def fallback_mood(moods: Iterable[int | None]) -> float:
    avg = average_mood(moods)
    return NEUTRAL_MOOD if avg is None else avg


def fallback_title(moods: Sequence[int | None], count: int | None = None) -> str:
    """Bucket the average mood into a short, deterministic day title."""

    n = len(moods) if count is None else count
    avg = fallback_mood(moods)
    if avg >= 4:
        return f"Great Day - {n} moments"
    if avg >= 3:
        return f"Good Day - {n} entries"
    if avg >= 2:
        return f"Mixed Day - {n} thoughts"
    return f"Challenging Day - {n} reflections"


def sentiment_for_mood(avg: float | None) -> str:
    value = NEUTRAL_MOOD if avg is None else avg
    if value >= 4:
        return "positive"
    if value >= 3:
        return "neutral"
    return "negative"


def analysis_request(
    entries: Sequence[Entry], period_type: str, start_date: str, end_date: str
) -> AnalysisRequest:
    return AnalysisRequest(
        entries=tuple(
            AnalysisEntry(
                content=e.body or e.transcription or "",
                title=e.title,
                mood=e.mood,
                created_at=e.created_at,
                location=location_label(e.location),
                tags=tuple(e.tags),
            )
            for e in entries
        ),
        period_type=period_type,
        start_date=start_date,
        end_date=end_date,
    )


def fallback_analysis(request: AnalysisRequest) -> PeriodAnalysis:
    """Minimal analysis returned when the AI call fails."""

    avg = average_mood(e.mood for e in request.entries)
    count = len(request.entries)
    label = request.period_type.capitalize()
    return PeriodAnalysis(
        title=f"{label} Summary",
        summary=f"Summary of {count} entries from {request.start_date}",
        period_type=request.period_type,
        start_date=request.start_date,
        end_date=request.end_date,
        entry_count=count,
        mood_trend="stable",
        overall_sentiment=sentiment_for_mood(avg),
        average_mood=avg,
    )


def summary_from_analysis(
    owner_id: str,
    summary_date: str,
    analysis: PeriodAnalysis,
    moods: Sequence[int | None],
    *,
    generated_at: str | None,
    needs_regeneration: bool,
) -> DaySummary:
    return DaySummary(
        owner_id=owner_id,
        date=summary_date,
        entry_count=analysis.entry_count,
        title=analysis.title.strip() or fallback_title(moods, analysis.entry_count),
        summary=analysis.summary,
        emotions=list(analysis.emotions),
        themes=list(analysis.themes),
        people=list(analysis.people),
        places=list(analysis.places),
        activities=list(analysis.activities),
        insights=list(analysis.insights),
        highlights=list(analysis.highlights),
        challenges=list(analysis.challenges),
        mood_trend=analysis.mood_trend,
        overall_sentiment=analysis.overall_sentiment,
        average_mood=analysis.average_mood,
        needs_regeneration=needs_regeneration,
        generated_at=generated_at,
        updated_at=generated_at or "",
    )


__all__ = [
    "DaySummary",
    "PLACEHOLDER_SUMMARY",
    "analysis_request",
    "fallback_analysis",
    "fallback_mood",
    "fallback_title",
    "sentiment_for_mood",
    "summary_from_analysis",
]
