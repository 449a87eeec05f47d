"""Client for the external period-analysis model.

The model is reached through an OpenAI-compatible ``/chat/completions``
endpoint. Responses are normalised into :class:`PeriodAnalysis`; anything
that cannot be parsed raises :class:`AnalysisError` so callers can fall back.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol, Sequence

import httpx
import orjson

from daybook.llm.prompt_templates import render_prompt_template

logger = logging.getLogger(__name__)

PERIOD_TYPES = ("day", "week", "month", "custom")
MOOD_TRENDS = ("improving", "declining", "stable", "mixed")
SENTIMENTS = ("very_positive", "positive", "neutral", "negative", "very_negative")
DEFAULT_SUMMARY = "A period of journaling and reflection."

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class AnalysisError(Exception):
    """Raised when the analysis service fails or returns unusable output."""


@dataclass(slots=True, frozen=True)
class AnalysisEntry:
    content: str
    title: str = ""
    mood: int | None = None
    created_at: str = ""
    location: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class AnalysisRequest:
    entries: tuple[AnalysisEntry, ...]
    period_type: str
    start_date: str
    end_date: str


@dataclass(slots=True)
class PeriodAnalysis:
    title: str
    summary: str
    period_type: str
    start_date: str
    end_date: str
    entry_count: int
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


class PeriodAnalyzer(Protocol):
    async def analyze(self, request: AnalysisRequest) -> PeriodAnalysis:
        ...


def average_mood(moods: Iterable[int | None]) -> float | None:
    """Mean of the truthy mood scores, or ``None`` when there are none."""

    values = [m for m in moods if m]
    if not values:
        return None
    return sum(values) / len(values)


def _format_when(created_at: str) -> str:
    if not created_at:
        return ""
    try:
        dt = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError:
        return created_at
    return f"{dt:%Y-%m-%d} at {dt:%H:%M}"


def build_messages(request: AnalysisRequest) -> list[dict[str, str]]:
    entries = [
        {
            "when": _format_when(e.created_at),
            "title": e.title,
            "mood": e.mood,
            "location": e.location,
            "tags": list(e.tags),
            "content": e.content,
        }
        for e in request.entries
    ]
    system = render_prompt_template(
        "period_analysis_system.txt.j2",
        period_type=request.period_type,
        mood_trends=MOOD_TRENDS,
        sentiments=SENTIMENTS,
    )
    user = render_prompt_template(
        "period_analysis_user.txt.j2",
        period_type=request.period_type,
        start_date=request.start_date,
        end_date=request.end_date,
        entries=entries,
        average_mood=average_mood(e.mood for e in request.entries),
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _choice(value: Any, allowed: Sequence[str], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


def parse_analysis(raw: str | None, request: AnalysisRequest) -> PeriodAnalysis:
    """Normalise the model's JSON reply.

    ``title`` may come back empty; callers decide how to fill it.
    """

    text = (raw or "").strip()
    if not text:
        raise AnalysisError("analysis response was empty")
    text = _FENCE_RE.sub("", text).strip()
    try:
        parsed = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise AnalysisError("analysis response was not JSON") from exc
    if not isinstance(parsed, Mapping):
        raise AnalysisError("analysis response was not a JSON object")

    return PeriodAnalysis(
        title=str(parsed.get("title") or "").strip(),
        summary=str(parsed.get("summary") or "").strip() or DEFAULT_SUMMARY,
        period_type=request.period_type,
        start_date=request.start_date,
        end_date=request.end_date,
        entry_count=len(request.entries),
        emotions=_str_list(parsed.get("emotions")),
        themes=_str_list(parsed.get("themes")),
        people=_str_list(parsed.get("people")),
        places=_str_list(parsed.get("places")),
        activities=_str_list(parsed.get("activities")),
        insights=_str_list(parsed.get("insights")),
        highlights=_str_list(parsed.get("highlights")),
        challenges=_str_list(parsed.get("challenges")),
        mood_trend=_choice(parsed.get("mood_trend"), MOOD_TRENDS, "stable"),
        overall_sentiment=_choice(
            parsed.get("overall_sentiment"), SENTIMENTS, "neutral"
        ),
        average_mood=average_mood(e.mood for e in request.entries),
    )


class PeriodAnalyzerClient:
    """HTTP client for the chat-completions analysis endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            transport=httpx.AsyncHTTPTransport(retries=0),
        )

    @classmethod
    def from_settings(cls, settings) -> "PeriodAnalyzerClient":
        return cls(
            str(settings.AI.base_url),
            api_key=settings.get("AI.api_key"),
            model=str(settings.AI.model),
            temperature=float(settings.AI.temperature),
            max_tokens=int(settings.AI.max_tokens),
            timeout=float(settings.AI.timeout),
        )

    async def analyze(self, request: AnalysisRequest) -> PeriodAnalysis:
        if not request.entries:
            raise AnalysisError("no entries provided")
        if request.period_type not in PERIOD_TYPES:
            raise AnalysisError(f"unsupported period type: {request.period_type}")

        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": build_messages(request),
        }
        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                content=orjson.dumps(payload),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text.strip()[:200]
            raise AnalysisError(
                f"analysis request failed with {exc.response.status_code}: {detail}"
            ) from exc
        except httpx.HTTPError as exc:
            raise AnalysisError(f"analysis request failed: {exc}") from exc

        try:
            data = orjson.loads(response.content)
            content = data["choices"][0]["message"]["content"]
        except (orjson.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
            raise AnalysisError("malformed completion envelope") from exc

        logger.debug(
            "Analysed %s %s..%s (%d entries)",
            request.period_type,
            request.start_date,
            request.end_date,
            len(request.entries),
        )
        return parse_analysis(content, request)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "AnalysisEntry",
    "AnalysisError",
    "AnalysisRequest",
    "MOOD_TRENDS",
    "PERIOD_TYPES",
    "PeriodAnalysis",
    "PeriodAnalyzer",
    "PeriodAnalyzerClient",
    "SENTIMENTS",
    "average_mood",
    "build_messages",
    "parse_analysis",
]
