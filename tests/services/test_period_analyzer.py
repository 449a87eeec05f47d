from __future__ import annotations

import asyncio

import httpx
import orjson
import pytest

from daybook.llm.period_analyzer import (
    AnalysisEntry,
    AnalysisError,
    AnalysisRequest,
    PeriodAnalyzerClient,
    build_messages,
    parse_analysis,
)


def _request(period_type: str = "day") -> AnalysisRequest:
    return AnalysisRequest(
        entries=(
            AnalysisEntry(
                content="Walked to the market with Ana.",
                title="Market",
                mood=4,
                created_at="2024-05-01T09:30:00+00:00",
                location="Old Town",
                tags=("errands",),
            ),
            AnalysisEntry(content="Quiet evening.", mood=2),
        ),
        period_type=period_type,
        start_date="2024-05-01",
        end_date="2024-05-01",
    )


def test_build_messages_renders_entries() -> None:
    system, user = build_messages(_request())

    assert system["role"] == "system"
    assert "improving|declining|stable|mixed" in system["content"]
    assert user["role"] == "user"
    assert "Total entries: 2" in user["content"]
    assert "Average mood: 3.0/5" in user["content"]
    assert "(2024-05-01 at 09:30)" in user["content"]
    assert "Location: Old Town" in user["content"]
    assert "Title: Untitled" in user["content"]


def test_parse_analysis_normalises_fields() -> None:
    raw = """```json
    {"title": " Market Day ", "summary": "", "themes": ["errands", "", 3],
     "mood_trend": "Improving", "overall_sentiment": "ecstatic", "people": "Ana"}
    ```"""

    analysis = parse_analysis(raw, _request())

    assert analysis.title == "Market Day"
    assert analysis.summary == "A period of journaling and reflection."
    assert analysis.themes == ["errands", "3"]
    assert analysis.people == []
    assert analysis.mood_trend == "improving"
    assert analysis.overall_sentiment == "neutral"
    assert analysis.entry_count == 2
    assert analysis.average_mood == 3.0


@pytest.mark.parametrize("raw", [None, "", "   ", "not json", "[1, 2]"])
def test_parse_analysis_rejects_unusable_output(raw: str | None) -> None:
    with pytest.raises(AnalysisError):
        parse_analysis(raw, _request())


def _client(handler) -> PeriodAnalyzerClient:
    transport = httpx.MockTransport(handler)
    return PeriodAnalyzerClient(
        "https://llm.example/v1",
        model="test-model",
        client=httpx.AsyncClient(transport=transport),
    )


def test_client_posts_chat_completion_request() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = orjson.loads(request.content)
        content = orjson.dumps({"title": "Errands", "summary": "Busy."}).decode()
        return httpx.Response(
            200, json={"choices": [{"message": {"content": content}}]}
        )

    async def scenario() -> None:
        analysis = await _client(handler).analyze(_request())
        assert analysis.title == "Errands"
        assert analysis.summary == "Busy."

    asyncio.run(scenario())

    assert captured["url"] == "https://llm.example/v1/chat/completions"
    body = captured["body"]
    assert body["model"] == "test-model"
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 800
    assert body["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in body["messages"]] == ["system", "user"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream down"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json={"choices": [{"message": {"content": "  "}}]}),
    ],
)
def test_client_maps_failures_to_analysis_error(response: httpx.Response) -> None:
    async def scenario() -> None:
        with pytest.raises(AnalysisError):
            await _client(lambda request: response).analyze(_request())

    asyncio.run(scenario())


def test_client_refuses_empty_or_unknown_requests() -> None:
    async def scenario() -> None:
        client = _client(lambda request: httpx.Response(500))
        with pytest.raises(AnalysisError):
            await client.analyze(
                AnalysisRequest(entries=(), period_type="day", start_date="a", end_date="a")
            )
        with pytest.raises(AnalysisError):
            await client.analyze(_request("year"))

    asyncio.run(scenario())
