from __future__ import annotations

from typing import Any, Mapping

import orjson

from .base import BaseRepository

PLACEHOLDER_SUMMARY = "Pending AI analysis"

LIST_COLUMNS = (
    "emotions",
    "themes",
    "people",
    "places",
    "activities",
    "insights",
    "highlights",
    "challenges",
)

_COLUMNS = (
    "user_id, summary_date, entry_count, title, summary, "
    + ", ".join(LIST_COLUMNS)
    + ", mood_trend, overall_sentiment, average_mood, needs_regeneration, "
    "generated_at, updated_at"
)


def _row_to_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(row)
    for column in LIST_COLUMNS:
        raw = data.get(column)
        try:
            parsed = orjson.loads(raw) if raw else []
        except orjson.JSONDecodeError:
            parsed = []
        data[column] = parsed if isinstance(parsed, list) else []
    data["needs_regeneration"] = bool(data.get("needs_regeneration"))
    return data


class DaySummariesRepository(BaseRepository):
    """One cached AI summary row per (owner, calendar day)."""

    async def get(self, user_id: str, summary_date: str) -> dict[str, Any] | None:
        row = await self._fetchone(
            f"SELECT {_COLUMNS} FROM day_summaries WHERE user_id = ? AND summary_date = ?",
            (user_id, summary_date),
        )
        return _row_to_dict(row) if row else None

    async def upsert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Insert or replace a full summary row keyed by owner and date."""

        lists = [orjson.dumps(list(record.get(c) or [])).decode() for c in LIST_COLUMNS]
        params = (
            record["user_id"],
            record["summary_date"],
            int(record["entry_count"]),
            record["title"],
            record.get("summary") or "",
            *lists,
            record.get("mood_trend") or "stable",
            record.get("overall_sentiment") or "neutral",
            record.get("average_mood"),
            1 if record.get("needs_regeneration") else 0,
            record.get("generated_at"),
            record["updated_at"],
        )
        updates = ",\n".join(
            f"{col} = excluded.{col}"
            for col in (
                "entry_count",
                "title",
                "summary",
                *LIST_COLUMNS,
                "mood_trend",
                "overall_sentiment",
                "average_mood",
                "needs_regeneration",
                "generated_at",
                "updated_at",
            )
        )
        placeholders = ", ".join("?" for _ in params)
        async with self.pool.connection() as conn:

            async def _upsert():
                cursor = await conn.execute(
                    f"""
                    INSERT INTO day_summaries ({_COLUMNS})
                    VALUES ({placeholders})
                    ON CONFLICT(user_id, summary_date) DO UPDATE SET
                    {updates}
                    RETURNING {_COLUMNS}
                    """,
                    params,
                )
                return await cursor.fetchone()

            stored = await self._run_in_transaction(conn, _upsert)
        return _row_to_dict(stored)

    async def mark_dirty(
        self,
        user_id: str,
        summary_date: str,
        *,
        entry_count: int,
        placeholder_title: str,
        average_mood: float | None,
        updated_at: str,
    ) -> None:
        """Flag a row for regeneration, inserting a placeholder when absent.

        Existing rows keep their title and summary.
        """

        await self._execute_write(
            """
            INSERT INTO day_summaries (
                user_id, summary_date, entry_count, title, summary,
                average_mood, needs_regeneration, generated_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 1, NULL, ?)
            ON CONFLICT(user_id, summary_date) DO UPDATE SET
                needs_regeneration = 1,
                entry_count        = excluded.entry_count,
                updated_at         = excluded.updated_at
            """,
            (
                user_id,
                summary_date,
                int(entry_count),
                placeholder_title,
                PLACEHOLDER_SUMMARY,
                average_mood,
                updated_at,
            ),
        )

    async def delete(self, user_id: str, summary_date: str) -> bool:
        deleted = await self._execute_write(
            "DELETE FROM day_summaries WHERE user_id = ? AND summary_date = ?",
            (user_id, summary_date),
        )
        return deleted > 0

    async def list_dirty_dates(self, user_id: str, limit: int) -> list[str]:
        rows = await self._fetchall(
            """
            SELECT summary_date FROM day_summaries
            WHERE user_id = ? AND needs_regeneration = 1
            ORDER BY summary_date DESC
            LIMIT ?
            """,
            (user_id, int(limit)),
        )
        return [str(row["summary_date"]) for row in rows]

    async def count_dirty(self, user_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM day_summaries WHERE user_id = ? AND needs_regeneration = 1",
            (user_id,),
        )
        return int(row[0]) if row else 0

    async def fresh_dates(self, user_id: str) -> set[str]:
        rows = await self._fetchall(
            """
            SELECT summary_date FROM day_summaries
            WHERE user_id = ? AND needs_regeneration = 0
            """,
            (user_id,),
        )
        return {str(row["summary_date"]) for row in rows}

    async def mark_all_dirty(self, user_id: str, updated_at: str) -> int:
        return await self._execute_write(
            """
            UPDATE day_summaries
            SET needs_regeneration = 1, updated_at = ?
            WHERE user_id = ? AND needs_regeneration = 0
            """,
            (updated_at, user_id),
        )


__all__ = ["DaySummariesRepository", "LIST_COLUMNS", "PLACEHOLDER_SUMMARY"]
