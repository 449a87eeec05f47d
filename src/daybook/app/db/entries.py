from __future__ import annotations

from typing import Any, Mapping

import orjson

from .base import BaseRepository

_COLUMNS = (
    "id, user_id, entry_date, mood_score, has_photos, location_data, "
    "payload_format, encrypted_blob, created_at, updated_at, tombstoned"
)


def _row_to_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(row)
    location = data.get("location_data")
    if isinstance(location, (str, bytes)) and location:
        try:
            data["location_data"] = orjson.loads(location)
        except orjson.JSONDecodeError:
            data["location_data"] = None
    return data


class EntriesRepository(BaseRepository):
    """Owner-scoped access to stored entry rows.

    Rows are returned as plain dicts with ``location_data`` parsed. The
    payload columns are left untouched for the codec to interpret.
    """

    async def upsert(self, row: Mapping[str, Any]) -> dict[str, Any]:
        location = row.get("location_data")
        blob = row.get("encrypted_blob")
        if isinstance(blob, Mapping):
            blob = orjson.dumps(dict(blob)).decode()
        params = (
            row["id"],
            row["user_id"],
            row["entry_date"],
            int(row["mood_score"]),
            1 if row.get("has_photos") else 0,
            orjson.dumps(location).decode() if location is not None else None,
            row.get("payload_format"),
            blob,
            row["created_at"],
            row["updated_at"],
            1 if row.get("tombstoned") else 0,
        )
        async with self.pool.connection() as conn:

            async def _upsert():
                cursor = await conn.execute(
                    f"""
                    INSERT INTO entries ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        entry_date     = excluded.entry_date,
                        mood_score     = excluded.mood_score,
                        has_photos     = excluded.has_photos,
                        location_data  = excluded.location_data,
                        payload_format = excluded.payload_format,
                        encrypted_blob = excluded.encrypted_blob,
                        updated_at     = excluded.updated_at,
                        tombstoned     = excluded.tombstoned
                    WHERE entries.user_id = excluded.user_id
                    RETURNING {_COLUMNS}
                    """,
                    params,
                )
                return await cursor.fetchone()

            stored = await self._run_in_transaction(conn, _upsert)
        if stored is None:
            raise PermissionError(
                f"entry {row['id']} belongs to a different owner"
            )
        return _row_to_dict(stored)

    async def get(
        self, user_id: str, entry_id: str, *, include_deleted: bool = False
    ) -> dict[str, Any] | None:
        sql = f"SELECT {_COLUMNS} FROM entries WHERE id = ? AND user_id = ?"
        if not include_deleted:
            sql += " AND tombstoned = 0"
        row = await self._fetchone(sql, (entry_id, user_id))
        return _row_to_dict(row) if row else None

    async def list_rows(
        self,
        user_id: str,
        *,
        start: str | None = None,
        end: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = ?", "tombstoned = 0"]
        params: list[Any] = [user_id]
        if start:
            clauses.append("entry_date >= ?")
            params.append(start)
        if end:
            clauses.append("entry_date <= ?")
            params.append(end)
        rows = await self._fetchall(
            f"""
            SELECT {_COLUMNS} FROM entries
            WHERE {' AND '.join(clauses)}
            ORDER BY entry_date DESC, created_at DESC
            """,
            params,
        )
        return [_row_to_dict(row) for row in rows]

    async def rows_for_date(self, user_id: str, entry_date: str) -> list[dict[str, Any]]:
        return await self.list_rows(user_id, start=entry_date, end=entry_date)

    async def tombstone(
        self, user_id: str, entry_id: str, updated_at: str
    ) -> str | None:
        """Soft-delete an entry and return its calendar date, if it existed."""

        async with self.pool.connection() as conn:

            async def _tombstone():
                cursor = await conn.execute(
                    """
                    UPDATE entries
                    SET tombstoned = 1, updated_at = ?
                    WHERE id = ? AND user_id = ? AND tombstoned = 0
                    RETURNING entry_date
                    """,
                    (updated_at, entry_id, user_id),
                )
                return await cursor.fetchone()

            row = await self._run_in_transaction(conn, _tombstone)
        return str(row["entry_date"]) if row else None

    async def mood_scores_for_date(self, user_id: str, entry_date: str) -> list[int]:
        rows = await self._fetchall(
            """
            SELECT mood_score FROM entries
            WHERE user_id = ? AND entry_date = ? AND tombstoned = 0
            """,
            (user_id, entry_date),
        )
        return [int(row["mood_score"] or 0) for row in rows]

    async def day_counts(
        self, user_id: str, *, min_count: int = 1
    ) -> list[tuple[str, int]]:
        """Return ``(date, entry_count)`` pairs, newest first."""

        rows = await self._fetchall(
            """
            SELECT entry_date, COUNT(*) AS entry_count
            FROM entries
            WHERE user_id = ? AND tombstoned = 0
            GROUP BY entry_date
            HAVING COUNT(*) >= ?
            ORDER BY entry_date DESC
            """,
            (user_id, min_count),
        )
        return [(str(row["entry_date"]), int(row["entry_count"])) for row in rows]

    async def rows_with_format(
        self, user_id: str, payload_format: str | None
    ) -> list[dict[str, Any]]:
        if payload_format is None:
            sql = f"SELECT {_COLUMNS} FROM entries WHERE user_id = ? AND payload_format IS NULL"
            params: tuple[Any, ...] = (user_id,)
        else:
            sql = f"SELECT {_COLUMNS} FROM entries WHERE user_id = ? AND payload_format = ?"
            params = (user_id, payload_format)
        rows = await self._fetchall(sql, params)
        return [_row_to_dict(row) for row in rows]


__all__ = ["EntriesRepository"]
