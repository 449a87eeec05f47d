from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS device_kv (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (namespace, key)
)
"""


class StorageUnavailable(Exception):
    """Raised when device-local storage cannot be read or written."""


class DeviceStorage:
    """Namespaced key-value store that lives only on this machine.

    Holds the persisted encryption keys and per-owner preference flags. The
    backing file is created with owner-only permissions.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path).expanduser().resolve(strict=False)
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "DeviceStorage":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        async with self._lock:
            if self._conn is not None:
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                is_new = not self.path.exists()
                conn = await aiosqlite.connect(self.path)
                await conn.execute(_SCHEMA)
                await conn.commit()
            except (OSError, sqlite3.Error) as exc:
                raise StorageUnavailable(
                    f"device storage at {self.path} is unavailable"
                ) from exc
            if is_new:
                logger.info("Created device storage at %s", self.path)
                try:
                    os.chmod(self.path, 0o600)
                except OSError:
                    logger.warning("Could not restrict permissions on %s", self.path)
            self._conn = conn

    async def close(self) -> None:
        async with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()

    async def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.open()
        assert self._conn is not None
        return self._conn

    async def get(self, namespace: str, key: str) -> str | None:
        conn = await self._require_conn()
        try:
            cursor = await conn.execute(
                "SELECT value FROM device_kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"failed to read {namespace}:{key}") from exc
        return str(row[0]) if row else None

    async def set(self, namespace: str, key: str, value: str) -> None:
        conn = await self._require_conn()
        try:
            await conn.execute(
                """
                INSERT INTO device_kv (namespace, key, value)
                VALUES (?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value      = excluded.value,
                    updated_at = strftime('%s', 'now')
                """,
                (namespace, key, value),
            )
            await conn.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"failed to write {namespace}:{key}") from exc

    async def delete(self, namespace: str, key: str) -> bool:
        conn = await self._require_conn()
        try:
            cursor = await conn.execute(
                "DELETE FROM device_kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            await conn.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"failed to delete {namespace}:{key}") from exc
        return cursor.rowcount > 0

    async def get_flag(self, namespace: str, key: str) -> bool:
        return (await self.get(namespace, key)) == "1"

    async def set_flag(self, namespace: str, key: str, value: bool = True) -> None:
        await self.set(namespace, key, "1" if value else "0")


__all__ = ["DeviceStorage", "StorageUnavailable"]
