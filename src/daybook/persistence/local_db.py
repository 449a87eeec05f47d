import asyncio
import logging
from pathlib import Path
from typing import Any, TypeVar, cast
from collections.abc import Coroutine

import aiosqlite
from aiosqlitepool import SQLiteConnectionPool
from aiosqlitepool.protocols import Connection as SQLitePoolConnection

from daybook.settings import settings
from daybook.util import resolve_data_path

from daybook.app.db.base import run_in_transaction
from daybook.app.db.day_summaries import DaySummariesRepository
from daybook.app.db.entries import EntriesRepository
from daybook.app.db.events import RepositoryEventBus


RepositoryT = TypeVar("RepositoryT")

logger = logging.getLogger(__name__)

SCHEMA_PATH = resolve_data_path(
    "sql/schema.sql",
    fallback_dir=Path(__file__).resolve().parents[3] / "sql",
)


class LocalDB:
    """Facade around the row-store repositories with shared connection pooling."""

    def __init__(self, db_path: str | None = None):
        raw_path = Path(db_path or settings.DATABASE.path)
        self.db_path = raw_path.expanduser().resolve(strict=False)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.pool: SQLiteConnectionPool | None = None
        self._entries: EntriesRepository | None = None
        self._day_summaries: DaySummariesRepository | None = None
        self._events: RepositoryEventBus | None = None

    async def __aenter__(self) -> "LocalDB":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __enter__(self) -> "LocalDB":
        self._run_sync(self.init())
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._run_sync(self.close())

    def _run_sync(self, operation: Coroutine[Any, Any, Any]) -> Any:
        with asyncio.Runner() as runner:
            return runner.run(operation)

    async def init(self) -> None:
        if self.pool is not None:
            return

        is_new = not self.db_path.exists()
        acquisition_timeout = int(settings.DATABASE.pool_acquire_timeout)

        async def _connection_factory() -> SQLitePoolConnection:
            return cast(SQLitePoolConnection, await self._create_connection())

        pool = SQLiteConnectionPool(
            _connection_factory,
            pool_size=int(settings.DATABASE.pool_size),
            acquisition_timeout=acquisition_timeout,
        )
        self.pool = pool
        try:
            await self._ensure_schema(is_new)
            self._configure_repositories()
        except Exception:
            await pool.close()
            self.pool = None
            self._entries = None
            self._day_summaries = None
            self._events = None
            raise

    async def close(self) -> None:
        if self.pool is not None:
            try:
                await self.pool.close()
            finally:
                self.pool = None
        self._entries = None
        self._day_summaries = None
        if self._events is not None:
            self._events.clear()
        self._events = None

    async def _create_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path, timeout=float(settings.DATABASE.timeout)
        )
        await conn.execute(
            f"PRAGMA busy_timeout = {int(settings.DATABASE.busy_timeout)}"
        )
        await conn.execute(f"PRAGMA mmap_size = {int(settings.DATABASE.mmap_size)}")
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA synchronous = NORMAL")
        await conn.execute("PRAGMA temp_store = MEMORY")
        conn.row_factory = aiosqlite.Row
        return conn

    async def _ensure_schema(self, is_new: bool) -> None:
        if is_new:
            logger.info("Creating new database at %s", self.db_path)
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")
        schema_sql = SCHEMA_PATH.read_text()
        async with self.pool.connection() as conn:
            await run_in_transaction(
                conn,
                conn.executescript,
                schema_sql,
            )

    def _configure_repositories(self) -> None:
        if not self.pool:
            raise RuntimeError("Connection pool not initialized")
        self._events = RepositoryEventBus()
        self._entries = EntriesRepository(self.pool)
        self._day_summaries = DaySummariesRepository(self.pool)

    def _require_repository(
        self, repository: RepositoryT | None, name: str
    ) -> RepositoryT:
        if repository is None:
            raise RuntimeError(
                f"{name} repository is not initialised; call init() before accessing it."
            )
        return repository

    @property
    def entries(self) -> EntriesRepository:
        """Return the entries repository.

        Raises a :class:`RuntimeError` when accessed before the database has been
        initialised so configuration errors are caught early.
        """

        return self._require_repository(self._entries, "Entries")

    @property
    def day_summaries(self) -> DaySummariesRepository:
        """Return the day summaries repository."""

        return self._require_repository(self._day_summaries, "Day summaries")

    @property
    def events(self) -> RepositoryEventBus:
        """Return the repository event bus."""

        return self._require_repository(self._events, "Event bus")
