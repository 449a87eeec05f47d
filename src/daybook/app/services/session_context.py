"""Per-owner service context.

A :class:`JournalSession` bundles everything that is scoped to one signed-in
owner: the entry store, the day-summary cache and its in-flight tasks, and
the invalidation subscription on the shared event bus. Sessions live in a
:class:`SessionRegistry` and expire when idle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from cachetools import TTLCache

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.attachments import AttachmentStore
from daybook.app.services.day_summary_cache import DaySummaryCache
from daybook.app.services.day_title_backfill import DayTitleBackfill
from daybook.app.services.entry_codec import EntryCodec
from daybook.app.services.entry_store import AuthenticationMissing, EntryStore
from daybook.app.services.invalidation_coordinator import InvalidationCoordinator
from daybook.app.services.keyring import KeyRing
from daybook.app.services.payload_migration import PayloadMigration
from daybook.app.services.period_reviews import PeriodReviews
from daybook.app.services.service_pulse import ServicePulse
from daybook.llm.period_analyzer import PeriodAnalyzer
from daybook.persistence.local_db import LocalDB

logger = logging.getLogger(__name__)


class JournalSession:
    def __init__(
        self,
        owner_id: str,
        *,
        db: LocalDB,
        keyring: KeyRing,
        analyzer: PeriodAnalyzer,
        attachments: AttachmentStore | None = None,
        service_pulse: ServicePulse | None = None,
        ai_timeout: float = 30.0,
        upload_timeout: float = 30.0,
        first_weekday: str = "sunday",
        default_mood: int = 3,
    ) -> None:
        owner_id = (owner_id or "").strip()
        if not owner_id:
            raise AuthenticationMissing("a session needs an authenticated owner")
        self.owner_id = owner_id
        self.keyring = keyring
        self.codec = EntryCodec(keyring)
        self.entries = EntryStore(
            owner_id,
            repository=db.entries,
            codec=self.codec,
            events=db.events,
            attachments=attachments,
            upload_timeout=upload_timeout,
            first_weekday=first_weekday,
            default_mood=default_mood,
        )
        self.summaries = DaySummaryCache(
            owner_id,
            repository=db.day_summaries,
            entry_store=self.entries,
            analyzer=analyzer,
            ai_timeout=ai_timeout,
            service_pulse=service_pulse,
        )
        self.reviews = PeriodReviews(
            self.entries,
            analyzer,
            ai_timeout=ai_timeout,
            first_weekday=first_weekday,
        )
        self.backfill = DayTitleBackfill(
            owner_id,
            entries=db.entries,
            summaries=db.day_summaries,
            entry_store=self.entries,
            cache=self.summaries,
        )
        self.coordinator = InvalidationCoordinator(
            event_bus=db.events,
            entries=db.entries,
            cache=self.summaries,
        )
        self.coordinator.subscribe()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def sweep(self, limit: int) -> int:
        return await self.summaries.sweep(limit)

    async def close(self) -> None:
        """Detach from the event bus and cancel background regenerations."""

        if self._closed:
            return
        self._closed = True
        self.coordinator.unsubscribe()
        await self.summaries.close()
        logger.debug("Closed journal session for %s", self.owner_id)

    async def sign_out(self) -> None:
        await self.close()
        self.keyring.clear(self.owner_id)


class _SessionCache(TTLCache):
    """TTL cache that remembers the sessions it drops so they can be closed."""

    def __init__(self, maxsize: int, ttl: float) -> None:
        super().__init__(maxsize=maxsize, ttl=ttl)
        self.retired: list[JournalSession] = []

    def expire(self, time: Any = None):
        expired = super().expire(time)
        if expired:
            self.retired.extend(session for _, session in expired)
        return expired

    def popitem(self):
        key, session = super().popitem()
        self.retired.append(session)
        return key, session


class SessionRegistry:
    def __init__(
        self,
        *,
        db: LocalDB,
        keyring: KeyRing,
        analyzer: PeriodAnalyzer,
        attachments: AttachmentStore | None = None,
        service_pulse: ServicePulse | None = None,
        device_storage: DeviceStorage | None = None,
        maxsize: int = 256,
        idle_ttl: float = 3600.0,
        **session_options: Any,
    ) -> None:
        self._db = db
        self._keyring = keyring
        self._analyzer = analyzer
        self._attachments = attachments
        self._service_pulse = service_pulse
        self._device_storage = device_storage
        self._session_options = session_options
        self._sessions = _SessionCache(maxsize=maxsize, ttl=idle_ttl)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def active(self) -> list[JournalSession]:
        return [s for s in list(self._sessions.values()) if not s.closed]

    async def session(self, owner_id: str | None) -> JournalSession:
        """Return the owner's session, creating it on first use.

        A new session runs the legacy payload migration once per owner when
        device storage is available.
        """

        owner_id = (owner_id or "").strip()
        if not owner_id:
            raise AuthenticationMissing("no authenticated owner")

        async with self._lock:
            self._sessions.expire()
            session = self._sessions.get(owner_id)
            if session is not None and not session.closed:
                # Touch to refresh the idle timer.
                self._sessions[owner_id] = session
                created = False
            else:
                session = JournalSession(
                    owner_id,
                    db=self._db,
                    keyring=self._keyring,
                    analyzer=self._analyzer,
                    attachments=self._attachments,
                    service_pulse=self._service_pulse,
                    **self._session_options,
                )
                self._sessions[owner_id] = session
                created = True

        await self._close_retired()
        if created:
            logger.debug("Opened journal session for %s", owner_id)
            await self._migrate(session)
        return session

    async def _migrate(self, session: JournalSession) -> None:
        if self._device_storage is None:
            return
        migration = PayloadMigration(
            entries=self._db.entries,
            codec=session.codec,
            storage=self._device_storage,
        )
        await migration.run_if_needed(session.owner_id)

    async def sign_out(self, owner_id: str) -> bool:
        session = self._sessions.pop(owner_id, None)
        if session is None:
            self._keyring.clear(owner_id)
            return False
        await session.sign_out()
        return True

    async def expire(self) -> int:
        """Close sessions whose idle time ran out. Returns how many closed."""

        self._sessions.expire()
        return await self._close_retired()

    async def _close_retired(self) -> int:
        retired, self._sessions.retired = self._sessions.retired, []
        closed = 0
        for session in retired:
            if session.closed:
                continue
            try:
                await session.close()
            except Exception:
                logger.exception("Failed to close session for %s", session.owner_id)
                continue
            closed += 1
        return closed

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._sessions.retired.clear()
        for session in sessions:
            try:
                await session.close()
            except Exception:
                logger.exception("Failed to close session for %s", session.owner_id)


__all__ = ["JournalSession", "SessionRegistry"]
