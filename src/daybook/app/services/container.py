"""Application service and lifecycle helpers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.attachments import (
    AttachmentStore,
    FilesystemAttachmentStore,
    HttpAttachmentStore,
)
from daybook.app.services.keyring import KeyRing
from daybook.app.services.service_pulse import ServicePulse
from daybook.app.services.session_context import JournalSession, SessionRegistry
from daybook.llm.period_analyzer import PeriodAnalyzer, PeriodAnalyzerClient
from daybook.persistence.local_db import LocalDB
from daybook.settings import settings


logger = logging.getLogger(__name__)


def build_attachment_store(config=settings) -> AttachmentStore:
    backend = str(config.ATTACHMENTS.backend or "filesystem").strip().lower()
    bucket = str(config.ATTACHMENTS.bucket)
    if backend == "http":
        base_url = str(config.ATTACHMENTS.base_url or "").strip()
        if not base_url:
            raise RuntimeError(
                "Set DAYBOOK_ATTACHMENTS__BASE_URL for the http attachment backend"
            )
        return HttpAttachmentStore(
            base_url,
            bucket=bucket,
            api_key=config.get("ATTACHMENTS.api_key"),
            timeout=float(config.ATTACHMENTS.timeout),
        )
    if backend != "filesystem":
        raise RuntimeError(f"Unknown attachment backend: {backend}")
    return FilesystemAttachmentStore(Path(str(config.ATTACHMENTS.root)), bucket=bucket)


@dataclass(slots=True)
class AppServices:
    """Bundle long-lived application services."""

    db: LocalDB
    device_storage: DeviceStorage
    keyring: KeyRing
    analyzer: PeriodAnalyzer
    attachments: AttachmentStore
    service_pulse: ServicePulse
    sessions: SessionRegistry

    @classmethod
    def create(
        cls,
        *,
        db: LocalDB | None = None,
        device_storage: DeviceStorage | None = None,
        analyzer: PeriodAnalyzer | None = None,
        attachments: AttachmentStore | None = None,
    ) -> "AppServices":
        db = db or LocalDB()
        device_storage = device_storage or DeviceStorage(
            str(settings.DEVICE.storage_path)
        )
        keyring = KeyRing(
            device_storage,
            policy=str(settings.CRYPTO.key_policy),
            master_secret=settings.get("CRYPTO.master_secret"),
        )
        analyzer = analyzer or PeriodAnalyzerClient.from_settings(settings)
        attachments = attachments or build_attachment_store(settings)
        service_pulse = ServicePulse()
        sessions = SessionRegistry(
            db=db,
            keyring=keyring,
            analyzer=analyzer,
            attachments=attachments,
            service_pulse=service_pulse,
            device_storage=device_storage,
            maxsize=int(settings.SESSIONS.maxsize),
            idle_ttl=float(settings.SESSIONS.idle_ttl),
            ai_timeout=float(settings.AI.timeout),
            upload_timeout=float(settings.ATTACHMENTS.timeout),
            first_weekday=str(settings.ENTRIES.week_start),
            default_mood=int(settings.ENTRIES.default_mood),
        )
        return cls(
            db=db,
            device_storage=device_storage,
            keyring=keyring,
            analyzer=analyzer,
            attachments=attachments,
            service_pulse=service_pulse,
            sessions=sessions,
        )


class AppLifecycle:
    """Manage startup and shutdown of long-lived application services."""

    def __init__(
        self,
        services: AppServices,
        sweep_interval: float = 300.0,
        sweep_limit: int = 3,
    ) -> None:
        self._services = services
        self._sweep_interval = sweep_interval
        self._sweep_limit = sweep_limit
        self._maintenance_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._started = False

    async def __aenter__(self) -> "AppLifecycle":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Open storage and start the summary sweep."""

        async with self._lock:
            if self._started:
                return

            logger.debug("Starting application lifecycle: db.init -> device_storage.open")
            db_initialised = False
            try:
                await self._services.db.init()
                db_initialised = True
                await self._services.device_storage.open()
            except Exception:
                logger.debug(
                    "Startup failed; rolling back initialised services", exc_info=True
                )
                with suppress(Exception):
                    if db_initialised:
                        logger.debug("Rollback: closing database after startup failure")
                        await self._services.db.close()
                raise

            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(),
                name="daybook-maintenance",
            )
            self._started = True
            logger.info("Application lifecycle started")

    async def stop(self) -> None:
        """Cancel maintenance, close sessions and release storage."""

        maintenance_task: asyncio.Task | None
        async with self._lock:
            if not self._started:
                return

            logger.debug(
                "Stopping application lifecycle: cancel maintenance -> sessions.close_all -> db.close"
            )
            maintenance_task = self._maintenance_task
            self._maintenance_task = None
            self._started = False

        if maintenance_task is not None:
            maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await maintenance_task

        errors: list[Exception] = []

        try:
            await self._services.sessions.close_all()
        except Exception as exc:
            logger.exception("Failed to close journal sessions cleanly")
            errors.append(exc)

        for name, closer in (
            ("analyzer", getattr(self._services.analyzer, "aclose", None)),
            ("attachment store", getattr(self._services.attachments, "aclose", None)),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.exception("Failed to close %s cleanly", name)
                errors.append(exc)

        try:
            await self._services.device_storage.close()
        except Exception as exc:
            logger.exception("Failed to close device storage cleanly")
            errors.append(exc)

        try:
            await self._services.db.close()
        except Exception as exc:
            logger.exception("Failed to close database cleanly")
            errors.append(exc)

        if errors:
            raise errors[0]

        logger.info("Application lifecycle stopped")

    async def run_maintenance(self) -> int:
        """Expire idle sessions, then sweep dirty summaries for the rest."""

        sessions = self._services.sessions
        try:
            expired = await sessions.expire()
            if expired:
                logger.debug("Expired %d idle journal sessions", expired)
        except Exception:
            logger.exception("Session expiry failed")

        swept = 0
        for session in sessions.active():
            swept += await self._sweep_session(session)
        return swept

    async def _sweep_session(self, session: JournalSession) -> int:
        try:
            return await session.sweep(self._sweep_limit)
        except Exception:
            logger.exception("Summary sweep failed for %s", session.owner_id)
            return 0

    async def _maintenance_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._sweep_interval)
                await self.run_maintenance()
        except asyncio.CancelledError:
            logger.debug("Maintenance loop cancelled")
            raise

    @property
    def services(self) -> AppServices:
        return self._services


def get_services() -> AppServices:
    """Return the :class:`AppServices` container of the running app."""

    from quart import current_app

    services = current_app.extensions.get("daybook")
    if services is None:
        raise RuntimeError("App services container is not initialised")
    return services


def get_sessions() -> SessionRegistry:
    """Convenience accessor for the session registry."""

    return get_services().sessions


__all__ = [
    "AppLifecycle",
    "AppServices",
    "build_attachment_store",
    "get_services",
    "get_sessions",
]
