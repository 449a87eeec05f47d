from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import AsyncIterator

import pytest

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.attachments import AttachmentStore, AttachmentUploadError
from daybook.app.services.keyring import KeyRing
from daybook.app.services.session_context import JournalSession
from daybook.llm.period_analyzer import (
    AnalysisError,
    AnalysisRequest,
    PeriodAnalysis,
    average_mood,
)
from daybook.persistence.local_db import LocalDB


class FakeAnalyzer:
    """In-process stand-in for the chat-completions analyzer."""

    def __init__(self, *, title: str = "A Productive Day", fail: bool = False) -> None:
        self.title = title
        self.fail = fail
        self.calls: list[AnalysisRequest] = []
        self.gate: asyncio.Event | None = None

    async def analyze(self, request: AnalysisRequest) -> PeriodAnalysis:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise AnalysisError("model offline")
        return PeriodAnalysis(
            title=self.title,
            summary=f"{len(request.entries)} entries reviewed",
            period_type=request.period_type,
            start_date=request.start_date,
            end_date=request.end_date,
            entry_count=len(request.entries),
            themes=["work"],
            mood_trend="improving",
            overall_sentiment="positive",
            average_mood=average_mood(e.mood for e in request.entries),
        )


class FakeAttachmentStore:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.uploaded: list[str] = []
        self.deleted: list[str] = []

    async def upload(self, owner_id: str, entry_id: str, local_ref: str) -> str:
        if local_ref in self.failing:
            raise AttachmentUploadError(f"refused {local_ref}")
        self.uploaded.append(local_ref)
        name = local_ref.rsplit("/", 1)[-1]
        return f"https://cdn.example/journal-photos/{owner_id}/{entry_id}/{name}"

    async def delete(self, ref: str) -> None:
        self.deleted.append(ref)


@dataclass(slots=True)
class Journal:
    db: LocalDB
    storage: DeviceStorage
    keyring: KeyRing
    session: JournalSession
    analyzer: FakeAnalyzer
    extra_sessions: list[JournalSession] = field(default_factory=list)

    def open_session(self, owner_id: str) -> JournalSession:
        session = JournalSession(
            owner_id, db=self.db, keyring=self.keyring, analyzer=self.analyzer
        )
        self.extra_sessions.append(session)
        return session


@asynccontextmanager
async def open_journal(
    root: Path,
    *,
    owner_id: str = "owner-1",
    analyzer: FakeAnalyzer | None = None,
    attachments: AttachmentStore | None = None,
    ai_timeout: float = 5.0,
) -> AsyncIterator[Journal]:
    db = LocalDB(str(root / "journal.sqlite3"))
    storage = DeviceStorage(root / "device.sqlite3")
    await db.init()
    await storage.open()
    analyzer = analyzer or FakeAnalyzer()
    keyring = KeyRing(storage)
    session = JournalSession(
        owner_id,
        db=db,
        keyring=keyring,
        analyzer=analyzer,
        attachments=attachments,
        ai_timeout=ai_timeout,
    )
    journal = Journal(
        db=db, storage=storage, keyring=keyring, session=session, analyzer=analyzer
    )
    try:
        yield journal
    finally:
        for extra in journal.extra_sessions:
            await extra.close()
        await session.close()
        await storage.close()
        await db.close()


@pytest.fixture
def journal(tmp_path: Path):
    """Factory for an initialised journal rooted in ``tmp_path``."""

    return partial(open_journal, tmp_path)
