from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import FakeAnalyzer
from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.entry_codec import FORMAT_ENCRYPTED, FORMAT_LEGACY
from daybook.app.services.entry_store import AuthenticationMissing
from daybook.app.services.keyring import KeyRing
from daybook.app.services.session_context import SessionRegistry
from daybook.persistence.local_db import LocalDB


def _with_registry(tmp_path: Path, body, **options) -> None:
    async def scenario() -> None:
        db = LocalDB(str(tmp_path / "journal.sqlite3"))
        storage = DeviceStorage(tmp_path / "device.sqlite3")
        await db.init()
        await storage.open()
        registry = SessionRegistry(
            db=db,
            keyring=KeyRing(storage),
            analyzer=FakeAnalyzer(),
            device_storage=storage,
            **options,
        )
        try:
            await body(registry, db)
        finally:
            await registry.close_all()
            await storage.close()
            await db.close()

    asyncio.run(scenario())


def test_sessions_are_reused_per_owner(tmp_path: Path) -> None:
    async def body(registry: SessionRegistry, db: LocalDB) -> None:
        first = await registry.session("owner-1")
        assert await registry.session(" owner-1 ") is first
        other = await registry.session("owner-2")
        assert other is not first
        assert len(registry) == 2
        assert set(registry.active()) == {first, other}

        with pytest.raises(AuthenticationMissing):
            await registry.session("")
        with pytest.raises(AuthenticationMissing):
            await registry.session(None)

    _with_registry(tmp_path, body)


def test_sign_out_closes_session_and_forgets_key(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def body(registry: SessionRegistry, db: LocalDB) -> None:
        session = await registry.session("owner-1")
        await session.entries.create({"title": "hello"})
        cleared: list[str | None] = []
        forget = session.keyring.clear
        monkeypatch.setattr(
            session.keyring,
            "clear",
            lambda owner_id=None: (cleared.append(owner_id), forget(owner_id)),
        )

        assert await registry.sign_out("owner-1")
        assert session.closed
        assert cleared == ["owner-1"]
        assert not await registry.sign_out("owner-1")

        again = await registry.session("owner-1")
        assert again is not session
        entries = await again.entries.list()
        assert [e.title for e in entries] == ["hello"]

    _with_registry(tmp_path, body)


def test_idle_sessions_expire_and_close(tmp_path: Path) -> None:
    async def body(registry: SessionRegistry, db: LocalDB) -> None:
        session = await registry.session("owner-1")
        await asyncio.sleep(0.1)

        assert await registry.expire() == 1
        assert session.closed
        assert len(registry) == 0
        assert (await registry.session("owner-1")) is not session

    _with_registry(tmp_path, body, idle_ttl=0.05)


def test_evicted_sessions_are_closed(tmp_path: Path) -> None:
    async def body(registry: SessionRegistry, db: LocalDB) -> None:
        first = await registry.session("owner-1")
        await registry.session("owner-2")

        assert first.closed
        assert len(registry) == 1

    _with_registry(tmp_path, body, maxsize=1)


def test_new_session_migrates_legacy_rows(tmp_path: Path) -> None:
    async def body(registry: SessionRegistry, db: LocalDB) -> None:
        await db.entries.upsert(
            {
                "id": "old",
                "user_id": "owner-1",
                "entry_date": "2024-05-01",
                "mood_score": 4,
                "payload_format": FORMAT_LEGACY,
                "encrypted_blob": {"title": "Before"},
                "created_at": "2024-05-01T08:00:00+00:00",
                "updated_at": "2024-05-01T08:00:00+00:00",
            }
        )

        session = await registry.session("owner-1")

        row = await db.entries.get("owner-1", "old")
        assert row["payload_format"] == FORMAT_ENCRYPTED
        entry = await session.entries.get("old")
        assert entry is not None and entry.title == "Before"

    _with_registry(tmp_path, body)
