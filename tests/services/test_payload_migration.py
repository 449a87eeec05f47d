from __future__ import annotations

import asyncio

from daybook.app.services.entry_codec import FORMAT_ENCRYPTED, FORMAT_LEGACY
from daybook.app.services.payload_migration import PayloadMigration

STAMP = "2024-05-01T08:00:00+00:00"


def _legacy_row(entry_id: str, payload_format: str | None, blob) -> dict:
    return {
        "id": entry_id,
        "user_id": "owner-1",
        "entry_date": "2024-05-01",
        "mood_score": 3,
        "has_photos": False,
        "location_data": None,
        "payload_format": payload_format,
        "encrypted_blob": blob,
        "created_at": STAMP,
        "updated_at": STAMP,
        "tombstoned": False,
    }


def test_legacy_rows_are_encrypted_once(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            await j.db.entries.upsert(
                _legacy_row(
                    "tagged",
                    FORMAT_LEGACY,
                    {"title": "Tagged", "body": "written before encryption"},
                )
            )
            await j.db.entries.upsert(
                _legacy_row("sniffed", None, {"title": "Sniffed", "tags": ["x"]})
            )
            await j.db.entries.upsert(_legacy_row("broken", None, None))

            migration = PayloadMigration(
                entries=j.db.entries, codec=j.session.codec, storage=j.storage
            )
            result = await migration.run_if_needed("owner-1")

            assert (result.migrated, result.failed, result.skipped) == (2, 1, False)
            assert await migration.completed("owner-1")
            for entry_id in ("tagged", "sniffed"):
                row = await j.db.entries.get("owner-1", entry_id)
                assert row["payload_format"] == FORMAT_ENCRYPTED
                assert "before encryption" not in row["encrypted_blob"]

            sniffed = await j.session.entries.get("sniffed")
            assert sniffed is not None
            assert sniffed.title == "Sniffed"
            assert sniffed.tags == ["x"]

            again = await migration.run_if_needed("owner-1")
            assert again.skipped and again.migrated == 0

            await migration.reset("owner-1")
            assert not await migration.completed("owner-1")

    asyncio.run(scenario())


def test_encrypted_rows_are_left_alone(journal) -> None:
    async def scenario() -> None:
        async with journal() as j:
            entry = await j.session.entries.create({"title": "New", "date": "2024-05-01"})
            before = await j.db.entries.get("owner-1", entry.id)

            migration = PayloadMigration(
                entries=j.db.entries, codec=j.session.codec, storage=j.storage
            )
            result = await migration.migrate("owner-1")

            assert result.migrated == 0 and result.failed == 0
            assert await j.db.entries.get("owner-1", entry.id) == before

    asyncio.run(scenario())
