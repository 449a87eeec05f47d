from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import orjson
import pytest

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.entry_codec import (
    CORRUPTED_TITLE,
    FORMAT_ENCRYPTED,
    FORMAT_LEGACY,
    INVALID_TITLE,
    EntryCodec,
)
from daybook.app.services.journal_entry import Entry
from daybook.app.services.keyring import KeyRing, KeyUnavailable


def _row(**overrides) -> dict:
    row = {
        "id": "entry-1",
        "user_id": "owner-1",
        "entry_date": "2024-05-01",
        "mood_score": 4,
        "has_photos": False,
        "location_data": None,
        "payload_format": None,
        "encrypted_blob": None,
        "created_at": "2024-05-01T08:00:00+00:00",
        "updated_at": "2024-05-01T08:00:00+00:00",
        "tombstoned": False,
    }
    row.update(overrides)
    return row


def _entry() -> Entry:
    return Entry(
        id="entry-1",
        owner_id="owner-1",
        date="2024-05-01",
        title="Morning run",
        body="Ran along the river.",
        tags=["running", "outdoors"],
        attachments=["https://cdn.example/a.jpg"],
        has_attachments=True,
        mood=4,
        location={"place": {"name": "Riverside"}},
        created_at="2024-05-01T08:00:00+00:00",
        updated_at="2024-05-01T08:00:00+00:00",
    )


def _with_codec(tmp_path: Path, body) -> None:
    async def scenario() -> None:
        async with DeviceStorage(tmp_path / "device.sqlite3") as storage:
            await body(EntryCodec(KeyRing(storage)))

    asyncio.run(scenario())


def test_encoded_row_hides_sensitive_fields(tmp_path: Path) -> None:
    async def body(codec: EntryCodec) -> None:
        row = await codec.encode("owner-1", _entry())

        assert row["payload_format"] == FORMAT_ENCRYPTED
        assert row["mood_score"] == 4
        assert row["has_photos"] is True
        assert row["location_data"] == {"place": {"name": "Riverside"}}
        assert "Morning run" not in row["encrypted_blob"]
        assert "running" not in row["encrypted_blob"]

        decoded = await codec.decode("owner-1", row)
        assert decoded.title == "Morning run"
        assert decoded.tags == ["running", "outdoors"]
        assert decoded.attachments == ["https://cdn.example/a.jpg"]
        assert not decoded.placeholder

    _with_codec(tmp_path, body)


def test_legacy_plain_payload_is_read_as_is(tmp_path: Path) -> None:
    legacy = {
        "title": "Old note",
        "body": "From before encryption",
        "photoUris": ["https://cdn.example/old.jpg"],
        "tags": [{"name": "archive"}],
        "audioUri": "https://cdn.example/old.m4a",
    }

    async def body(codec: EntryCodec) -> None:
        tagged = await codec.decode(
            "owner-1",
            _row(payload_format=FORMAT_LEGACY, encrypted_blob=orjson.dumps(legacy).decode()),
        )
        sniffed = await codec.decode("owner-1", _row(encrypted_blob=legacy))

        for entry in (tagged, sniffed):
            assert entry.title == "Old note"
            assert entry.attachments == ["https://cdn.example/old.jpg"]
            assert entry.tags == ["archive"]
            assert entry.audio_ref == "https://cdn.example/old.m4a"
            assert not entry.placeholder

    _with_codec(tmp_path, body)


def test_tampered_ciphertext_becomes_corrupted_placeholder(tmp_path: Path) -> None:
    async def body(codec: EntryCodec) -> None:
        row = await codec.encode("owner-1", _entry())
        moved = dict(row, id="entry-2")

        entry = await codec.decode("owner-1", moved)
        assert entry.placeholder
        assert entry.title == CORRUPTED_TITLE
        assert entry.mood == 4
        assert entry.date == "2024-05-01"

    _with_codec(tmp_path, body)


@pytest.mark.parametrize(
    "overrides",
    [
        {"encrypted_blob": None},
        {"encrypted_blob": 42},
        {"payload_format": "rot13:v0", "encrypted_blob": "abc"},
        {"payload_format": FORMAT_ENCRYPTED, "encrypted_blob": {"title": "x"}},
    ],
)
def test_unrecognised_payloads_become_invalid_placeholders(
    tmp_path: Path, overrides: dict
) -> None:
    async def body(codec: EntryCodec) -> None:
        entry = await codec.decode("owner-1", _row(**overrides))
        assert entry.placeholder
        assert entry.title == INVALID_TITLE

    _with_codec(tmp_path, body)


def test_missing_key_storage_propagates(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("")

    async def scenario() -> None:
        codec = EntryCodec(KeyRing(DeviceStorage(blocker / "device.sqlite3")))
        with pytest.raises(KeyUnavailable):
            await codec.encode("owner-1", _entry())

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "changes",
    [
        {},
        {"attachments": ["", "https://cdn.example/b.jpg"], "has_attachments": True},
        {"attachments": [], "has_attachments": False, "tags": [], "themes": []},
        {"attachments": ["https://cdn.example/a.jpg"], "has_attachments": False},
        {"title": "Café ☕", "body": "Straße, 東京, 🙂", "tags": ["naïve", "日記"]},
        {"tags": ["", " padded "], "themes": ["", "rest"]},
        {"audio_ref": None, "transcription": None, "sentiment": None},
        {"audio_ref": "", "transcription": "", "sentiment": ""},
        {"audio_ref": "https://cdn.example/a.m4a", "transcription": "hello"},
        {"location": None},
        {
            "location": {
                "latitude": 52.1,
                "longitude": 5.1,
                "address": {"city": "Utrecht"},
            }
        },
        {"mood": 1, "deleted": True, "title": "", "body": ""},
    ],
)
def test_encode_then_decode_returns_the_same_entry(
    tmp_path: Path, changes: dict
) -> None:
    original = replace(_entry(), **changes)

    async def body(codec: EntryCodec) -> None:
        row = await codec.encode("owner-1", original)
        assert await codec.decode("owner-1", row) == original

    _with_codec(tmp_path, body)
