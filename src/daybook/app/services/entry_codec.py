"""Convert between :class:`Entry` records and storable rows.

Rows carry an explicit ``payload_format`` discriminant next to the payload:

``xchacha20poly1305:v1``
    ``encrypted_blob`` is ``base64(nonce || ciphertext)`` of the orjson
    encoded sensitive fields.
``legacy:plain``
    ``encrypted_blob`` is a plain JSON object written before encryption was
    introduced.

Rows written before the discriminant existed have ``payload_format = NULL``
and are sniffed: mappings and JSON object text are legacy, other strings are
ciphertext. Decoded lists are returned as they were written.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import orjson

from daybook.app.services.crypto import PayloadDecryptionError
from daybook.app.services.journal_entry import (
    Entry,
    coerce_mood,
    str_list,
    tag_names,
)
from daybook.app.services.keyring import KeyRing

logger = logging.getLogger(__name__)

FORMAT_ENCRYPTED = "xchacha20poly1305:v1"
FORMAT_LEGACY = "legacy:plain"

CORRUPTED_TITLE = "Corrupted Entry"
INVALID_TITLE = "Invalid Entry"


def _sniff_format(payload: Any) -> str | None:
    """Guess the format of an untagged payload. Ciphertext tokens are base64."""

    if isinstance(payload, Mapping):
        return FORMAT_LEGACY
    if isinstance(payload, str):
        return FORMAT_LEGACY if payload.lstrip().startswith("{") else FORMAT_ENCRYPTED
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _parse_location(raw: Any) -> dict[str, Any] | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        try:
            parsed = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("Discarding unparsable location data")
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


class EntryCodec:
    """Encrypt, decrypt and reshape entries for one or more owners."""

    def __init__(self, keyring: KeyRing) -> None:
        self._keyring = keyring

    async def encode(self, owner_id: str, entry: Entry) -> dict[str, Any]:
        ctx = await self._keyring.context(owner_id)
        plaintext = orjson.dumps(entry.sensitive_payload())
        return {
            "id": entry.id,
            "user_id": owner_id,
            "entry_date": entry.date,
            "mood_score": entry.mood,
            "has_photos": bool(entry.has_attachments),
            "location_data": entry.location,
            "payload_format": FORMAT_ENCRYPTED,
            "encrypted_blob": ctx.encrypt_payload(entry.id, plaintext),
            "created_at": entry.created_at,
            "updated_at": entry.updated_at,
            "tombstoned": bool(entry.deleted),
        }

    async def decode(self, owner_id: str, row: Mapping[str, Any]) -> Entry:
        """Rebuild an entry from ``row``.

        Payload damage yields a placeholder entry instead of an exception.
        :class:`~daybook.app.services.keyring.KeyUnavailable` still propagates.
        """

        fmt = row.get("payload_format")
        payload = row.get("encrypted_blob")
        entry_id = str(row.get("id") or "")

        if fmt is None:
            fmt = _sniff_format(payload)

        if fmt == FORMAT_ENCRYPTED:
            if not isinstance(payload, str):
                return self._placeholder(owner_id, row, INVALID_TITLE)
            return await self._decode_encrypted(owner_id, row, entry_id, payload)

        if fmt == FORMAT_LEGACY:
            data = payload
            if isinstance(payload, (str, bytes)):
                try:
                    data = orjson.loads(payload)
                except orjson.JSONDecodeError:
                    logger.warning("Legacy payload for entry %s is not JSON", entry_id)
                    return self._placeholder(owner_id, row, CORRUPTED_TITLE)
            if not isinstance(data, Mapping):
                return self._placeholder(owner_id, row, INVALID_TITLE)
            logger.info("Entry %s uses a legacy plain payload", entry_id)
            return self._build(owner_id, row, data)

        if fmt is not None:
            logger.warning("Entry %s has unknown payload format %r", entry_id, fmt)
        else:
            logger.warning(
                "Entry %s has an invalid payload of type %s",
                entry_id,
                type(payload).__name__,
            )
        return self._placeholder(owner_id, row, INVALID_TITLE)

    async def _decode_encrypted(
        self,
        owner_id: str,
        row: Mapping[str, Any],
        entry_id: str,
        payload: str,
    ) -> Entry:
        ctx = await self._keyring.context(owner_id)
        try:
            data = orjson.loads(ctx.decrypt_payload(entry_id, payload))
        except (PayloadDecryptionError, orjson.JSONDecodeError) as exc:
            logger.warning("Failed to decrypt entry %s: %s", entry_id, exc)
            return self._placeholder(owner_id, row, CORRUPTED_TITLE)
        if not isinstance(data, Mapping):
            logger.warning("Decrypted payload for entry %s is not an object", entry_id)
            return self._placeholder(owner_id, row, CORRUPTED_TITLE)
        return self._build(owner_id, row, data)

    def _base(self, owner_id: str, row: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "id": str(row.get("id") or ""),
            "owner_id": str(row.get("user_id") or owner_id),
            "date": str(row.get("entry_date") or ""),
            "mood": coerce_mood(row.get("mood_score")),
            "has_attachments": bool(row.get("has_photos")),
            "location": _parse_location(row.get("location_data")),
            "created_at": str(row.get("created_at") or ""),
            "updated_at": str(row.get("updated_at") or ""),
            "deleted": bool(row.get("tombstoned")),
        }

    def _build(
        self, owner_id: str, row: Mapping[str, Any], data: Mapping[str, Any]
    ) -> Entry:
        attachments = data.get("attachments")
        if attachments is None:
            attachments = data.get("photoUris")
        audio_ref = data.get("audio_ref", data.get("audioUri"))
        return Entry(
            **self._base(owner_id, row),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            attachments=str_list(attachments),
            tags=tag_names(data.get("tags")),
            audio_ref=_optional_str(audio_ref),
            transcription=_optional_str(data.get("transcription")),
            themes=str_list(data.get("themes")),
            sentiment=_optional_str(data.get("sentiment")),
        )

    def _placeholder(
        self, owner_id: str, row: Mapping[str, Any], title: str
    ) -> Entry:
        return Entry(**self._base(owner_id, row), title=title, placeholder=True)


__all__ = [
    "CORRUPTED_TITLE",
    "EntryCodec",
    "FORMAT_ENCRYPTED",
    "FORMAT_LEGACY",
    "INVALID_TITLE",
]
