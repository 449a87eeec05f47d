from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping

from ulid import ULID

from daybook.app.db.entries import EntriesRepository
from daybook.app.db.events import (
    ENTRY_CREATED_EVENT,
    ENTRY_DELETED_EVENT,
    ENTRY_UPDATED_EVENT,
    RepositoryEventBus,
)
from daybook.app.services.attachments import (
    AttachmentStore,
    AttachmentUploadError,
    delete_all,
)
from daybook.app.services.entry_codec import EntryCodec
from daybook.app.services.journal_entry import (
    DEFAULT_MOOD,
    Entry,
    is_local_reference,
    normalize_str_list,
    normalize_tags,
)
from daybook.app.services.journal_stats import JournalStats, compute_stats
from daybook.app.services.keyring import KeyUnavailable
from daybook.app.services.time import month_key, utc_now_iso, week_start
from daybook.app.services.validators import parse_iso_date, validate_mood

logger = logging.getLogger(__name__)


class AuthenticationMissing(Exception):
    """Raised when an entry operation runs without an authenticated owner."""


class EntryWriteError(Exception):
    """Raised when the row store rejects an entry write."""


class UnreadableEntry(Exception):
    """Raised when updating an entry whose stored payload cannot be decoded.

    The damaged payload is left untouched so it can still be recovered.
    """


def _normalise_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce caller-supplied fields into the shapes :class:`Entry` expects."""

    out: dict[str, Any] = {}
    for name in ("title", "body"):
        if name in fields:
            out[name] = str(fields.get(name) or "").strip()
    if "attachments" in fields:
        out["attachments"] = normalize_str_list(fields.get("attachments"))
    if "tags" in fields:
        out["tags"] = normalize_tags(fields.get("tags"))
    if "themes" in fields:
        out["themes"] = normalize_str_list(fields.get("themes"))
    for name in ("audio_ref", "transcription", "sentiment"):
        if name in fields:
            value = fields.get(name)
            out[name] = str(value) if value not in (None, "") else None
    if fields.get("mood") not in (None, ""):
        out["mood"] = validate_mood(fields["mood"])
    if "date" in fields and fields.get("date"):
        out["date"] = parse_iso_date(str(fields["date"]))
    if "location" in fields:
        location = fields.get("location")
        out["location"] = dict(location) if isinstance(location, Mapping) else None
    return out


class EntryStore:
    """Owner-scoped entry operations.

    Every read decodes rows client side, so search and grouping are linear in
    the owner's entry count.
    """

    def __init__(
        self,
        owner_id: str | None,
        *,
        repository: EntriesRepository,
        codec: EntryCodec,
        events: RepositoryEventBus,
        attachments: AttachmentStore | None = None,
        upload_timeout: float = 30.0,
        first_weekday: str = "sunday",
        default_mood: int = DEFAULT_MOOD,
    ) -> None:
        self._owner_id = (owner_id or "").strip()
        self._repository = repository
        self._codec = codec
        self._events = events
        self._attachments = attachments
        self._upload_timeout = upload_timeout
        self._first_weekday = first_weekday
        self._default_mood = default_mood

    @property
    def owner_id(self) -> str:
        return self._require_owner()

    def _require_owner(self) -> str:
        if not self._owner_id:
            raise AuthenticationMissing("no authenticated owner for entry access")
        return self._owner_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, fields: Mapping[str, Any]) -> Entry:
        owner_id = self._require_owner()
        now = utc_now_iso()
        entry_id = str(fields.get("id") or ULID())
        values = _normalise_fields(fields)
        values.setdefault("date", now[:10])
        values.setdefault("mood", self._default_mood)

        attachments = await self._upload_local(
            owner_id, entry_id, values.pop("attachments", [])
        )
        entry = Entry(
            id=entry_id,
            owner_id=owner_id,
            attachments=attachments,
            has_attachments=bool(attachments),
            created_at=now,
            updated_at=now,
            **values,
        )
        stored = await self._write(owner_id, entry)
        logger.debug("Created entry %s on %s", stored.id, stored.date)
        await self._events.emit_for_entry_dates(
            ENTRY_CREATED_EVENT,
            user_id=owner_id,
            entry_id=stored.id,
            dates=(stored.date,),
        )
        return stored

    async def update(self, entry_id: str, partial: Mapping[str, Any]) -> Entry | None:
        owner_id = self._require_owner()
        row = await self._repository.get(owner_id, entry_id)
        if row is None:
            return None

        current = await self._codec.decode(owner_id, row)
        if current.placeholder:
            logger.warning("Refusing to update unreadable entry %s", entry_id)
            raise UnreadableEntry(f"entry {entry_id} cannot be decoded")

        changes = _normalise_fields(partial)
        removed: list[str] = []
        if "attachments" in changes:
            processed = await self._upload_local(
                owner_id, entry_id, changes["attachments"]
            )
            removed = [
                ref
                for ref in current.attachments
                if ref not in processed and not is_local_reference(ref)
            ]
            changes["attachments"] = processed

        merged = current.merged(changes)
        merged = replace(
            merged,
            has_attachments=bool(merged.attachments),
            updated_at=utc_now_iso(),
        )
        stored = await self._write(owner_id, merged)

        if removed and self._attachments is not None:
            await delete_all(self._attachments, removed)

        await self._events.emit_for_entry_dates(
            ENTRY_UPDATED_EVENT,
            user_id=owner_id,
            entry_id=stored.id,
            dates=(current.date, stored.date),
        )
        return stored

    async def delete(self, entry_id: str) -> None:
        """Tombstone an entry. The row and its attachments are kept."""

        owner_id = self._require_owner()
        try:
            entry_date = await self._repository.tombstone(
                owner_id, entry_id, utc_now_iso()
            )
        except Exception as exc:
            logger.exception("Failed to delete entry %s", entry_id)
            raise EntryWriteError(f"could not delete entry {entry_id}") from exc
        if entry_date is None:
            return
        await self._events.emit_for_entry_dates(
            ENTRY_DELETED_EVENT,
            user_id=owner_id,
            entry_id=entry_id,
            dates=(entry_date,),
        )

    async def _write(self, owner_id: str, entry: Entry) -> Entry:
        row = await self._codec.encode(owner_id, entry)
        try:
            stored = await self._repository.upsert(row)
        except Exception as exc:
            logger.exception("Failed to persist entry %s", entry.id)
            raise EntryWriteError(f"could not save entry {entry.id}") from exc
        return await self._codec.decode(owner_id, stored)

    async def _upload_local(
        self, owner_id: str, entry_id: str, refs: Iterable[str]
    ) -> list[str]:
        # One at a time, in the order the caller listed them.
        uploaded: list[str] = []
        for ref in refs:
            stored = await self._upload_one(owner_id, entry_id, ref)
            if stored:
                uploaded.append(stored)
        return uploaded

    async def _upload_one(self, owner_id: str, entry_id: str, ref: str) -> str | None:
        if not is_local_reference(ref):
            return ref
        if self._attachments is None:
            logger.warning("No attachment store configured; dropping %s", ref)
            return None
        try:
            return await asyncio.wait_for(
                self._attachments.upload(owner_id, entry_id, ref),
                timeout=self._upload_timeout,
            )
        except (AttachmentUploadError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Dropping attachment %s from entry %s: %s", ref, entry_id, exc
            )
        except Exception:
            logger.exception("Dropping attachment %s from entry %s", ref, entry_id)
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, entry_id: str) -> Entry | None:
        owner_id = self._require_owner()
        row = await self._repository.get(owner_id, entry_id)
        if row is None:
            return None
        return await self._codec.decode(owner_id, row)

    async def list(self) -> list[Entry]:
        owner_id = self._require_owner()
        rows = await self._repository.list_rows(owner_id)
        return await self._decode_rows(owner_id, rows)

    async def list_by_date_range(self, start: str, end: str) -> list[Entry]:
        owner_id = self._require_owner()
        rows = await self._repository.list_rows(owner_id, start=start, end=end)
        return await self._decode_rows(owner_id, rows)

    async def entries_for_date(self, entry_date: str) -> list[Entry]:
        owner_id = self._require_owner()
        rows = await self._repository.rows_for_date(owner_id, entry_date)
        return await self._decode_rows(owner_id, rows)

    async def _decode_rows(
        self, owner_id: str, rows: Iterable[Mapping[str, Any]]
    ) -> list[Entry]:
        entries: list[Entry] = []
        for row in rows:
            try:
                entries.append(await self._codec.decode(owner_id, row))
            except KeyUnavailable:
                raise
            except Exception:
                logger.exception("Skipping entry %s that failed to decode", row.get("id"))
        return entries

    async def search(self, query: str) -> list[Entry]:
        entries = await self.list()
        needle = (query or "").strip().lower()
        if not needle:
            return entries
        return [
            entry
            for entry in entries
            if needle in entry.title.lower()
            or needle in entry.body.lower()
            or any(needle in tag.lower() for tag in entry.tags)
        ]

    async def group_by_day(self) -> dict[str, list[Entry]]:
        return _group(await self.list(), lambda e: e.date)

    async def group_by_week(self) -> dict[str, list[Entry]]:
        first = self._first_weekday
        return _group(await self.list(), lambda e: week_start(e.date, first))

    async def group_by_month(self) -> dict[str, list[Entry]]:
        return _group(await self.list(), lambda e: month_key(e.date))

    async def stats(self) -> JournalStats:
        return compute_stats(await self.list(), today=utc_now_iso()[:10])


def _group(entries: Iterable[Entry], key) -> dict[str, list[Entry]]:
    grouped: dict[str, list[Entry]] = {}
    for entry in entries:
        if not entry.date:
            continue
        grouped.setdefault(key(entry), []).append(entry)
    return grouped


__all__ = [
    "AuthenticationMissing",
    "EntryStore",
    "EntryWriteError",
    "UnreadableEntry",
]
