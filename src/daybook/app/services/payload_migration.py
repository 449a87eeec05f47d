"""One-shot re-encryption of legacy plain payloads."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.db.entries import EntriesRepository
from daybook.app.services.entry_codec import FORMAT_LEGACY, EntryCodec
from daybook.app.services.keyring import KeyUnavailable

logger = logging.getLogger(__name__)

MIGRATION_NAMESPACE = "payload_migration"


@dataclass(slots=True)
class MigrationResult:
    migrated: int = 0
    failed: int = 0
    skipped: bool = False


class PayloadMigration:
    """Rewrite an owner's ``legacy:plain`` and unformatted rows as encrypted rows.

    Completion is recorded per owner in device storage; a finished migration
    is not repeated until :meth:`reset` clears the flag.
    """

    def __init__(
        self,
        *,
        entries: EntriesRepository,
        codec: EntryCodec,
        storage: DeviceStorage,
    ) -> None:
        self._entries = entries
        self._codec = codec
        self._storage = storage

    async def completed(self, owner_id: str) -> bool:
        return await self._storage.get_flag(MIGRATION_NAMESPACE, owner_id)

    async def run_if_needed(self, owner_id: str) -> MigrationResult:
        if await self.completed(owner_id):
            logger.debug("Payload migration already completed for %s", owner_id)
            return MigrationResult(skipped=True)

        result = await self.migrate(owner_id)
        await self._storage.set_flag(MIGRATION_NAMESPACE, owner_id, True)
        if result.failed:
            logger.warning(
                "%d entries failed to migrate for %s and may stay unreadable",
                result.failed,
                owner_id,
            )
        return result

    async def migrate(self, owner_id: str) -> MigrationResult:
        rows = await self._entries.rows_with_format(owner_id, FORMAT_LEGACY)
        rows += await self._entries.rows_with_format(owner_id, None)
        result = MigrationResult()
        for row in rows:
            entry_id = row.get("id")
            try:
                entry = await self._codec.decode(owner_id, row)
                if entry.placeholder:
                    logger.warning("Entry %s is unreadable; not migrating", entry_id)
                    result.failed += 1
                    continue
                await self._entries.upsert(await self._codec.encode(owner_id, entry))
            except KeyUnavailable:
                raise
            except Exception:
                logger.exception("Failed to migrate entry %s", entry_id)
                result.failed += 1
                continue
            result.migrated += 1

        logger.info(
            "Payload migration for %s: %d migrated, %d failed",
            owner_id,
            result.migrated,
            result.failed,
        )
        return result

    async def reset(self, owner_id: str) -> None:
        await self._storage.delete(MIGRATION_NAMESPACE, owner_id)


__all__ = ["MIGRATION_NAMESPACE", "MigrationResult", "PayloadMigration"]
