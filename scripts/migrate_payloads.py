#!/usr/bin/env python3
"""Re-encrypt an owner's legacy plain entry payloads."""

from __future__ import annotations

import argparse
import asyncio
import logging

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.entry_codec import EntryCodec
from daybook.app.services.keyring import KeyRing
from daybook.app.services.payload_migration import PayloadMigration
from daybook.persistence.local_db import LocalDB
from daybook.settings import settings


logger = logging.getLogger(__name__)


async def _run(args: argparse.Namespace) -> None:
    db = LocalDB(args.db_path)
    storage = DeviceStorage(args.device_path or settings.DEVICE.storage_path)
    await db.init()
    await storage.open()
    try:
        keyring = KeyRing(
            storage,
            policy=str(settings.CRYPTO.key_policy),
            master_secret=settings.get("CRYPTO.master_secret"),
        )
        migration = PayloadMigration(
            entries=db.entries, codec=EntryCodec(keyring), storage=storage
        )
        if args.reset:
            await migration.reset(args.owner_id)
            logger.info("Cleared migration flag for %s", args.owner_id)
        result = await migration.run_if_needed(args.owner_id)
        if result.skipped:
            logger.info("Migration already completed for %s", args.owner_id)
        else:
            logger.info(
                "Migrated %d entries; %d failed", result.migrated, result.failed
            )
    finally:
        await storage.close()
        await db.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("owner_id", help="Owner whose entries should be migrated")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Clear the completion flag and run the migration again",
    )
    parser.add_argument("--db-path", help="Path to the SQLite database")
    parser.add_argument("--device-path", help="Path to the device storage file")
    args = parser.parse_args()
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
