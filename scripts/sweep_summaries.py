#!/usr/bin/env python3
"""Regenerate dirty day summaries for a single owner."""

from __future__ import annotations

import argparse
import asyncio
import logging

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.container import AppServices
from daybook.persistence.local_db import LocalDB
from daybook.settings import settings


logger = logging.getLogger(__name__)


async def _run(args: argparse.Namespace) -> None:
    services = AppServices.create(
        db=LocalDB(args.db_path),
        device_storage=DeviceStorage(args.device_path or settings.DEVICE.storage_path),
    )
    await services.db.init()
    await services.device_storage.open()
    try:
        session = await services.sessions.session(args.owner_id)
        before = await session.summaries.dirty_count()
        if not before:
            logger.info("No dirty day summaries for %s", args.owner_id)
            return
        limit = args.limit or before
        processed = await session.sweep(limit)
        after = await session.summaries.dirty_count()
        logger.info(
            "Processed %d of %d dirty summaries; %d still dirty",
            processed,
            before,
            after,
        )
    finally:
        await services.sessions.close_all()
        await services.analyzer.aclose()
        await services.device_storage.close()
        await services.db.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("owner_id", help="Owner whose summaries should be swept")
    parser.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Maximum rows to process (default: all dirty rows)",
    )
    parser.add_argument("--db-path", help="Path to the SQLite database")
    parser.add_argument("--device-path", help="Path to the device storage file")
    args = parser.parse_args()
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
