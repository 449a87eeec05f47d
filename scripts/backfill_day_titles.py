#!/usr/bin/env python3
"""Generate AI day titles for every multi-entry day of an owner."""

from __future__ import annotations

import argparse
import asyncio
import logging

from daybook.app.db.device_storage import DeviceStorage
from daybook.app.services.container import AppServices
from daybook.app.services.day_title_backfill import BackfillProgress
from daybook.persistence.local_db import LocalDB
from daybook.settings import settings


logger = logging.getLogger(__name__)


def _log_progress(progress: BackfillProgress) -> None:
    if progress.completed:
        return
    logger.info(
        "[%d/%d] %s (errors: %d)",
        progress.processed,
        progress.total,
        progress.current or "-",
        progress.errors,
    )


async def _run(args: argparse.Namespace) -> None:
    services = AppServices.create(
        db=LocalDB(args.db_path),
        device_storage=DeviceStorage(args.device_path or settings.DEVICE.storage_path),
    )
    await services.db.init()
    await services.device_storage.open()
    try:
        session = await services.sessions.session(args.owner_id)
        backfill = session.backfill
        stats = await backfill.stats()
        logger.info(
            "%d multi-entry days, %d titled, %d need a title",
            stats.days_with_multiple_entries,
            stats.days_with_titles,
            stats.days_needing_backfill,
        )
        if args.stats_only:
            return

        options = {
            "batch_size": args.batch_size,
            "delay": args.delay,
            "on_progress": _log_progress,
        }
        if args.force:
            progress = await backfill.force_regenerate_all(**options)
        else:
            progress = await backfill.run(**options)
        logger.info(
            "Backfill complete: %d processed, %d errors",
            progress.processed,
            progress.errors,
        )
    finally:
        await services.sessions.close_all()
        await services.analyzer.aclose()
        await services.device_storage.close()
        await services.db.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("owner_id", help="Owner to backfill day titles for")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=int(settings.SUMMARIES.backfill_batch_size),
        help="Days analysed concurrently per batch",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=float(settings.SUMMARIES.backfill_delay),
        help="Seconds to wait between batches",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Mark every cached summary dirty and regenerate all of them",
    )
    parser.add_argument(
        "--stats-only",
        action="store_true",
        help="Only report how many days need a title",
    )
    parser.add_argument("--db-path", help="Path to the SQLite database")
    parser.add_argument("--device-path", help="Path to the device storage file")
    args = parser.parse_args()
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
