from dataclasses import asdict

from quart import Blueprint, jsonify, request

from daybook.app.routes.helpers import (
    entry_payload,
    require_iso_date,
    require_session,
)
from daybook.app.services.day_summary import DaySummary
from daybook.settings import settings
from daybook.util import str_to_bool

days_bp = Blueprint("days", __name__, url_prefix="/api/days")


def _summary_payload(summary: DaySummary) -> dict:
    data = asdict(summary)
    data.pop("owner_id", None)
    data["is_placeholder"] = summary.is_placeholder
    return data


@days_bp.route("/<date>", methods=["GET"])
async def day(date: str):
    session = await require_session()
    normalized_date = require_iso_date(date)
    entries = await session.entries.entries_for_date(normalized_date)
    allow_stale = str_to_bool(request.args.get("stale", "false"))
    title = await session.summaries.get_title(
        normalized_date, entries, allow_stale=allow_stale
    )
    return jsonify(
        {
            "date": normalized_date,
            "title": title,
            "entries": [entry_payload(e) for e in entries],
        }
    )


@days_bp.route("/<date>/title", methods=["GET"])
async def day_title(date: str):
    session = await require_session()
    normalized_date = require_iso_date(date)
    entries = await session.entries.entries_for_date(normalized_date)
    allow_stale = str_to_bool(request.args.get("stale", "false"))
    title = await session.summaries.get_title(
        normalized_date, entries, allow_stale=allow_stale
    )
    return jsonify({"date": normalized_date, "title": title})


@days_bp.route("/<date>/summary", methods=["GET"])
async def day_summary(date: str):
    session = await require_session()
    normalized_date = require_iso_date(date)
    entries = await session.entries.entries_for_date(normalized_date)
    summary = await session.summaries.analyze(normalized_date, entries)
    return jsonify(_summary_payload(summary))


@days_bp.route("/backfill", methods=["GET"])
async def backfill_status():
    session = await require_session()
    stats = await session.backfill.stats()
    return jsonify(
        {
            "running": session.backfill.running,
            "progress": asdict(session.backfill.progress()),
            **asdict(stats),
        }
    )


@days_bp.route("/backfill", methods=["POST"])
async def run_backfill():
    session = await require_session()
    force = str_to_bool(request.args.get("force", "false"))
    options = {
        "batch_size": int(settings.SUMMARIES.backfill_batch_size),
        "delay": float(settings.SUMMARIES.backfill_delay),
    }
    if force:
        progress = await session.backfill.force_regenerate_all(**options)
    else:
        progress = await session.backfill.run(**options)
    return jsonify(asdict(progress))
