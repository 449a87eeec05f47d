from dataclasses import asdict

from quart import Blueprint, abort, jsonify, request

from daybook.app.routes.helpers import (
    entry_payload,
    json_body,
    require_iso_date,
    require_session,
)

entries_bp = Blueprint("entries", __name__, url_prefix="/api/entries")


@entries_bp.route("", methods=["GET"])
async def list_entries():
    session = await require_session()
    query = request.args.get("q")
    start = request.args.get("start")
    end = request.args.get("end")
    if query:
        entries = await session.entries.search(query)
    elif start or end:
        if not (start and end):
            abort(400, description="Both start and end are required")
        entries = await session.entries.list_by_date_range(
            require_iso_date(start), require_iso_date(end)
        )
    else:
        entries = await session.entries.list()
    return jsonify({"entries": [entry_payload(e) for e in entries]})


@entries_bp.route("", methods=["POST"])
async def create_entry():
    session = await require_session()
    data = await json_body()
    entry = await session.entries.create(data)
    return jsonify(entry_payload(entry)), 201


@entries_bp.route("/<entry_id>", methods=["GET"])
async def get_entry(entry_id: str):
    session = await require_session()
    entry = await session.entries.get(entry_id)
    if entry is None or entry.deleted:
        abort(404, description="entry not found")
    return jsonify(entry_payload(entry))


@entries_bp.route("/<entry_id>", methods=["PUT", "PATCH"])
async def update_entry(entry_id: str):
    session = await require_session()
    data = await json_body()
    entry = await session.entries.update(entry_id, data)
    if entry is None:
        abort(404, description="entry not found")
    return jsonify(entry_payload(entry))


@entries_bp.route("/<entry_id>", methods=["DELETE"])
async def delete_entry(entry_id: str):
    session = await require_session()
    await session.entries.delete(entry_id)
    return "", 204


@entries_bp.route("/grouped/<period>", methods=["GET"])
async def grouped_entries(period: str):
    session = await require_session()
    groupers = {
        "day": session.entries.group_by_day,
        "week": session.entries.group_by_week,
        "month": session.entries.group_by_month,
    }
    grouper = groupers.get(period)
    if grouper is None:
        abort(404, description="unknown grouping")
    grouped = await grouper()
    return jsonify(
        {key: [entry_payload(e) for e in entries] for key, entries in grouped.items()}
    )


@entries_bp.route("/stats", methods=["GET"])
async def entry_stats():
    session = await require_session()
    return jsonify(asdict(await session.entries.stats()))
