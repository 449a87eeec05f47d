from dataclasses import asdict

from quart import Blueprint, abort, jsonify, request

from daybook.app.routes.helpers import (
    current_owner_id,
    require_iso_date,
    require_session,
)
from daybook.app.services.container import get_sessions
from daybook.app.services.entry_store import AuthenticationMissing
from daybook.app.services.time import utc_now_iso

reviews_bp = Blueprint("reviews", __name__, url_prefix="/api")


def _anchor_date() -> str:
    raw = request.args.get("date")
    return require_iso_date(raw) if raw else utc_now_iso()[:10]


@reviews_bp.route("/reviews/week", methods=["GET"])
async def week_review():
    session = await require_session()
    analysis = await session.reviews.week(_anchor_date())
    return jsonify(asdict(analysis))


@reviews_bp.route("/reviews/month", methods=["GET"])
async def month_review():
    session = await require_session()
    analysis = await session.reviews.month(_anchor_date())
    return jsonify(asdict(analysis))


@reviews_bp.route("/reviews/all-time", methods=["GET"])
async def all_time_review():
    session = await require_session()
    analysis = await session.reviews.all_time()
    if analysis is None:
        abort(404, description="no entries to review")
    return jsonify(asdict(analysis))


@reviews_bp.route("/reviews/custom", methods=["GET"])
async def custom_review():
    session = await require_session()
    start = request.args.get("start")
    end = request.args.get("end")
    if not start or not end:
        abort(400, description="Both start and end are required")
    analysis = await session.reviews.custom(start, end)
    return jsonify(asdict(analysis))


@reviews_bp.route("/session/sign-out", methods=["POST"])
async def sign_out():
    owner_id = current_owner_id()
    if owner_id is None:
        raise AuthenticationMissing("no authenticated owner")
    await get_sessions().sign_out(owner_id)
    return "", 204
