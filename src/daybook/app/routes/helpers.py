from __future__ import annotations

from typing import Any, Mapping

from quart import abort, current_app, request

from daybook.app.services.container import get_sessions
from daybook.app.services.journal_entry import Entry
from daybook.app.services.session_context import JournalSession
from daybook.app.services.validators import parse_iso_date


def require_iso_date(raw: str) -> str:
    """Parse an ISO date string or abort with a 400 error."""

    try:
        return parse_iso_date(raw)
    except ValueError as exc:
        abort(400, description="Invalid date")
        raise AssertionError("unreachable") from exc


def current_owner_id() -> str | None:
    """Owner id asserted by the upstream authentication layer, if any."""

    header = current_app.config.get("OWNER_HEADER", "X-Owner-Id")
    value = (request.headers.get(header) or "").strip()
    return value or None


async def require_session() -> JournalSession:
    """Return the caller's journal session.

    Raises ``AuthenticationMissing`` (mapped to 401) without an owner.
    """

    return await get_sessions().session(current_owner_id())


async def json_body() -> Mapping[str, Any]:
    data = await request.get_json(silent=True)
    if not isinstance(data, Mapping):
        abort(400, description="Expected a JSON object")
        raise AssertionError("unreachable")
    return data


def entry_payload(entry: Entry) -> dict[str, Any]:
    data = entry.as_dict()
    data.pop("owner_id", None)
    return data
