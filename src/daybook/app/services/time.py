from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

_WEEKDAY_INDEX = {"monday": 0, "sunday": 6}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with microseconds."""

    return utc_now().isoformat(timespec="microseconds")


def week_start(day: str | date, first_weekday: str = "sunday") -> str:
    """Return the ISO date of the first day of the week containing ``day``."""

    current = date.fromisoformat(day) if isinstance(day, str) else day
    start_index = _WEEKDAY_INDEX.get(first_weekday, 6)
    offset = (current.weekday() - start_index) % 7
    return (current - timedelta(days=offset)).isoformat()


def week_end(day: str | date, first_weekday: str = "sunday") -> str:
    start = date.fromisoformat(week_start(day, first_weekday))
    return (start + timedelta(days=6)).isoformat()


def month_key(day: str) -> str:
    """``YYYY-MM`` prefix of an ISO date."""

    return day[:7]


def month_bounds(day: str | date) -> tuple[str, str]:
    current = date.fromisoformat(day) if isinstance(day, str) else day
    first = current.replace(day=1)
    if first.month == 12:
        next_first = first.replace(year=first.year + 1, month=1)
    else:
        next_first = first.replace(month=first.month + 1)
    return first.isoformat(), (next_first - timedelta(days=1)).isoformat()
