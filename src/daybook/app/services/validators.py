from datetime import date, datetime


def parse_iso_date(raw: str) -> str:
    """Parse ISO formatted dates, returning a normalised ``YYYY-MM-DD`` string.

    The validator accepts either a bare ISO date (``YYYY-MM-DD``) or an ISO
    datetime string. The datetime variant is truncated to the date component.
    ``ValueError`` is raised for any unparseable input.
    """

    if not isinstance(raw, str):
        raise ValueError("Date value must be a string")

    value = raw.strip()
    if not value:
        raise ValueError("Date value is empty")

    try:
        return date.fromisoformat(value).isoformat()
    except ValueError:
        pass

    try:
        normalised = value.replace("Z", "+00:00")
        return datetime.fromisoformat(normalised).date().isoformat()
    except ValueError as exc:
        raise ValueError(f"Invalid ISO date: {raw}") from exc


def parse_date_range(start: str | None, end: str | None) -> tuple[str, str]:
    """Validate an inclusive date range and return it normalised."""

    if not start or not end:
        raise ValueError("Both start and end dates are required")
    start_date = parse_iso_date(start)
    end_date = parse_iso_date(end)
    if start_date > end_date:
        raise ValueError("Start date must not be after end date")
    return start_date, end_date


def validate_mood(raw, *, low: int = 1, high: int = 5) -> int:
    try:
        mood = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("Mood must be an integer") from exc
    if not low <= mood <= high:
        raise ValueError(f"Mood must be between {low} and {high}")
    return mood
