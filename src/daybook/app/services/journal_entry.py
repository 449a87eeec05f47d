"""Typed journal entry record and small helpers shared by the entry services."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

DEFAULT_MOOD = 3
SINGLE_ENTRY_TITLE = "Daily Entry"

LOCAL_ATTACHMENT_PREFIXES = ("file://", "content://", "ph://")

# Content fields that never leave the process in clear text.
SENSITIVE_FIELDS = (
    "title",
    "body",
    "attachments",
    "tags",
    "audio_ref",
    "transcription",
    "themes",
    "sentiment",
)

MUTABLE_FIELDS = SENSITIVE_FIELDS + ("date", "mood", "location")


@dataclass(slots=True)
class Entry:
    """A decoded journal entry.

    ``date`` is the calendar day the entry belongs to. It is user-editable and
    may differ from the day implied by ``created_at``.
    """

    id: str
    owner_id: str
    date: str
    title: str = ""
    body: str = ""
    attachments: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    audio_ref: str | None = None
    transcription: str | None = None
    themes: list[str] = field(default_factory=list)
    sentiment: str | None = None
    mood: int = DEFAULT_MOOD
    has_attachments: bool = False
    location: dict[str, Any] | None = None
    created_at: str = ""
    updated_at: str = ""
    deleted: bool = False
    placeholder: bool = False

    def sensitive_payload(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in SENSITIVE_FIELDS}

    def merged(self, changes: Mapping[str, Any]) -> "Entry":
        """Return a copy with the mutable fields in ``changes`` applied."""

        allowed = {k: v for k, v in changes.items() if k in MUTABLE_FIELDS}
        return replace(self, **allowed)

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def is_local_reference(ref: str) -> bool:
    """Return ``True`` for attachment references that still live on the device."""

    return isinstance(ref, str) and ref.startswith(LOCAL_ATTACHMENT_PREFIXES)


def tag_names(raw: Any) -> list[str]:
    """Accept plain strings or ``{"name": ...}`` objects and return tag names.

    Names are returned as written; see :func:`normalize_tags` for input.
    """

    if not raw:
        return []
    if isinstance(raw, (str, Mapping)):
        raw = [raw]
    names: list[str] = []
    for item in raw:
        name = item.get("name") if isinstance(item, Mapping) else item
        if name is not None:
            names.append(str(name))
    return names


def normalize_tags(raw: Any) -> list[str]:
    """Tag names from caller input, stripped and without blanks."""

    return [name.strip() for name in tag_names(raw) if name.strip()]


def str_list(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(item) for item in raw if item is not None]


def normalize_str_list(raw: Any) -> list[str]:
    return [item for item in str_list(raw) if item != ""]


def coerce_mood(raw: Any, default: int = DEFAULT_MOOD) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def location_label(location: Mapping[str, Any] | None) -> str | None:
    """Human-readable label: place name, else formatted address, else city/region."""

    if not location:
        return None
    place = location.get("place") or {}
    address = location.get("address") or {}
    name = place.get("name") if isinstance(place, Mapping) else None
    if name:
        return str(name)
    if isinstance(address, Mapping):
        formatted = address.get("formatted_address") or address.get(
            "formattedAddress"
        )
        if formatted:
            return str(formatted)
        city = address.get("city")
        region = address.get("region")
        if city and region:
            return f"{city}, {region}"
    return None


def single_entry_title(entry: Entry) -> str:
    return entry.title or SINGLE_ENTRY_TITLE


__all__ = [
    "DEFAULT_MOOD",
    "Entry",
    "LOCAL_ATTACHMENT_PREFIXES",
    "MUTABLE_FIELDS",
    "SENSITIVE_FIELDS",
    "SINGLE_ENTRY_TITLE",
    "coerce_mood",
    "is_local_reference",
    "location_label",
    "normalize_str_list",
    "normalize_tags",
    "single_entry_title",
    "str_list",
    "tag_names",
]
