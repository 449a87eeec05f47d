from __future__ import annotations

import os
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent

logger = logging.getLogger(__name__)


def _resolve_config_dir() -> Path | None:
    env_override = os.environ.get("DAYBOOK_CONFIG_DIR")
    candidates: list[Path] = []

    if env_override:
        candidates.append(Path(env_override).expanduser())

    candidates.append(PROJECT_ROOT / "config")
    candidates.append(PROJECT_ROOT.parent / "config")

    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded.is_dir():
            return expanded.resolve()

    if env_override:
        searched = ", ".join(str(path) for path in candidates)
        raise RuntimeError(
            f"Unable to locate configuration directory. Searched: {searched}."
            " Set DAYBOOK_CONFIG_DIR to a valid directory."
        )
    return None


CONFIG_DIR = _resolve_config_dir()


DEFAULTS: dict[str, Any] = {
    "APP_NAME": "Daybook",
    "LOG_LEVEL": "INFO",
    "APP": {
        "host": "127.0.0.1",
        "port": 5000,
        "owner_header": "X-Owner-Id",
    },
    "DATABASE": {
        "path": "state.sqlite3",
        "pool_size": 10,
        "pool_acquire_timeout": 10,
        "timeout": 5.0,
        "busy_timeout": 5000,
        "mmap_size": 10 * 1024 * 1024,
    },
    "DEVICE": {
        "storage_path": "device.sqlite3",
    },
    "CRYPTO": {
        "key_policy": "random",
        "master_secret": None,
    },
    "AI": {
        "base_url": "https://api.openai.com/v1",
        "api_key": None,
        "model": "gpt-4o-mini",
        "temperature": 0.3,
        "max_tokens": 800,
        "timeout": 30.0,
    },
    "ATTACHMENTS": {
        "backend": "filesystem",
        "base_url": "",
        "api_key": None,
        "bucket": "journal-photos",
        "root": "attachments",
        "timeout": 30.0,
    },
    "SUMMARIES": {
        "sweep_interval": 300,
        "sweep_limit": 3,
        "backfill_batch_size": 5,
        "backfill_delay": 1.0,
    },
    "SESSIONS": {
        "maxsize": 256,
        "idle_ttl": 60 * 60,
    },
    "ENTRIES": {
        "default_mood": 3,
        "week_start": "sunday",
    },
    "PROMPTS": {
        "template_dir": str(PACKAGE_DIR / "llm" / "templates"),
    },
}


def _settings_files() -> list[Path]:
    if CONFIG_DIR is None:
        return []
    return [
        CONFIG_DIR / "settings.toml",
        CONFIG_DIR / ".secrets.toml",
        CONFIG_DIR / "settings.local.toml",
    ]


settings = Dynaconf(
    envvar_prefix="DAYBOOK",
    settings_files=_settings_files(),
    environments=True,
    env_switcher="DAYBOOK_ENV",
    load_dotenv=True,
    envvar_parse_values=True,
    merge_enabled=True,
    defaults=DEFAULTS,
)


_MISSING = object()


def _ensure_defaults(prefix: str, defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        dotted = f"{prefix}.{key}" if prefix else key
        existing = settings.get(dotted, _MISSING)

        if isinstance(value, dict):
            if existing is _MISSING:
                settings.set(dotted, value.copy())
                existing = settings.get(dotted, _MISSING)
            if isinstance(existing, Mapping):
                _ensure_defaults(dotted, value)
            continue

        if existing is _MISSING:
            settings.set(dotted, value)


_ensure_defaults("", DEFAULTS)


def _normalise_key_policy() -> None:
    policy = str(settings.get("CRYPTO.key_policy") or "random").strip().lower()
    if policy not in {"random", "derived"}:
        raise RuntimeError(
            "Set DAYBOOK_CRYPTO__KEY_POLICY to either 'random' or 'derived'"
        )
    if policy == "derived" and not settings.get("CRYPTO.master_secret"):
        raise RuntimeError(
            "The 'derived' key policy requires DAYBOOK_CRYPTO__MASTER_SECRET"
        )
    settings.set("CRYPTO.key_policy", policy)


def _normalise_week_start() -> None:
    raw = str(settings.get("ENTRIES.week_start") or "sunday").strip().lower()
    if raw not in {"sunday", "monday"}:
        logger.warning("Unsupported week start %r; using sunday", raw)
        raw = "sunday"
    settings.set("ENTRIES.week_start", raw)


_normalise_key_policy()
_normalise_week_start()

sweep_limit_default = DEFAULTS["SUMMARIES"]["sweep_limit"]
sweep_limit_raw = settings.get("SUMMARIES.sweep_limit", sweep_limit_default)
try:
    sweep_limit = int(sweep_limit_raw)
except (TypeError, ValueError):
    sweep_limit = sweep_limit_default

settings.set("SUMMARIES.sweep_limit", max(sweep_limit, 1))

__all__ = ["settings", "CONFIG_DIR", "PACKAGE_DIR", "PROJECT_ROOT"]
