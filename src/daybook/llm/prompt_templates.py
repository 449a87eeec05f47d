"""Utilities for rendering LLM prompt templates using Jinja2."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from daybook.settings import CONFIG_DIR, PACKAGE_DIR, PROJECT_ROOT, settings

_DEFAULT_TEMPLATE_DIR = (PACKAGE_DIR / "llm" / "templates").resolve()


def _candidate_template_dirs(configured: str | None) -> list[Path]:
    candidates: list[Path] = []
    if configured:
        candidate_path = Path(configured).expanduser()
        if candidate_path.is_absolute():
            candidates.append(candidate_path)
        else:
            candidates.extend([Path.cwd() / candidate_path, PROJECT_ROOT / candidate_path])
            if CONFIG_DIR is not None:
                candidates.append(CONFIG_DIR / candidate_path)
    candidates.append(_DEFAULT_TEMPLATE_DIR)

    unique: list[Path] = []
    for path in candidates:
        resolved = path.resolve()
        if resolved not in unique:
            unique.append(resolved)
    return unique


def _resolve_template_dir() -> Path:
    configured = str(settings.get("PROMPTS.template_dir") or "").strip()
    candidates = _candidate_template_dirs(configured or None)
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    searched = ", ".join(str(path) for path in candidates)
    raise FileNotFoundError(f"Unable to locate prompt templates. Searched: {searched}")


@lru_cache(maxsize=1)
def get_environment() -> Environment:
    """Return a cached Jinja2 environment configured for prompt rendering."""

    loader = FileSystemLoader(str(_resolve_template_dir()))
    return Environment(
        loader=loader,
        autoescape=False,
        keep_trailing_newline=True,
        trim_blocks=False,
        undefined=StrictUndefined,
    )


def render_prompt_template(name: str, **context: Any) -> str:
    """Render the prompt template ``name`` with ``context``."""

    environment = get_environment()
    try:
        template = environment.get_template(name)
    except TemplateNotFound as exc:
        raise FileNotFoundError(f"Prompt template '{name}' could not be located") from exc
    return template.render(**context)


__all__ = ["get_environment", "render_prompt_template"]
