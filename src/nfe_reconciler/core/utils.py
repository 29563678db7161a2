"""Utility helpers used across the project."""

from __future__ import annotations

import json
import logging
import unicodedata
from datetime import date, datetime
from pathlib import Path
from typing import Optional


LOGGER = logging.getLogger(__name__)


def ensure_directory(path: Path) -> None:
    """Create ``path`` when it does not exist."""

    path.mkdir(parents=True, exist_ok=True)


def strip_accents(text: str) -> str:
    """Remove diacritics from ``text``."""

    normalized = unicodedata.normalize("NFD", text)
    return "".join(char for char in normalized if unicodedata.category(char) != "Mn")


def safe_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def optional_text(value) -> Optional[str]:
    """Return ``value`` as a stripped string or ``None`` for blanks/NaN."""

    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "nan":
        return None
    return text


def parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        if text.endswith("Z"):
            text = text.replace("Z", "+00:00")
        return datetime.fromisoformat(text).date()
    except ValueError:
        LOGGER.debug("Unable to parse date value '%s'", value)
        return None


def _json_default(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_json(path: Path, data) -> None:
    ensure_directory(path.parent)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, ensure_ascii=False, indent=2, default=_json_default)


def load_json(path: Path) -> Optional[dict]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


__all__ = [
    "ensure_directory",
    "strip_accents",
    "safe_float",
    "optional_text",
    "parse_date",
    "dump_json",
    "load_json",
]
