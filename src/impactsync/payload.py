"""Typed field extraction for GitHub JSON payloads and timestamp helpers.

GitHub responses have no fixed schema on our side. Every read goes through one
of these helpers, which validate the primitive type and return ``None`` on any
mismatch instead of raising.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional


def get_path(document: Any, *path: str) -> Any:
    """Walk nested mappings by key, returning ``None`` as soon as a step is missing."""
    current = document
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def get_str(document: Any, *path: str) -> Optional[str]:
    value = get_path(document, *path)
    return value if isinstance(value, str) else None


def get_int(document: Any, *path: str) -> Optional[int]:
    value = get_path(document, *path)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def get_list(document: Any, *path: str) -> Optional[list]:
    value = get_path(document, *path) if path else document
    return value if isinstance(value, list) else None


def parse_json(text: Optional[str]) -> Any:
    """Parse stored JSON text, returning ``None`` for empty or invalid input."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse GitHub ISO8601 timestamps into timezone-aware datetimes."""
    if not value or not isinstance(value, str):
        return None

    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a datetime as second-precision UTC ISO8601 with a trailing ``Z``.

    This is the shape GitHub uses for ``merged_at``/``updated_at``, so stored
    timestamps compare chronologically as plain strings in SQL.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc_value = value.astimezone(timezone.utc)
    return utc_value.isoformat(timespec="seconds").replace("+00:00", "Z")


def normalize_timestamp(value: Optional[str]) -> Optional[str]:
    """Re-render a GitHub timestamp in canonical form, or ``None`` when unparsable."""
    parsed = parse_datetime(value)
    return format_timestamp(parsed) if parsed is not None else None
