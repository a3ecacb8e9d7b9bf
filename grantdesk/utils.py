"""Shared utility functions used across grantdesk modules."""
from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any, Iterable

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    return json.dumps(value, default=str)


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on round-trip)."""
    return datetime.now(UTC).replace(tzinfo=None)


def sanitize_text(value: str | None) -> str:
    return (value or "").strip()


def sanitize_list(values: Iterable[str | None] | None) -> list[str]:
    """Trim every entry and drop the empty ones."""
    return [v for v in (sanitize_text(v) for v in (values or [])) if v]


def slugify(value: str) -> str:
    """Lowercase, hyphen-separated slug with only ``[a-z0-9-]``."""
    slug = re.sub(r"[^a-z0-9\s-]", "", value.lower().strip())
    slug = re.sub(r"-+", "-", re.sub(r"\s+", "-", slug))
    return slug.strip("-")


def naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
