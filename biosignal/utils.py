"""Shared utility functions used across BioSignal modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse, urlunparse

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_day(value: datetime) -> datetime:
    value = as_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Floor of elapsed days, never negative."""
    delta: timedelta = as_utc(later) - as_utc(earlier)
    return max(0, delta // timedelta(days=1))


def canonicalize_url(url: str | None) -> str:
    if not url:
        return ""
    candidate = url.strip()
    if not candidate:
        return ""
    if candidate.startswith("www."):
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    if not parsed.scheme:
        parsed = urlparse(f"https://{candidate}")
    path = parsed.path or "/"
    if path != "/":
        path = path.rstrip("/")
    sanitized = parsed._replace(
        scheme=parsed.scheme.lower(), netloc=parsed.netloc.lower(), path=path,
        params="", query="", fragment="",
    )
    return urlunparse(sanitized)
