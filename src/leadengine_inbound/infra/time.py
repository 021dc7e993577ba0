"""Time utilities for consistent timestamp handling."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

# Epoch values above this are milliseconds
_MS_THRESHOLD = 1e12


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def monotonic_ms() -> int:
    """Monotonic clock in milliseconds, used for TTL bookkeeping."""
    return int(time.monotonic() * 1000)


def epoch_to_datetime(value: float) -> datetime | None:
    """Convert epoch seconds or milliseconds to an aware datetime."""
    millis = value if abs(value) > _MS_THRESHOLD else value * 1000
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse transport timestamps without raising.

    Accepts epoch seconds, epoch milliseconds, numeric strings, ISO-8601
    strings (``Z`` suffix included), datetimes, and protobuf ``Long``-like
    dicts with a ``low`` field. Unparseable values yield None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return epoch_to_datetime(float(value))
    if isinstance(value, dict) and isinstance(value.get("low"), int):
        return epoch_to_datetime(float(value["low"] & 0xFFFFFFFF))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return epoch_to_datetime(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_iso(value: Any) -> str | None:
    """Parse ``value`` and render it as ISO-8601, or None."""
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None
