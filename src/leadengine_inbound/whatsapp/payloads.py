"""Helpers for reading loosely structured transport payloads.

Transport events arrive as nested JSON with many optional spellings for the
same field. Readers here resolve a value from an ordered list of candidate
paths: the first candidate that yields a usable value wins.
"""

from __future__ import annotations

import base64
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Sequence

# Largest integer a JSON consumer can represent without loss
MAX_SAFE_INTEGER = 2**53 - 1

Path = str | Sequence[str]


def as_record(value: Any) -> dict[str, Any] | None:
    """Return ``value`` if it is a dict, else None."""
    return value if isinstance(value, dict) else None


def as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def read_string(value: Any) -> str | None:
    """Trimmed non-empty string, numbers rendered as text, else None."""
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value == value and abs(value) != float("inf"):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def read_number(value: Any) -> float | None:
    """Finite number from a number or numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    elif isinstance(value, dict) and isinstance(value.get("low"), int):
        # protobuf Long serialized by the connector
        number = float(value["low"] & 0xFFFFFFFF)
    else:
        return None
    if number != number or abs(number) == float("inf"):
        return None
    return number


def read_int(value: Any) -> int | None:
    number = read_number(value)
    return int(number) if number is not None else None


def read_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


def get_path(source: Any, path: Path) -> Any:
    """Walk a dotted path (or key sequence) through nested dicts."""
    keys = path.split(".") if isinstance(path, str) else path
    current = source
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def first_present(
    source: Any,
    paths: Iterable[Path],
    reader: Callable[[Any], Any] = lambda value: value,
) -> Any:
    """Resolve the first candidate path whose value passes ``reader``.

    Args:
        source: Root payload.
        paths: Candidate paths in priority order.
        reader: Coerces the raw value; returning None skips the candidate.

    Returns:
        The first coerced value, or None when no candidate matches.
    """
    for path in paths:
        value = reader(get_path(source, path))
        if value is not None:
            return value
    return None


def first_string(source: Any, paths: Iterable[Path]) -> str | None:
    return first_present(source, paths, read_string)


def first_string_of(values: Iterable[Any]) -> str | None:
    """First usable string among already-resolved values."""
    for value in values:
        text = read_string(value)
        if text:
            return text
    return None


def unique_strings(values: Iterable[Any]) -> list[str]:
    """Trimmed, de-duplicated strings preserving first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        text = read_string(value)
        if text and text not in seen:
            seen[text] = None
    return list(seen)


def sanitize_metadata(value: Any) -> Any:
    """Make a transport value safely JSON-serializable.

    - bytes-like values become base64 strings
    - datetimes/dates become ISO-8601 strings
    - integers outside the safe range become decimal strings
    - None values inside dicts are dropped
    - sets and tuples become lists; unknown objects become ``str(value)``
    """
    if value is None or isinstance(value, (str, bool, float)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {
            str(key): sanitize_metadata(item)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_metadata(item) for item in value]
    return str(value)
