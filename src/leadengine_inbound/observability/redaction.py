"""Redaction helpers for safe logging. Transport data must pass through these."""

import json
import re
from typing import Any

# Patterns that should never appear in logs
_JID_PATTERN = re.compile(r"\b\d{6,}(?::\d+)?@(?:s\.whatsapp\.net|c\.us|g\.us|lid)\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"

RAW_PREVIEW_LIMIT = 2000


def redact_string(value: str) -> str:
    """Redact PII patterns (JIDs, phones, e-mails) from a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Structure only, never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {redact_string(str(value))}"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}


def raw_preview(payload: Any, limit: int = RAW_PREVIEW_LIMIT) -> str:
    """Serialize a raw transport payload for diagnostics.

    The output is redacted and truncated to ``limit`` characters.
    """
    try:
        text = json.dumps(payload, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(payload)
    text = redact_string(text)
    if len(text) > limit:
        return text[:limit]
    return text
