"""Hashing utilities for idempotency keys and secret fingerprints."""

import base64
import hashlib


def build_idempotency_key(
    tenant_id: str | None,
    instance_id: str | None,
    message_id: str,
    index: int = 0,
) -> str:
    """Build the webhook replay-suppression key.

    Format: sha256 hex digest of ``tenantId|instanceId|messageId|index``.
    Missing tenant/instance are rendered as empty strings.

    Args:
        tenant_id: Tenant identifier (may be unresolved).
        instance_id: WhatsApp instance identifier.
        message_id: Provider message id (or a composite vote id).
        index: Position of the message inside a batched event.

    Returns:
        64-char lowercase hex digest.
    """
    material = f"{tenant_id or ''}|{instance_id or ''}|{message_id}|{index}"
    return hashlib.sha256(material.encode()).hexdigest()


def fingerprint_secret(secret: bytes) -> str:
    """Non-reversible fingerprint for a stored secret (safe to log)."""
    return hashlib.sha256(secret).hexdigest()


def b64url_nopad(data: bytes) -> str:
    """Encode bytes as URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def b64url_decode(value: str) -> bytes:
    """Decode URL-safe (or standard) base64 with or without padding.

    Raises:
        ValueError: If the value is not valid base64.
    """
    text = value.strip().replace("+", "-").replace("/", "_")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode())
    except (ValueError, TypeError) as exc:
        raise ValueError("invalid base64 value") from exc
