"""Identifier sanitization for contacts, chats and tickets."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from .payloads import as_record, first_string, read_string

_NON_DIGITS = re.compile(r"\D")

_CONTACT_ID_FIELDS = ("id", "contactId", "contact_id")
_METADATA_CONTACT_ID_FIELDS = (
    "contactId",
    "contact_id",
    "customerId",
    "customer_id",
    "profileId",
    "profile_id",
    "contactIdentifier",
    "contact_identifier",
    "id",
)
_SESSION_ID_FIELDS = (
    "sessionId",
    "session_id",
    "threadId",
    "thread_id",
    "conversationId",
    "conversation_id",
    "roomId",
    "room_id",
    "chatId",
    "chat_id",
)


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def sanitize_phone(value: str | None) -> str | None:
    """E.164-ish phone: ``+`` followed by at least 10 digits, else None."""
    if not value:
        return None
    digits = digits_only(value)
    if len(digits) < 10:
        return None
    return f"+{digits}"


def sanitize_document(value: str | None, fallbacks: Iterable[str | None] = ()) -> str:
    """Pick the best document identifier for a contact.

    Order: digits of ``value`` (at least 4), digits of the first fallback
    with at least 4 digits, the first non-empty trimmed fallback, "".
    """
    fallbacks = list(fallbacks)
    if isinstance(value, str):
        digits = digits_only(value)
        if len(digits) >= 4:
            return digits

    for fallback in fallbacks:
        if isinstance(fallback, str):
            digits = digits_only(fallback)
            if len(digits) >= 4:
                return digits

    for fallback in fallbacks:
        if isinstance(fallback, str) and fallback.strip():
            return fallback.strip()

    return ""


def pick_preferred_name(*values: Any) -> str | None:
    """First non-empty trimmed string."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def compose_deterministic_id(parts: Iterable[str | None], min_parts: int = 1) -> str | None:
    """Join unique trimmed parts with ``:``; None when fewer than ``min_parts``."""
    normalized: list[str] = []
    for part in parts:
        if not isinstance(part, str):
            continue
        trimmed = part.strip()
        if trimmed and trimmed not in normalized:
            normalized.append(trimmed)
    if len(normalized) < min_parts:
        return None
    return ":".join(normalized)


def normalize_remote_jid(jid: str | None) -> str | None:
    """Strip the JID domain/device; keep digits when there are at least 8."""
    text = read_string(jid)
    if not text:
        return None
    local = text.split("@", 1)[0].split(":", 1)[0]
    digits = digits_only(local)
    if len(digits) >= 8:
        return digits
    return local or None


def is_group_jid(jid: str | None) -> bool:
    return bool(jid) and jid.strip().endswith("@g.us")  # type: ignore[union-attr]


def normalize_chat_id(value: Any) -> str | None:
    """Chat id as a full JID; bare numbers get ``@s.whatsapp.net``."""
    text = read_string(value)
    if not text:
        return None
    if "@" in text:
        return text
    digits = digits_only(text)
    if not digits:
        return text
    return f"{digits}@s.whatsapp.net"


@dataclass(frozen=True)
class ContactIdentity:
    deterministic_id: str | None
    contact_id: str | None
    session_id: str | None


def _collect(candidates: Iterable[Any]) -> list[str]:
    collected: list[str] = []
    for value in candidates:
        if isinstance(value, str) and value.strip() and value.strip() not in collected:
            collected.append(value.strip())
    return collected


def resolve_deterministic_contact_identifier(
    instance_id: str | None,
    metadata: dict[str, Any] | None,
    metadata_contact: dict[str, Any] | None,
    session_id: str | None = None,
    external_id: str | None = None,
) -> ContactIdentity:
    """Derive a stable contact identifier from event metadata.

    Priority: explicit contact id, then session/thread id, then
    ``instance:externalId``. Ids are prefixed with the instance when known.
    """
    metadata = metadata or {}
    metadata_contact = metadata_contact or {}
    instance = read_string(instance_id)

    contact_ids = _collect(
        [metadata_contact.get(field) for field in _CONTACT_ID_FIELDS]
        + [metadata.get(field) for field in _METADATA_CONTACT_ID_FIELDS]
    )
    session_ids = _collect([metadata.get(field) for field in _SESSION_ID_FIELDS] + [session_id])
    external = read_string(external_id)

    primary_contact = contact_ids[0] if contact_ids else None
    primary_session = session_ids[0] if session_ids else None
    min_parts = 2 if instance else 1

    deterministic: str | None = None
    if primary_contact:
        deterministic = (
            compose_deterministic_id([instance, primary_contact], min_parts=min_parts)
            or primary_contact
        )
    elif primary_session:
        deterministic = compose_deterministic_id(
            [instance, primary_session], min_parts=min_parts
        )
        if deterministic is None:
            deterministic = (
                compose_deterministic_id(session_ids, min_parts=2)
                if len(session_ids) > 1
                else primary_session
            )
    elif instance and external:
        deterministic = compose_deterministic_id([instance, external], min_parts=2)

    return ContactIdentity(
        deterministic_id=deterministic,
        contact_id=primary_contact,
        session_id=primary_session,
    )


def resolve_ticket_agreement_id(ticket: Any) -> str | None:
    """Agreement id from the ticket or its metadata."""
    record = as_record(ticket)
    if record is None:
        record = as_record(getattr(ticket, "__dict__", None))
    if record is None:
        return None
    direct = read_string(record.get("agreement_id")) or read_string(record.get("agreementId"))
    if direct:
        return direct
    metadata = as_record(record.get("metadata")) or {}
    return first_string(
        metadata,
        ("agreementId", "agreement_id", "agreement.id", "agreement.agreementId"),
    )
