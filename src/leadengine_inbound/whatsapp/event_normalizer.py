"""Transport event -> InboundEnvelope.

Accepted shapes:
- canonical envelopes (``message.kind`` present), produced by other adapters
- contract events (``type``/``event`` MESSAGE_INBOUND|MESSAGE_OUTBOUND)
- raw connector upserts (``WHATSAPP_MESSAGES_UPSERT``)
- flattened webhook messages (``event="message"``)
- status updates (``MESSAGES_UPDATE`` and receipts)

Normalization never raises; unusable events yield None (or an empty list)
and a WARNING with a bounded raw preview.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import raw_preview, safe_log_context

from .baileys_adapter import (
    UPSERT_EVENT,
    NormalizedUpsertMessage,
    UpsertOverrides,
    normalize_upsert_event,
)
from .contract_adapter import (
    CONTRACT_EVENT_TYPES,
    normalize_contract_event,
    normalize_webhook_message,
)
from .identifiers import normalize_chat_id
from .models import (
    EnvelopeContact,
    EnvelopeMessage,
    EnvelopeOrigin,
    EnvelopeUpdate,
    InboundEnvelope,
)
from .payloads import (
    as_list,
    as_record,
    first_string,
    first_string_of,
    read_string,
    sanitize_metadata,
)

logger = get_logger(__name__)

UPDATE_EVENTS = frozenset(
    {
        "WHATSAPP_MESSAGES_UPDATE",
        "MESSAGES_UPDATE",
        "MESSAGES.UPDATE",
        "MESSAGE_STATUS",
        "MESSAGE_RECEIPT",
        "MESSAGE-RECEIPT.UPDATE",
    }
)

# Baileys WAMessageStatus
_NUMERIC_STATUSES = {
    0: "ERROR",
    1: "PENDING",
    2: "SERVER_ACK",
    3: "DELIVERY_ACK",
    4: "READ",
    5: "PLAYED",
}

KNOWN_TYPE_HINTS = frozenset(
    {
        "text",
        "image",
        "video",
        "audio",
        "document",
        "sticker",
        "location",
        "contact",
        "template",
        "media",
        "poll",
        "poll_update",
        "poll_choice",
        "buttons_response",
        "list_response",
    }
)

# Structural inference, first match wins
_STRUCTURAL_HINTS: tuple[tuple[str, str], ...] = (
    ("pollUpdateMessage", "poll_update"),
    ("pollCreationMessage", "poll"),
    ("imageMessage", "image"),
    ("stickerMessage", "image"),
    ("videoMessage", "video"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
    ("documentWithCaptionMessage", "document"),
    ("locationMessage", "location"),
    ("liveLocationMessage", "location"),
    ("contactsArrayMessage", "contact"),
    ("contactMessage", "contact"),
    ("templateButtonReplyMessage", "template"),
    ("buttonsResponseMessage", "template"),
)


@dataclass(frozen=True)
class TransportHints:
    """What the transport already knows about an event."""

    origin: EnvelopeOrigin = "webhook"
    tenant_id: str | None = None
    instance_id: str | None = None
    broker_id: str | None = None
    request_id: str | None = None

    def overrides(self) -> UpsertOverrides:
        return UpsertOverrides(
            instance_id=self.instance_id,
            tenant_id=self.tenant_id,
            broker_id=self.broker_id,
        )


def resolve_type_hint(message: dict[str, Any], event: dict[str, Any] | None = None) -> str | None:
    """Explicit ``type`` -> ``event`` field -> message structure.

    Only hints naming a content type count; ``event="message"`` and other
    transport labels are skipped.
    """
    event = event or {}
    metadata = as_record(message.get("metadata")) or {}
    for candidate in (message.get("type"), metadata.get("messageType"), event.get("type"), event.get("event")):
        text = read_string(candidate)
        if text and text.lower() in KNOWN_TYPE_HINTS:
            return text.lower()
    for key, hint in _STRUCTURAL_HINTS:
        if as_record(message.get(key)) is not None:
            return hint
    return None


def _update_status(entry: dict[str, Any]) -> str | None:
    update = as_record(entry.get("update")) or {}
    for candidate in (update.get("status"), entry.get("status"), entry.get("receipt")):
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return _NUMERIC_STATUSES.get(candidate, str(candidate))
        text = read_string(candidate)
        if text:
            return text.upper()
    return None


def _normalize_updates(record: dict[str, Any], hints: TransportHints) -> list[InboundEnvelope]:
    payload = as_record(record.get("payload")) or record
    entries = as_list(payload.get("updates")) or as_list(payload.get("messages")) or [payload]
    instance_id = first_string_of(
        (hints.instance_id, payload.get("instanceId"), record.get("instanceId"))
    )
    if not instance_id:
        return []

    envelopes = []
    for entry in entries:
        item = as_record(entry)
        if item is None:
            continue
        status = _update_status(item)
        message_id = first_string(item, ("key.id", "id", "messageId"))
        if not status or not message_id:
            continue
        envelopes.append(
            InboundEnvelope(
                origin=hints.origin,
                instance_id=instance_id,
                tenant_id=first_string_of((hints.tenant_id, record.get("tenantId"))),
                chat_id=normalize_chat_id(first_string(item, ("key.remoteJid", "remoteJid"))),
                message=EnvelopeUpdate(id=message_id, status=status),
                raw=record,
            )
        )
    return envelopes


def _contact_from(record: dict[str, Any]) -> EnvelopeContact:
    registrations = tuple(
        item.strip()
        for item in as_list(record.get("registrations"))
        if isinstance(item, str) and item.strip()
    )
    return EnvelopeContact(
        phone=read_string(record.get("phone")),
        name=read_string(record.get("name")),
        document=read_string(record.get("document")),
        registrations=registrations,
        avatar_url=read_string(record.get("avatarUrl")),
        push_name=read_string(record.get("pushName")),
    )


def envelope_from_normalized(
    normalized: NormalizedUpsertMessage,
    hints: TransportHints,
    event: dict[str, Any] | None = None,
) -> InboundEnvelope | None:
    """Build the canonical envelope for a webhook-shaped message."""
    event = event or {}
    data = normalized.data
    message = as_record(data.get("message")) or {}
    metadata = dict(as_record(data.get("metadata")) or {})
    key = as_record(message.get("key")) or {}
    metadata_contact = as_record(metadata.get("contact")) or {}
    sender = as_record(data.get("from")) or {}

    instance_id = first_string_of(
        (hints.instance_id, data.get("instanceId"), event.get("instanceId"))
    )
    if not instance_id:
        logger.warning(
            "event without instance id dropped",
            extra={"extra_fields": {"preview": raw_preview(event or data)}},
        )
        return None

    tenant_id = first_string_of(
        (hints.tenant_id, normalized.tenant_id, event.get("tenantId"), metadata.get("tenantId"))
    )
    chat_id = normalize_chat_id(
        first_string_of(
            (
                metadata_contact.get("jid"),
                key.get("remoteJid"),
                metadata_contact.get("remoteJid"),
                sender.get("phone"),
            )
        )
    )
    direction = "OUTBOUND" if str(data.get("direction", "")).lower() == "outbound" else "INBOUND"
    external_id = first_string_of((message.get("id"), key.get("id"), normalized.message_id))
    type_hint = resolve_type_hint(message, event)

    broker = dict(as_record(metadata.get("broker")) or {})
    broker.setdefault("messageContentType", normalized.message_type)
    broker.setdefault("instanceId", instance_id)
    broker.setdefault("sessionId", normalized.session_id)
    broker.setdefault("brokerId", normalized.broker_id)
    broker.setdefault("origin", hints.origin)

    metadata.update(
        {
            "source": metadata.get("source") or "whatsapp:webhook",
            "direction": direction,
            "remoteJid": metadata.get("remoteJid") or chat_id,
            "chatId": metadata.get("chatId") or chat_id,
            "tenantId": metadata.get("tenantId") or tenant_id,
            "instanceId": metadata.get("instanceId") or instance_id,
            "sessionId": metadata.get("sessionId") or normalized.session_id,
            "normalizedIndex": normalized.message_index,
            "messageType": metadata.get("messageType") or type_hint,
            "isGroup": normalized.is_group,
            "broker": broker,
        }
    )
    if hints.request_id:
        metadata.setdefault("requestId", hints.request_id)

    return InboundEnvelope(
        origin=hints.origin,
        instance_id=instance_id,
        tenant_id=tenant_id,
        chat_id=chat_id,
        message=EnvelopeMessage(
            id=normalized.message_id,
            external_id=external_id,
            broker_message_id=normalized.message_id,
            timestamp=read_string(data.get("timestamp")),
            direction=direction,  # type: ignore[arg-type]
            contact=_contact_from(sender),
            payload=sanitize_metadata(message),
            metadata=sanitize_metadata(metadata),
        ),
        raw={"event": event, "normalizedIndex": normalized.message_index},
    )


def _from_canonical(record: dict[str, Any], hints: TransportHints) -> InboundEnvelope | None:
    message = as_record(record.get("message")) or {}
    instance_id = first_string_of((hints.instance_id, record.get("instanceId")))
    if not instance_id:
        return None
    tenant_id = first_string_of((hints.tenant_id, record.get("tenantId")))
    chat_id = normalize_chat_id(record.get("chatId"))
    origin = read_string(record.get("origin"))
    if origin not in ("broker", "webhook", "poll_choice"):
        origin = hints.origin

    if read_string(message.get("kind")) == "update":
        status = read_string(message.get("status"))
        message_id = read_string(message.get("id"))
        if not status or not message_id:
            return None
        body: EnvelopeMessage | EnvelopeUpdate = EnvelopeUpdate(id=message_id, status=status)
    else:
        payload = as_record(message.get("payload"))
        if payload is None:
            return None
        message_id = first_string_of(
            (message.get("id"), message.get("externalId"), payload.get("id"))
        )
        if not message_id:
            return None
        metadata = dict(as_record(message.get("metadata")) or {})
        metadata.setdefault("messageType", resolve_type_hint(payload))
        direction = read_string(message.get("direction")) or "INBOUND"
        body = EnvelopeMessage(
            id=message_id,
            external_id=first_string_of((message.get("externalId"), message_id)),
            broker_message_id=read_string(message.get("brokerMessageId")),
            timestamp=read_string(message.get("timestamp")),
            direction="OUTBOUND" if direction.upper() == "OUTBOUND" else "INBOUND",
            contact=_contact_from(as_record(message.get("contact")) or {}),
            payload=sanitize_metadata(payload),
            metadata=sanitize_metadata(metadata),
        )

    return InboundEnvelope(
        origin=origin,  # type: ignore[arg-type]
        instance_id=instance_id,
        tenant_id=tenant_id,
        chat_id=chat_id,
        message=body,
        raw=record,
    )


def normalize_many(raw: Any, hints: TransportHints | None = None) -> list[InboundEnvelope]:
    """Normalize a transport event into zero or more envelopes."""
    hints = hints or TransportHints()
    record = as_record(raw)
    if record is None:
        logger.warning(
            "non-object transport event dropped",
            extra={"extra_fields": {"preview": raw_preview(raw)}},
        )
        return []

    message = as_record(record.get("message"))
    if message is not None and read_string(message.get("kind")):
        envelope = _from_canonical(record, hints)
        return [envelope] if envelope else []

    event_name = (read_string(record.get("event")) or "").upper()
    type_name = (read_string(record.get("type")) or "").upper()

    if event_name in UPDATE_EVENTS or type_name in UPDATE_EVENTS:
        return _normalize_updates(record, hints)

    if event_name == UPSERT_EVENT or type_name == UPSERT_EVENT:
        result = normalize_upsert_event(record, hints.overrides())
        envelopes = []
        for normalized in result.normalized:
            envelope = envelope_from_normalized(normalized, hints, record)
            if envelope is not None:
                envelopes.append(envelope)
        return envelopes

    if type_name in CONTRACT_EVENT_TYPES or event_name in CONTRACT_EVENT_TYPES:
        normalized = normalize_contract_event(record, hints.overrides())
        if normalized is None:
            return []
        envelope = envelope_from_normalized(normalized, hints, record)
        return [envelope] if envelope else []

    if event_name == "MESSAGE":
        normalized = normalize_webhook_message(record, hints.overrides())
        if normalized is None:
            return []
        envelope = envelope_from_normalized(normalized, hints, record)
        return [envelope] if envelope else []

    logger.warning(
        "unrecognized transport event dropped",
        extra={
            "extra_fields": {
                **safe_log_context(event=event_name or None, type=type_name or None),
                "preview": raw_preview(record),
            }
        },
    )
    return []


def normalize(raw: Any, hints: TransportHints | None = None) -> InboundEnvelope | None:
    """Normalize a single-message transport event.

    Returns:
        The first envelope the event yields, or None.
    """
    envelopes = normalize_many(raw, hints)
    return envelopes[0] if envelopes else None
