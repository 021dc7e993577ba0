"""Coerce a provider message payload into a NormalizedMessage."""

from __future__ import annotations

import uuid
from typing import Any

from .models import MessageType, NormalizedMessage
from .payloads import as_list, as_record, read_int, read_number, read_string

FALLBACK_TEXT = "[Mensagem recebida via WhatsApp]"

_TEXT_KEYS = (
    "text",
    "body",
    "caption",
    "message",
    "conversation",
    "content",
    "value",
    "description",
    "title",
)
_MEDIA_URL_KEYS = ("url", "mediaUrl", "directPath", "downloadUrl")
_FILE_SIZE_KEYS = ("fileLength", "size")

# Structural inference, first match wins
_STRUCTURAL_TYPES: tuple[tuple[str, MessageType], ...] = (
    ("imageMessage", MessageType.IMAGE),
    ("videoMessage", MessageType.VIDEO),
    ("audioMessage", MessageType.AUDIO),
    ("documentMessage", MessageType.DOCUMENT),
    ("documentWithCaptionMessage", MessageType.DOCUMENT),
    ("stickerMessage", MessageType.STICKER),
    ("contactsArrayMessage", MessageType.CONTACT),
    ("contactMessage", MessageType.CONTACT),
    ("locationMessage", MessageType.LOCATION),
    ("liveLocationMessage", MessageType.LOCATION),
    ("templateButtonReplyMessage", MessageType.TEMPLATE),
    ("buttonsResponseMessage", MessageType.TEMPLATE),
)

_MEDIA_MESSAGE_KEYS = (
    "imageMessage",
    "videoMessage",
    "audioMessage",
    "documentMessage",
    "stickerMessage",
)

# Aliases emitted by connectors for the explicit ``type`` field
_TYPE_ALIASES = {
    "CHAT": MessageType.TEXT,
    "CONVERSATION": MessageType.TEXT,
    "EXTENDEDTEXTMESSAGE": MessageType.TEXT,
    "PTT": MessageType.AUDIO,
    "VOICE": MessageType.AUDIO,
    "MEDIA": MessageType.DOCUMENT,
    "FILE": MessageType.DOCUMENT,
    "CONTACTS": MessageType.CONTACT,
    "VCARD": MessageType.CONTACT,
    "BUTTONS_RESPONSE": MessageType.TEMPLATE,
    "LIST_RESPONSE": MessageType.TEMPLATE,
    "POLL": MessageType.TEXT,
    "POLL_CHOICE": MessageType.TEXT,
    "POLL_UPDATE": MessageType.TEXT,
}


def extract_text(value: Any) -> str | None:
    """Depth-first text lookup over strings, lists and known keys."""
    if not value:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        for entry in value:
            text = extract_text(entry)
            if text:
                return text
        return None
    if isinstance(value, dict):
        for key in _TEXT_KEYS:
            if key in value:
                text = extract_text(value[key])
                if text:
                    return text
    return None


def extract_media_url(value: Any) -> str | None:
    if not value:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        for entry in value:
            url = extract_media_url(entry)
            if url:
                return url
        return None
    if isinstance(value, dict):
        for key in _MEDIA_URL_KEYS:
            url = extract_media_url(value.get(key))
            if url:
                return url
    return None


def extract_file_size(value: Any) -> int | None:
    if isinstance(value, dict):
        for key in _FILE_SIZE_KEYS:
            size = extract_file_size(value.get(key))
            if size is not None:
                return size
        return None
    return read_int(value)


def _extract_location(value: Any) -> dict[str, Any] | None:
    record = as_record(value)
    if record is None:
        return None
    latitude = read_number(record.get("degreesLatitude"))
    longitude = read_number(record.get("degreesLongitude"))
    name = read_string(record.get("name")) or read_string(record.get("address"))
    if latitude is None and longitude is None and not name:
        return None
    return {"latitude": latitude, "longitude": longitude, "name": name}


def _extract_contacts(value: Any) -> list[dict[str, Any]] | None:
    record = as_record(value)
    entries = as_list(record.get("contacts")) if record is not None else as_list(value)
    if record is not None and not entries:
        entries = [record]
    contacts = []
    for entry in entries:
        item = as_record(entry)
        if item is None:
            continue
        vcard = as_record(item.get("vcard")) or {}
        contact = as_record(item.get("contact")) or {}
        name = (
            read_string(item.get("displayName"))
            or read_string(vcard.get("name"))
            or read_string(contact.get("name"))
        )
        phone = (
            read_string(vcard.get("phoneNumber"))
            or read_string(contact.get("phoneNumber"))
            or read_string(item.get("phoneNumber"))
        )
        if name or phone:
            contacts.append({"name": name, "phone": phone})
    return contacts or None


def determine_type(payload: dict[str, Any], type_hint: Any = None) -> MessageType:
    """Resolve the message type: explicit type, hint, then structure."""
    media = as_record(payload.get("media")) or {}
    for candidate in (payload.get("type"), type_hint):
        text = read_string(candidate)
        if not text:
            continue
        upper = text.upper()
        if upper == "MEDIA" and read_string(media.get("mediaType")):
            upper = read_string(media.get("mediaType")).upper()  # type: ignore[union-attr]
        if upper in MessageType.__members__:
            return MessageType[upper]
        if upper in _TYPE_ALIASES:
            return _TYPE_ALIASES[upper]
    for key, message_type in _STRUCTURAL_TYPES:
        if payload.get(key):
            return message_type
    return MessageType.TEXT


def _first_media_record(payload: dict[str, Any]) -> dict[str, Any]:
    for key in _MEDIA_MESSAGE_KEYS:
        record = as_record(payload.get(key))
        if record:
            return record
    wrapped = as_record(payload.get("documentWithCaptionMessage"))
    if wrapped:
        inner = as_record(wrapped.get("message")) or {}
        document = as_record(inner.get("documentMessage"))
        if document:
            return document
    return as_record(payload.get("media")) or {}


def normalize_inbound_message(
    payload: dict[str, Any],
    external_id: str | None = None,
    type_hint: Any = None,
) -> NormalizedMessage:
    """Normalize a provider message payload.

    Args:
        payload: Provider message (flattened by the transport adapter).
        external_id: Stable provider id when the envelope knows it.
        type_hint: Transport-level type hint (``event``/``messageType``).

    Returns:
        NormalizedMessage; text falls back to a fixed placeholder and the
        id to a generated ``wamid-`` identifier.
    """
    key = as_record(payload.get("key")) or {}
    message_id = read_string(payload.get("id")) or read_string(key.get("id"))
    if not message_id:
        message_id = f"wamid-{uuid.uuid4()}"

    message_type = determine_type(payload, type_hint)
    media = _first_media_record(payload)
    metadata = as_record(payload.get("metadata")) or {}

    text = (
        extract_text(payload.get("text"))
        or extract_text(payload.get("conversation"))
        or extract_text(payload.get("extendedTextMessage"))
        or extract_text(payload.get("templateButtonReplyMessage"))
        or extract_text(payload.get("buttonsResponseMessage"))
        or extract_text(payload.get("listResponseMessage"))
        or extract_text(metadata)
        or FALLBACK_TEXT
    )
    caption = extract_text(media) if media else None
    if caption is None:
        caption = read_string(payload.get("caption"))

    media_url = (
        extract_media_url(metadata.get("mediaUrl"))
        or extract_media_url(payload.get("mediaUrl"))
        or extract_media_url(media)
    )

    buttons = as_record(payload.get("buttonsResponseMessage")) or {}
    template = as_record(payload.get("templateButtonReplyMessage")) or {}
    button_payload = read_string(buttons.get("selectedButtonId")) or read_string(
        template.get("selectedId")
    )
    template_payload = read_string(template.get("selectedDisplayText")) or read_string(
        buttons.get("selectedDisplayText")
    )

    timestamp = read_int(payload.get("messageTimestamp"))
    if timestamp is None:
        timestamp = read_int(metadata.get("timestamp"))

    return NormalizedMessage(
        id=message_id,
        external_id=read_string(external_id) or message_id,
        type=message_type,
        text=text,
        caption=caption,
        media_url=media_url,
        mimetype=read_string(media.get("mimetype")) or read_string(payload.get("mimetype")),
        file_size=extract_file_size(media) if media else read_int(payload.get("fileLength")),
        file_name=read_string(media.get("fileName")) or read_string(payload.get("fileName")),
        media_key=read_string(media.get("mediaKey")) or read_string(payload.get("mediaKey")),
        direct_path=read_string(media.get("directPath"))
        or read_string(payload.get("directPath")),
        broker_message_timestamp=timestamp,
        location=_extract_location(payload.get("locationMessage") or payload.get("liveLocationMessage")),
        contacts=_extract_contacts(
            payload.get("contactsArrayMessage") or payload.get("contactMessage")
        ),
        button_payload=button_payload,
        template_payload=template_payload,
        poll_choice=as_record(metadata.get("pollChoice")),
    )
