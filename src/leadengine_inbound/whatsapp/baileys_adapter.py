"""Raw connector adapter - normalize WHATSAPP_MESSAGES_UPSERT events.

The session-level connector forwards Baileys ``messages.upsert`` batches as-is.
Each entry is flattened into the webhook shape (``event="message"``) so the
event normalizer can treat it like any other broker webhook.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from leadengine_inbound.infra.time import epoch_to_datetime
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context

from .identifiers import is_group_jid, normalize_remote_jid
from .payloads import as_list, as_record, first_string_of, read_number, read_string

logger = get_logger(__name__)

UPSERT_EVENT = "WHATSAPP_MESSAGES_UPSERT"

_WRAPPER_KEYS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2")

_MEDIA_KEYS = (
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
)

_POLL_CREATION_KEYS = (
    ("pollCreationMessage", "poll"),
    ("pollCreationMessageV2", "poll"),
    ("pollCreationMessageV3", "poll_v2"),
)


@dataclass(frozen=True)
class UpsertOverrides:
    instance_id: str | None = None
    tenant_id: str | None = None
    session_id: str | None = None
    broker_id: str | None = None


@dataclass(frozen=True)
class NormalizedUpsertMessage:
    """One connector entry rewritten into the flattened webhook shape."""

    data: dict[str, Any]
    message_index: int
    message_id: str
    message_type: str
    is_group: bool
    tenant_id: str | None = None
    session_id: str | None = None
    broker_id: str | None = None


@dataclass(frozen=True)
class IgnoredUpsertMessage:
    message_index: int
    reason: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizeUpsertResult:
    normalized: list[NormalizedUpsertMessage] = field(default_factory=list)
    ignored: list[IgnoredUpsertMessage] = field(default_factory=list)


def _compact(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


def _to_iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    parsed = epoch_to_datetime(timestamp)
    return parsed.isoformat() if parsed else None


def unwrap_message_content(content: Any) -> dict[str, Any] | None:
    """Peel ephemeral/view-once wrappers until the real content is reached."""
    current = as_record(content)
    visited: set[int] = set()
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        for wrapper in _WRAPPER_KEYS:
            inner = as_record((as_record(current.get(wrapper)) or {}).get("message"))
            if inner is not None:
                current = inner
                break
        else:
            return current
    return current


def _extract_context_info(content: dict[str, Any]) -> dict[str, Any] | None:
    direct = as_record(content.get("contextInfo"))
    if direct is not None:
        return direct
    for value in content.values():
        nested = as_record(value)
        if nested is not None and as_record(nested.get("contextInfo")) is not None:
            return nested["contextInfo"]
    return None


def extract_quoted_details(content: dict[str, Any]) -> dict[str, Any] | None:
    """Quoted message id, participant and text from ``contextInfo``."""
    context = _extract_context_info(content)
    if context is None:
        return None
    quoted = as_record(context.get("quotedMessage"))
    if quoted is None:
        return None

    quoted_id = first_string_of(
        context.get(name)
        for name in ("stanzaId", "stanzaID", "quotedMessageId", "quotedMessageID")
    )
    unwrapped = unwrap_message_content(quoted) or {}
    quoted_text = (
        read_string(unwrapped.get("conversation"))
        or read_string((as_record(unwrapped.get("extendedTextMessage")) or {}).get("text"))
        or read_string((as_record(unwrapped.get("buttonsMessage")) or {}).get("contentText"))
    )
    return _compact(
        {
            "quotedMessageId": quoted_id,
            "quotedParticipant": read_string(context.get("participant")),
            "quotedText": quoted_text,
        }
    )


def _extract_media_details(content: dict[str, Any], key: str) -> dict[str, Any] | None:
    raw = as_record(content.get(key))
    if raw is None:
        return None
    quoted = unwrap_message_content((as_record(raw.get("contextInfo")) or {}).get("quotedMessage"))
    caption = (
        read_string(raw.get("caption"))
        or read_string((as_record(raw.get("captionMessage")) or {}).get("text"))
        or read_string((quoted or {}).get("conversation"))
    )
    return _compact(
        {
            "mimetype": read_string(raw.get("mimetype")),
            "caption": caption,
            "fileLength": read_number(raw.get("fileLength")),
            "fileName": first_string_of(
                (raw.get("fileName"), raw.get("fileNameEncryptedSha256"))
            ),
            "mediaKey": read_string(raw.get("mediaKey")),
            "directPath": read_string(raw.get("directPath")),
            "url": read_string(raw.get("url")),
            "jpegThumbnail": raw.get("jpegThumbnail"),
            "pageCount": read_number(raw.get("pageCount")),
        }
    )


def extract_interactive_details(
    content: dict[str, Any],
) -> tuple[str | None, dict[str, Any] | None, str | None]:
    """Return ``(type, payload, text)`` for button, list and poll replies."""
    buttons = as_record(content.get("buttonsResponseMessage"))
    if buttons is not None:
        text = first_string_of(
            buttons.get(name) for name in ("selectedDisplayText", "responseText", "title")
        )
        payload = _compact(
            {
                "selectedButtonId": first_string_of(
                    (buttons.get("selectedButtonId"), buttons.get("selectedButtonIndex"))
                ),
                "selectedDisplayText": read_string(buttons.get("selectedDisplayText")),
                "title": read_string(buttons.get("title")),
                "responseMessageId": read_string(buttons.get("responseMessageId")),
            }
        )
        return "buttons_response", payload, text

    list_response = as_record(content.get("listResponseMessage"))
    single_select = as_record((list_response or {}).get("singleSelectReply"))
    if list_response is not None and single_select is not None:
        text = read_string(single_select.get("selectedRowId")) or read_string(
            single_select.get("selectedDisplayText")
        )
        payload = _compact(
            {
                "listId": read_string(list_response.get("listId")),
                "title": read_string(list_response.get("title")),
                "description": read_string(list_response.get("description")),
                "singleSelectReply": _compact(
                    {
                        "selectedRowId": read_string(single_select.get("selectedRowId")),
                        "selectedDisplayText": read_string(
                            single_select.get("selectedDisplayText")
                        ),
                    }
                ),
            }
        )
        return "list_response", payload, text

    poll_update = as_record(content.get("pollUpdateMessage"))
    if poll_update is not None:
        vote = as_record(poll_update.get("vote"))
        creation_key = as_record(poll_update.get("pollCreationMessageKey"))
        payload = _compact(
            {
                "pollCreationMessageId": read_string(poll_update.get("pollCreationMessageId"))
                or read_string((creation_key or {}).get("id")),
                "pollCreationMessageKey": creation_key,
                "vote": _compact(
                    {
                        "values": vote.get("values") if isinstance(vote.get("values"), list) else None,
                        "encPayload": vote.get("encPayload"),
                        "encIv": vote.get("encIv"),
                    }
                )
                if vote is not None
                else None,
            }
        )
        return "poll_choice", payload, None

    return None, None, None


def determine_message_type(content: dict[str, Any]) -> str:
    if _poll_creation_record(content)[0]:
        return "poll"
    if content.get("pollUpdateMessage"):
        return "poll_choice"
    if content.get("listResponseMessage"):
        return "list_response"
    if content.get("buttonsResponseMessage"):
        return "buttons_response"
    if content.get("imageMessage") or content.get("stickerMessage"):
        return "image"
    if content.get("videoMessage"):
        return "video"
    if content.get("audioMessage"):
        return "audio"
    if content.get("documentMessage"):
        return "document"
    return "text"


def extract_primary_text(content: dict[str, Any], interactive_text: str | None) -> str | None:
    extended = as_record(content.get("extendedTextMessage")) or {}
    template = as_record(content.get("templateButtonReplyMessage")) or {}
    buttons = as_record(content.get("buttonsMessage")) or {}
    direct = first_string_of(
        (
            content.get("conversation"),
            extended.get("text"),
            template.get("selectedDisplayText"),
            template.get("selectedId"),
            buttons.get("contentText"),
        )
    )
    if direct:
        return direct

    caption = read_string((as_record(content.get("imageMessage")) or {}).get("caption")) or read_string(
        (as_record(content.get("videoMessage")) or {}).get("caption")
    )
    if caption:
        return caption
    if interactive_text:
        return interactive_text
    return read_string((_poll_creation_record(content)[0] or {}).get("name"))


def _ensure_message_id(entry: dict[str, Any], key: dict[str, Any]) -> str:
    message = as_record(entry.get("message")) or {}
    candidate = first_string_of(
        (entry.get("id"), key.get("id"), message.get("stanzaId"), message.get("stanzaID"))
    )
    return candidate or f"wamid-{uuid.uuid4()}"


def _poll_creation_record(content: dict[str, Any]) -> tuple[dict[str, Any] | None, str]:
    for key, media_type in _POLL_CREATION_KEYS:
        poll = as_record(content.get(key))
        if poll is not None:
            return poll, media_type
    return None, "poll"


def _poll_creation(content: dict[str, Any]) -> dict[str, Any] | None:
    poll, media_type = _poll_creation_record(content)
    if poll is None:
        return None
    options = poll.get("options")
    context_info = as_record(content.get("messageContextInfo")) or {}
    return _compact(
        {
            "name": read_string(poll.get("name")),
            "options": options if isinstance(options, list) else None,
            "selectableOptionsCount": read_number(poll.get("selectableOptionsCount")),
            "messageSecret": context_info.get("messageSecret"),
            "mediaType": media_type,
        }
    )


def _normalize_entry(
    entry: dict[str, Any],
    index: int,
    *,
    instance_id: str,
    owner: str | None,
    source: str | None,
    tenant_id: str | None,
    session_id: str | None,
    broker_id: str | None,
    fallback_timestamp: float | None,
) -> NormalizedUpsertMessage | IgnoredUpsertMessage:
    key = as_record(entry.get("key")) or {}
    if key.get("fromMe") is True:
        return IgnoredUpsertMessage(index, "from_me")

    raw_content = as_record(entry.get("message"))
    content = unwrap_message_content(raw_content)
    if not content:
        return IgnoredUpsertMessage(index, "empty_message")
    if content.get("protocolMessage"):
        return IgnoredUpsertMessage(index, "protocol_message")
    if content.get("historySyncNotification"):
        return IgnoredUpsertMessage(index, "history_sync")
    if entry.get("messageStubType"):
        return IgnoredUpsertMessage(
            index, "message_stub", {"stubType": entry.get("messageStubType")}
        )

    raw_remote_jid = first_string_of((key.get("remoteJid"), entry.get("remoteJid")))
    raw_participant = first_string_of((key.get("participant"), entry.get("participant")))
    remote_jid = normalize_remote_jid(raw_remote_jid)
    participant = normalize_remote_jid(raw_participant)
    is_group = is_group_jid(raw_remote_jid)
    push_name = read_string(entry.get("pushName"))
    display_name = (
        push_name
        or read_string((as_record(content.get("contactMessage")) or {}).get("displayName"))
        or raw_remote_jid
    )

    timestamp = read_number(entry.get("messageTimestamp"))
    if timestamp is None and raw_content is not None:
        timestamp = read_number(raw_content.get("messageTimestamp"))
    if timestamp is None:
        timestamp = fallback_timestamp

    message_id = _ensure_message_id(entry, key)
    interactive_type, interactive_payload, interactive_text = extract_interactive_details(content)
    message_type = determine_message_type(content)
    quoted = extract_quoted_details(content)

    message: dict[str, Any] = _compact(
        {
            "id": message_id,
            "type": message_type,
            "conversation": read_string(content.get("conversation")),
            "text": extract_primary_text(content, interactive_text),
            "key": _compact(
                {
                    "id": read_string(key.get("id")) or message_id,
                    "remoteJid": read_string(key.get("remoteJid")),
                    "participant": read_string(key.get("participant")),
                }
            ),
            "messageTimestamp": timestamp,
            "imageMessage": _extract_media_details(content, "imageMessage")
            or _extract_media_details(content, "stickerMessage"),
            "videoMessage": _extract_media_details(content, "videoMessage"),
            "audioMessage": _extract_media_details(content, "audioMessage"),
            "documentMessage": _extract_media_details(content, "documentMessage"),
            "buttonsResponseMessage": interactive_payload
            if interactive_type == "buttons_response"
            else None,
            "listResponseMessage": interactive_payload
            if interactive_type == "list_response"
            else None,
            "pollUpdateMessage": interactive_payload if interactive_type == "poll_choice" else None,
            "pollCreationMessage": _poll_creation(content),
            "caption": read_string((as_record(content.get("imageMessage")) or {}).get("caption"))
            or read_string((as_record(content.get("videoMessage")) or {}).get("caption")),
            "quotedMessageId": (quoted or {}).get("quotedMessageId"),
            "quotedText": (quoted or {}).get("quotedText"),
            "quotedParticipant": (quoted or {}).get("quotedParticipant"),
        }
    )

    matched = next(
        ((media_key, media_type) for media_key, media_type in _MEDIA_KEYS if message.get(media_key)),
        None,
    )
    if matched is not None:
        media_record = message[matched[0]]
        caption = read_string(media_record.get("caption")) or message.get("caption")
        message["type"] = "media"
        message["text"] = caption
        message["media"] = _compact(
            {
                "mediaType": matched[1],
                "caption": caption,
                "mimetype": read_string(media_record.get("mimetype")),
                "fileName": read_string(media_record.get("fileName")),
                "fileLength": read_number(media_record.get("fileLength")),
            }
        )
    else:
        text = (
            read_string(content.get("conversation"))
            or read_string((as_record(content.get("extendedTextMessage")) or {}).get("text"))
            or read_string(message.get("text"))
        )
        message["type"] = "text" if text else "unknown"
        message["text"] = text

    direction = "inbound"
    metadata: dict[str, Any] = _compact(
        {
            "broker": _compact(
                {
                    "type": "baileys",
                    "direction": direction,
                    "owner": owner,
                    "source": source or "raw_normalized",
                    "messageType": message_type,
                    "messageTimestamp": timestamp,
                    "instanceId": instance_id,
                    "sessionId": session_id,
                    "brokerId": broker_id,
                    "normalized": True,
                    "fromMe": False,
                }
            ),
            "source": "raw_normalized",
            "direction": direction,
            "rawKey": _compact(
                {
                    "remoteJid": remote_jid,
                    "participant": participant,
                    "jid": raw_remote_jid,
                    "participantJid": raw_participant,
                }
            )
            or None,
            "contact": _compact(
                {
                    "pushName": push_name,
                    "isGroup": is_group,
                    "participant": participant,
                    "remoteJid": remote_jid,
                    "jid": raw_remote_jid,
                    "participantJid": raw_participant,
                }
            ),
            "messageIndex": index,
            "tenantId": tenant_id,
            "sessionId": session_id,
            "quoted": quoted,
            "interactive": {"type": interactive_type} if interactive_type else None,
            "skd": True if content.get("senderKeyDistributionMessage") else None,
        }
    )

    data = {
        "event": "message",
        "direction": direction,
        "instanceId": instance_id,
        "timestamp": _to_iso(timestamp),
        "from": _compact(
            {
                "phone": participant or remote_jid,
                "name": display_name,
                "pushName": push_name,
            }
        ),
        "message": message,
        "metadata": metadata,
    }
    return NormalizedUpsertMessage(
        data=data,
        message_index=index,
        message_id=message_id,
        message_type=message_type,
        is_group=is_group,
        tenant_id=tenant_id,
        session_id=session_id,
        broker_id=broker_id,
    )


def normalize_upsert_event(
    event: Any, overrides: UpsertOverrides | None = None
) -> NormalizeUpsertResult:
    """Normalize a raw upsert event into webhook-shaped entries.

    Args:
        event: Raw connector event (``event="WHATSAPP_MESSAGES_UPSERT"``).
        overrides: Identifiers known by the caller; they win over the event.

    Returns:
        NormalizeUpsertResult with normalized entries and ignored entries
        (reasons: from_me, empty_message, protocol_message, history_sync,
        message_stub, invalid_entry). Other event types and events without
        an instance id produce an empty result.
    """
    result = NormalizeUpsertResult()
    record = as_record(event)
    if record is None:
        return result
    overrides = overrides or UpsertOverrides()

    event_type = read_string(record.get("event"))
    if event_type and event_type != UPSERT_EVENT:
        return result

    payload = as_record(record.get("payload")) or {}
    raw_envelope = as_record(payload.get("raw"))
    raw_payload = as_record((raw_envelope or {}).get("payload")) or raw_envelope or {}
    raw_metadata = as_record(raw_payload.get("metadata")) or {}
    metadata = as_record(payload.get("metadata")) or {}
    broker_metadata = as_record(metadata.get("broker")) or {}
    raw_envelope = raw_envelope or {}

    instance_id = first_string_of(
        (
            overrides.instance_id,
            payload.get("instanceId"),
            record.get("instanceId"),
            metadata.get("instanceId"),
            metadata.get("instance_id"),
            broker_metadata.get("instanceId"),
        )
    )
    if not instance_id:
        return result

    tenant_id = first_string_of(
        (
            overrides.tenant_id,
            payload.get("tenantId"),
            record.get("tenantId"),
            raw_payload.get("tenantId"),
            raw_metadata.get("tenantId"),
        )
    )
    broker_id = first_string_of(
        (
            overrides.broker_id,
            payload.get("brokerId"),
            record.get("brokerId"),
            record.get("iid"),
            payload.get("iid"),
            raw_payload.get("brokerId"),
            raw_metadata.get("brokerId"),
        )
    )
    session_id = (
        first_string_of(
            (
                overrides.session_id,
                payload.get("sessionId"),
                record.get("sessionId"),
                raw_payload.get("sessionId"),
                raw_envelope.get("sessionId"),
                raw_metadata.get("sessionId"),
            )
        )
        or broker_id
    )
    owner = first_string_of(
        source.get("owner") for source in (payload, record, raw_payload, raw_envelope, raw_metadata)
    )
    origin = first_string_of(
        source.get("source") for source in (payload, record, raw_payload, raw_envelope, raw_metadata)
    )
    fallback_timestamp = None
    for source in (payload, record, raw_payload, raw_envelope, raw_metadata):
        fallback_timestamp = read_number(source.get("timestamp"))
        if fallback_timestamp is not None:
            break

    primary = as_list(payload.get("messages"))
    fallback = as_list(raw_payload.get("messages") or raw_envelope.get("messages"))
    messages = primary or fallback

    logger.info(
        "raw upsert normalization started",
        extra={
            "extra_fields": safe_log_context(
                instanceId=instance_id,
                providedMessages=len(primary),
                fallbackMessages=len(fallback),
            )
        },
    )

    for index, entry in enumerate(messages):
        if not isinstance(entry, dict):
            result.ignored.append(IgnoredUpsertMessage(index, "invalid_entry"))
            logger.info(
                "raw upsert entry ignored",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance_id, messageIndex=index, reason="invalid_entry"
                    )
                },
            )
            continue

        normalized = _normalize_entry(
            entry,
            index,
            instance_id=instance_id,
            owner=owner,
            source=origin,
            tenant_id=tenant_id,
            session_id=session_id,
            broker_id=broker_id,
            fallback_timestamp=fallback_timestamp,
        )
        if isinstance(normalized, IgnoredUpsertMessage):
            result.ignored.append(normalized)
            logger.info(
                "raw upsert entry ignored",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance_id, messageIndex=index, reason=normalized.reason
                    )
                },
            )
            continue

        result.normalized.append(normalized)

    return result
