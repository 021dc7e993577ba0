"""Contract and flattened webhook adapters.

Both shapes are validated with pydantic before any field is read. Invalid
events are logged with a bounded raw preview and dropped (None).
"""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import ValidationError

from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import raw_preview, safe_log_context

from .baileys_adapter import NormalizedUpsertMessage, UpsertOverrides
from .contracts import BrokerInboundEvent, BrokerWebhookInbound
from .payloads import as_record, first_string_of, read_bool, sanitize_metadata

logger = get_logger(__name__)

CONTRACT_EVENT_TYPES = frozenset({"MESSAGE_INBOUND", "MESSAGE_OUTBOUND"})


def _issue_summary(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['type']}"
        for error in exc.errors()
    ]


def normalize_contract_event(
    event: dict[str, Any], overrides: UpsertOverrides | None = None
) -> NormalizedUpsertMessage | None:
    """Validate a ``MESSAGE_INBOUND``/``MESSAGE_OUTBOUND`` event.

    ``event`` falls back to ``type`` and the envelope instance id is pushed
    into the payload when the payload lacks one.

    Returns:
        Webhook-shaped message, or None when the contract is violated.
    """
    overrides = overrides or UpsertOverrides()
    record = dict(event)
    if not first_string_of((record.get("type"),)) and first_string_of((record.get("event"),)):
        record["type"] = record["event"]

    envelope_instance = first_string_of((overrides.instance_id, record.get("instanceId")))
    payload = as_record(record.get("payload"))
    if payload is not None:
        payload = dict(payload)
        if not first_string_of((payload.get("instanceId"),)) and envelope_instance:
            payload["instanceId"] = envelope_instance
        record["payload"] = payload
    elif envelope_instance:
        record["payload"] = {"instanceId": envelope_instance}
    if not first_string_of((record.get("instanceId"),)) and envelope_instance:
        record["instanceId"] = envelope_instance

    try:
        parsed = BrokerInboundEvent.model_validate(record)
    except ValidationError as exc:
        logger.warning(
            "invalid contract event",
            extra={
                "extra_fields": {
                    **safe_log_context(eventType=record.get("type")),
                    "issues": _issue_summary(exc),
                    "preview": raw_preview(event),
                }
            },
        )
        return None

    contact = parsed.payload.contact.model_dump(exclude_none=True)
    message = sanitize_metadata(parsed.payload.message)
    metadata = sanitize_metadata(parsed.payload.metadata)
    if as_record(metadata.get("contact")) is None and contact:
        metadata["contact"] = contact

    broker = as_record(metadata.get("broker")) or {}
    metadata_contact = as_record(metadata.get("contact")) or {}
    key = as_record(message.get("key")) or {}

    message_id = first_string_of(
        (message.get("id"), key.get("id"), metadata.get("messageId"), parsed.id)
    ) or parsed.id
    message_type = first_string_of((metadata.get("messageType"), message.get("type"))) or "contract"
    is_group = bool(
        read_bool(metadata_contact.get("isGroup")) or read_bool(metadata.get("isGroup"))
    )
    direction = "outbound" if parsed.payload.direction == "OUTBOUND" else "inbound"

    if broker.get("messageType") is None and first_string_of((message.get("type"),)):
        metadata["broker"] = {**broker, "messageType": message.get("type")}

    data = {
        "event": "message",
        "direction": direction,
        "instanceId": overrides.instance_id or parsed.payload.instanceId,
        "timestamp": parsed.payload.timestamp,
        "message": message,
        "metadata": metadata,
        "from": contact,
    }
    return NormalizedUpsertMessage(
        data=data,
        message_index=0,
        message_id=message_id,
        message_type=message_type,
        is_group=is_group,
        tenant_id=overrides.tenant_id or parsed.tenantId,
        session_id=parsed.sessionId,
        broker_id=overrides.broker_id or parsed.instanceId,
    )


def normalize_webhook_message(
    event: dict[str, Any], overrides: UpsertOverrides | None = None
) -> NormalizedUpsertMessage | None:
    """Validate the flattened ``event="message"`` webhook shape."""
    overrides = overrides or UpsertOverrides()
    record = dict(event)
    if overrides.instance_id and not first_string_of((record.get("instanceId"),)):
        record["instanceId"] = overrides.instance_id

    try:
        parsed = BrokerWebhookInbound.model_validate(record)
    except ValidationError as exc:
        logger.warning(
            "invalid webhook message",
            extra={
                "extra_fields": {
                    "issues": _issue_summary(exc),
                    "preview": raw_preview(event),
                }
            },
        )
        return None

    message = sanitize_metadata(parsed.message)
    metadata = sanitize_metadata(parsed.metadata)
    key = as_record(message.get("key")) or {}
    metadata_contact = as_record(metadata.get("contact")) or {}
    message_id = first_string_of((message.get("id"), key.get("id"))) or f"wamid-{uuid.uuid4()}"

    data = {
        "event": "message",
        "direction": parsed.direction,
        "instanceId": parsed.instanceId,
        "timestamp": parsed.timestamp,
        "message": message,
        "metadata": metadata,
        "from": parsed.from_.model_dump(exclude_none=True),
    }
    return NormalizedUpsertMessage(
        data=data,
        message_index=0,
        message_id=message_id,
        message_type=first_string_of((metadata.get("messageType"), message.get("type"))) or "text",
        is_group=bool(read_bool(metadata_contact.get("isGroup"))),
        tenant_id=overrides.tenant_id
        or first_string_of((metadata.get("tenantId"), event.get("tenantId"))),
        session_id=first_string_of((metadata.get("sessionId"),)),
        broker_id=overrides.broker_id,
    )
