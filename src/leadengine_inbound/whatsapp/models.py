"""WhatsApp inbound message models.

The ``InboundEnvelope`` is the contract between transport adapters (webhook
route, raw connector, poll inbox fallback) and the ingestion orchestrator.
Every adapter must produce exactly this shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

EnvelopeOrigin = Literal["broker", "webhook", "poll_choice"]
Direction = Literal["INBOUND", "OUTBOUND"]


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"
    TEMPLATE = "TEMPLATE"
    STICKER = "STICKER"

    @property
    def is_media(self) -> bool:
        return self in _MEDIA_TYPES


_MEDIA_TYPES = frozenset(
    {
        MessageType.IMAGE,
        MessageType.VIDEO,
        MessageType.AUDIO,
        MessageType.DOCUMENT,
        MessageType.STICKER,
    }
)


@dataclass(frozen=True)
class EnvelopeContact:
    phone: str | None = None
    name: str | None = None
    document: str | None = None
    registrations: tuple[str, ...] = ()
    avatar_url: str | None = None
    push_name: str | None = None


@dataclass(frozen=True)
class EnvelopeMessage:
    """A conversation message carried by an envelope.

    ``payload`` is the provider message (already flattened by the adapter);
    ``metadata`` is sanitized and safe to persist.
    """

    id: str
    payload: dict[str, Any]
    external_id: str | None = None
    broker_message_id: str | None = None
    timestamp: str | None = None
    direction: Direction = "INBOUND"
    contact: EnvelopeContact = field(default_factory=EnvelopeContact)
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: Literal["message"] = "message"


@dataclass(frozen=True)
class EnvelopeUpdate:
    """Delivery/read receipt. Acknowledged and dropped by the orchestrator."""

    id: str
    status: str
    kind: Literal["update"] = "update"


@dataclass(frozen=True)
class InboundEnvelope:
    origin: EnvelopeOrigin
    instance_id: str
    message: Union[EnvelopeMessage, EnvelopeUpdate]
    tenant_id: str | None = None
    chat_id: str | None = None
    raw: Any = None


@dataclass
class NormalizedMessage:
    """Internal message shape after type coercion.

    ``external_id`` is the durable identity used for upserts.
    """

    id: str
    external_id: str
    type: MessageType
    text: str | None = None
    caption: str | None = None
    media_url: str | None = None
    mimetype: str | None = None
    file_size: int | None = None
    file_name: str | None = None
    media_key: str | None = None
    direct_path: str | None = None
    broker_message_timestamp: int | None = None
    location: dict[str, Any] | None = None
    contacts: list[dict[str, Any]] | None = None
    button_payload: str | None = None
    template_payload: str | None = None
    poll_choice: dict[str, Any] | None = None
