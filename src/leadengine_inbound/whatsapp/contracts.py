"""Broker event contracts validated at the transport boundary."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from leadengine_inbound.infra.time import epoch_to_datetime


def normalize_contract_timestamp(value: Any) -> str | None:
    """Strings pass through trimmed; epoch numbers become ISO-8601."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        parsed = epoch_to_datetime(float(value))
        return parsed.isoformat() if parsed else None
    return None


def _trimmed_or_none(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    return value


def _record_or_empty(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class BrokerInboundContact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phone: str | None = None
    name: str | None = None
    document: str | None = None
    registrations: list[str] | None = None
    avatarUrl: str | None = None
    pushName: str | None = None

    @field_validator("phone", "name", "document", "avatarUrl", "pushName", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        value = _trimmed_or_none(value)
        return value if isinstance(value, str) or value is None else None

    @field_validator("registrations", mode="before")
    @classmethod
    def _registrations(cls, value: Any) -> list[str] | None:
        if not isinstance(value, list):
            return None
        cleaned = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        return cleaned or None

    @classmethod
    def lenient(cls, value: Any) -> "BrokerInboundContact":
        """Invalid contact blocks degrade to an empty contact."""
        if not isinstance(value, dict):
            return cls()
        return cls.model_validate(value)


class BrokerInboundPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instanceId: str = Field(min_length=1)
    timestamp: str | None = None
    direction: Literal["INBOUND", "OUTBOUND"] = "INBOUND"
    contact: BrokerInboundContact = Field(default_factory=BrokerInboundContact)
    message: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("instanceId", mode="before")
    @classmethod
    def _instance(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> str | None:
        return normalize_contract_timestamp(value)

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, value: Any) -> str:
        if isinstance(value, str) and "outbound" in value.strip().lower():
            return "OUTBOUND"
        return "INBOUND"

    @field_validator("contact", mode="before")
    @classmethod
    def _contact(cls, value: Any) -> BrokerInboundContact:
        return BrokerInboundContact.lenient(value)

    @field_validator("message", "metadata", mode="before")
    @classmethod
    def _records(cls, value: Any) -> dict[str, Any]:
        return _record_or_empty(value)


class BrokerInboundEvent(BaseModel):
    """Structured contract event (``MESSAGE_INBOUND``/``MESSAGE_OUTBOUND``)."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: Literal["MESSAGE_INBOUND", "MESSAGE_OUTBOUND"]
    tenantId: str | None = None
    sessionId: str | None = None
    instanceId: str = Field(min_length=1)
    timestamp: str | None = None
    cursor: str | None = None
    payload: BrokerInboundPayload

    @field_validator("id", "instanceId", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("tenantId", "sessionId", mode="before")
    @classmethod
    def _optional(cls, value: Any) -> Any:
        return _trimmed_or_none(value)

    @field_validator("timestamp", "cursor", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> str | None:
        return normalize_contract_timestamp(value)

    @model_validator(mode="after")
    def _propagate(self) -> "BrokerInboundEvent":
        if self.timestamp is None:
            self.timestamp = self.payload.timestamp
        else:
            self.payload.timestamp = self.timestamp
        if self.type == "MESSAGE_OUTBOUND" and self.payload.direction == "INBOUND":
            self.payload.direction = "OUTBOUND"
        return self


class BrokerWebhookInbound(BaseModel):
    """Flattened webhook shape (``event="message"``)."""

    model_config = ConfigDict(extra="ignore")

    event: Literal["message"]
    direction: Literal["inbound", "outbound"] = "inbound"
    instanceId: str = Field(min_length=1)
    timestamp: str | None = None
    message: dict[str, Any]
    from_: BrokerInboundContact = Field(default_factory=BrokerInboundContact, alias="from")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("instanceId", mode="before")
    @classmethod
    def _instance(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, value: Any) -> str:
        if isinstance(value, str) and "outbound" in value.strip().lower():
            return "outbound"
        return "inbound"

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> str | None:
        return normalize_contract_timestamp(value)

    @field_validator("from_", mode="before")
    @classmethod
    def _contact(cls, value: Any) -> BrokerInboundContact:
        return BrokerInboundContact.lenient(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, Any]:
        return _record_or_empty(value)
