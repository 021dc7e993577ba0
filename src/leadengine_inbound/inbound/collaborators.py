"""Collaborators the inbound pipeline depends on but does not own.

Persisted entities belong to the Storage implementation; this package only
reads and writes them through these protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


class StorageError(Exception):
    """Base class for storage failures."""


class ForeignKeyViolation(StorageError):
    """A referenced row (usually the tenant) does not exist."""


class UniqueViolation(StorageError):
    """A row with the same unique key already exists."""


@dataclass
class Tenant:
    id: str
    slug: str | None = None
    name: str | None = None


@dataclass
class Instance:
    id: str
    tenant_id: str
    broker_id: str | None = None
    name: str | None = None
    status: str = "disconnected"
    connected: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_seen_at: datetime | None = None


@dataclass
class Queue:
    id: str
    tenant_id: str
    name: str
    description: str | None = None
    color: str | None = None
    order_index: int = 0
    created_at: datetime | None = None


@dataclass
class Campaign:
    id: str
    tenant_id: str
    instance_id: str | None
    name: str
    agreement_id: str | None = None
    status: str = "active"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Contact:
    id: str
    tenant_id: str
    phone: str | None = None
    name: str | None = None
    document: str | None = None
    avatar_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Ticket:
    id: str
    tenant_id: str
    contact_id: str
    queue_id: str | None = None
    agreement_id: str | None = None
    status: str = "OPEN"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredMessage:
    id: str
    tenant_id: str
    ticket_id: str
    external_id: str
    type: str = "TEXT"
    content: str | None = None
    caption: str | None = None
    media_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    direction: str = "INBOUND"
    instance_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Lead:
    id: str
    tenant_id: str
    contact_id: str
    phone: str | None = None
    name: str | None = None
    document: str | None = None
    campaign_id: str | None = None


@dataclass(frozen=True)
class MessageUpsert:
    message: StoredMessage
    created: bool


@dataclass(frozen=True)
class TicketResolution:
    ticket: Ticket
    created: bool


class Storage(Protocol):
    """Persistence boundary. Implementations raise ``StorageError`` subclasses."""

    async def find_tenant(self, identifier: str) -> Tenant | None: ...

    async def ensure_tenant(self, tenant_id: str) -> Tenant: ...

    async def find_instance(self, instance_id: str) -> Instance | None: ...

    async def find_instance_by_broker_id(
        self, broker_id: str, tenant_id: str | None = None
    ) -> Instance | None: ...

    async def list_tenant_instances(self, tenant_id: str) -> list[Instance]: ...

    async def create_instance(self, instance: Instance) -> Instance: ...

    async def update_instance(self, instance_id: str, **fields: Any) -> Instance: ...

    async def find_first_queue(self, tenant_id: str) -> Queue | None: ...

    async def upsert_queue(self, tenant_id: str, name: str, **fields: Any) -> Queue: ...

    async def list_active_campaigns(
        self, tenant_id: str, instance_id: str
    ) -> list[Campaign]: ...

    async def upsert_campaign(
        self, tenant_id: str, agreement_id: str, **fields: Any
    ) -> Campaign: ...

    async def find_or_create_contact(
        self,
        tenant_id: str,
        *,
        phone: str | None,
        name: str | None,
        document: str | None,
        avatar_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Contact: ...

    async def find_or_create_open_ticket(
        self,
        tenant_id: str,
        contact_id: str,
        queue_id: str,
        *,
        agreement_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TicketResolution: ...

    async def upsert_message_by_external_id(
        self,
        tenant_id: str,
        ticket_id: str,
        external_id: str,
        fields: dict[str, Any],
    ) -> MessageUpsert: ...

    async def find_message_by_external_id(
        self, tenant_id: str, external_id: str
    ) -> StoredMessage | None: ...

    async def update_message(
        self, tenant_id: str, message_id: str, **fields: Any
    ) -> StoredMessage | None: ...

    async def find_poll_vote_message_candidate(
        self,
        tenant_id: str,
        *,
        poll_id: str,
        voter_jid: str | None = None,
        chat_id: str | None = None,
        identifiers: list[str] | None = None,
    ) -> StoredMessage | None: ...

    async def find_ticket(self, tenant_id: str, ticket_id: str) -> Ticket | None: ...

    async def upsert_lead(
        self,
        tenant_id: str,
        contact: Contact,
        *,
        campaign_id: str | None = None,
    ) -> Lead: ...


class RealtimeEmitter(Protocol):
    """Socket fan-out. Calls are fire-and-forget."""

    def emit_to_tenant(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None: ...

    def emit_to_ticket(self, ticket_id: str, event: str, payload: dict[str, Any]) -> None: ...

    def emit_to_agreement(
        self, agreement_id: str, event: str, payload: dict[str, Any]
    ) -> None: ...


@dataclass(frozen=True)
class AllocationTarget:
    """Allocate into a campaign, or into an instance when there is none."""

    campaign_id: str | None = None
    instance_id: str | None = None


@dataclass(frozen=True)
class AllocationResult:
    newly_allocated: list[dict[str, Any]]
    summary: dict[str, Any] = field(default_factory=dict)


class LeadAllocator(Protocol):
    async def add_allocations(
        self,
        tenant_id: str,
        target: AllocationTarget,
        leads: list[dict[str, Any]],
    ) -> AllocationResult: ...


@dataclass(frozen=True)
class MediaRequest:
    """What the broker needs to download a media attachment."""

    broker_id: str | None
    instance_id: str
    tenant_id: str
    message_id: str
    media_type: str
    media_key: str | None = None
    direct_path: str | None = None
    media_url: str | None = None


@dataclass(frozen=True)
class MediaDownload:
    data: bytes
    mime_type: str | None = None
    file_name: str | None = None
    size: int | None = None


class MediaClient(Protocol):
    async def download_media(self, request: MediaRequest) -> MediaDownload | None: ...


class MediaStorage(Protocol):
    async def save(
        self,
        tenant_id: str,
        data: bytes,
        mime_type: str | None,
        file_name: str | None,
    ) -> str: ...
