"""Dict-backed ``Storage`` for local runs and tests.

Enforces the constraints the pipeline relies on: queues reference an
existing tenant (``ForeignKeyViolation``), instance ids and
``(tenant, broker_id)`` pairs are unique (``UniqueViolation``) and messages
are unique per ``(tenant, external_id)``.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections import Counter
from dataclasses import replace
from typing import Any

from leadengine_inbound.inbound.collaborators import (
    Campaign,
    Contact,
    ForeignKeyViolation,
    Instance,
    Lead,
    MessageUpsert,
    Queue,
    StoredMessage,
    Tenant,
    Ticket,
    TicketResolution,
    UniqueViolation,
)
from leadengine_inbound.infra.time import utc_now
from leadengine_inbound.whatsapp.payloads import as_record, first_string, first_string_of

_MESSAGE_FIELDS = {
    "type",
    "content",
    "caption",
    "media_url",
    "metadata",
    "direction",
    "instance_id",
}


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryStorage:
    """In-process storage. ``calls`` counts every method invocation."""

    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.instances: dict[str, Instance] = {}
        self.queues: dict[str, Queue] = {}
        self.campaigns: dict[str, Campaign] = {}
        self.contacts: dict[str, Contact] = {}
        self.tickets: dict[str, Ticket] = {}
        self.messages: dict[str, StoredMessage] = {}
        self.leads: dict[str, Lead] = {}
        self.calls: Counter[str] = Counter()
        self._lock = asyncio.Lock()

    def _count(self, name: str) -> None:
        self.calls[name] += 1

    # tenants

    def add_tenant(self, tenant_id: str, slug: str | None = None, name: str | None = None) -> Tenant:
        tenant = Tenant(id=tenant_id, slug=slug, name=name)
        self.tenants[tenant_id] = tenant
        return tenant

    async def find_tenant(self, identifier: str) -> Tenant | None:
        self._count("find_tenant")
        tenant = self.tenants.get(identifier)
        if tenant is not None:
            return tenant
        return next((tenant for tenant in self.tenants.values() if tenant.slug == identifier), None)

    async def ensure_tenant(self, tenant_id: str) -> Tenant:
        self._count("ensure_tenant")
        return self.tenants.get(tenant_id) or self.add_tenant(tenant_id, slug=tenant_id, name=tenant_id)

    # instances

    def add_instance(self, instance: Instance) -> Instance:
        self.instances[instance.id] = instance
        return instance

    async def find_instance(self, instance_id: str) -> Instance | None:
        self._count("find_instance")
        return self.instances.get(instance_id)

    async def find_instance_by_broker_id(
        self, broker_id: str, tenant_id: str | None = None
    ) -> Instance | None:
        self._count("find_instance_by_broker_id")
        for instance in self.instances.values():
            if instance.broker_id == broker_id and (tenant_id is None or instance.tenant_id == tenant_id):
                return instance
        return None

    async def list_tenant_instances(self, tenant_id: str) -> list[Instance]:
        self._count("list_tenant_instances")
        return [instance for instance in self.instances.values() if instance.tenant_id == tenant_id]

    async def create_instance(self, instance: Instance) -> Instance:
        self._count("create_instance")
        async with self._lock:
            if instance.id in self.instances:
                raise UniqueViolation(f"instance {instance.id} already exists")
            if instance.tenant_id not in self.tenants:
                raise ForeignKeyViolation(f"tenant {instance.tenant_id} does not exist")
            if instance.broker_id and any(
                existing.tenant_id == instance.tenant_id and existing.broker_id == instance.broker_id
                for existing in self.instances.values()
            ):
                raise UniqueViolation(f"broker {instance.broker_id} already registered")
            self.instances[instance.id] = copy.deepcopy(instance)
            return self.instances[instance.id]

    async def update_instance(self, instance_id: str, **fields: Any) -> Instance:
        self._count("update_instance")
        instance = self.instances[instance_id]
        updated = replace(instance, **fields, updated_at=utc_now())
        self.instances[instance_id] = updated
        return updated

    # queues

    async def find_first_queue(self, tenant_id: str) -> Queue | None:
        self._count("find_first_queue")
        queues = [queue for queue in self.queues.values() if queue.tenant_id == tenant_id]
        if not queues:
            return None
        return min(queues, key=lambda queue: (queue.order_index, queue.created_at or utc_now()))

    async def upsert_queue(self, tenant_id: str, name: str, **fields: Any) -> Queue:
        self._count("upsert_queue")
        if tenant_id not in self.tenants:
            raise ForeignKeyViolation(f"tenant {tenant_id} does not exist")
        for queue in self.queues.values():
            if queue.tenant_id == tenant_id and queue.name == name:
                if "description" in fields:
                    queue.description = fields["description"]
                return queue
        queue = Queue(id=_new_id(), tenant_id=tenant_id, name=name, created_at=utc_now(), **fields)
        self.queues[queue.id] = queue
        return queue

    # campaigns

    async def list_active_campaigns(self, tenant_id: str, instance_id: str) -> list[Campaign]:
        self._count("list_active_campaigns")
        return [
            campaign
            for campaign in self.campaigns.values()
            if campaign.tenant_id == tenant_id
            and campaign.instance_id == instance_id
            and campaign.status == "active"
        ]

    async def upsert_campaign(self, tenant_id: str, agreement_id: str, **fields: Any) -> Campaign:
        self._count("upsert_campaign")
        instance_id = fields.get("instance_id")
        for campaign in self.campaigns.values():
            if (
                campaign.tenant_id == tenant_id
                and campaign.agreement_id == agreement_id
                and campaign.instance_id == instance_id
            ):
                for key, value in fields.items():
                    setattr(campaign, key, value)
                return campaign
        campaign = Campaign(
            id=_new_id(),
            tenant_id=tenant_id,
            agreement_id=agreement_id,
            instance_id=instance_id,
            name=fields.get("name", agreement_id),
            status=fields.get("status", "active"),
            metadata=dict(fields.get("metadata") or {}),
        )
        self.campaigns[campaign.id] = campaign
        return campaign

    # contacts and tickets

    async def find_or_create_contact(
        self,
        tenant_id: str,
        *,
        phone: str | None,
        name: str | None,
        document: str | None,
        avatar_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Contact:
        self._count("find_or_create_contact")
        async with self._lock:
            for contact in self.contacts.values():
                if contact.tenant_id != tenant_id:
                    continue
                if (phone and contact.phone == phone) or (document and contact.document == document):
                    contact.name = contact.name or name
                    contact.avatar_url = contact.avatar_url or avatar_url
                    return contact
            contact = Contact(
                id=_new_id(),
                tenant_id=tenant_id,
                phone=phone,
                name=name,
                document=document,
                avatar_url=avatar_url,
                metadata=dict(metadata or {}),
            )
            self.contacts[contact.id] = contact
            return contact

    async def find_or_create_open_ticket(
        self,
        tenant_id: str,
        contact_id: str,
        queue_id: str,
        *,
        agreement_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TicketResolution:
        self._count("find_or_create_open_ticket")
        async with self._lock:
            for ticket in self.tickets.values():
                if ticket.tenant_id == tenant_id and ticket.contact_id == contact_id and ticket.status == "OPEN":
                    return TicketResolution(ticket=ticket, created=False)
            self._count("ticket_created")
            ticket = Ticket(
                id=_new_id(),
                tenant_id=tenant_id,
                contact_id=contact_id,
                queue_id=queue_id,
                agreement_id=agreement_id,
                metadata=dict(metadata or {}),
            )
            self.tickets[ticket.id] = ticket
            return TicketResolution(ticket=ticket, created=True)

    async def find_ticket(self, tenant_id: str, ticket_id: str) -> Ticket | None:
        self._count("find_ticket")
        ticket = self.tickets.get(ticket_id)
        return ticket if ticket and ticket.tenant_id == tenant_id else None

    # messages

    async def upsert_message_by_external_id(
        self,
        tenant_id: str,
        ticket_id: str,
        external_id: str,
        fields: dict[str, Any],
    ) -> MessageUpsert:
        self._count("upsert_message_by_external_id")
        values = {key: value for key, value in fields.items() if key in _MESSAGE_FIELDS}
        async with self._lock:
            for message in self.messages.values():
                if message.tenant_id == tenant_id and message.external_id == external_id:
                    return MessageUpsert(message=message, created=False)
            now = utc_now()
            message = StoredMessage(
                id=_new_id(),
                tenant_id=tenant_id,
                ticket_id=ticket_id,
                external_id=external_id,
                created_at=now,
                updated_at=now,
                **values,
            )
            self.messages[message.id] = message
            return MessageUpsert(message=message, created=True)

    async def find_message_by_external_id(self, tenant_id: str, external_id: str) -> StoredMessage | None:
        self._count("find_message_by_external_id")
        for message in self.messages.values():
            if message.tenant_id == tenant_id and message.external_id == external_id:
                return copy.deepcopy(message)
        return None

    async def update_message(self, tenant_id: str, message_id: str, **fields: Any) -> StoredMessage | None:
        self._count("update_message")
        message = self.messages.get(message_id)
        if message is None or message.tenant_id != tenant_id:
            return None
        for key, value in fields.items():
            if key in _MESSAGE_FIELDS:
                setattr(message, key, copy.deepcopy(value))
        message.updated_at = utc_now()
        return copy.deepcopy(message)

    async def find_poll_vote_message_candidate(
        self,
        tenant_id: str,
        *,
        poll_id: str,
        voter_jid: str | None = None,
        chat_id: str | None = None,
        identifiers: list[str] | None = None,
    ) -> StoredMessage | None:
        """Latest message of the tenant that carries this poll's vote."""
        self._count("find_poll_vote_message_candidate")
        identifiers = identifiers or []
        matches: list[StoredMessage] = []
        for message in self.messages.values():
            if message.tenant_id != tenant_id:
                continue
            metadata = message.metadata or {}
            message_poll_id = first_string(
                metadata,
                ("poll.id", "poll.pollId", "pollChoice.pollId", "rewrite.pollVote.pollId"),
            )
            if message_poll_id != poll_id and message.external_id not in identifiers:
                continue
            if voter_jid:
                message_voter = first_string_of(
                    (
                        (as_record(metadata.get("pollChoice")) or {}).get("voterJid"),
                        (as_record(metadata.get("pollVote")) or {}).get("voterJid"),
                        (as_record(metadata.get("contact")) or {}).get("voterJid"),
                    )
                )
                if message_voter and message_voter != voter_jid:
                    continue
            if chat_id and metadata.get("chatId") not in (None, chat_id):
                continue
            matches.append(message)
        if not matches:
            return None
        latest = max(matches, key=lambda message: message.updated_at or utc_now())
        return copy.deepcopy(latest)

    # leads

    async def upsert_lead(
        self,
        tenant_id: str,
        contact: Contact,
        *,
        campaign_id: str | None = None,
    ) -> Lead:
        self._count("upsert_lead")
        for lead in self.leads.values():
            if lead.tenant_id == tenant_id and lead.contact_id == contact.id:
                lead.campaign_id = lead.campaign_id or campaign_id
                return lead
        lead = Lead(
            id=_new_id(),
            tenant_id=tenant_id,
            contact_id=contact.id,
            phone=contact.phone,
            name=contact.name,
            document=contact.document,
            campaign_id=campaign_id,
        )
        self.leads[lead.id] = lead
        return lead
