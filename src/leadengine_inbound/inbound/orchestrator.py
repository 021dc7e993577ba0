"""Inbound ingestion: one envelope in, at most one persisted message out.

Envelope -> dedupe -> instance/tenant -> campaigns -> queue -> contact ->
ticket -> message (with media) -> realtime -> lead allocation.

Side effects after the message upsert are best-effort: each failure is
logged on its own and never undoes the persisted message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from leadengine_inbound.infra.time import to_iso
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.identifiers import (
    is_group_jid,
    normalize_remote_jid,
    pick_preferred_name,
    resolve_deterministic_contact_identifier,
    resolve_ticket_agreement_id,
    sanitize_document,
    sanitize_phone,
)
from leadengine_inbound.whatsapp.message_normalizer import normalize_inbound_message
from leadengine_inbound.whatsapp.models import EnvelopeMessage, InboundEnvelope, NormalizedMessage
from leadengine_inbound.whatsapp.payloads import as_record, first_string_of, read_string

from .collaborators import (
    AllocationTarget,
    Campaign,
    Contact,
    Instance,
    LeadAllocator,
    RealtimeEmitter,
    Storage,
    StoredMessage,
    Ticket,
    UniqueViolation,
)
from .dedupe import DedupeStore, build_allocation_dedupe_key, build_message_dedupe_key
from .media import MediaDownloader, StoredMedia, is_http_url, needs_download
from .provisioning import ProvisioningResolver

logger = get_logger(__name__)

ALLOCATION_DEDUPE_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_MESSAGE_CONTENT = "[Mensagem]"
INBOUND_LEAD_TAG = "inbound-whatsapp"
UNKNOWN_AGREEMENT = "unknown"


class IngestionStage(str, Enum):
    RECEIVED = "received"
    DEDUPED = "deduped"
    CONTEXT_RESOLVING = "context_resolving"
    QUEUE_ENSURING = "queue_ensuring"
    CONTACT_ENSURING = "contact_ensuring"
    TICKET_ENSURING = "ticket_ensuring"
    MESSAGE_PERSISTING = "message_persisting"
    REALTIME_EMITTING = "realtime_emitting"
    LEAD_ALLOCATING = "lead_allocating"
    COMPLETED = "completed"
    FAILED = "failed"


def _stage(stage: IngestionStage, **context: Any) -> None:
    level_method = logger.warning if stage is IngestionStage.FAILED else logger.debug
    level_method(
        f"inbound ingestion {stage.value}",
        extra={"extra_fields": safe_log_context(stage=stage.value, **context)},
    )


def _message_payload(message: StoredMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "tenantId": message.tenant_id,
        "ticketId": message.ticket_id,
        "externalId": message.external_id,
        "type": message.type,
        "content": message.content,
        "caption": message.caption,
        "mediaUrl": message.media_url,
        "direction": message.direction,
        "instanceId": message.instance_id,
        "metadata": message.metadata,
        "createdAt": to_iso(message.created_at),
    }


def _ticket_payload(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "tenantId": ticket.tenant_id,
        "contactId": ticket.contact_id,
        "queueId": ticket.queue_id,
        "agreementId": ticket.agreement_id,
        "status": ticket.status,
        "metadata": ticket.metadata,
    }


class InboundIngestionService:
    """Turns canonical envelopes into persisted tickets and messages."""

    def __init__(
        self,
        storage: Storage,
        realtime: RealtimeEmitter,
        provisioning: ProvisioningResolver,
        dedupe: DedupeStore,
        allocator: LeadAllocator,
        media_downloader: MediaDownloader | None = None,
        allocation_dedupe: DedupeStore | None = None,
    ) -> None:
        self._storage = storage
        self._realtime = realtime
        self._provisioning = provisioning
        self._dedupe = dedupe
        self._allocator = allocator
        self._media_downloader = media_downloader
        self._allocation_dedupe = allocation_dedupe or DedupeStore(default_ttl_ms=ALLOCATION_DEDUPE_TTL_MS)

    async def ingest(self, envelope: InboundEnvelope) -> bool:
        """Persist the message carried by ``envelope``.

        Returns:
            True only when a new message row was created. Updates, duplicates
            and every failure return False; nothing is raised to the caller.
        """
        message = envelope.message
        context = {
            "origin": envelope.origin,
            "instanceId": envelope.instance_id,
            "tenantId": envelope.tenant_id,
            "messageId": message.id,
        }
        _stage(IngestionStage.RECEIVED, **context)

        if not isinstance(message, EnvelopeMessage):
            _stage(IngestionStage.COMPLETED, status=message.status, **context)
            return False

        metadata = message.metadata or {}
        dedupe_tenant = first_string_of((envelope.tenant_id, metadata.get("tenantId"))) or "unknown"
        dedupe_key = build_message_dedupe_key(
            dedupe_tenant, envelope.instance_id, envelope.chat_id, message.external_id or message.id
        )
        if self._dedupe.should_skip(dedupe_key):
            _stage(IngestionStage.DEDUPED, **context)
            return False

        try:
            return await self._ingest_message(envelope, message, dedupe_key, context)
        except Exception:
            logger.exception(
                "inbound ingestion failed",
                extra={"extra_fields": safe_log_context(stage=IngestionStage.FAILED.value, **context)},
            )
            return False

    async def _ingest_message(
        self,
        envelope: InboundEnvelope,
        message: EnvelopeMessage,
        dedupe_key: str,
        context: dict[str, Any],
    ) -> bool:
        metadata = message.metadata or {}
        request_id = read_string(metadata.get("requestId"))

        _stage(IngestionStage.CONTEXT_RESOLVING, **context)
        resolved = await self._provisioning.ensure_instance(
            envelope.instance_id,
            metadata,
            tenant_id=envelope.tenant_id,
            request_id=request_id,
        )
        if not resolved.ok:
            _stage(IngestionStage.FAILED, reason=resolved.error_code, **context)
            return False
        instance: Instance = resolved.unwrap()
        tenant_id = instance.tenant_id
        context = {**context, "tenantId": tenant_id, "instanceId": instance.id}

        campaigns = await self._provisioning.list_campaigns(tenant_id, instance)

        _stage(IngestionStage.QUEUE_ENSURING, **context)
        queue = await self._provisioning.ensure_queue(
            tenant_id, instance_id=instance.id, request_id=request_id
        )
        if not queue.ok:
            _stage(
                IngestionStage.FAILED,
                reason=queue.error_code,
                recoverable=queue.recoverable,
                **context,
            )
            return False
        queue_id = queue.unwrap().queue_id

        _stage(IngestionStage.CONTACT_ENSURING, **context)
        metadata_contact = as_record(metadata.get("contact")) or {}
        identity = resolve_deterministic_contact_identifier(
            instance.id,
            metadata,
            metadata_contact,
            external_id=message.external_id,
        )
        chat_id = envelope.chat_id or identity.deterministic_id or f"{tenant_id}@baileys"
        phone = sanitize_phone(message.contact.phone)
        if phone is None and envelope.chat_id and not is_group_jid(envelope.chat_id):
            phone = sanitize_phone(normalize_remote_jid(envelope.chat_id))
        document = sanitize_document(
            message.contact.document,
            [phone, identity.deterministic_id, identity.contact_id, identity.session_id, instance.id],
        )
        push_name = pick_preferred_name(message.contact.push_name, metadata_contact.get("pushName"))
        name = pick_preferred_name(message.contact.name, push_name)
        contact = await self._storage.find_or_create_contact(
            tenant_id,
            phone=phone,
            name=name,
            document=document,
            avatar_url=message.contact.avatar_url,
            metadata={"remoteJid": chat_id, "pushName": push_name},
        )

        _stage(IngestionStage.TICKET_ENSURING, **context)
        campaign_ids = [campaign.id for campaign in campaigns]
        agreement_id = next((campaign.agreement_id for campaign in campaigns if campaign.agreement_id), None)
        resolution = await self._storage.find_or_create_open_ticket(
            tenant_id,
            contact.id,
            queue_id,
            agreement_id=agreement_id,
            metadata={
                "source": "WHATSAPP",
                "instanceId": instance.id,
                "campaignIds": campaign_ids,
                "chatId": chat_id,
                "pipelineStep": "follow-up",
                "contactName": name,
                "contactPhone": phone,
                "contact": {
                    "id": contact.id,
                    "name": name,
                    "phone": phone,
                    "pushName": push_name,
                    "remoteJid": chat_id,
                },
                "whatsapp": {
                    "pushName": push_name,
                    "phone": phone,
                    "remoteJid": chat_id,
                    "instanceId": instance.id,
                },
            },
        )
        ticket = resolution.ticket

        _stage(IngestionStage.MESSAGE_PERSISTING, **context)
        normalized = normalize_inbound_message(
            message.payload,
            external_id=message.external_id,
            type_hint=metadata.get("messageType"),
        )
        media_metadata, media_pending = await self._resolve_media(normalized, tenant_id, instance)

        fields = self._message_fields(
            envelope, message, normalized, instance, campaign_ids, chat_id, media_metadata, media_pending
        )
        upsert = await self._storage.upsert_message_by_external_id(
            tenant_id, ticket.id, normalized.external_id, fields
        )
        self._dedupe.register(dedupe_key)
        if not upsert.created:
            logger.info(
                "inbound message already persisted",
                extra={"extra_fields": safe_log_context(messageId=upsert.message.id, **context)},
            )
            _stage(IngestionStage.COMPLETED, created=False, **context)
            return False

        _stage(IngestionStage.REALTIME_EMITTING, **context)
        self._emit_realtime(upsert.message, ticket, resolution.created)

        _stage(IngestionStage.LEAD_ALLOCATING, **context)
        await self._upsert_lead(tenant_id, contact, campaigns)
        await self._allocate(tenant_id, instance, campaigns, contact, message, chat_id)

        _stage(IngestionStage.COMPLETED, created=True, storedMessageId=upsert.message.id, **context)
        return True

    async def _resolve_media(
        self, normalized: NormalizedMessage, tenant_id: str, instance: Instance
    ) -> tuple[dict[str, Any] | None, bool]:
        """Download media that is not reachable over HTTP.

        Mutates ``normalized.media_url``: the stored URL on success, None
        when a non-HTTP reference could not be resolved.
        """
        if not needs_download(normalized):
            return None, False

        stored: StoredMedia | None = None
        if self._media_downloader is not None:
            stored = await self._media_downloader.download(
                normalized,
                tenant_id=tenant_id,
                instance_id=instance.id,
                broker_id=instance.broker_id,
            )
        if stored is None:
            if not is_http_url(normalized.media_url):
                normalized.media_url = None
            return None, True

        normalized.media_url = stored.url
        normalized.mimetype = stored.mime_type
        normalized.file_name = stored.file_name
        normalized.file_size = stored.size
        return {
            "url": stored.url,
            "mimeType": stored.mime_type,
            "fileName": stored.file_name,
            "size": stored.size,
        }, False

    @staticmethod
    def _message_fields(
        envelope: InboundEnvelope,
        message: EnvelopeMessage,
        normalized: NormalizedMessage,
        instance: Instance,
        campaign_ids: list[str],
        chat_id: str,
        media_metadata: dict[str, Any] | None,
        media_pending: bool,
    ) -> dict[str, Any]:
        event_metadata = dict(message.metadata or {})
        broker = dict(as_record(event_metadata.get("broker")) or {})
        broker.update(
            {
                "messageId": message.broker_message_id or normalized.id,
                "instanceId": instance.id,
                "campaignIds": campaign_ids,
            }
        )
        metadata: dict[str, Any] = {
            **event_metadata,
            "chatId": event_metadata.get("chatId") or chat_id,
            "broker": broker,
            "externalId": normalized.external_id,
            "origin": envelope.origin,
            "eventMetadata": {
                "timestamp": message.timestamp,
                "direction": message.direction,
            },
        }
        if normalized.broker_message_timestamp is not None:
            metadata["brokerMessageTimestamp"] = normalized.broker_message_timestamp
        if media_metadata:
            metadata["media"] = media_metadata
        if media_pending:
            metadata["media_pending"] = True
        if normalized.location:
            metadata["location"] = normalized.location
        if normalized.contacts:
            metadata["contacts"] = normalized.contacts
        if normalized.button_payload:
            metadata["buttonPayload"] = normalized.button_payload
        if normalized.template_payload:
            metadata["templatePayload"] = normalized.template_payload
        if normalized.poll_choice:
            metadata["pollChoice"] = normalized.poll_choice

        return {
            "type": normalized.type.value,
            "content": normalized.text or DEFAULT_MESSAGE_CONTENT,
            "caption": normalized.caption,
            "media_url": normalized.media_url,
            "direction": message.direction,
            "instance_id": instance.id,
            "metadata": metadata,
        }

    def _emit_realtime(self, message: StoredMessage, ticket: Ticket, ticket_created: bool) -> None:
        payload = _message_payload(message)
        try:
            self._realtime.emit_to_tenant(message.tenant_id, "messages.new", payload)
            self._realtime.emit_to_ticket(ticket.id, "messages.new", payload)
            agreement_id = resolve_ticket_agreement_id(ticket)
            if agreement_id:
                self._realtime.emit_to_agreement(agreement_id, "messages.new", payload)
            if ticket_created:
                self._realtime.emit_to_tenant(message.tenant_id, "tickets.updated", _ticket_payload(ticket))
        except Exception as exc:
            logger.error(
                "realtime emission failed",
                extra={
                    "extra_fields": safe_log_context(
                        tenantId=message.tenant_id, ticketId=ticket.id, error=exc
                    )
                },
            )

    async def _upsert_lead(self, tenant_id: str, contact: Contact, campaigns: list[Campaign]) -> None:
        try:
            await self._storage.upsert_lead(
                tenant_id, contact, campaign_id=campaigns[0].id if campaigns else None
            )
        except Exception as exc:
            logger.error(
                "lead upsert failed",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, contactId=contact.id, error=exc)},
            )

    async def _allocate(
        self,
        tenant_id: str,
        instance: Instance,
        campaigns: list[Campaign],
        contact: Contact,
        message: EnvelopeMessage,
        chat_id: str,
    ) -> None:
        lead_id_base = contact.document or contact.phone or contact.id
        targets: list[tuple[AllocationTarget, str | None]] = [
            (AllocationTarget(campaign_id=campaign.id, instance_id=instance.id), campaign.agreement_id)
            for campaign in campaigns
        ] or [(AllocationTarget(instance_id=instance.id), None)]

        for target, agreement_id in targets:
            target_id = target.campaign_id or f"instance:{instance.id}"
            dedupe_key = build_allocation_dedupe_key(
                tenant_id, target_id, contact.document, contact.phone, lead_id_base
            )
            if self._allocation_dedupe.should_skip(dedupe_key):
                logger.debug(
                    "lead allocation skipped by dedupe",
                    extra={"extra_fields": safe_log_context(tenantId=tenant_id, target=target_id)},
                )
                continue

            lead = {
                "id": f"{lead_id_base}:{target_id}",
                "fullName": contact.name or contact.phone or "Contato WhatsApp",
                "document": contact.document,
                "registrations": list(message.contact.registrations),
                "agreementId": agreement_id,
                "tags": [INBOUND_LEAD_TAG],
                "phone": contact.phone,
                "raw": {"chatId": chat_id, "messageId": message.id, "instanceId": instance.id},
            }
            try:
                result = await self._allocator.add_allocations(tenant_id, target, [lead])
            except UniqueViolation:
                self._allocation_dedupe.register(dedupe_key)
                logger.info(
                    "lead already allocated",
                    extra={"extra_fields": safe_log_context(tenantId=tenant_id, target=target_id)},
                )
                continue
            except Exception as exc:
                logger.error(
                    "lead allocation failed",
                    extra={"extra_fields": safe_log_context(tenantId=tenant_id, target=target_id, error=exc)},
                )
                continue

            self._allocation_dedupe.register(dedupe_key)
            if not result.newly_allocated:
                continue
            payload = {
                "tenantId": tenant_id,
                "campaignId": target.campaign_id,
                "instanceId": instance.id,
                "allocations": result.newly_allocated,
                "summary": result.summary,
            }
            agreement = agreement_id or UNKNOWN_AGREEMENT
            try:
                self._realtime.emit_to_tenant(tenant_id, "leadAllocations.new", payload)
                if agreement != UNKNOWN_AGREEMENT:
                    self._realtime.emit_to_agreement(agreement, "leadAllocations.new", payload)
            except Exception as exc:
                logger.error(
                    "lead allocation realtime emission failed",
                    extra={"extra_fields": safe_log_context(tenantId=tenant_id, target=target_id, error=exc)},
                )
