"""Webhook event dispatch.

Each transport event is normalized into envelopes. Poll creation messages
feed the poll runtime registry, poll update messages are decrypted into a
poll choice event after the vote message itself is ingested, and
``POLL_CHOICE`` events go straight to the poll choice processor.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from leadengine_inbound.infra.hashing import build_idempotency_key
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.polls.crypto import decrypt_poll_vote, match_option_refs
from leadengine_inbound.polls.extractor import normalize_poll_update, pick_option_label
from leadengine_inbound.polls.metadata_store import PollMetadataStore
from leadengine_inbound.polls.models import CreationMessageKey, PollMetadata, PollOption
from leadengine_inbound.polls.processor import PollChoiceProcessor
from leadengine_inbound.polls.runtime import PollRuntimeService, coerce_secret
from leadengine_inbound.polls.state import PollChoiceContext
from leadengine_inbound.whatsapp.event_normalizer import TransportHints, normalize_many
from leadengine_inbound.whatsapp.identifiers import normalize_chat_id
from leadengine_inbound.whatsapp.models import EnvelopeMessage, InboundEnvelope
from leadengine_inbound.whatsapp.payloads import (
    as_list,
    as_record,
    first_string_of,
    read_bool,
    read_int,
    read_string,
)

from .dedupe import IdempotencyRegistry
from .orchestrator import InboundIngestionService

logger = get_logger(__name__)

POLL_CHOICE_EVENTS = frozenset({"POLL_CHOICE", "WHATSAPP_POLL_CHOICE"})


@dataclass
class WebhookSummary:
    received: int = 0
    persisted: int = 0
    ignored: int = 0
    failures: int = 0

    def add(self, counts: dict[str, int]) -> None:
        self.persisted += counts.get("persisted", 0)
        self.ignored += counts.get("ignored", 0)
        self.failures += counts.get("failures", 0)

    def as_dict(self) -> dict[str, int]:
        return {
            "received": self.received,
            "persisted": self.persisted,
            "ignored": self.ignored,
            "failures": self.failures,
        }


def iter_events(raw: Any) -> list[Any]:
    """A batch is a list or ``{"events": [...]}``; anything else is one event."""
    if isinstance(raw, list):
        return raw
    record = as_record(raw)
    if record is not None and isinstance(record.get("events"), list):
        return record["events"]
    return [raw]


def binary_field(value: Any) -> bytes | None:
    """Bytes from base64 text, a list of ints or a serialized Node Buffer."""
    record = as_record(value)
    if record is not None:
        value = record.get("data")
    if isinstance(value, list):
        try:
            return bytes(value) or None
        except (TypeError, ValueError):
            return None
    return coerce_secret(value)


def _event_name(record: dict[str, Any]) -> str:
    return (read_string(record.get("event")) or read_string(record.get("type")) or "").upper()


def poll_options_from_creation(creation: dict[str, Any]) -> list[PollOption]:
    """Options of a poll creation message; the option title doubles as its id."""
    options = []
    for index, entry in enumerate(as_list(creation.get("options"))):
        record = as_record(entry)
        title = pick_option_label(record) if record is not None else read_string(entry)
        if title:
            options.append(PollOption(id=title, title=title, index=index))
    return options


def _creation_key(value: Any) -> CreationMessageKey | None:
    record = as_record(value)
    if record is None:
        return None
    return CreationMessageKey(
        remote_jid=read_string(record.get("remoteJid")),
        participant=read_string(record.get("participant")),
        from_me=read_bool(record.get("fromMe")),
        id=read_string(record.get("id")),
    )


class WebhookEventProcessor:
    """Runs every event of a webhook request and counts the results."""

    def __init__(
        self,
        ingestion: InboundIngestionService,
        poll_processor: PollChoiceProcessor,
        runtime: PollRuntimeService,
        idempotency: IdempotencyRegistry,
        metadata_store: PollMetadataStore | None = None,
    ) -> None:
        self._ingestion = ingestion
        self._poll_processor = poll_processor
        self._runtime = runtime
        self._idempotency = idempotency
        self._metadata_store = metadata_store

    async def process(self, raw: Any, hints: TransportHints | None = None) -> dict[str, int]:
        """Handle one webhook body.

        Returns:
            ``{"received", "persisted", "ignored", "failures"}`` counts.
        """
        hints = hints or TransportHints()
        summary = WebhookSummary()
        for event in iter_events(raw):
            await self._process_event(event, hints, summary)
        logger.info("webhook events processed", extra={"extra_fields": safe_log_context(**summary.as_dict())})
        return summary.as_dict()

    async def _process_event(self, event: Any, hints: TransportHints, summary: WebhookSummary) -> None:
        record = as_record(event)
        if record is not None and _event_name(record) in POLL_CHOICE_EVENTS:
            summary.received += 1
            payload = as_record(record.get("payload")) or record
            context = PollChoiceContext(
                tenant_id=first_string_of((hints.tenant_id, record.get("tenantId"), payload.get("tenantId"))),
                instance_id=first_string_of(
                    (hints.instance_id, record.get("instanceId"), payload.get("instanceId"))
                ),
                request_id=hints.request_id,
            )
            outcome = await self._poll_processor.process(payload, context)
            summary.add(outcome.counts)
            return

        envelopes = normalize_many(event, hints)
        if not envelopes:
            summary.received += 1
            summary.ignored += 1
            return
        for envelope in envelopes:
            summary.received += 1
            await self._process_envelope(envelope, hints, summary)

    async def _process_envelope(
        self, envelope: InboundEnvelope, hints: TransportHints, summary: WebhookSummary
    ) -> None:
        message = envelope.message
        if not isinstance(message, EnvelopeMessage):
            summary.ignored += 1
            return

        metadata = message.metadata or {}
        tenant_id = first_string_of((envelope.tenant_id, metadata.get("tenantId")))
        key = build_idempotency_key(
            tenant_id, envelope.instance_id, message.id, read_int(metadata.get("normalizedIndex")) or 0
        )
        if not self._idempotency.register_once(key):
            logger.info(
                "webhook message replay ignored",
                extra={"extra_fields": safe_log_context(messageId=message.id, instanceId=envelope.instance_id)},
            )
            summary.ignored += 1
            return

        creation = as_record(message.payload.get("pollCreationMessage"))
        if creation is not None:
            await self._remember_poll(envelope, message, creation, tenant_id)

        vote_payload = None
        poll_update = as_record(message.payload.get("pollUpdateMessage"))
        if poll_update is not None:
            envelope, vote_payload = await self._prepare_poll_update(envelope, message, poll_update, tenant_id)

        if await self._ingestion.ingest(envelope):
            summary.persisted += 1
        else:
            summary.ignored += 1

        if vote_payload is not None:
            outcome = await self._poll_processor.process(
                vote_payload,
                PollChoiceContext(
                    tenant_id=vote_payload.get("tenantId"),
                    instance_id=envelope.instance_id,
                    request_id=hints.request_id,
                ),
            )
            if outcome.outcome == "failed":
                summary.failures += 1

    async def _remember_poll(
        self,
        envelope: InboundEnvelope,
        message: EnvelopeMessage,
        creation: dict[str, Any],
        tenant_id: str | None,
    ) -> None:
        key = as_record(message.payload.get("key")) or {}
        poll_id = first_string_of((key.get("id"), message.external_id, message.id))
        if not poll_id:
            return
        self._runtime.remember_poll_creation(
            poll_id,
            question=read_string(creation.get("name")),
            options=poll_options_from_creation(creation),
            creation_message_id=poll_id,
            creation_message_key=CreationMessageKey(
                remote_jid=read_string(key.get("remoteJid")) or envelope.chat_id,
                participant=read_string(key.get("participant")),
                from_me=message.direction == "OUTBOUND",
                id=poll_id,
            ),
            message_secret=binary_field(creation.get("messageSecret")),
            tenant_id=tenant_id,
            instance_id=envelope.instance_id,
            selectable_options_count=read_int(creation.get("selectableOptionsCount")),
            media_type=read_string(creation.get("mediaType")),
        )
        if self._metadata_store is not None:
            await self._metadata_store.persist(self._runtime, poll_id)

    async def _lookup_poll(self, creation_id: str | None) -> PollMetadata | None:
        if self._metadata_store is not None:
            return await self._metadata_store.recall(self._runtime, creation_id)
        return self._runtime.get_poll_metadata_by_creation_id(creation_id) or self._runtime.get_poll_metadata(
            creation_id
        )

    def _resolve_selection(
        self, poll: PollMetadata | None, vote: dict[str, Any]
    ) -> list[PollOption] | None:
        """Options chosen by the voter; None when the vote cannot be read."""
        values = [text for text in (read_string(value) for value in as_list(vote.get("values"))) if text]
        known = poll.options if poll else []
        if values:
            selected = []
            for value in values:
                match = next((option for option in known if value in (option.id, option.title)), None)
                selected.append(match or PollOption(id=value, title=value))
            return selected

        if poll is None:
            return None
        refs = decrypt_poll_vote(
            binary_field(vote.get("encPayload")),
            binary_field(vote.get("encIv")),
            self._runtime.get_decrypted_secret(poll.poll_id),
            poll.media_type or "poll",
        )
        if refs is None:
            return None
        return match_option_refs(refs, known)

    async def _prepare_poll_update(
        self,
        envelope: InboundEnvelope,
        message: EnvelopeMessage,
        poll_update: dict[str, Any],
        tenant_id: str | None,
    ) -> tuple[InboundEnvelope, dict[str, Any] | None]:
        creation_key = _creation_key(poll_update.get("pollCreationMessageKey"))
        creation_id = first_string_of(
            (poll_update.get("pollCreationMessageId"), creation_key.id if creation_key else None)
        )
        poll = await self._lookup_poll(creation_id)
        poll_id = poll.poll_id if poll else creation_id
        selected = self._resolve_selection(poll, as_record(poll_update.get("vote")) or {})

        metadata = dict(message.metadata or {})
        poll_record = {"id": poll_id, "question": poll.question if poll else None}
        metadata["poll"] = {key: value for key, value in poll_record.items() if value is not None}
        if selected:
            metadata["pollChoice"] = {
                "pollId": poll_id,
                "selectedOptions": [{"id": option.id, "title": option.title} for option in selected],
            }

        normalized = normalize_poll_update(
            message.payload,
            metadata,
            chat_id=envelope.chat_id,
            message_id=message.id,
            poll=poll.options if poll else None,
            message_type="poll_update",
        )
        payload = dict(message.payload)
        if normalized.message:
            payload.update(normalized.message)
        envelope = replace(
            envelope,
            message=replace(message, payload=payload, metadata=normalized.metadata or metadata),
        )

        if not poll_id or selected is None:
            logger.warning(
                "poll vote could not be resolved",
                extra={
                    "extra_fields": safe_log_context(
                        pollId=poll_id, messageId=message.id, knownPoll=poll is not None
                    )
                },
            )
            return envelope, None

        key = as_record(message.payload.get("key")) or {}
        voter_jid = normalize_chat_id(first_string_of((key.get("participant"), key.get("remoteJid")))) or (
            envelope.chat_id
        )
        vote = as_record(poll_update.get("vote")) or {}
        encrypted = {
            name: vote[name] for name in ("encPayload", "encIv") if isinstance(vote.get(name), str)
        }
        vote_payload = {
            "pollId": poll_id,
            "voterJid": voter_jid,
            "messageId": message.external_id or message.id,
            "timestamp": message.timestamp or read_string(message.payload.get("messageTimestamp")),
            "question": poll.question if poll else None,
            "selectedOptions": [{"id": option.id, "title": option.title} for option in selected],
            "selectedOptionIds": [option.id for option in selected],
            "options": [
                {"id": option.id, "title": option.title, "index": option.index}
                for option in (poll.options if poll else [])
            ],
            "pollCreationMessageId": creation_id,
            "pollCreationMessageKey": (
                creation_key or (poll.creation_message_key if poll else None) or CreationMessageKey(id=creation_id)
            ).as_dict(),
            "encryptedVote": encrypted or None,
            "tenantId": tenant_id or (poll.tenant_id if poll else None),
            "instanceId": envelope.instance_id,
        }
        return envelope, vote_payload
