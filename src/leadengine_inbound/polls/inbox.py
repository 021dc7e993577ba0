"""Inbox fallback: a poll vote that could not be written onto an existing
message becomes a synthetic inbound message in the voter's conversation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Sequence

from leadengine_inbound.inbound.collaborators import Storage, StoredMessage
from leadengine_inbound.infra.time import parse_timestamp, utc_now
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.identifiers import normalize_chat_id, sanitize_phone
from leadengine_inbound.whatsapp.models import EnvelopeContact, EnvelopeMessage, InboundEnvelope
from leadengine_inbound.whatsapp.payloads import as_list, as_record, read_string

from .extractor import resolve_option_label
from .models import InboxStatus, PollOption
from .runtime import PollRuntimeService
from .schema import PollChoiceEvent, PollChoiceState, PollSelectedOption

logger = get_logger(__name__)

UNIDENTIFIED_SELECTION = "Resposta não identificada"

IngestHandler = Callable[[InboundEnvelope], Awaitable[bool]]


@dataclass(frozen=True)
class InboxDecision:
    status: Literal["missingTenant", "skip", "requireInbox"]
    poll_id: str
    tenant_id: str | None = None
    chat_id: str | None = None
    existing_message_id: str | None = None


def _selection_id(value: Any) -> str | None:
    text = read_string(value)
    return text.lower() if text else None


def _id_set(values: Any) -> set[str] | None:
    ids = set()
    for entry in as_list(values):
        identifier = _selection_id(entry) or _selection_id((as_record(entry) or {}).get("id"))
        if identifier:
            ids.add(identifier)
    return ids or None


def _metadata_selection_sets(metadata: dict[str, Any] | None) -> list[set[str]]:
    """Selections recorded by a previous rewrite of the message."""
    rewrite = as_record((metadata or {}).get("rewrite")) or {}
    poll_vote = as_record(rewrite.get("pollVote"))
    if poll_vote is None:
        return []
    candidates = []
    vote = as_record(poll_vote.get("vote")) or {}
    for values in (poll_vote.get("selectedOptions"), vote.get("optionIds"), vote.get("selectedOptions")):
        ids = _id_set(values)
        if ids:
            candidates.append(ids)
    return candidates


def message_matches_selection(
    message: StoredMessage | None, selected_options: Sequence[PollSelectedOption]
) -> bool:
    """Case-insensitive comparison of selected option ids with the message."""
    if message is None:
        return False
    expected = {
        identifier
        for identifier in (_selection_id(option.id) for option in selected_options)
        if identifier
    }
    if not expected:
        return True
    return any(candidate == expected for candidate in _metadata_selection_sets(message.metadata))


def _phone_from_chat_id(chat_id: str) -> str | None:
    local = chat_id.split("@", 1)[0]
    return sanitize_phone(local) or sanitize_phone(chat_id)


def label_selections(
    event: PollChoiceEvent,
    selected_options: Sequence[PollSelectedOption],
    state: PollChoiceState,
    runtime_options: Sequence[PollOption] = (),
    runtime_vote_ids: Sequence[str] = (),
) -> list[dict[str, str]]:
    """``[{id, title}]`` for every selected option, in vote order."""
    known = [PollOption(id=option.id, title=option.title, index=option.index) for option in state.options]
    known_ids = {option.id for option in known}
    known.extend(option for option in runtime_options if option.id not in known_ids)

    vote = state.votes.get(event.voterJid)
    option_ids = list(runtime_vote_ids) or (vote.option_ids if vote else []) or (event.selectedOptionIds or [])

    labels: dict[str, str] = {}
    provided = {option.id: option.title for option in selected_options}
    for option_id in [*option_ids, *provided]:
        if option_id and option_id not in labels:
            labels[option_id] = resolve_option_label(option_id, provided.get(option_id), known)
    return [{"id": option_id, "title": title} for option_id, title in labels.items()]


class PollChoiceInboxService:
    """Decides on and performs the inbox fallback for a recorded vote."""

    def __init__(self, storage: Storage, runtime: PollRuntimeService, ingest: IngestHandler) -> None:
        self._storage = storage
        self._runtime = runtime
        self._ingest = ingest

    async def decide(
        self,
        tenant_id: str | None,
        event: PollChoiceEvent,
        identifiers: list[str],
        selected_options: Sequence[PollSelectedOption],
    ) -> InboxDecision:
        chat_id = normalize_chat_id(event.voterJid)
        tenant_id = read_string(tenant_id)
        if not tenant_id:
            return InboxDecision(status="missingTenant", poll_id=event.pollId, chat_id=chat_id)

        existing: StoredMessage | None = None
        try:
            existing = await self._storage.find_poll_vote_message_candidate(
                tenant_id, poll_id=event.pollId, chat_id=chat_id, identifiers=identifiers
            )
        except Exception as exc:
            logger.warning(
                "poll inbox candidate lookup failed",
                extra={"extra_fields": safe_log_context(pollId=event.pollId, tenantId=tenant_id, error=exc)},
            )

        status: Literal["skip", "requireInbox"] = (
            "skip" if existing is not None and message_matches_selection(existing, selected_options) else "requireInbox"
        )
        return InboxDecision(
            status=status,
            poll_id=event.pollId,
            tenant_id=tenant_id,
            chat_id=chat_id,
            existing_message_id=existing.id if existing else None,
        )

    def build_envelope(
        self,
        event: PollChoiceEvent,
        state: PollChoiceState,
        selected_options: Sequence[PollSelectedOption],
        tenant_id: str,
        chat_id: str,
        instance_id: str | None,
        request_id: str | None,
    ) -> InboundEnvelope:
        phone = _phone_from_chat_id(chat_id)
        runtime_metadata = self._runtime.get_poll_metadata(event.pollId)
        runtime_vote = self._runtime.get_vote_selection(event.pollId, event.voterJid)
        selections = label_selections(
            event,
            selected_options,
            state,
            runtime_metadata.options if runtime_metadata else (),
            runtime_vote.option_ids if runtime_vote else (),
        )
        lines = [f"• {selection['title']}" for selection in selections] or [f"• {UNIDENTIFIED_SELECTION}"]

        question = read_string(runtime_metadata.question if runtime_metadata else None) or read_string(
            state.context.question
        )
        label = question or event.pollId
        text = "\n".join(["Resposta de enquete recebida.", f"Enquete: {label}", "Opções escolhidas:", *lines])

        vote = state.votes.get(event.voterJid)
        timestamp = (
            parse_timestamp(event.timestamp)
            or parse_timestamp(vote.timestamp if vote else None)
            or utc_now()
        )
        synthetic_id = str(uuid.uuid4())
        instance = read_string(instance_id)

        return InboundEnvelope(
            origin="poll_choice",
            instance_id=instance or "unknown",
            tenant_id=tenant_id,
            chat_id=chat_id,
            message=EnvelopeMessage(
                id=synthetic_id,
                external_id=f"poll-choice:{event.pollId}:{synthetic_id}",
                broker_message_id=event.messageId,
                timestamp=timestamp.isoformat(),
                direction="INBOUND",
                contact=EnvelopeContact(phone=phone, name=phone or event.voterJid),
                payload={
                    "id": synthetic_id,
                    "type": "TEXT",
                    "text": text,
                    "conversation": text,
                    "messageTimestamp": int(timestamp.timestamp()),
                    "key": {"id": synthetic_id, "remoteJid": chat_id},
                },
                metadata={
                    "origin": "poll_choice",
                    "tenantId": tenant_id,
                    "requestId": request_id,
                    "chatId": chat_id,
                    "poll": {
                        "id": event.pollId,
                        "label": label,
                        "question": question,
                        "selectedOptionIds": [selection["id"] for selection in selections],
                        "selectedOptions": selections,
                        "aggregates": state.aggregates.model_dump(by_alias=True),
                        "updatedAt": state.updated_at,
                    },
                    "pollChoice": {
                        "pollId": event.pollId,
                        "voterJid": event.voterJid,
                        "options": [option.model_dump() for option in state.options],
                        "vote": vote.model_dump(mode="json") if vote else None,
                        "label": label,
                        "question": question,
                    },
                    "contact": {"phone": phone, "remoteJid": chat_id, "voterJid": event.voterJid},
                    "broker": {
                        "direction": "INBOUND",
                        "instanceId": instance,
                        "source": "poll_choice",
                        "messageId": event.messageId,
                    },
                },
            ),
        )

    async def notify(
        self,
        event: PollChoiceEvent,
        state: PollChoiceState,
        selected_options: Sequence[PollSelectedOption],
        tenant_id: str | None,
        instance_id: str | None = None,
        request_id: str | None = None,
    ) -> InboxStatus:
        """Ingest the vote as a synthetic message through the orchestrator."""
        tenant_id = read_string(tenant_id)
        context = safe_log_context(pollId=event.pollId, tenantId=tenant_id, requestId=request_id)
        if not tenant_id:
            logger.warning("poll choice inbox skipped, missing tenant", extra={"extra_fields": context})
            return InboxStatus.MISSING_TENANT

        chat_id = normalize_chat_id(event.voterJid)
        if not chat_id:
            logger.warning("poll choice inbox skipped, missing chat id", extra={"extra_fields": context})
            return InboxStatus.INVALID_CHAT_ID

        envelope = self.build_envelope(
            event, state, selected_options, tenant_id, chat_id, instance_id, request_id
        )
        try:
            persisted = await self._ingest(envelope)
        except Exception as exc:
            logger.error(
                "poll choice inbox ingestion failed",
                extra={"extra_fields": {**context, **safe_log_context(error=exc)}},
            )
            return InboxStatus.INGEST_ERROR

        if not persisted:
            logger.debug("poll choice inbox ingestion returned false", extra={"extra_fields": context})
            return InboxStatus.INGEST_REJECTED
        logger.info(
            "poll choice inbox notification ingested",
            extra={"extra_fields": {**context, **safe_log_context(messageId=envelope.message.id)}},
        )
        return InboxStatus.OK
