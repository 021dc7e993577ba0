"""Rewrites the stored vote message once a poll choice has been recorded."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from leadengine_inbound.inbound.collaborators import RealtimeEmitter, Storage, StoredMessage
from leadengine_inbound.infra.time import to_iso, utc_now
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.payloads import as_record, read_string, unique_strings

from .extractor import (
    POLL_PLACEHOLDER_MESSAGES,
    build_poll_vote_message_content,
    build_selected_option_summaries,
    should_update_poll_message_content,
)
from .models import RewriteStatus

logger = get_logger(__name__)

# Timestamps refreshed on every rewrite; ignored when deciding if anything changed
VOLATILE_METADATA_KEYS = frozenset({"appliedAt", "rewriteAppliedAt", "updatedAt"})


@dataclass
class PollVoteRewrite:
    """One voter's selection, ready to be written onto the stored message."""

    poll_id: str
    voter_jid: str
    selected_options: list[dict[str, Any]]
    tenant_id: str | None = None
    chat_id: str | None = None
    candidate_ids: list[str] = field(default_factory=list)
    timestamp: str | None = None
    question: str | None = None
    aggregates: dict[str, Any] | None = None
    options: list[dict[str, Any]] | None = None
    vote: dict[str, Any] | None = None


def strip_volatile(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: strip_volatile(item)
            for key, item in value.items()
            if key not in VOLATILE_METADATA_KEYS
        }
    if isinstance(value, list):
        return [strip_volatile(item) for item in value]
    return value


def _is_placeholder_flag(value: Any) -> bool:
    return value is True or value == "true"


def _compact(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


def build_rewritten_metadata(
    existing: dict[str, Any],
    rewrite: PollVoteRewrite,
    storage_message_id: str,
    summaries: list[dict[str, str]],
) -> dict[str, Any]:
    """Metadata of the vote message after applying ``rewrite``."""
    metadata = copy.deepcopy(existing)
    now = utc_now().isoformat()
    updated_at = to_iso(rewrite.timestamp) or now

    metadata["pollVote"] = _compact(
        {
            "pollId": rewrite.poll_id,
            "voterJid": rewrite.voter_jid,
            "selectedOptions": summaries,
            "updatedAt": updated_at,
            "rewriteAppliedAt": now,
            "aggregates": rewrite.aggregates,
            "options": rewrite.options,
            "vote": rewrite.vote,
        }
    )

    poll = dict(as_record(metadata.get("poll")) or {})
    question = read_string(poll.get("question")) or read_string(rewrite.question)
    poll.update(
        _compact(
            {
                "id": poll.get("id") or rewrite.poll_id,
                "pollId": rewrite.poll_id,
                "question": question,
                "selectedOptionIds": [summary["id"] for summary in summaries],
                "selectedOptions": summaries,
                "aggregates": rewrite.aggregates or poll.get("aggregates"),
                "updatedAt": updated_at,
                "rewriteAppliedAt": now,
            }
        )
    )
    metadata["poll"] = poll

    choice = dict(as_record(metadata.get("pollChoice")) or {})
    choice_question = read_string(choice.get("question")) or question
    choice.update(
        _compact(
            {
                "pollId": rewrite.poll_id,
                "voterJid": rewrite.voter_jid,
                "question": choice_question,
                "options": rewrite.options,
                "vote": rewrite.vote
                or {
                    "optionIds": [option.get("id") for option in rewrite.selected_options],
                    "selectedOptions": rewrite.selected_options,
                    "timestamp": to_iso(rewrite.timestamp),
                },
            }
        )
    )
    metadata["pollChoice"] = choice

    passthrough = as_record(metadata.get("passthrough"))
    if passthrough is not None and _is_placeholder_flag(passthrough.get("placeholder")):
        metadata["passthrough"] = {**passthrough, "placeholder": False}
    if _is_placeholder_flag(metadata.get("placeholder")):
        metadata["placeholder"] = False

    rewrite_record = dict(as_record(metadata.get("rewrite")) or {})
    rewrite_record["pollVote"] = {
        **(as_record(rewrite_record.get("pollVote")) or {}),
        "appliedAt": now,
        "pollId": rewrite.poll_id,
        "storageMessageId": storage_message_id,
    }
    metadata["rewrite"] = rewrite_record
    return metadata


class PollVoteMessageRewriter:
    """Finds the message that carries a vote and rewrites its content.

    Lookup order: each candidate id as an exact external id, then the
    storage's poll vote candidate search.
    """

    def __init__(self, storage: Storage, realtime: RealtimeEmitter) -> None:
        self._storage = storage
        self._realtime = realtime

    async def _find_message(self, tenant_id: str, rewrite: PollVoteRewrite, candidates: list[str]) -> StoredMessage | None:
        for identifier in candidates:
            try:
                message = await self._storage.find_message_by_external_id(tenant_id, identifier)
            except Exception as exc:
                logger.warning(
                    "rewrite.poll_vote.lookup_external_id_failed",
                    extra={"extra_fields": safe_log_context(tenantId=tenant_id, pollId=rewrite.poll_id, error=exc)},
                )
                continue
            if message is not None:
                return message

        return await self._storage.find_poll_vote_message_candidate(
            tenant_id,
            poll_id=rewrite.poll_id,
            chat_id=rewrite.chat_id,
            identifiers=candidates,
        )

    async def rewrite(self, rewrite: PollVoteRewrite) -> RewriteStatus:
        """Apply the vote to the stored message.

        Returns:
            MISSING_TENANT when no tenant is known, NOT_FOUND when no message
            matches, NOOP when content, caption and metadata would not
            change, UPDATED after a write, FAILED on storage errors.
        """
        tenant_id = read_string(rewrite.tenant_id)
        context = safe_log_context(pollId=rewrite.poll_id, tenantId=tenant_id, chatId=rewrite.chat_id)
        if not tenant_id:
            logger.debug("rewrite.poll_vote.skip_missing_context", extra={"extra_fields": context})
            return RewriteStatus.MISSING_TENANT

        candidates = unique_strings(rewrite.candidate_ids) or [rewrite.poll_id]
        try:
            message = await self._find_message(tenant_id, rewrite, candidates)
        except Exception as exc:
            logger.warning(
                "rewrite.poll_vote.lookup_candidate_failed",
                extra={"extra_fields": {**context, **safe_log_context(error=exc)}},
            )
            return RewriteStatus.FAILED

        if message is None:
            logger.debug("rewrite.poll_vote.not_found", extra={"extra_fields": context})
            return RewriteStatus.NOT_FOUND

        content = build_poll_vote_message_content(rewrite.selected_options, rewrite.question)
        if not content:
            logger.debug(
                "rewrite.poll_vote.skip_empty_content",
                extra={"extra_fields": {**context, **safe_log_context(storageMessageId=message.id)}},
            )
            return RewriteStatus.NOOP

        update_content = should_update_poll_message_content(message.content)
        caption = (message.caption or "").strip()
        update_caption = update_content and (not caption or caption in POLL_PLACEHOLDER_MESSAGES)

        existing_metadata = message.metadata or {}
        summaries = build_selected_option_summaries(rewrite.selected_options)
        metadata = build_rewritten_metadata(existing_metadata, rewrite, message.id, summaries)
        metadata_changed = strip_volatile(metadata) != strip_volatile(existing_metadata)

        if not update_content and not update_caption and not metadata_changed:
            logger.info(
                "rewrite.poll_vote.noop",
                extra={"extra_fields": {**context, **safe_log_context(storageMessageId=message.id)}},
            )
            return RewriteStatus.NOOP

        fields: dict[str, Any] = {}
        if update_content:
            fields["content"] = content
        if update_caption:
            fields["caption"] = content
        if (message.type or "").upper() != "TEXT":
            fields["type"] = "TEXT"
        if metadata_changed:
            fields["metadata"] = metadata

        try:
            updated = await self._storage.update_message(tenant_id, message.id, **fields)
        except Exception as exc:
            logger.warning(
                "rewrite.poll_vote.persist_failed",
                extra={"extra_fields": {**context, **safe_log_context(storageMessageId=message.id, error=exc)}},
            )
            return RewriteStatus.FAILED
        if updated is None:
            return RewriteStatus.NOT_FOUND

        logger.info(
            "rewrite.poll_vote.updated",
            extra={
                "extra_fields": {
                    **context,
                    **safe_log_context(
                        storageMessageId=updated.id,
                        captionTouched=update_caption,
                        typeAdjusted="type" in fields,
                        options=len(summaries),
                    ),
                }
            },
        )
        emit_message_updated(self._realtime, updated)
        return RewriteStatus.UPDATED


def emit_message_updated(realtime: RealtimeEmitter, message: StoredMessage) -> None:
    payload = {
        "id": message.id,
        "tenantId": message.tenant_id,
        "ticketId": message.ticket_id,
        "externalId": message.external_id,
        "type": message.type,
        "content": message.content,
        "caption": message.caption,
        "metadata": message.metadata,
        "updatedAt": to_iso(message.updated_at),
    }
    try:
        realtime.emit_to_tenant(message.tenant_id, "messages.updated", payload)
        if message.ticket_id:
            realtime.emit_to_ticket(message.ticket_id, "messages.updated", payload)
    except Exception as exc:
        logger.error(
            "message updated realtime emission failed",
            extra={"extra_fields": safe_log_context(messageId=message.id, error=exc)},
        )
