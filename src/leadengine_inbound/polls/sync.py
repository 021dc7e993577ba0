"""Copies aggregate poll state onto the metadata of the stored poll message."""

from __future__ import annotations

import json
from typing import Any

from leadengine_inbound.inbound.collaborators import RealtimeEmitter, Storage
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.payloads import as_list, as_record, first_string_of, read_string, unique_strings

from .rewriter import emit_message_updated
from .schema import PollChoiceState, PollStateOption

logger = get_logger(__name__)


def _existing_option_indexes(
    existing_options: list[Any],
) -> tuple[dict[int, dict[str, Any]], dict[str, dict[str, Any]]]:
    by_index: dict[int, dict[str, Any]] = {}
    by_id: dict[str, dict[str, Any]] = {}
    for position, entry in enumerate(existing_options):
        record = as_record(entry)
        if record is None:
            text = read_string(entry)
            if text:
                by_index[position] = {"title": text, "text": text, "name": text}
            continue
        by_index[position] = record
        for key in ("id", "optionId", "key", "value"):
            identifier = read_string(record.get(key))
            if identifier and identifier not in by_id:
                by_id[identifier] = {**record, "index": position}
    return by_index, by_id


def _option_metadata(
    option: PollStateOption,
    position: int,
    option_totals: dict[str, int],
    by_index: dict[int, dict[str, Any]],
    by_id: dict[str, dict[str, Any]],
) -> dict[str, Any]:
    votes = option_totals.get(option.id, 0)
    existing = (
        by_id.get(option.id)
        or (by_index.get(option.index) if option.index is not None else None)
        or by_index.get(position)
        or {}
    )
    label = (
        read_string(option.title)
        or first_string_of((existing.get("title"), existing.get("name"), existing.get("text")))
        or f"Opção {(option.index if option.index is not None else position) + 1}"
    )
    index = option.index if option.index is not None else existing.get("index", position)
    return {
        "id": option.id,
        "index": index,
        "title": label,
        "name": existing.get("name") or label,
        "text": existing.get("text") or label,
        "votes": votes,
        "count": votes,
    }


def build_poll_metadata(existing: Any, state: PollChoiceState) -> dict[str, Any]:
    """``metadata.poll`` for the poll message, merged over what it already has."""
    record = as_record(existing) or {}
    by_index, by_id = _existing_option_indexes(as_list(record.get("options")))
    aggregates = state.aggregates
    options = [
        _option_metadata(option, position, aggregates.option_totals, by_index, by_id)
        for position, option in enumerate(state.options)
    ]

    option_votes = sum(option["votes"] for option in options)
    if option_votes != aggregates.total_votes:
        logger.warning(
            "poll choice state aggregates mismatch",
            extra={
                "extra_fields": safe_log_context(
                    pollId=state.poll_id,
                    totalVotes=aggregates.total_votes,
                    aggregatedOptionVotes=option_votes,
                )
            },
        )

    question = first_string_of(
        (record.get("question"), record.get("title"), record.get("name"), state.context.question)
    )
    metadata = {
        **record,
        "id": read_string(record.get("id")) or state.poll_id,
        "pollId": state.poll_id,
        "question": question,
        "title": record.get("title") or question,
        "name": record.get("name") or question,
        "options": options,
        "totalVotes": aggregates.total_votes,
        "totalVoters": aggregates.total_voters,
        "optionTotals": dict(aggregates.option_totals),
        "aggregates": aggregates.model_dump(by_alias=True),
        "updatedAt": state.updated_at,
    }
    if state.broker_aggregates is not None:
        metadata["brokerAggregates"] = state.broker_aggregates.model_dump(by_alias=True)
    return {key: value for key, value in metadata.items() if value is not None}


def _normalized_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class PollStateSynchronizer:
    def __init__(self, storage: Storage, realtime: RealtimeEmitter) -> None:
        self._storage = storage
        self._realtime = realtime

    async def sync(self, poll_id: str, state: PollChoiceState | None, emit: bool = True) -> bool:
        """Write aggregate poll metadata onto the poll's stored message.

        Returns:
            True when the message metadata was changed; False when there is
            no state, no tenant, no message, nothing to change, or the write
            failed.
        """
        poll_id = (poll_id or "").strip()
        if not poll_id or state is None:
            return False

        tenant_id = read_string(state.context.tenant_id)
        if not tenant_id:
            logger.warning(
                "poll choice state missing tenant context",
                extra={"extra_fields": safe_log_context(pollId=poll_id)},
            )
            return False

        identifiers = unique_strings(
            [poll_id, state.context.creation_message_id]
            + [vote.message_id for vote in state.votes.values()]
        )
        creation_key = state.context.creation_message_key
        chat_id = (
            first_string_of((creation_key.remote_jid, creation_key.participant)) if creation_key else None
        )

        try:
            message = await self._storage.find_poll_vote_message_candidate(
                tenant_id, poll_id=poll_id, chat_id=chat_id, identifiers=identifiers
            )
        except Exception as exc:
            logger.error(
                "poll vote message candidate lookup failed",
                extra={"extra_fields": safe_log_context(pollId=poll_id, tenantId=tenant_id, error=exc)},
            )
            return False
        if message is None:
            logger.warning(
                "no message found for poll choice state",
                extra={"extra_fields": safe_log_context(pollId=poll_id, tenantId=tenant_id)},
            )
            return False

        existing_metadata = message.metadata or {}
        existing_poll = existing_metadata.get("poll")
        next_poll = build_poll_metadata(existing_poll, state)
        if _normalized_json(existing_poll) == _normalized_json(next_poll):
            return False

        try:
            updated = await self._storage.update_message(
                message.tenant_id, message.id, metadata={**existing_metadata, "poll": next_poll}
            )
        except Exception as exc:
            logger.error(
                "failed to persist poll metadata on message",
                extra={"extra_fields": safe_log_context(pollId=poll_id, messageId=message.id, error=exc)},
            )
            return False
        if updated is None:
            return False

        if emit:
            emit_message_updated(self._realtime, updated)

        logger.info(
            "poll choice state synchronized with message metadata",
            extra={
                "extra_fields": safe_log_context(
                    pollId=poll_id,
                    messageId=updated.id,
                    ticketId=updated.ticket_id,
                    totalVotes=state.aggregates.total_votes,
                    totalVoters=state.aggregates.total_voters,
                )
            },
        )
        return True
