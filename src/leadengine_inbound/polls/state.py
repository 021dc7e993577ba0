"""Per-poll vote state: last write wins per voter, aggregates recomputed."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import ValidationError

from leadengine_inbound.infra.repositories.poll_state_repository import PollStateRepository
from leadengine_inbound.infra.time import utc_now
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context

from .models import PollMetadata
from .schema import (
    PollAggregates,
    PollChoiceEvent,
    PollChoiceState,
    PollEventOption,
    PollMessageKey,
    PollSelectedOption,
    PollStateContext,
    PollStateOption,
    PollVoteEntry,
)

logger = get_logger(__name__)

POLL_STATE_SOURCE = "whatsapp.poll_state"


def build_state_id(poll_id: str) -> str:
    return f"poll-state:{poll_id}"


def unique_ids(values: list[str]) -> list[str]:
    return list(dict.fromkeys(value.strip() for value in values if value and value.strip()))


def compute_aggregates(votes: dict[str, PollVoteEntry]) -> PollAggregates:
    option_totals: dict[str, int] = {}
    total_voters = 0
    total_votes = 0
    for vote in votes.values():
        selected = unique_ids(vote.option_ids)
        if not selected:
            continue
        total_voters += 1
        total_votes += len(selected)
        for option_id in selected:
            option_totals[option_id] = option_totals.get(option_id, 0) + 1
    return PollAggregates(total_voters=total_voters, total_votes=total_votes, option_totals=option_totals)


def merge_options(
    existing: list[PollStateOption], incoming: list[PollEventOption]
) -> list[PollStateOption]:
    """Merge by id; incoming titles and indexes win when present."""
    merged: dict[str, PollStateOption] = {option.id: option for option in existing}
    for option in incoming:
        current = merged.get(option.id)
        merged[option.id] = PollStateOption(
            id=option.id,
            title=option.label or (current.title if current else None),
            index=option.index if option.index is not None else (current.index if current else None),
        )
    return sorted(
        merged.values(),
        key=lambda option: (option.index if option.index is not None else float("inf"), option.id),
    )


def selections_match(left: list[str] | None, right: list[str] | None) -> bool:
    return set(unique_ids(left or [])) == set(unique_ids(right or []))


def derive_selected_options(
    selected_ids: list[str],
    merged: list[PollStateOption],
    incoming: list[PollEventOption],
    payload_selected: list[PollSelectedOption],
) -> list[PollSelectedOption]:
    """Title per selected id: payload selection, incoming option, known option."""
    by_payload = {option.id: option for option in payload_selected}
    by_incoming = {option.id: option for option in incoming}
    by_merged = {option.id: option for option in merged}
    resolved = []
    for option_id in unique_ids(selected_ids):
        payload_option = by_payload.get(option_id)
        incoming_option = by_incoming.get(option_id)
        known_option = by_merged.get(option_id)
        title = (
            (payload_option.title if payload_option else None)
            or (incoming_option.label if incoming_option else None)
            or (known_option.title if known_option else None)
        )
        resolved.append(PollSelectedOption(id=option_id, title=title))
    return resolved


@dataclass
class RecordVoteResult:
    updated: bool
    state: PollChoiceState
    selected_options: list[PollSelectedOption]


@dataclass(frozen=True)
class PollChoiceContext:
    tenant_id: str | None = None
    instance_id: str | None = None
    request_id: str | None = None


class PollChoiceStateService:
    """Reads and writes ``poll-state:{pollId}`` rows."""

    def __init__(self, repository: PollStateRepository) -> None:
        self._repository = repository

    def load(self, poll_id: str) -> PollChoiceState | None:
        payload = self._repository.get(build_state_id(poll_id))
        if payload is None:
            return None
        try:
            return PollChoiceState.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "failed to parse poll state payload",
                extra={"extra_fields": {**safe_log_context(pollId=poll_id), "issues": exc.error_count()}},
            )
            return None

    def _existing_or_fresh(self, poll_id: str) -> tuple[PollChoiceState, bool]:
        state = self.load(poll_id)
        if state is None:
            return PollChoiceState(poll_id=poll_id), False
        return state, True

    def record_vote(
        self,
        event: PollChoiceEvent,
        context: PollChoiceContext | None = None,
        runtime_metadata: PollMetadata | None = None,
    ) -> RecordVoteResult:
        """Apply one voter's selection.

        A repeat with the same selection, message id and timestamp is not
        written and returns ``updated=False``.

        Raises:
            Exception: Repository failures propagate after being logged.
        """
        context = context or PollChoiceContext()
        poll_id = event.pollId
        voter_jid = event.voterJid
        selected_ids = event.selected_option_ids()

        existing, persisted = self._existing_or_fresh(poll_id)
        options = merge_options(existing.options, event.options)
        if runtime_metadata is not None:
            known = {option.id for option in options}
            options = merge_options(
                options,
                [
                    PollEventOption(id=option.id, title=option.title, index=option.index)
                    for option in runtime_metadata.options
                    if option.id not in known
                ],
            )
        selected = derive_selected_options(selected_ids, options, event.options, event.selectedOptions)
        previous = existing.votes.get(voter_jid)

        if (
            persisted
            and previous is not None
            and selections_match(previous.option_ids, selected_ids)
            and previous.message_id == event.messageId
            and previous.timestamp == event.timestamp
        ):
            return RecordVoteResult(
                updated=False,
                state=existing,
                selected_options=previous.selected_options or selected,
            )

        votes = dict(existing.votes)
        votes[voter_jid] = PollVoteEntry(
            option_ids=selected_ids,
            selected_options=selected,
            message_id=event.messageId,
            timestamp=event.timestamp,
            encrypted_vote=event.encryptedVote,
        )

        creation_key = event.pollCreationMessageKey or existing.context.creation_message_key
        if creation_key is None and runtime_metadata and runtime_metadata.creation_message_key:
            creation_key = PollMessageKey.model_validate(runtime_metadata.creation_message_key.as_dict())
        runtime_tenant = runtime_metadata.tenant_id if runtime_metadata else None
        runtime_instance = runtime_metadata.instance_id if runtime_metadata else None
        runtime_question = runtime_metadata.question if runtime_metadata else None
        runtime_creation_id = runtime_metadata.creation_message_id if runtime_metadata else None

        state = PollChoiceState(
            poll_id=poll_id,
            options=options,
            votes=votes,
            aggregates=compute_aggregates(votes),
            broker_aggregates=event.aggregates,
            context=PollStateContext(
                tenant_id=context.tenant_id or event.tenantId or existing.context.tenant_id or runtime_tenant,
                instance_id=context.instance_id
                or event.instanceId
                or existing.context.instance_id
                or runtime_instance,
                question=event.question or existing.context.question or runtime_question,
                creation_message_id=event.pollCreationMessageId
                or existing.context.creation_message_id
                or runtime_creation_id
                or (creation_key.id if creation_key else None),
                creation_message_key=creation_key,
            ),
            updated_at=utc_now().isoformat(),
        )

        try:
            self._repository.upsert(
                build_state_id(poll_id),
                source=POLL_STATE_SOURCE,
                cursor=poll_id,
                payload=state.model_dump(mode="json"),
            )
        except Exception as exc:
            logger.error(
                "failed to persist poll choice state",
                extra={
                    "extra_fields": safe_log_context(
                        pollId=poll_id,
                        tenantId=context.tenant_id,
                        instanceId=context.instance_id,
                        error=exc,
                    )
                },
            )
            raise

        return RecordVoteResult(updated=True, state=state, selected_options=selected)
