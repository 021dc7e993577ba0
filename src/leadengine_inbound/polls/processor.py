"""Poll choice reconciliation.

validate -> webhook idempotency -> record vote -> rewrite vote message ->
sync poll metadata -> inbox fallback. Every call ends in exactly one
``poll_choice.completed`` log line carrying the outcome and reason.
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import ValidationError

from leadengine_inbound.inbound.dedupe import IdempotencyRegistry
from leadengine_inbound.infra.hashing import build_idempotency_key
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import raw_preview, safe_log_context
from leadengine_inbound.tasks.scheduler import TaskScheduler
from leadengine_inbound.whatsapp.identifiers import normalize_chat_id
from leadengine_inbound.whatsapp.payloads import read_string, unique_strings

from .extractor import resolve_option_label
from .inbox import PollChoiceInboxService
from .metadata_store import PollMetadataStore
from .models import InboxStatus, Outcome, PollChoiceOutcome, PollMetadata, PollOption, RewriteStatus
from .rewriter import PollVoteMessageRewriter, PollVoteRewrite
from .runtime import PollRuntimeService
from .schema import PollChoiceEvent, PollChoiceState, PollSelectedOption, normalize_poll_choice_payload
from .state import PollChoiceContext, PollChoiceStateService, RecordVoteResult
from .sync import PollStateSynchronizer

logger = get_logger(__name__)

POLL_VOTE_RETRY_DELAY_MS = 500

_INBOX_REASONS = {
    InboxStatus.MISSING_TENANT: "poll_choice_inbox_missing_tenant",
    InboxStatus.INVALID_CHAT_ID: "poll_choice_inbox_invalid_chat_id",
    InboxStatus.INGEST_REJECTED: "poll_choice_inbox_ingest_rejected",
    InboxStatus.INGEST_ERROR: "poll_choice_inbox_ingest_error",
}


def build_vote_idempotency_key(event: PollChoiceEvent, context: PollChoiceContext) -> str:
    option_ids = ",".join(sorted(event.selected_option_ids()))
    return build_idempotency_key(
        context.tenant_id, context.instance_id, f"{event.pollId}|{event.voterJid}|{option_ids}", 0
    )


def candidate_message_ids(event: PollChoiceEvent) -> list[str]:
    creation_key_id = event.pollCreationMessageKey.id if event.pollCreationMessageKey else None
    return unique_strings([event.messageId, event.pollCreationMessageId, creation_key_id, event.pollId]) or [
        event.pollId
    ]


def label_selected_options(
    selected: list[PollSelectedOption], state: PollChoiceState
) -> list[PollSelectedOption]:
    """Fill missing titles from the poll's own options."""
    options = [PollOption(id=option.id, title=option.title, index=option.index) for option in state.options]
    return [
        PollSelectedOption(id=option.id, title=resolve_option_label(option.id, option.title, options))
        for option in selected
    ]


class PollChoiceProcessor:
    def __init__(
        self,
        state_service: PollChoiceStateService,
        runtime: PollRuntimeService,
        rewriter: PollVoteMessageRewriter,
        synchronizer: PollStateSynchronizer,
        inbox: PollChoiceInboxService,
        scheduler: TaskScheduler,
        idempotency: IdempotencyRegistry,
        retry_delay_ms: int = POLL_VOTE_RETRY_DELAY_MS,
        metadata_store: PollMetadataStore | None = None,
    ) -> None:
        self._state_service = state_service
        self._runtime = runtime
        self._rewriter = rewriter
        self._synchronizer = synchronizer
        self._inbox = inbox
        self._scheduler = scheduler
        self._idempotency = idempotency
        self._retry_delay_ms = retry_delay_ms
        self._metadata_store = metadata_store

    def _complete(
        self,
        outcome: Outcome,
        reason: str,
        context: PollChoiceContext,
        poll_id: str | None = None,
        tenant_id: str | None = None,
    ) -> PollChoiceOutcome:
        result = PollChoiceOutcome(
            outcome=outcome, reason=reason, poll_id=poll_id, tenant_id=tenant_id or context.tenant_id
        )
        log = logger.warning if outcome == "failed" else logger.info
        log(
            "poll_choice.completed",
            extra={
                "extra_fields": safe_log_context(
                    outcome=outcome,
                    reason=reason,
                    pollId=poll_id,
                    tenantId=result.tenant_id,
                    instanceId=context.instance_id,
                    requestId=context.request_id,
                )
            },
        )
        return result

    async def process(self, payload: Any, context: PollChoiceContext | None = None) -> PollChoiceOutcome:
        """Reconcile one poll vote event.

        Never raises; unexpected errors become ``failed``/``poll_choice_error``.
        """
        context = context or PollChoiceContext()
        try:
            event = PollChoiceEvent.model_validate(
                normalize_poll_choice_payload(payload if isinstance(payload, dict) else {})
            )
        except ValidationError as exc:
            logger.warning(
                "poll choice payload invalid",
                extra={
                    "extra_fields": {
                        **safe_log_context(requestId=context.request_id, issues=exc.error_count()),
                        "preview": raw_preview(payload),
                    }
                },
            )
            return self._complete("ignored", "poll_choice_invalid", context)

        if not self._idempotency.register_once(build_vote_idempotency_key(event, context)):
            return self._complete("ignored", "poll_choice_duplicate_event", context, event.pollId)

        try:
            return await self._reconcile(event, context)
        except Exception:
            logger.exception(
                "poll choice processing failed",
                extra={"extra_fields": safe_log_context(pollId=event.pollId, requestId=context.request_id)},
            )
            return self._complete("failed", "poll_choice_error", context, event.pollId)

    async def _reconcile(self, event: PollChoiceEvent, context: PollChoiceContext) -> PollChoiceOutcome:
        runtime_metadata = await self._poll_metadata(event.pollId)
        recorded: RecordVoteResult = await asyncio.to_thread(
            self._state_service.record_vote, event, context, runtime_metadata
        )
        if not recorded.updated:
            return self._complete("ignored", "poll_choice_duplicate", context, event.pollId)

        state = recorded.state
        selected = label_selected_options(recorded.selected_options or event.selectedOptions, state)
        self._runtime.record_vote_selection(
            event.pollId,
            event.voterJid,
            [option.id for option in selected],
            [PollOption(id=option.id, title=option.title) for option in selected],
        )

        identifiers = candidate_message_ids(event)
        rewrite = self._build_rewrite(event, state, selected, identifiers)
        tenant_id = read_string(context.tenant_id) or read_string(state.context.tenant_id)
        rewrite.tenant_id = tenant_id

        status = await self._rewriter.rewrite(rewrite)
        if status is RewriteStatus.MISSING_TENANT:
            tenant_id = await self._runtime_tenant(event.pollId)
            if tenant_id:
                rewrite.tenant_id = tenant_id
                await self._rewriter.rewrite(rewrite)
            else:
                self._schedule_retry(event, rewrite, context)

        synced = False
        try:
            synced = await self._synchronizer.sync(event.pollId, state)
        except Exception as exc:
            logger.error(
                "poll metadata sync failed",
                extra={"extra_fields": safe_log_context(pollId=event.pollId, error=exc)},
            )

        if synced:
            return self._complete("accepted", "poll_choice", context, event.pollId, tenant_id)

        decision = await self._inbox.decide(tenant_id, event, identifiers, selected)
        logger.info(
            "poll choice inbox decision",
            extra={
                "extra_fields": safe_log_context(
                    pollId=event.pollId,
                    status=decision.status,
                    existingMessageId=decision.existing_message_id,
                    requestId=context.request_id,
                )
            },
        )
        if decision.status == "missingTenant":
            return self._complete("failed", "poll_choice_inbox_missing_tenant", context, event.pollId)
        if decision.status == "skip":
            return self._complete("accepted", "poll_choice", context, event.pollId, decision.tenant_id)

        try:
            inbox_status = await self._inbox.notify(
                event,
                state,
                selected,
                decision.tenant_id,
                instance_id=context.instance_id or state.context.instance_id,
                request_id=context.request_id,
            )
        except Exception as exc:
            logger.error(
                "poll choice inbox failed",
                extra={"extra_fields": safe_log_context(pollId=event.pollId, error=exc)},
            )
            return self._complete("failed", "poll_choice_inbox_error", context, event.pollId, decision.tenant_id)

        if inbox_status is not InboxStatus.OK:
            return self._complete(
                "failed", _INBOX_REASONS[inbox_status], context, event.pollId, decision.tenant_id
            )
        return self._complete("accepted", "poll_choice", context, event.pollId, decision.tenant_id)

    def _build_rewrite(
        self,
        event: PollChoiceEvent,
        state: PollChoiceState,
        selected: list[PollSelectedOption],
        identifiers: list[str],
    ) -> PollVoteRewrite:
        voter_state = state.votes.get(event.voterJid)
        selected_records = [option.model_dump() for option in selected]
        if voter_state is not None:
            vote = {
                "optionIds": voter_state.option_ids,
                "selectedOptions": [option.model_dump() for option in voter_state.selected_options],
                "encryptedVote": voter_state.encrypted_vote,
                "messageId": voter_state.message_id,
                "timestamp": voter_state.timestamp,
            }
        else:
            vote = {
                "optionIds": [option.id for option in selected],
                "selectedOptions": selected_records,
                "timestamp": event.timestamp,
            }
        return PollVoteRewrite(
            poll_id=event.pollId,
            voter_jid=event.voterJid,
            selected_options=selected_records,
            chat_id=normalize_chat_id(event.voterJid),
            candidate_ids=identifiers,
            timestamp=event.timestamp,
            question=state.context.question,
            aggregates=state.aggregates.model_dump(by_alias=True),
            options=[option.model_dump() for option in state.options],
            vote=vote,
        )

    async def _poll_metadata(self, poll_id: str) -> PollMetadata | None:
        if self._metadata_store is not None:
            return await self._metadata_store.recall(self._runtime, poll_id)
        return self._runtime.get_poll_metadata(poll_id)

    async def _runtime_tenant(self, poll_id: str) -> str | None:
        metadata = await self._poll_metadata(poll_id)
        return read_string(metadata.tenant_id) if metadata else None

    def _schedule_retry(
        self, event: PollChoiceEvent, rewrite: PollVoteRewrite, context: PollChoiceContext
    ) -> None:
        async def retry(payload: dict[str, Any]) -> None:
            tenant_id = await self._runtime_tenant(payload["pollId"])
            if not tenant_id:
                logger.warning(
                    "poll vote rewrite retry skipped, tenant still unknown",
                    extra={"extra_fields": safe_log_context(pollId=payload["pollId"])},
                )
                return
            rewrite.tenant_id = tenant_id
            await self._rewriter.rewrite(rewrite)

        task_id = f"poll-vote-rewrite:{event.pollId}:{event.voterJid}"
        scheduled = self._scheduler.schedule(
            task_id, retry, {"pollId": event.pollId}, delay_ms=self._retry_delay_ms
        )
        logger.info(
            "poll vote rewrite retry scheduled" if scheduled else "poll vote rewrite retry already pending",
            extra={
                "extra_fields": safe_log_context(
                    pollId=event.pollId, delayMs=self._retry_delay_ms, requestId=context.request_id
                )
            },
        )
