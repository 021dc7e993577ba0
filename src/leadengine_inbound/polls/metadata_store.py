"""Durable copy of poll creation metadata.

Rows sit beside poll state in ``processed_integration_events`` keyed by
``poll-meta:{pollId}`` with source ``whatsapp.poll_metadata``. The message
secret is stored sealed, exactly as the runtime registry holds it. Votes
are not stored here; the ``poll-state`` row carries them.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable

from leadengine_inbound.infra.repositories.poll_state_repository import PollStateRepository
from leadengine_inbound.infra.time import parse_timestamp, utc_now
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.payloads import as_list, as_record, read_bool, read_int, read_string

from .models import CreationMessageKey, PollMetadata, PollOption, sort_options
from .runtime import DEFAULT_TTL_MS, PollRuntimeService

logger = get_logger(__name__)

POLL_METADATA_SOURCE = "whatsapp.poll_metadata"


def poll_metadata_key(poll_id: str) -> str:
    return f"poll-meta:{poll_id}"


def dump_metadata(metadata: PollMetadata, expires_at: datetime) -> dict[str, Any]:
    key = metadata.creation_message_key
    return {
        "pollId": metadata.poll_id,
        "question": metadata.question,
        "options": [
            {"id": option.id, "title": option.title, "index": option.index} for option in metadata.options
        ],
        "creationMessageId": metadata.creation_message_id,
        "creationMessageKey": key.as_dict() if key else None,
        "messageSecret": metadata.message_secret,
        "messageSecretFingerprint": metadata.message_secret_fingerprint,
        "messageSecretVersion": metadata.message_secret_version,
        "tenantId": metadata.tenant_id,
        "instanceId": metadata.instance_id,
        "selectableOptionsCount": metadata.selectable_options_count,
        "mediaType": metadata.media_type,
        "updatedAt": metadata.updated_at,
        "expiresAt": expires_at.isoformat(),
    }


def restore_metadata(payload: dict[str, Any]) -> PollMetadata | None:
    poll_id = read_string(payload.get("pollId"))
    if not poll_id:
        return None
    options = []
    for entry in as_list(payload.get("options")):
        record = as_record(entry) or {}
        option_id = read_string(record.get("id"))
        if option_id:
            options.append(
                PollOption(id=option_id, title=read_string(record.get("title")), index=read_int(record.get("index")))
            )
    key = as_record(payload.get("creationMessageKey"))
    return PollMetadata(
        poll_id=poll_id,
        question=read_string(payload.get("question")),
        options=sort_options(options),
        creation_message_id=read_string(payload.get("creationMessageId")),
        creation_message_key=CreationMessageKey(
            remote_jid=read_string(key.get("remoteJid")),
            participant=read_string(key.get("participant")),
            from_me=read_bool(key.get("fromMe")),
            id=read_string(key.get("id")),
        )
        if key
        else None,
        message_secret=as_record(payload.get("messageSecret")),
        message_secret_fingerprint=read_string(payload.get("messageSecretFingerprint")),
        message_secret_version=read_int(payload.get("messageSecretVersion")),
        tenant_id=read_string(payload.get("tenantId")),
        instance_id=read_string(payload.get("instanceId")),
        selectable_options_count=read_int(payload.get("selectableOptionsCount")),
        media_type=read_string(payload.get("mediaType")),
        updated_at=read_string(payload.get("updatedAt")),
    )


class PollMetadataStore:
    """Reads and writes ``poll-meta:{pollId}`` rows.

    ``save``/``load`` are blocking (the Postgres repository runs a
    transaction per call); ``persist``/``recall`` run them in a worker
    thread and log failures instead of raising.
    """

    def __init__(
        self,
        repository: PollStateRepository,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._ttl_ms = ttl_ms if ttl_ms > 0 else DEFAULT_TTL_MS
        self._clock = clock

    def save(self, metadata: PollMetadata) -> None:
        expires_at = self._clock() + timedelta(milliseconds=self._ttl_ms)
        self._repository.upsert(
            poll_metadata_key(metadata.poll_id),
            source=POLL_METADATA_SOURCE,
            cursor=metadata.poll_id,
            payload=dump_metadata(metadata, expires_at),
        )

    def load(self, poll_id: str) -> tuple[PollMetadata, int] | None:
        """Stored metadata and its remaining lifetime in ms; None when absent or expired."""
        payload = self._repository.get(poll_metadata_key(poll_id))
        if not payload:
            return None
        expires_at = parse_timestamp(payload.get("expiresAt"))
        remaining_ms = int((expires_at - self._clock()).total_seconds() * 1000) if expires_at else 0
        if remaining_ms <= 0:
            return None
        metadata = restore_metadata(payload)
        return (metadata, remaining_ms) if metadata else None

    async def persist(self, runtime: PollRuntimeService, poll_id: str) -> None:
        metadata = runtime.get_poll_metadata(poll_id)
        if metadata is None:
            return
        try:
            await asyncio.to_thread(self.save, metadata)
        except Exception as exc:
            logger.error(
                "poll metadata persist failed",
                extra={"extra_fields": safe_log_context(pollId=poll_id, error=exc)},
            )

    async def recall(self, runtime: PollRuntimeService, poll_id: str | None) -> PollMetadata | None:
        """Runtime entry for ``poll_id`` (poll or creation id), reloaded from the store on a miss."""
        poll_id = (poll_id or "").strip()
        if not poll_id:
            return None
        cached = runtime.get_poll_metadata_by_creation_id(poll_id) or runtime.get_poll_metadata(poll_id)
        if cached is not None:
            return cached
        try:
            stored = await asyncio.to_thread(self.load, poll_id)
        except Exception as exc:
            logger.error(
                "poll metadata load failed",
                extra={"extra_fields": safe_log_context(pollId=poll_id, error=exc)},
            )
            return None
        if stored is None:
            return None
        metadata, remaining_ms = stored
        runtime.restore(metadata, ttl_ms=remaining_ms)
        logger.info(
            "poll metadata restored from store",
            extra={
                "extra_fields": safe_log_context(
                    pollId=metadata.poll_id,
                    tenantId=metadata.tenant_id,
                    secretFingerprint=metadata.message_secret_fingerprint,
                )
            },
        )
        return runtime.get_poll_metadata(metadata.poll_id)
