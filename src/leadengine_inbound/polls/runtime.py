"""In-process registry of poll creation metadata and latest vote selections.

Entries expire after a TTL (default 6h). Message secrets are sealed with
AES-256-GCM (infra.secrets) and only a SHA-256 fingerprint is ever logged.
After a restart, ``restore`` reinstates entries read from polls.metadata_store.
"""

from __future__ import annotations

import base64
import binascii
import copy
from typing import Any, Callable, Iterable

from leadengine_inbound.config import get_poll_secret_key
from leadengine_inbound.infra.hashing import fingerprint_secret
from leadengine_inbound.infra.secrets import SecretDecryptionError, open_secret, seal_secret
from leadengine_inbound.infra.time import monotonic_ms, utc_now
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.payloads import read_string

from .models import CreationMessageKey, PollMetadata, PollOption, PollVoteSelection, sort_options

logger = get_logger(__name__)

DEFAULT_TTL_MS = 6 * 60 * 60 * 1000


def coerce_secret(value: Any) -> bytes | None:
    """Secret bytes from raw bytes or a base64 string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value) or None
    text = read_string(value)
    if not text:
        return None
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        try:
            return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
        except (binascii.Error, ValueError):
            return None


def _merge_options(existing: Iterable[PollOption], incoming: Iterable[PollOption]) -> list[PollOption]:
    merged: dict[str, PollOption] = {option.id: option for option in existing}
    for option in incoming:
        current = merged.get(option.id)
        merged[option.id] = PollOption(
            id=option.id,
            title=option.title or (current.title if current else None),
            index=option.index if option.index is not None else (current.index if current else None),
        )
    return sort_options(list(merged.values()))


class PollRuntimeService:
    """Poll metadata keyed by poll id, with a creation-message-id index."""

    def __init__(
        self,
        ttl_ms: int = DEFAULT_TTL_MS,
        secret_key: bytes | None = None,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self._ttl_ms = ttl_ms if ttl_ms > 0 else DEFAULT_TTL_MS
        self._secret_key = secret_key
        self._clock = clock
        self._by_poll_id: dict[str, PollMetadata] = {}
        self._poll_id_by_creation_id: dict[str, str] = {}

    def _key(self) -> bytes | None:
        if self._secret_key is None:
            try:
                self._secret_key = get_poll_secret_key()
            except RuntimeError as exc:
                logger.warning(
                    "poll secret key unavailable, message secrets not stored",
                    extra={"extra_fields": safe_log_context(error=exc)},
                )
                return None
        return self._secret_key

    def _prune(self) -> None:
        now = self._clock()
        for poll_id, entry in list(self._by_poll_id.items()):
            if entry.expires_at_ms <= now:
                del self._by_poll_id[poll_id]
                if entry.creation_message_id:
                    self._poll_id_by_creation_id.pop(entry.creation_message_id, None)

    def _seal(self, entry: PollMetadata, secret: Any, version: int | None) -> None:
        raw = coerce_secret(secret)
        if raw is None:
            return
        entry.message_secret_fingerprint = fingerprint_secret(raw)
        entry.message_secret_version = version if version is not None else entry.message_secret_version
        key = self._key()
        if key is not None:
            entry.message_secret = seal_secret(raw, key)

    def remember_poll_creation(
        self,
        poll_id: str,
        *,
        question: str | None = None,
        options: Iterable[PollOption] = (),
        creation_message_id: str | None = None,
        creation_message_key: CreationMessageKey | None = None,
        message_secret: Any = None,
        message_secret_version: int | None = None,
        tenant_id: str | None = None,
        instance_id: str | None = None,
        selectable_options_count: int | None = None,
        media_type: str | None = None,
    ) -> None:
        """Record (or refresh) a poll seen in a creation message.

        Known fields of an existing entry are kept when the new event omits
        them; options are merged by id. The TTL restarts.
        """
        poll_id = (poll_id or "").strip()
        if not poll_id:
            return
        self._prune()

        existing = self._by_poll_id.get(poll_id)
        entry = PollMetadata(
            poll_id=poll_id,
            question=question or (existing.question if existing else None),
            options=_merge_options(existing.options if existing else [], options),
            creation_message_id=creation_message_id
            or (existing.creation_message_id if existing else None),
            creation_message_key=creation_message_key
            or (existing.creation_message_key if existing else None),
            message_secret=existing.message_secret if existing else None,
            message_secret_fingerprint=existing.message_secret_fingerprint if existing else None,
            message_secret_version=existing.message_secret_version if existing else None,
            tenant_id=tenant_id or (existing.tenant_id if existing else None),
            instance_id=instance_id or (existing.instance_id if existing else None),
            selectable_options_count=selectable_options_count
            if selectable_options_count is not None
            else (existing.selectable_options_count if existing else None),
            media_type=media_type or (existing.media_type if existing else None),
            updated_at=utc_now().isoformat(),
            expires_at_ms=self._clock() + self._ttl_ms,
            votes=dict(existing.votes) if existing else {},
        )
        self._seal(entry, message_secret, message_secret_version)

        self._by_poll_id[poll_id] = entry
        if entry.creation_message_id:
            self._poll_id_by_creation_id[entry.creation_message_id] = poll_id

        logger.debug(
            "poll runtime remembered poll creation",
            extra={
                "extra_fields": safe_log_context(
                    pollId=poll_id,
                    tenantId=entry.tenant_id,
                    instanceId=entry.instance_id,
                    options=len(entry.options),
                    secretFingerprint=entry.message_secret_fingerprint,
                )
            },
        )

    def merge_metadata(
        self,
        poll_id: str,
        *,
        question: str | None = None,
        options: Iterable[PollOption] = (),
        creation_message_id: str | None = None,
        creation_message_key: CreationMessageKey | None = None,
        message_secret: Any = None,
        message_secret_version: int | None = None,
        tenant_id: str | None = None,
        instance_id: str | None = None,
        selectable_options_count: int | None = None,
        media_type: str | None = None,
    ) -> None:
        """Merge broker-supplied metadata into an entry, creating it if absent.

        Unlike ``remember_poll_creation`` this does not restart the TTL of an
        existing entry.
        """
        poll_id = (poll_id or "").strip()
        if not poll_id:
            return
        self._prune()

        entry = self._by_poll_id.get(poll_id)
        if entry is None:
            self.remember_poll_creation(
                poll_id,
                question=question,
                options=options,
                creation_message_id=creation_message_id,
                creation_message_key=creation_message_key,
                message_secret=message_secret,
                message_secret_version=message_secret_version,
                tenant_id=tenant_id,
                instance_id=instance_id,
                selectable_options_count=selectable_options_count,
                media_type=media_type,
            )
            return

        entry.question = question or entry.question
        entry.options = _merge_options(entry.options, options)
        entry.creation_message_id = creation_message_id or entry.creation_message_id
        entry.creation_message_key = creation_message_key or entry.creation_message_key
        entry.tenant_id = tenant_id or entry.tenant_id
        entry.instance_id = instance_id or entry.instance_id
        if selectable_options_count is not None:
            entry.selectable_options_count = selectable_options_count
        entry.media_type = media_type or entry.media_type
        self._seal(entry, message_secret, message_secret_version)
        entry.updated_at = utc_now().isoformat()
        if entry.creation_message_id:
            self._poll_id_by_creation_id[entry.creation_message_id] = poll_id

    def restore(self, metadata: PollMetadata, ttl_ms: int | None = None) -> None:
        """Reinstate an entry loaded from durable storage. A live entry wins."""
        poll_id = (metadata.poll_id or "").strip()
        if not poll_id:
            return
        self._prune()
        if poll_id in self._by_poll_id:
            return
        entry = copy.deepcopy(metadata)
        entry.poll_id = poll_id
        entry.expires_at_ms = self._clock() + (ttl_ms if ttl_ms and ttl_ms > 0 else self._ttl_ms)
        self._by_poll_id[poll_id] = entry
        if entry.creation_message_id:
            self._poll_id_by_creation_id[entry.creation_message_id] = poll_id

    def record_vote_selection(
        self,
        poll_id: str,
        voter_jid: str,
        option_ids: Iterable[str],
        selected_options: Iterable[PollOption],
    ) -> None:
        """Store the voter's latest selection. Unknown polls are ignored."""
        poll_id = (poll_id or "").strip()
        voter_jid = (voter_jid or "").strip()
        if not poll_id or not voter_jid:
            return
        self._prune()
        entry = self._by_poll_id.get(poll_id)
        if entry is None:
            return
        now = utc_now().isoformat()
        ids = tuple(dict.fromkeys(text.strip() for text in option_ids if text and text.strip()))
        entry.votes[voter_jid] = PollVoteSelection(
            voter_jid=voter_jid,
            option_ids=ids,
            selected_options=tuple(selected_options),
            updated_at=now,
        )
        entry.updated_at = now

    def get_poll_metadata(self, poll_id: str | None) -> PollMetadata | None:
        poll_id = (poll_id or "").strip()
        if not poll_id:
            return None
        self._prune()
        entry = self._by_poll_id.get(poll_id)
        return copy.deepcopy(entry) if entry else None

    def get_poll_metadata_by_creation_id(self, message_id: str | None) -> PollMetadata | None:
        message_id = (message_id or "").strip()
        if not message_id:
            return None
        self._prune()
        poll_id = self._poll_id_by_creation_id.get(message_id)
        return self.get_poll_metadata(poll_id) if poll_id else None

    def get_vote_selection(self, poll_id: str, voter_jid: str) -> PollVoteSelection | None:
        entry = self._by_poll_id.get((poll_id or "").strip())
        if entry is None:
            return None
        return entry.votes.get((voter_jid or "").strip())

    def get_decrypted_secret(self, poll_id: str) -> bytes | None:
        """Open the sealed message secret; None when absent or unreadable."""
        self._prune()
        entry = self._by_poll_id.get((poll_id or "").strip())
        if entry is None or entry.message_secret is None:
            return None
        key = self._key()
        if key is None:
            return None
        try:
            return open_secret(entry.message_secret, key)
        except SecretDecryptionError as exc:
            logger.warning(
                "failed to open poll message secret",
                extra={
                    "extra_fields": safe_log_context(
                        pollId=poll_id,
                        secretFingerprint=entry.message_secret_fingerprint,
                        error=exc,
                    )
                },
            )
            return None

    def clear(self) -> None:
        self._by_poll_id.clear()
        self._poll_id_by_creation_id.clear()
