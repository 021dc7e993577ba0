"""Poll domain values held by the runtime registry and returned by the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Outcome = Literal["accepted", "ignored", "failed"]


@dataclass(frozen=True)
class PollOption:
    id: str
    title: str | None = None
    index: int | None = None


def sort_options(options: list[PollOption]) -> list[PollOption]:
    """Order by index (missing last), then id."""
    return sorted(
        options,
        key=lambda option: (option.index if option.index is not None else float("inf"), option.id),
    )


@dataclass(frozen=True)
class CreationMessageKey:
    remote_jid: str | None = None
    participant: str | None = None
    from_me: bool | None = None
    id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "remoteJid": self.remote_jid,
            "participant": self.participant,
            "fromMe": self.from_me,
        }


@dataclass(frozen=True)
class PollVoteSelection:
    """Latest selection of one voter, kept by the runtime registry."""

    voter_jid: str
    option_ids: tuple[str, ...]
    selected_options: tuple[PollOption, ...]
    updated_at: str


@dataclass
class PollMetadata:
    """Everything known about a poll since its creation message was seen.

    ``message_secret`` is the sealed form (see infra.secrets); the raw
    secret is only returned by ``PollRuntimeService.get_decrypted_secret``.
    """

    poll_id: str
    question: str | None = None
    options: list[PollOption] = field(default_factory=list)
    creation_message_id: str | None = None
    creation_message_key: CreationMessageKey | None = None
    message_secret: dict[str, object] | None = None
    message_secret_fingerprint: str | None = None
    message_secret_version: int | None = None
    tenant_id: str | None = None
    instance_id: str | None = None
    selectable_options_count: int | None = None
    media_type: str | None = None
    updated_at: str | None = None
    expires_at_ms: int = 0
    votes: dict[str, PollVoteSelection] = field(default_factory=dict)


class RewriteStatus(str, Enum):
    MISSING_TENANT = "missingTenant"
    NOT_FOUND = "notFound"
    NOOP = "noop"
    UPDATED = "updated"
    FAILED = "failed"


class InboxStatus(str, Enum):
    OK = "ok"
    MISSING_TENANT = "missing_tenant"
    INVALID_CHAT_ID = "invalid_chat_id"
    INGEST_REJECTED = "ingest_rejected"
    INGEST_ERROR = "ingest_error"


@dataclass(frozen=True)
class PollChoiceOutcome:
    outcome: Outcome
    reason: str
    poll_id: str | None = None
    tenant_id: str | None = None

    @property
    def counts(self) -> dict[str, int]:
        """Webhook summary contribution."""
        return {
            "persisted": 1 if self.outcome == "accepted" else 0,
            "ignored": 1 if self.outcome == "ignored" else 0,
            "failures": 1 if self.outcome == "failed" else 0,
        }
