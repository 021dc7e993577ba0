"""Poll choice event and poll state schemas.

``PollChoiceEvent`` is the wire shape (camelCase, as the connector sends it).
``PollChoiceState`` is the persisted per-poll state (snake_case).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from leadengine_inbound.whatsapp.contracts import normalize_contract_timestamp
from leadengine_inbound.whatsapp.payloads import as_list, as_record, read_int, read_string


def _trimmed(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    return value


class PollMessageKey(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    id: str | None = None
    remote_jid: str | None = None
    participant: str | None = None
    from_me: bool | None = None

    @field_validator("id", "remote_jid", "participant", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return _trimmed(value)


class PollAggregates(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    total_voters: int = Field(default=0, ge=0)
    total_votes: int = Field(default=0, ge=0)
    option_totals: dict[str, int] = Field(default_factory=dict)


class PollSelectedOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str | None = None

    @field_validator("id", "title", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return _trimmed(value)


class PollEventOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str | None = None
    text: str | None = None
    description: str | None = None
    index: int | None = None
    votes: int | None = None
    selected: bool | None = None

    @field_validator("id", "title", "text", "description", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return _trimmed(value)

    @property
    def label(self) -> str | None:
        return self.title or self.text or self.description


class PollChoiceEvent(BaseModel):
    """A single voter's selection for one poll."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    pollId: str = Field(min_length=1)
    voterJid: str = Field(min_length=1)
    messageId: str | None = None
    timestamp: str | None = None
    question: str | None = None
    selectedOptionIds: list[str] | None = None
    selectedOptions: list[PollSelectedOption] = Field(default_factory=list)
    options: list[PollEventOption] = Field(default_factory=list)
    aggregates: PollAggregates | None = None
    pollCreationMessageId: str | None = None
    pollCreationMessageKey: PollMessageKey | None = None
    encryptedVote: dict[str, Any] | None = None
    tenantId: str | None = None
    instanceId: str | None = None

    @field_validator(
        "id",
        "pollId",
        "voterJid",
        "messageId",
        "question",
        "pollCreationMessageId",
        "tenantId",
        "instanceId",
        mode="before",
    )
    @classmethod
    def _trim(cls, value: Any) -> Any:
        return _trimmed(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> str | None:
        return normalize_contract_timestamp(value)

    @field_validator("selectedOptionIds", mode="before")
    @classmethod
    def _option_ids(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return [text for text in (read_string(item) for item in as_list(value)) if text]

    def selected_option_ids(self) -> list[str]:
        """Explicit ids plus options flagged ``selected``, de-duplicated."""
        ids: dict[str, None] = {}
        for option_id in self.selectedOptionIds or []:
            ids.setdefault(option_id, None)
        for option in self.options:
            if option.selected:
                ids.setdefault(option.id, None)
        return list(ids)


class PollStateOption(BaseModel):
    id: str
    title: str | None = None
    index: int | None = None


class PollVoteEntry(BaseModel):
    option_ids: list[str] = Field(default_factory=list)
    selected_options: list[PollSelectedOption] = Field(default_factory=list)
    message_id: str | None = None
    timestamp: str | None = None
    encrypted_vote: dict[str, Any] | None = None


class PollStateContext(BaseModel):
    tenant_id: str | None = None
    instance_id: str | None = None
    question: str | None = None
    creation_message_id: str | None = None
    creation_message_key: PollMessageKey | None = None


class PollChoiceState(BaseModel):
    """Persisted per-poll state, one row per poll."""

    poll_id: str
    options: list[PollStateOption] = Field(default_factory=list)
    votes: dict[str, PollVoteEntry] = Field(default_factory=dict)
    aggregates: PollAggregates = Field(default_factory=PollAggregates)
    broker_aggregates: PollAggregates | None = None
    context: PollStateContext = Field(default_factory=PollStateContext)
    updated_at: str = "1970-01-01T00:00:00+00:00"


def _fallback_option_id(record: dict[str, Any], index: int) -> str:
    for key in ("id", "title", "text"):
        text = read_string(record.get(key))
        if text:
            return text
    return f"option_{index}"


def normalize_poll_choice_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Fill derivable fields before validation.

    - ``id`` falls back to ``messageId``, then ``pollId:voterJid[:timestamp]``
    - selected options and options get ids (``option_{i}`` as last resort)
    - options keep their position as ``index`` when none is given
    - aggregates default from the selected options

    A selected option without a label keeps ``title=None`` so later label
    resolution can use the poll's own option list.
    """
    normalized = dict(payload)
    poll_id = read_string(payload.get("pollId"))
    voter_jid = read_string(payload.get("voterJid"))
    message_id = read_string(payload.get("messageId"))
    timestamp = read_string(payload.get("timestamp"))

    if not read_string(payload.get("id")):
        synthetic = message_id
        if not synthetic and poll_id and voter_jid:
            synthetic = f"{poll_id}:{voter_jid}" + (f":{timestamp}" if timestamp else "")
        if synthetic:
            normalized["id"] = synthetic

    selected = []
    for index, entry in enumerate(as_list(payload.get("selectedOptions"))):
        record = as_record(entry)
        if record is None:
            text = read_string(entry)
            if text:
                selected.append({"id": text, "title": None})
            continue
        selected.append(
            {
                **record,
                "id": _fallback_option_id(record, index),
                "title": read_string(record.get("title")) or read_string(record.get("text")),
            }
        )
    if selected:
        normalized["selectedOptions"] = selected

    options = []
    for index, entry in enumerate(as_list(payload.get("options"))):
        record = as_record(entry)
        if record is None:
            continue
        option_index = read_int(record.get("index"))
        votes = read_int(record.get("votes"))
        option_id = _fallback_option_id(record, index)
        options.append(
            {
                **record,
                "id": option_id,
                "title": read_string(record.get("title")) or read_string(record.get("text")),
                "index": option_index if option_index is not None and option_index >= 0 else index,
                "votes": votes if votes is not None and votes >= 0 else None,
            }
        )
    normalized["options"] = options

    if not isinstance(normalized.get("selectedOptionIds"), list) and selected:
        normalized["selectedOptionIds"] = [entry["id"] for entry in selected]

    aggregates = as_record(payload.get("aggregates")) or {}
    option_totals: dict[str, int] = {}
    for key, value in (as_record(aggregates.get("optionTotals")) or {}).items():
        total = read_int(value)
        if read_string(key) and total is not None and total >= 0:
            option_totals[key.strip()] = total
    for entry in selected:
        if not option_totals.get(entry["id"]):
            option_totals[entry["id"]] = 1

    total_votes = read_int(aggregates.get("totalVotes"))
    total_voters = read_int(aggregates.get("totalVoters"))
    normalized["aggregates"] = {
        "totalVotes": total_votes if total_votes is not None and total_votes >= 0 else len(selected),
        "totalVoters": total_voters
        if total_voters is not None and total_voters >= 0
        else (1 if selected else 0),
        "optionTotals": option_totals,
    }
    return normalized
