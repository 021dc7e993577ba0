"""Poll vote extraction from normalized message payloads and metadata.

Connectors report votes in several places (``metadata.pollChoice``,
``metadata.poll``, the message payload itself). Selections found in any of
them are merged by option id; the first non-empty label wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from leadengine_inbound.infra.time import utc_now
from leadengine_inbound.whatsapp.payloads import (
    as_list,
    as_record,
    first_string,
    first_string_of,
    get_path,
    read_string,
)

from .models import PollOption

LABEL_FIELDS = ("title", "text", "name", "optionName", "label", "description", "displayName", "value")
ID_FIELDS = ("id", "optionId", "key", "value")

POLL_PLACEHOLDER_MESSAGES = frozenset(
    {
        "[Mensagem recebida via WhatsApp]",
        "[Mensagem]",
        "[Mensagem de enquete]",
        "[Enquete]",
        "Mensagem recebida via WhatsApp",
    }
)

_SELECTED_OPTION_PATHS = (
    "pollChoice.selectedOptions",
    "pollChoice.vote.selectedOptions",
    "poll.selectedOptions",
)
_OPTION_ID_PATHS = (
    "pollChoice.optionIds",
    "pollChoice.vote.optionIds",
    "poll.selectedOptionIds",
)
_QUESTION_PATHS = (
    "poll.question",
    "poll.title",
    "poll.name",
    "pollChoice.question",
    "pollChoice.title",
    "pollChoice.name",
)
_POLL_ID_PATHS = ("poll.id", "poll.pollId", "pollChoice.pollId")


@dataclass
class PollVoteExtraction:
    poll_id: str | None
    question: str | None
    choice_text: str | None
    choice_id: str | None
    option_ids: list[str] = field(default_factory=list)
    selected_options: list[dict[str, Any]] = field(default_factory=list)


def pick_option_label(option: Any) -> str | None:
    if isinstance(option, str):
        return read_string(option)
    record = as_record(option)
    if record is None:
        return None
    return first_string_of(record.get(name) for name in LABEL_FIELDS)


def resolve_option_label(
    option_id: str,
    provided: str | None,
    options: Sequence[PollOption] = (),
) -> str:
    """Label for a selected option.

    Provided label, then the poll option title, then ``Opção {N}`` from the
    option's index (or its position in ``options``), then the id itself.
    """
    label = read_string(provided)
    if label:
        return label
    for position, option in enumerate(options):
        if option.id != option_id:
            continue
        if option.title:
            return option.title
        number = option.index if option.index is not None else position
        return f"Opção {number + 1}"
    return option_id


def extract_vote(
    payload: dict[str, Any],
    metadata: dict[str, Any] | None = None,
    poll: Sequence[PollOption] | None = None,
    message: dict[str, Any] | None = None,
) -> PollVoteExtraction:
    """Collect the vote carried by a poll update message.

    Args:
        payload: Provider message payload.
        metadata: Envelope metadata.
        poll: Authoritative option list, used to label bare option ids.
        message: Outer message record when it differs from ``payload``.

    Returns:
        PollVoteExtraction; fields are None/empty when nothing was found.
    """
    metadata = metadata or {}
    message = message or payload
    option_ids: dict[str, None] = {}
    selections: dict[str, dict[str, Any]] = {}

    def register_selection(entry: Any) -> None:
        if isinstance(entry, str):
            text = read_string(entry)
            if text:
                option_ids.setdefault(text, None)
                selections.setdefault(text, {"id": text, "title": None})
            return
        record = as_record(entry)
        if record is None:
            return
        candidate_id = first_string_of(record.get(name) for name in ID_FIELDS)
        label = pick_option_label(record)
        option_id = candidate_id or label
        if not option_id:
            return
        option_ids.setdefault(option_id, None)
        current = selections.get(option_id)
        if current is None:
            selections[option_id] = {
                "id": option_id,
                "title": label if label else (None if candidate_id else option_id),
            }
        elif label and not current.get("title"):
            current["title"] = label

    for path in _SELECTED_OPTION_PATHS:
        for entry in as_list(get_path(metadata, path)):
            register_selection(entry)
    for entry in as_list(payload.get("selectedOptions")):
        register_selection(entry)

    for path in _OPTION_ID_PATHS:
        for value in as_list(get_path(metadata, path)):
            text = read_string(value)
            if text:
                option_ids.setdefault(text, None)
    for value in as_list(payload.get("optionIds")):
        text = read_string(value)
        if text:
            option_ids.setdefault(text, None)

    if poll:
        for selection in selections.values():
            if not selection.get("title"):
                selection["title"] = resolve_option_label(selection["id"], None, poll)
        for option_id in option_ids:
            if option_id not in selections:
                selections[option_id] = {
                    "id": option_id,
                    "title": resolve_option_label(option_id, None, poll),
                }

    for selection in selections.values():
        selection["title"] = selection.get("title") or selection["id"]

    summary = [entry.get("title") or entry["id"] for entry in selections.values()]
    choice_text = read_string(message.get("text")) or (", ".join(summary) if summary else None)
    choice_id = next(iter(option_ids), None) or read_string(payload.get("selectedOptionId"))
    if choice_id:
        option_ids.setdefault(choice_id, None)

    question = first_string(metadata, _QUESTION_PATHS) or first_string(
        payload, ("poll.question", "poll.title", "poll.name", "question", "title", "name")
    )
    poll_id = first_string(metadata, _POLL_ID_PATHS) or first_string_of(
        (payload.get("pollId"), payload.get("id"), message.get("id"))
    )

    return PollVoteExtraction(
        poll_id=poll_id,
        question=question,
        choice_text=choice_text,
        choice_id=choice_id,
        option_ids=list(option_ids),
        selected_options=list(selections.values()),
    )


def resolve_message_type(
    payload: dict[str, Any],
    metadata: dict[str, Any] | None = None,
) -> str | None:
    """``poll_update`` for vote messages, else the declared type."""
    metadata = metadata or {}
    base_type = read_string(payload.get("type")) or read_string(metadata.get("messageType"))
    if as_record(payload.get("pollUpdateMessage")) is not None:
        return "poll_update"

    hints = (
        base_type,
        read_string((as_record(metadata.get("broker")) or {}).get("messageContentType")),
        read_string((as_record(metadata.get("interactive")) or {}).get("type")),
    )
    if any(hint and hint.lower() in ("poll_update", "poll_choice") for hint in hints):
        return "poll_update"
    return base_type


def build_poll_vote_text(question: str | None, choice: str | None) -> str:
    if question and choice:
        return f'Obrigado! Você votou em "{choice}" para "{question}".'
    if choice:
        return f'Obrigado! Seu voto: "{choice}".'
    if question:
        return f'Obrigado! Seu voto foi registrado para a enquete: "{question}".'
    return "Obrigado! Seu voto foi registrado."


def build_selected_option_summaries(selected_options: Sequence[Any]) -> list[dict[str, str]]:
    """``[{id, title}]`` with a usable label, de-duplicated by (id, title)."""
    summaries: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for option in selected_options:
        record = as_record(option) or (
            option.model_dump() if hasattr(option, "model_dump") else {}
        )
        option_id = read_string(record.get("id"))
        if not option_id:
            continue
        title = pick_option_label(record) or option_id
        if (option_id, title) in seen:
            continue
        seen.add((option_id, title))
        summaries.append({"id": option_id, "title": title})
    return summaries


def build_poll_vote_message_content(
    selected_options: Sequence[Any], question: str | None = None
) -> str | None:
    labels = [summary["title"] for summary in build_selected_option_summaries(selected_options)]
    if not labels:
        return None
    return build_poll_vote_text(question, ", ".join(labels))


def should_update_poll_message_content(content: Any) -> bool:
    text = read_string(content)
    return not text or text in POLL_PLACEHOLDER_MESSAGES


@dataclass
class PollUpdateNormalization:
    is_poll_update: bool
    placeholder: bool = False
    message: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


def normalize_poll_update(
    payload: dict[str, Any],
    metadata: dict[str, Any],
    *,
    chat_id: str | None,
    message_id: str,
    poll: Sequence[PollOption] | None = None,
    message_type: str | None = None,
) -> PollUpdateNormalization:
    """Turn a poll update message into something an agent can read.

    With a known choice or question the message becomes TEXT carrying the
    vote; otherwise it is kept as a placeholder (``metadata.placeholder``)
    that the vote rewriter fills in later.
    """
    message_type = message_type or resolve_message_type(payload, metadata)
    if message_type != "poll_update":
        return PollUpdateNormalization(is_poll_update=False)

    vote = extract_vote(payload, metadata, poll)
    now = utc_now().isoformat()
    source = {"channel": "whatsapp", "transport": "baileys", "event": "poll_update"}

    selected = [
        {"id": entry["id"], "title": entry.get("title") or entry["id"], "text": entry.get("title") or entry["id"]}
        for entry in vote.selected_options
    ]
    if not selected:
        fallback_id = vote.choice_id or vote.choice_text
        if fallback_id:
            label = vote.choice_text or fallback_id
            selected = [{"id": fallback_id, "title": label, "text": label}]
    option_ids = vote.option_ids or [entry["id"] for entry in selected]

    if vote.choice_text or vote.question:
        text = vote.choice_text or build_poll_vote_text(vote.question, None)
        poll_meta: dict[str, Any] = {"id": vote.poll_id, "question": vote.question, "updatedAt": now}
        choice_meta: dict[str, Any] = {
            "pollId": vote.poll_id,
            "question": vote.question,
            "vote": {"timestamp": read_string(payload.get("timestamp")) or now},
        }
        if selected:
            poll_meta["selectedOptions"] = selected
            choice_meta["selectedOptions"] = selected
            choice_meta["vote"]["selectedOptions"] = selected
        if option_ids:
            poll_meta["selectedOptionIds"] = option_ids
            choice_meta["optionIds"] = option_ids
            choice_meta["vote"]["optionIds"] = option_ids
        return PollUpdateNormalization(
            is_poll_update=True,
            placeholder=False,
            message={"id": message_id, "type": "TEXT", "text": text},
            metadata={
                **metadata,
                "placeholder": False,
                "direction": "INBOUND",
                "chatId": chat_id or metadata.get("chatId"),
                "source": source,
                "poll": {key: value for key, value in poll_meta.items() if value is not None},
                "pollChoice": {key: value for key, value in choice_meta.items() if value is not None},
            },
        )

    existing_poll = as_record(metadata.get("poll")) or {}
    return PollUpdateNormalization(
        is_poll_update=True,
        placeholder=True,
        metadata={
            **metadata,
            "placeholder": True,
            "direction": "INBOUND",
            "source": source,
            "poll": {**existing_poll, "id": existing_poll.get("id") or vote.poll_id, "updatedAt": now},
        },
    )
