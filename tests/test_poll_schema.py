"""Tests for poll choice payload normalization and validation."""

import pytest
from pydantic import ValidationError

from leadengine_inbound.polls.schema import PollChoiceEvent, normalize_poll_choice_payload

from helpers import CONTACT_JID, poll_choice_payload


class TestNormalizePollChoicePayload:
    def test_id_falls_back_to_message_id(self):
        assert normalize_poll_choice_payload(poll_choice_payload())["id"] == "vote-msg-1"

    def test_synthetic_id_from_poll_and_voter(self):
        payload = poll_choice_payload(messageId=None)
        assert normalize_poll_choice_payload(payload)["id"] == f"poll-1:{CONTACT_JID}:2024-01-01T12:00:00Z"

    def test_selected_option_without_label_keeps_none(self):
        payload = poll_choice_payload(selectedOptions=["opt-b", {"id": "opt-a", "text": "Manhã"}])

        normalized = normalize_poll_choice_payload(payload)

        assert normalized["selectedOptions"] == [
            {"id": "opt-b", "title": None},
            {"id": "opt-a", "text": "Manhã", "title": "Manhã"},
        ]
        assert normalized["selectedOptionIds"] == ["opt-b", "opt-a"]

    def test_options_get_ids_and_positions(self):
        payload = poll_choice_payload(options=[{"title": "Manhã"}, {"text": "Tarde", "index": -1}, {}])

        options = normalize_poll_choice_payload(payload)["options"]

        assert [(option["id"], option["index"]) for option in options] == [
            ("Manhã", 0),
            ("Tarde", 1),
            ("option_2", 2),
        ]

    def test_aggregates_default_from_selection(self):
        aggregates = normalize_poll_choice_payload(poll_choice_payload())["aggregates"]
        assert aggregates == {"totalVotes": 1, "totalVoters": 1, "optionTotals": {"opt-a": 1}}

    def test_aggregates_from_payload(self):
        payload = poll_choice_payload(
            aggregates={"totalVotes": 5, "totalVoters": 4, "optionTotals": {"opt-a": 3, "opt-b": -1}}
        )
        aggregates = normalize_poll_choice_payload(payload)["aggregates"]
        assert aggregates == {"totalVotes": 5, "totalVoters": 4, "optionTotals": {"opt-a": 3}}


class TestPollChoiceEvent:
    def test_valid_event(self):
        event = PollChoiceEvent.model_validate(
            normalize_poll_choice_payload(poll_choice_payload(timestamp=1_700_000_000))
        )

        assert event.pollId == "poll-1"
        assert event.timestamp == "2023-11-14T22:13:20+00:00"
        assert event.selectedOptions[0].title == "Manhã"
        assert event.aggregates.total_votes == 1

    def test_missing_voter_is_invalid(self):
        with pytest.raises(ValidationError):
            PollChoiceEvent.model_validate(normalize_poll_choice_payload(poll_choice_payload(voterJid="  ")))

    def test_selected_option_ids_include_flagged_options(self):
        payload = poll_choice_payload(
            selectedOptions=[],
            options=[{"id": "opt-a", "selected": False}, {"id": "opt-b", "selected": True}],
            selectedOptionIds=["opt-c"],
        )
        event = PollChoiceEvent.model_validate(normalize_poll_choice_payload(payload))
        assert event.selected_option_ids() == ["opt-c", "opt-b"]

    def test_creation_key_accepts_camel_case(self):
        payload = poll_choice_payload(pollCreationMessageKey={"id": "POLL-MSG", "remoteJid": CONTACT_JID, "fromMe": True})
        event = PollChoiceEvent.model_validate(normalize_poll_choice_payload(payload))
        assert event.pollCreationMessageKey.remote_jid == CONTACT_JID
        assert event.pollCreationMessageKey.from_me is True
