"""Tests for raw connector upsert normalization."""

from leadengine_inbound.whatsapp.baileys_adapter import (
    UpsertOverrides,
    extract_quoted_details,
    normalize_upsert_event,
    unwrap_message_content,
)

from helpers import CONTACT_JID, image_entry, text_entry, upsert_event


class TestNormalizeUpsertEvent:
    def test_text_entry_is_flattened(self):
        result = normalize_upsert_event(upsert_event(text_entry()))

        assert result.ignored == []
        assert len(result.normalized) == 1
        normalized = result.normalized[0]
        assert normalized.message_id == "MSG-1"
        assert normalized.message_type == "text"
        assert normalized.tenant_id == "tenant-1"
        assert not normalized.is_group

        data = normalized.data
        assert data["event"] == "message"
        assert data["instanceId"] == "inst-1"
        assert data["timestamp"] == "2023-11-14T22:13:20+00:00"
        assert data["from"] == {"phone": "5511987654321", "name": "Maria", "pushName": "Maria"}
        assert data["message"]["type"] == "text"
        assert data["message"]["text"] == "Olá, quero saber mais"
        assert data["message"]["key"] == {"id": "MSG-1", "remoteJid": CONTACT_JID}
        assert data["metadata"]["contact"]["jid"] == CONTACT_JID
        assert data["metadata"]["broker"]["type"] == "baileys"

    def test_media_entry_becomes_media_message(self):
        result = normalize_upsert_event(upsert_event(image_entry()))

        message = result.normalized[0].data["message"]
        assert message["type"] == "media"
        assert message["text"] == "foto do documento"
        assert message["media"]["mediaType"] == "image"
        assert message["media"]["mimetype"] == "image/jpeg"
        assert message["imageMessage"]["mediaKey"] == "bWVkaWEta2V5"

    def test_ignored_entries_keep_their_reason(self):
        from_me = text_entry("OUT-1")
        from_me["key"]["fromMe"] = True
        protocol = {"key": {"id": "P-1", "remoteJid": CONTACT_JID}, "message": {"protocolMessage": {"type": 0}}}
        stub = {"key": {"id": "S-1", "remoteJid": CONTACT_JID}, "message": {"conversation": "x"}, "messageStubType": 2}
        event = upsert_event(from_me, protocol, {"key": {"id": "E-1"}}, stub, "garbage", text_entry("MSG-2"))

        result = normalize_upsert_event(event)

        assert [item.message_index for item in result.normalized] == [5]
        assert [(item.message_index, item.reason) for item in result.ignored] == [
            (0, "from_me"),
            (1, "protocol_message"),
            (2, "empty_message"),
            (3, "message_stub"),
            (4, "invalid_entry"),
        ]

    def test_group_message_uses_participant(self):
        entry = text_entry(remote_jid="120363040000000000@g.us")
        entry["key"]["participant"] = CONTACT_JID

        normalized = normalize_upsert_event(upsert_event(entry)).normalized[0]

        assert normalized.is_group
        assert normalized.data["from"]["phone"] == "5511987654321"
        assert normalized.data["metadata"]["contact"]["participantJid"] == CONTACT_JID

    def test_overrides_win_over_event(self):
        overrides = UpsertOverrides(instance_id="inst-override", tenant_id="tenant-override")

        normalized = normalize_upsert_event(upsert_event(text_entry()), overrides).normalized[0]

        assert normalized.data["instanceId"] == "inst-override"
        assert normalized.tenant_id == "tenant-override"

    def test_missing_instance_or_other_event_yields_nothing(self):
        assert normalize_upsert_event(upsert_event(text_entry(), instance_id=None)).normalized == []
        assert normalize_upsert_event({"event": "OTHER", "instanceId": "i"}).normalized == []
        assert normalize_upsert_event("not an event").normalized == []

    def test_falls_back_to_raw_messages(self):
        event = {
            "event": "WHATSAPP_MESSAGES_UPSERT",
            "instanceId": "inst-1",
            "payload": {"raw": {"payload": {"messages": [text_entry("RAW-1")]}}},
        }

        result = normalize_upsert_event(event)

        assert [item.message_id for item in result.normalized] == ["RAW-1"]

    def test_poll_creation_keeps_secret_and_media_type(self):
        entry = {
            "key": {"id": "POLL-1", "remoteJid": CONTACT_JID},
            "message": {
                "pollCreationMessageV3": {
                    "name": "Qual horário?",
                    "options": [{"optionName": "Manhã"}, {"optionName": "Tarde"}],
                    "selectableOptionsCount": 1,
                },
                "messageContextInfo": {"messageSecret": "c2VjcmV0"},
            },
        }

        normalized = normalize_upsert_event(upsert_event(entry)).normalized[0]

        assert normalized.message_type == "poll"
        creation = normalized.data["message"]["pollCreationMessage"]
        assert creation["name"] == "Qual horário?"
        assert creation["mediaType"] == "poll_v2"
        assert creation["messageSecret"] == "c2VjcmV0"
        assert normalized.data["message"]["text"] == "Qual horário?"

    def test_poll_update_payload(self):
        entry = {
            "key": {"id": "VOTE-1", "remoteJid": CONTACT_JID},
            "message": {
                "pollUpdateMessage": {
                    "pollCreationMessageKey": {"id": "POLL-1", "remoteJid": CONTACT_JID, "fromMe": True},
                    "vote": {"encPayload": "cGF5bG9hZA==", "encIv": "aXY="},
                }
            },
        }

        normalized = normalize_upsert_event(upsert_event(entry)).normalized[0]

        assert normalized.message_type == "poll_choice"
        update = normalized.data["message"]["pollUpdateMessage"]
        assert update["pollCreationMessageId"] == "POLL-1"
        assert update["vote"] == {"encPayload": "cGF5bG9hZA==", "encIv": "aXY="}
        assert normalized.data["metadata"]["interactive"] == {"type": "poll_choice"}


class TestContentHelpers:
    def test_unwrap_nested_wrappers(self):
        content = {"ephemeralMessage": {"message": {"viewOnceMessage": {"message": {"conversation": "oi"}}}}}
        assert unwrap_message_content(content) == {"conversation": "oi"}

    def test_quoted_details(self):
        content = {
            "extendedTextMessage": {
                "text": "resposta",
                "contextInfo": {
                    "stanzaId": "Q-1",
                    "participant": CONTACT_JID,
                    "quotedMessage": {"conversation": "pergunta"},
                },
            }
        }
        assert extract_quoted_details(content) == {
            "quotedMessageId": "Q-1",
            "quotedParticipant": CONTACT_JID,
            "quotedText": "pergunta",
        }

    def test_no_quote(self):
        assert extract_quoted_details({"conversation": "oi"}) is None
