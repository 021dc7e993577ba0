"""Tests for provider message coercion."""

from leadengine_inbound.whatsapp.message_normalizer import (
    FALLBACK_TEXT,
    determine_type,
    extract_text,
    normalize_inbound_message,
)
from leadengine_inbound.whatsapp.models import MessageType


class TestNormalizeInboundMessage:
    def test_text_message(self):
        message = normalize_inbound_message({"id": "m-1", "conversation": "oi", "messageTimestamp": 1_700_000_000})

        assert message.id == "m-1"
        assert message.external_id == "m-1"
        assert message.type is MessageType.TEXT
        assert message.text == "oi"
        assert message.broker_message_timestamp == 1_700_000_000

    def test_external_id_overrides_message_id(self):
        message = normalize_inbound_message({"id": "m-1", "text": "oi"}, external_id="ext-1")
        assert message.external_id == "ext-1"

    def test_empty_payload_gets_placeholder_and_generated_id(self):
        message = normalize_inbound_message({})

        assert message.text == FALLBACK_TEXT
        assert message.id.startswith("wamid-")
        assert message.type is MessageType.TEXT

    def test_flattened_media_message(self):
        payload = {
            "id": "img-1",
            "type": "media",
            "text": "foto",
            "media": {"mediaType": "image"},
            "imageMessage": {
                "url": "https://cdn.example/img.jpg",
                "mimetype": "image/jpeg",
                "caption": "foto",
                "fileLength": 2048,
                "mediaKey": "a2V5",
                "directPath": "/v/abc",
            },
        }

        message = normalize_inbound_message(payload)

        assert message.type is MessageType.IMAGE
        assert message.type.is_media
        assert message.caption == "foto"
        assert message.media_url == "https://cdn.example/img.jpg"
        assert message.mimetype == "image/jpeg"
        assert message.file_size == 2048
        assert message.media_key == "a2V5"
        assert message.direct_path == "/v/abc"

    def test_location_message(self):
        payload = {"locationMessage": {"degreesLatitude": -23.5, "degreesLongitude": -46.6, "name": "Loja"}}

        message = normalize_inbound_message(payload)

        assert message.type is MessageType.LOCATION
        assert message.location == {"latitude": -23.5, "longitude": -46.6, "name": "Loja"}

    def test_contacts_message(self):
        payload = {"contactsArrayMessage": {"contacts": [{"displayName": "Ana"}]}}

        message = normalize_inbound_message(payload)

        assert message.type is MessageType.CONTACT
        assert message.contacts == [{"name": "Ana", "phone": None}]

    def test_button_reply(self):
        payload = {"buttonsResponseMessage": {"selectedButtonId": "b-1", "selectedDisplayText": "Sim"}}

        message = normalize_inbound_message(payload)

        assert message.type is MessageType.TEMPLATE
        assert message.button_payload == "b-1"
        assert message.template_payload == "Sim"

    def test_poll_choice_metadata_is_carried(self):
        payload = {"text": "voto", "metadata": {"pollChoice": {"pollId": "poll-1"}}}
        assert normalize_inbound_message(payload).poll_choice == {"pollId": "poll-1"}


class TestDetermineType:
    def test_aliases(self):
        assert determine_type({"type": "ptt"}) is MessageType.AUDIO
        assert determine_type({"type": "poll_choice"}) is MessageType.TEXT
        assert determine_type({"type": "vcard"}) is MessageType.CONTACT

    def test_type_hint_used_when_payload_has_no_type(self):
        assert determine_type({}, "video") is MessageType.VIDEO

    def test_unknown_type_falls_back_to_structure(self):
        assert determine_type({"type": "weird", "audioMessage": {"ptt": True}}) is MessageType.AUDIO


class TestExtractText:
    def test_nested_lookup(self):
        assert extract_text({"message": {"body": " oi "}}) == "oi"
        assert extract_text([None, "", {"title": "t"}]) == "t"
        assert extract_text({"unknown": "x"}) is None
