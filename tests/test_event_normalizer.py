"""Tests for transport event -> InboundEnvelope normalization."""

from leadengine_inbound.whatsapp.event_normalizer import (
    TransportHints,
    normalize,
    normalize_many,
    resolve_type_hint,
)
from leadengine_inbound.whatsapp.models import EnvelopeMessage, EnvelopeUpdate

from helpers import CONTACT_JID, text_entry, upsert_event


def _contract_event(event_type: str = "MESSAGE_INBOUND", **payload_overrides):
    payload = {
        "contact": {"phone": "+5511987654321", "name": "Maria"},
        "message": {"id": "wamid-1", "conversation": "oi", "key": {"remoteJid": CONTACT_JID}},
        "timestamp": 1_700_000_000,
    }
    payload.update(payload_overrides)
    return {
        "id": "evt-1",
        "type": event_type,
        "instanceId": "inst-1",
        "tenantId": "tenant-1",
        "payload": payload,
    }


class TestUpsertEvents:
    def test_upsert_yields_one_envelope_per_entry(self):
        envelopes = normalize_many(upsert_event(text_entry("MSG-1"), text_entry("MSG-2")))

        assert [envelope.message.id for envelope in envelopes] == ["MSG-1", "MSG-2"]
        first = envelopes[0]
        assert first.origin == "webhook"
        assert first.instance_id == "inst-1"
        assert first.tenant_id == "tenant-1"
        assert first.chat_id == CONTACT_JID
        assert isinstance(first.message, EnvelopeMessage)
        assert first.message.external_id == "MSG-1"
        assert first.message.direction == "INBOUND"
        assert first.message.contact.push_name == "Maria"
        assert first.message.metadata["normalizedIndex"] == 0
        assert envelopes[1].message.metadata["normalizedIndex"] == 1
        assert first.message.metadata["messageType"] == "text"

    def test_hints_override_event_identifiers(self):
        hints = TransportHints(origin="broker", tenant_id="tenant-x", request_id="req-1")

        envelope = normalize(upsert_event(text_entry()), hints)

        assert envelope.origin == "broker"
        assert envelope.tenant_id == "tenant-x"
        assert envelope.message.metadata["tenantId"] == "tenant-x"
        assert envelope.message.metadata["requestId"] == "req-1"
        assert envelope.message.metadata["broker"]["origin"] == "broker"

    def test_upsert_without_instance_is_dropped(self):
        assert normalize_many(upsert_event(text_entry(), instance_id=None)) == []


class TestContractEvents:
    def test_inbound_contract_event(self):
        envelope = normalize(_contract_event())

        assert envelope.instance_id == "inst-1"
        assert envelope.tenant_id == "tenant-1"
        assert envelope.chat_id == CONTACT_JID
        assert envelope.message.id == "wamid-1"
        assert envelope.message.direction == "INBOUND"
        assert envelope.message.timestamp == "2023-11-14T22:13:20+00:00"
        assert envelope.message.contact.phone == "+5511987654321"
        assert envelope.message.metadata["contact"] == {"phone": "+5511987654321", "name": "Maria"}

    def test_outbound_contract_event(self):
        envelope = normalize(_contract_event("MESSAGE_OUTBOUND"))
        assert envelope.message.direction == "OUTBOUND"

    def test_event_field_substitutes_for_type(self):
        event = _contract_event()
        event["event"] = event.pop("type")
        assert normalize(event).message.id == "wamid-1"

    def test_invalid_contract_event_is_dropped(self):
        event = _contract_event()
        del event["id"]
        assert normalize_many(event) == []


class TestWebhookMessages:
    def test_flattened_webhook_message(self):
        event = {
            "event": "message",
            "instanceId": "inst-1",
            "message": {"id": "w-1", "type": "text", "text": "oi"},
            "from": {"phone": "+5511987654321", "pushName": "Maria"},
            "metadata": {"contact": {"remoteJid": CONTACT_JID}, "tenantId": "tenant-1"},
        }

        envelope = normalize(event)

        assert envelope.message.id == "w-1"
        assert envelope.chat_id == CONTACT_JID
        assert envelope.tenant_id == "tenant-1"
        assert envelope.message.contact.phone == "+5511987654321"

    def test_webhook_message_without_message_is_dropped(self):
        assert normalize_many({"event": "message", "instanceId": "inst-1"}) == []


class TestStatusUpdates:
    def test_numeric_status_is_named(self):
        event = {
            "event": "WHATSAPP_MESSAGES_UPDATE",
            "instanceId": "inst-1",
            "payload": {"updates": [{"key": {"id": "MSG-1", "remoteJid": CONTACT_JID}, "update": {"status": 4}}]},
        }

        envelopes = normalize_many(event)

        assert len(envelopes) == 1
        assert envelopes[0].message == EnvelopeUpdate(id="MSG-1", status="READ")
        assert envelopes[0].chat_id == CONTACT_JID

    def test_update_without_status_is_skipped(self):
        event = {"event": "MESSAGES_UPDATE", "instanceId": "inst-1", "payload": {"updates": [{"key": {"id": "x"}}]}}
        assert normalize_many(event) == []


class TestCanonicalEnvelopes:
    def test_canonical_message_passes_through(self):
        raw = {
            "origin": "poll_choice",
            "instanceId": "inst-1",
            "tenantId": "tenant-1",
            "chatId": "5511987654321",
            "message": {"kind": "message", "id": "m-1", "payload": {"id": "m-1", "text": "oi"}},
        }

        envelope = normalize(raw)

        assert envelope.origin == "poll_choice"
        assert envelope.chat_id == CONTACT_JID
        assert envelope.message.external_id == "m-1"

    def test_canonical_update(self):
        raw = {"instanceId": "inst-1", "message": {"kind": "update", "id": "m-1", "status": "DELIVERED"}}
        assert normalize(raw).message == EnvelopeUpdate(id="m-1", status="DELIVERED")


class TestUnusableEvents:
    def test_non_object_and_unknown_events(self):
        assert normalize_many(["not", "an", "object"]) == []
        assert normalize_many({"event": "CONNECTION_UPDATE"}) == []
        assert normalize(None) is None


class TestResolveTypeHint:
    def test_explicit_type_wins(self):
        assert resolve_type_hint({"type": "Image"}) == "image"

    def test_transport_labels_are_skipped(self):
        message = {"type": "chat", "pollUpdateMessage": {}}
        assert resolve_type_hint(message, {"event": "message"}) == "poll_update"

    def test_no_hint(self):
        assert resolve_type_hint({"text": "oi"}) is None
