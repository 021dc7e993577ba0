"""Tests for contact, chat and ticket identifier helpers."""

from leadengine_inbound.whatsapp.identifiers import (
    compose_deterministic_id,
    is_group_jid,
    normalize_chat_id,
    normalize_remote_jid,
    pick_preferred_name,
    resolve_deterministic_contact_identifier,
    resolve_ticket_agreement_id,
    sanitize_document,
    sanitize_phone,
)


class TestSanitizePhone:
    def test_valid_phone_gets_plus_prefix(self):
        assert sanitize_phone("55 (11) 98765-4321") == "+5511987654321"

    def test_short_numbers_are_rejected(self):
        assert sanitize_phone("12345") is None
        assert sanitize_phone("") is None
        assert sanitize_phone(None) is None


class TestSanitizeDocument:
    def test_prefers_digits_of_value(self):
        assert sanitize_document("123.456.789-00") == "12345678900"

    def test_falls_back_to_digits_then_text(self):
        assert sanitize_document("ab", ["x1", "tel: 5511"]) == "5511"
        assert sanitize_document(None, [None, "  contact-a "]) == "contact-a"
        assert sanitize_document(None) == ""


class TestNames:
    def test_pick_preferred_name(self):
        assert pick_preferred_name(None, "  ", " Maria ") == "Maria"
        assert pick_preferred_name(None) is None

    def test_compose_deterministic_id(self):
        assert compose_deterministic_id(["inst", " c1 ", "inst"]) == "inst:c1"
        assert compose_deterministic_id(["inst", None], min_parts=2) is None


class TestJids:
    def test_normalize_remote_jid_keeps_digits(self):
        assert normalize_remote_jid("5511987654321:12@s.whatsapp.net") == "5511987654321"

    def test_normalize_remote_jid_keeps_short_local_part(self):
        assert normalize_remote_jid("abc@lid") == "abc"
        assert normalize_remote_jid(None) is None

    def test_group_detection(self):
        assert is_group_jid("12036304@g.us")
        assert not is_group_jid("5511987654321@s.whatsapp.net")
        assert not is_group_jid(None)

    def test_normalize_chat_id(self):
        assert normalize_chat_id("+55 11 98765-4321") == "5511987654321@s.whatsapp.net"
        assert normalize_chat_id("123@g.us") == "123@g.us"
        assert normalize_chat_id(" ") is None


class TestDeterministicContactIdentifier:
    def test_contact_id_wins_and_is_prefixed_with_instance(self):
        identity = resolve_deterministic_contact_identifier(
            "inst-1", {"sessionId": "s-1"}, {"id": "c-1"}
        )
        assert identity.deterministic_id == "inst-1:c-1"
        assert identity.contact_id == "c-1"
        assert identity.session_id == "s-1"

    def test_session_id_used_without_contact(self):
        identity = resolve_deterministic_contact_identifier("inst-1", {"threadId": "t-9"}, None)
        assert identity.deterministic_id == "inst-1:t-9"
        assert identity.contact_id is None

    def test_external_id_is_last_resort(self):
        identity = resolve_deterministic_contact_identifier("inst-1", {}, {}, external_id="ext-1")
        assert identity.deterministic_id == "inst-1:ext-1"

    def test_nothing_resolvable(self):
        identity = resolve_deterministic_contact_identifier(None, None, None)
        assert identity.deterministic_id is None


class TestTicketAgreement:
    def test_direct_and_metadata_agreement(self):
        assert resolve_ticket_agreement_id({"agreementId": "ag-1"}) == "ag-1"
        assert resolve_ticket_agreement_id({"metadata": {"agreement": {"id": "ag-2"}}}) == "ag-2"
        assert resolve_ticket_agreement_id(None) is None
