"""Tests for poll vote decryption and option matching."""

import pytest

from leadengine_inbound.polls.crypto import (
    decrypt_poll_vote,
    encode_vote_message,
    encrypt_poll_vote,
    match_option_refs,
    option_hash,
    parse_vote_message,
)
from leadengine_inbound.polls.models import PollOption

SECRET = bytes(range(32))
IV = b"\x07" * 16


@pytest.fixture
def options():
    return [
        PollOption(id="Manhã", title="Manhã", index=0),
        PollOption(id="Tarde", title="Tarde", index=1),
    ]


class TestDecryptPollVote:
    def test_decrypts_vote_from_device(self):
        refs = [option_hash("Tarde")]
        enc_payload, enc_iv = encrypt_poll_vote(refs, SECRET, iv=IV)

        assert enc_iv == IV
        assert decrypt_poll_vote(enc_payload, enc_iv, SECRET) == refs

    def test_v2_polls_use_their_own_keys(self):
        refs = [option_hash("Manhã")]
        enc_payload, enc_iv = encrypt_poll_vote(refs, SECRET, media_type="poll_v2", iv=IV)

        assert decrypt_poll_vote(enc_payload, enc_iv, SECRET, "poll_v2") == refs
        assert decrypt_poll_vote(enc_payload, enc_iv, SECRET, "poll") is None

    def test_mac_mismatch_returns_none(self):
        enc_payload, enc_iv = encrypt_poll_vote([option_hash("Tarde")], SECRET, iv=IV)
        tampered = enc_payload[:-1] + bytes([enc_payload[-1] ^ 0xFF])

        assert decrypt_poll_vote(tampered, enc_iv, SECRET) is None

    def test_wrong_secret_returns_none(self):
        enc_payload, enc_iv = encrypt_poll_vote([option_hash("Tarde")], SECRET, iv=IV)
        assert decrypt_poll_vote(enc_payload, enc_iv, b"\x00" * 32) is None

    def test_missing_or_malformed_material(self):
        enc_payload, enc_iv = encrypt_poll_vote([b"x"], SECRET, iv=IV)

        assert decrypt_poll_vote(None, enc_iv, SECRET) is None
        assert decrypt_poll_vote(enc_payload, None, SECRET) is None
        assert decrypt_poll_vote(enc_payload, enc_iv, None) is None
        assert decrypt_poll_vote(enc_payload, b"short", SECRET) is None
        assert decrypt_poll_vote(b"\x00" * 10, enc_iv, SECRET) is None


class TestVoteMessage:
    def test_parse_selected_options(self):
        data = encode_vote_message([b"a", b"bc"])
        assert parse_vote_message(data) == [b"a", b"bc"]

    def test_other_fields_are_skipped(self):
        # field 2 varint, then field 1 bytes
        data = b"\x10\x05" + encode_vote_message([b"a"])
        assert parse_vote_message(data) == [b"a"]

    def test_truncated_message(self):
        assert parse_vote_message(b"\x0a\x05ab") is None
        assert parse_vote_message(b"\x0a") is None


class TestMatchOptionRefs:
    def test_matches_title_hash(self, options):
        assert match_option_refs([option_hash("Tarde")], options) == [options[1]]

    def test_matches_base64_option_id(self):
        option = PollOption(id="AQID", title="Sim")
        assert match_option_refs([b"\x01\x02\x03"], [option]) == [option]

    def test_unmatched_and_duplicate_refs_are_dropped(self, options):
        refs = [option_hash("Manhã"), b"unknown", option_hash("Manhã")]
        assert match_option_refs(refs, options) == [options[0]]
