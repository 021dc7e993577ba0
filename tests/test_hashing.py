"""Tests for idempotency keys and base64 helpers."""

import hashlib

import pytest

from leadengine_inbound.infra.hashing import (
    b64url_decode,
    b64url_nopad,
    build_idempotency_key,
    fingerprint_secret,
)


class TestBuildIdempotencyKey:
    def test_matches_documented_format(self):
        expected = hashlib.sha256(b"tenant-1|inst-1|msg-1|2").hexdigest()
        assert build_idempotency_key("tenant-1", "inst-1", "msg-1", 2) == expected

    def test_missing_tenant_renders_empty(self):
        expected = hashlib.sha256(b"|inst-1|msg-1|0").hexdigest()
        assert build_idempotency_key(None, "inst-1", "msg-1") == expected

    def test_index_changes_key(self):
        assert build_idempotency_key("t", "i", "m", 0) != build_idempotency_key("t", "i", "m", 1)


class TestBase64:
    def test_nopad_has_no_padding(self):
        encoded = b64url_nopad(b"\xfb\xff")
        assert "=" not in encoded
        assert b64url_decode(encoded) == b"\xfb\xff"

    def test_decode_accepts_standard_alphabet(self):
        assert b64url_decode("+/8=") == b"\xfb\xff"

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            b64url_decode("a")

    def test_fingerprint_is_sha256(self):
        assert fingerprint_secret(b"k") == hashlib.sha256(b"k").hexdigest()
