"""Tests for transport payload readers."""

from datetime import datetime, timezone

from leadengine_inbound.whatsapp.payloads import (
    MAX_SAFE_INTEGER,
    first_present,
    first_string,
    first_string_of,
    get_path,
    read_bool,
    read_int,
    read_number,
    read_string,
    sanitize_metadata,
    unique_strings,
)


class TestReaders:
    def test_read_string_trims_and_rejects_blank(self):
        assert read_string("  abc ") == "abc"
        assert read_string("   ") is None
        assert read_string(None) is None

    def test_read_string_renders_numbers(self):
        assert read_string(42) == "42"
        assert read_string(3.0) == "3"
        assert read_string(True) is None

    def test_read_number_accepts_numeric_strings(self):
        assert read_number("12.5") == 12.5
        assert read_number("abc") is None
        assert read_number(float("nan")) is None

    def test_read_number_accepts_protobuf_long(self):
        assert read_int({"low": 1700000000, "high": 0, "unsigned": False}) == 1700000000

    def test_read_bool(self):
        assert read_bool(True) is True
        assert read_bool("false") is False
        assert read_bool("maybe") is None


class TestPaths:
    PAYLOAD = {"data": {"key": {"id": " msg-1 ", "remoteJid": ""}, "count": 3}}

    def test_get_path_walks_nested_dicts(self):
        assert get_path(self.PAYLOAD, "data.count") == 3
        assert get_path(self.PAYLOAD, ("data", "key", "id")) == " msg-1 "
        assert get_path(self.PAYLOAD, "data.missing.id") is None

    def test_first_string_skips_empty_candidates(self):
        """The first candidate that yields a usable value wins."""
        result = first_string(self.PAYLOAD, ["data.key.remoteJid", "data.key.id"])
        assert result == "msg-1"

    def test_first_present_uses_reader(self):
        assert first_present(self.PAYLOAD, ["data.key.id", "data.count"], read_int) == 3

    def test_first_string_of_and_unique_strings(self):
        assert first_string_of([None, " ", "x", "y"]) == "x"
        assert unique_strings(["a", " a ", None, "b", "a"]) == ["a", "b"]


class TestSanitizeMetadata:
    def test_bytes_become_base64(self):
        assert sanitize_metadata({"secret": b"\x01\x02"}) == {"secret": "AQI="}

    def test_large_integers_become_strings(self):
        result = sanitize_metadata({"small": 10, "big": MAX_SAFE_INTEGER + 1})
        assert result == {"small": 10, "big": str(MAX_SAFE_INTEGER + 1)}

    def test_drops_none_values_and_converts_collections(self):
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        result = sanitize_metadata({"a": None, "b": (1, 2), "c": {"at": when}})
        assert result == {"b": [1, 2], "c": {"at": "2024-01-02T03:04:05+00:00"}}
