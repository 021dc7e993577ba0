"""Tests for the in-process poll runtime registry."""

import base64
import hashlib

from leadengine_inbound.polls.models import CreationMessageKey, PollOption
from leadengine_inbound.polls.runtime import PollRuntimeService, coerce_secret

SECRET = b"poll-message-secret-32-bytes!!!!"
KEY = b"\x11" * 32


class FakeClock:
    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _runtime(clock=None, ttl_ms=1000, key=KEY):
    return PollRuntimeService(ttl_ms=ttl_ms, secret_key=key, clock=clock or FakeClock())


class TestRememberPollCreation:
    def test_lookup_by_poll_and_creation_id(self):
        runtime = _runtime()
        runtime.remember_poll_creation(
            "poll-1",
            question="Qual horário?",
            options=[PollOption(id="Tarde", title="Tarde", index=1), PollOption(id="Manhã", title="Manhã", index=0)],
            creation_message_id="POLL-MSG-1",
            creation_message_key=CreationMessageKey(id="POLL-MSG-1", from_me=True),
            tenant_id="tenant-1",
            instance_id="inst-1",
            media_type="poll_v2",
        )

        entry = runtime.get_poll_metadata("poll-1")
        assert entry.question == "Qual horário?"
        assert [option.id for option in entry.options] == ["Manhã", "Tarde"]
        assert entry.media_type == "poll_v2"
        assert runtime.get_poll_metadata_by_creation_id("POLL-MSG-1").poll_id == "poll-1"

    def test_returned_metadata_is_a_copy(self):
        runtime = _runtime()
        runtime.remember_poll_creation("poll-1", question="Q")

        runtime.get_poll_metadata("poll-1").question = "changed"

        assert runtime.get_poll_metadata("poll-1").question == "Q"

    def test_blank_poll_id_is_ignored(self):
        runtime = _runtime()
        runtime.remember_poll_creation("  ", question="Q")
        assert runtime.get_poll_metadata("  ") is None

    def test_refresh_keeps_known_fields_and_merges_options(self):
        runtime = _runtime()
        runtime.remember_poll_creation(
            "poll-1", question="Q", tenant_id="tenant-1", options=[PollOption(id="a", title="A", index=0)]
        )
        runtime.remember_poll_creation("poll-1", options=[PollOption(id="a", index=0), PollOption(id="b", index=1)])

        entry = runtime.get_poll_metadata("poll-1")
        assert entry.question == "Q"
        assert entry.tenant_id == "tenant-1"
        assert [(option.id, option.title) for option in entry.options] == [("a", "A"), ("b", None)]


class TestMessageSecret:
    def test_secret_is_sealed_and_opened(self):
        runtime = _runtime()
        runtime.remember_poll_creation("poll-1", message_secret=base64.b64encode(SECRET).decode())

        entry = runtime.get_poll_metadata("poll-1")
        assert entry.message_secret["v"] == 1
        assert entry.message_secret_fingerprint == hashlib.sha256(SECRET).hexdigest()
        assert runtime.get_decrypted_secret("poll-1") == SECRET

    def test_secret_survives_refresh_without_secret(self):
        runtime = _runtime()
        runtime.remember_poll_creation("poll-1", message_secret=SECRET)
        runtime.remember_poll_creation("poll-1", question="Q")

        assert runtime.get_decrypted_secret("poll-1") == SECRET

    def test_without_key_only_fingerprint_is_kept(self, monkeypatch):
        monkeypatch.delenv("POLL_SECRET_KEY", raising=False)
        runtime = PollRuntimeService(clock=FakeClock())
        runtime.remember_poll_creation("poll-1", message_secret=SECRET)

        entry = runtime.get_poll_metadata("poll-1")
        assert entry.message_secret is None
        assert entry.message_secret_fingerprint == hashlib.sha256(SECRET).hexdigest()
        assert runtime.get_decrypted_secret("poll-1") is None

    def test_key_from_environment(self):
        runtime = PollRuntimeService(clock=FakeClock())
        runtime.remember_poll_creation("poll-1", message_secret=SECRET)
        assert runtime.get_decrypted_secret("poll-1") == SECRET

    def test_unknown_poll(self):
        assert _runtime().get_decrypted_secret("missing") is None


class TestExpiry:
    def test_entries_expire_after_ttl(self):
        clock = FakeClock(0)
        runtime = _runtime(clock, ttl_ms=100)
        runtime.remember_poll_creation("poll-1", creation_message_id="MSG-1")

        clock.now = 99
        assert runtime.get_poll_metadata("poll-1") is not None
        clock.now = 100
        assert runtime.get_poll_metadata("poll-1") is None
        assert runtime.get_poll_metadata_by_creation_id("MSG-1") is None

    def test_merge_does_not_restart_ttl(self):
        clock = FakeClock(0)
        runtime = _runtime(clock, ttl_ms=100)
        runtime.remember_poll_creation("poll-1")

        clock.now = 50
        runtime.merge_metadata("poll-1", question="Q", tenant_id="tenant-1")
        assert runtime.get_poll_metadata("poll-1").tenant_id == "tenant-1"

        clock.now = 100
        assert runtime.get_poll_metadata("poll-1") is None

    def test_merge_creates_missing_entry(self):
        runtime = _runtime()
        runtime.merge_metadata("poll-2", question="Q", creation_message_id="MSG-2")
        assert runtime.get_poll_metadata_by_creation_id("MSG-2").question == "Q"


class TestVoteSelections:
    def test_selection_recorded_for_known_poll(self):
        runtime = _runtime()
        runtime.remember_poll_creation("poll-1")
        runtime.record_vote_selection("poll-1", "voter@s.whatsapp.net", ["a", " a ", "b"], [PollOption(id="a")])

        selection = runtime.get_vote_selection("poll-1", "voter@s.whatsapp.net")
        assert selection.option_ids == ("a", "b")
        assert selection.selected_options == (PollOption(id="a"),)

    def test_unknown_poll_is_ignored(self):
        runtime = _runtime()
        runtime.record_vote_selection("poll-x", "voter", ["a"], [])
        assert runtime.get_vote_selection("poll-x", "voter") is None

    def test_clear(self):
        runtime = _runtime()
        runtime.remember_poll_creation("poll-1")
        runtime.clear()
        assert runtime.get_poll_metadata("poll-1") is None


class TestCoerceSecret:
    def test_variants(self):
        assert coerce_secret(SECRET) == SECRET
        assert coerce_secret(base64.b64encode(SECRET).decode()) == SECRET
        assert coerce_secret(base64.urlsafe_b64encode(b"\xfb\xff").decode().rstrip("=")) == b"\xfb\xff"
        assert coerce_secret(b"") is None
        assert coerce_secret(None) is None
