"""Tests for durable poll creation metadata."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from leadengine_inbound.infra.repositories.poll_state_repository import InMemoryPollStateRepository
from leadengine_inbound.polls.metadata_store import POLL_METADATA_SOURCE, PollMetadataStore, poll_metadata_key
from leadengine_inbound.polls.models import CreationMessageKey, PollOption
from leadengine_inbound.polls.runtime import PollRuntimeService

SECRET = b"poll-message-secret-32-bytes!!!!"
KEY = b"\x11" * 32
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


def _remembered_runtime():
    runtime = PollRuntimeService(secret_key=KEY)
    runtime.remember_poll_creation(
        "POLL-1",
        question="Qual horário?",
        options=[PollOption(id="Manhã", title="Manhã", index=0), PollOption(id="Tarde", title="Tarde", index=1)],
        creation_message_id="POLL-1",
        creation_message_key=CreationMessageKey(id="POLL-1", remote_jid="5511999999999@s.whatsapp.net"),
        message_secret=SECRET,
        tenant_id="tenant-1",
        instance_id="inst-1",
        media_type="poll_v2",
    )
    return runtime


class TestPollMetadataStore:
    def test_save_writes_sealed_row(self):
        repository = InMemoryPollStateRepository()
        PollMetadataStore(repository).save(_remembered_runtime().get_poll_metadata("POLL-1"))

        row = repository._rows[poll_metadata_key("POLL-1")]
        assert row["source"] == POLL_METADATA_SOURCE
        assert row["cursor"] == "POLL-1"
        assert row["payload"]["tenantId"] == "tenant-1"
        assert set(row["payload"]["messageSecret"]) == {"v", "iv", "tag", "ciphertext"}
        assert SECRET.decode() not in str(row["payload"])

    def test_load_keeps_creation_details(self):
        repository = InMemoryPollStateRepository()
        clock = FakeClock()
        store = PollMetadataStore(repository, ttl_ms=60_000, clock=clock)
        store.save(_remembered_runtime().get_poll_metadata("POLL-1"))

        clock.now = START + timedelta(seconds=20)
        metadata, remaining_ms = store.load("POLL-1")

        assert remaining_ms == 40_000
        assert metadata.question == "Qual horário?"
        assert [option.title for option in metadata.options] == ["Manhã", "Tarde"]
        assert metadata.creation_message_key.remote_jid == "5511999999999@s.whatsapp.net"
        assert metadata.media_type == "poll_v2"

    def test_expired_row_is_ignored(self):
        clock = FakeClock()
        store = PollMetadataStore(InMemoryPollStateRepository(), ttl_ms=1000, clock=clock)
        store.save(_remembered_runtime().get_poll_metadata("POLL-1"))

        clock.now = START + timedelta(seconds=1)

        assert store.load("POLL-1") is None
        assert store.load("POLL-2") is None


class TestRecall:
    def test_fresh_runtime_is_repopulated(self):
        repository = InMemoryPollStateRepository()
        asyncio.run(PollMetadataStore(repository).persist(_remembered_runtime(), "POLL-1"))

        fresh = PollRuntimeService(secret_key=KEY)
        recalled = asyncio.run(PollMetadataStore(repository).recall(fresh, "POLL-1"))

        assert recalled.tenant_id == "tenant-1"
        assert fresh.get_poll_metadata_by_creation_id("POLL-1").poll_id == "POLL-1"
        assert fresh.get_decrypted_secret("POLL-1") == SECRET

    def test_live_entry_is_not_replaced(self):
        repository = InMemoryPollStateRepository()
        store = PollMetadataStore(repository)
        store.save(_remembered_runtime().get_poll_metadata("POLL-1"))
        runtime = PollRuntimeService(secret_key=KEY)
        runtime.remember_poll_creation("POLL-1", tenant_id="tenant-2")

        recalled = asyncio.run(store.recall(runtime, "POLL-1"))

        assert recalled.tenant_id == "tenant-2"

    def test_unknown_or_blank_poll(self):
        store = PollMetadataStore(InMemoryPollStateRepository())
        runtime = PollRuntimeService(secret_key=KEY)

        assert asyncio.run(store.recall(runtime, "POLL-9")) is None
        assert asyncio.run(store.recall(runtime, "  ")) is None

    def test_repository_failures_are_logged_not_raised(self):
        repository = MagicMock()
        repository.get.side_effect = RuntimeError("db down")
        repository.upsert.side_effect = RuntimeError("db down")
        store = PollMetadataStore(repository)
        runtime = _remembered_runtime()

        asyncio.run(store.persist(runtime, "POLL-1"))

        assert asyncio.run(store.recall(PollRuntimeService(secret_key=KEY), "POLL-1")) is None
        repository.upsert.assert_called_once()
