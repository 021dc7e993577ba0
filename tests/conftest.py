"""Shared pytest fixtures for the inbound pipeline tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

TEST_POLL_SECRET_KEY = "11" * 32


@pytest.fixture(autouse=True)
def _poll_secret_key(monkeypatch):
    """Poll message secrets are sealed with this key in every test."""
    monkeypatch.setenv("POLL_SECRET_KEY", TEST_POLL_SECRET_KEY)


@pytest.fixture
def storage():
    from leadengine_inbound.infra.memory_storage import InMemoryStorage

    store = InMemoryStorage()
    store.add_tenant("tenant-1", slug="acme", name="Acme")
    return store


@pytest.fixture
def realtime():
    from leadengine_inbound.infra.realtime import RecordingRealtimeEmitter

    return RecordingRealtimeEmitter()
