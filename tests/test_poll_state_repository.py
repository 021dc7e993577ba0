"""Tests for poll state persistence."""

import os
import uuid
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest

from leadengine_inbound.infra.repositories.poll_state_repository import (
    InMemoryPollStateRepository,
    PostgresPollStateRepository,
    select_state,
    upsert_state,
)

# Skip integration tests if DATABASE_URL is not set
_skip_no_db = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)


class TestInMemoryRepository:
    def test_payloads_are_copied(self):
        repository = InMemoryPollStateRepository()
        payload = {"poll_id": "p1", "votes": {}}
        repository.upsert("poll-state:p1", source="whatsapp.poll_state", cursor="p1", payload=payload)

        payload["votes"]["x"] = {}
        loaded = repository.get("poll-state:p1")
        loaded["poll_id"] = "changed"

        assert repository.get("poll-state:p1") == {"poll_id": "p1", "votes": {}}

    def test_missing_and_clear(self):
        repository = InMemoryPollStateRepository()
        repository.upsert("a", source="s", cursor="c", payload={})
        repository.clear()
        assert repository.get("a") is None


class TestSqlHelpers:
    def test_select_decodes_text_payload(self):
        cur = MagicMock()
        cur.fetchone.return_value = ('{"poll_id": "p1"}',)

        assert select_state(cur, "poll-state:p1") == {"poll_id": "p1"}
        query, params = cur.execute.call_args[0]
        assert "FROM processed_integration_events" in query
        assert params == ("poll-state:p1",)

    def test_select_missing_row(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        assert select_state(cur, "poll-state:p1") is None

    def test_upsert_serializes_payload(self):
        cur = MagicMock()

        upsert_state(cur, state_id="poll-state:p1", source="whatsapp.poll_state", cursor="p1", payload={"a": 1})

        query, params = cur.execute.call_args[0]
        assert "ON CONFLICT (id) DO UPDATE" in query
        assert params == ("poll-state:p1", "whatsapp.poll_state", "p1", '{"a": 1}')


class TestPostgresRepositoryWithMockedTxn:
    def test_get_and_upsert_run_in_transactions(self):
        cur = MagicMock()
        cur.fetchone.return_value = ({"poll_id": "p1"},)

        @contextmanager
        def fake_txn():
            yield cur

        with patch(
            "leadengine_inbound.infra.repositories.poll_state_repository.txn", fake_txn
        ):
            repository = PostgresPollStateRepository()
            repository.upsert("poll-state:p1", source="whatsapp.poll_state", cursor="p1", payload={})
            assert repository.get("poll-state:p1") == {"poll_id": "p1"}

        assert cur.execute.call_count == 2


@_skip_no_db
class TestPostgresRepository:
    """Requires a migrated database."""

    def test_upsert_then_get(self):
        repository = PostgresPollStateRepository()
        state_id = f"poll-state:test-{uuid.uuid4()}"

        repository.upsert(state_id, source="whatsapp.poll_state", cursor="c1", payload={"votes": {"a": 1}})
        repository.upsert(state_id, source="whatsapp.poll_state", cursor="c2", payload={"votes": {"b": 2}})

        assert repository.get(state_id) == {"votes": {"b": 2}}

    def test_get_missing(self):
        assert PostgresPollStateRepository().get(f"poll-state:missing-{uuid.uuid4()}") is None
