"""Poll choice state persistence.

State rows live in ``processed_integration_events`` keyed by
``poll-state:{pollId}`` with source ``whatsapp.poll_state``. The Postgres
implementation uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import copy
import json
from typing import Any, Protocol

from psycopg2.extensions import cursor as PgCursor

from leadengine_inbound.infra.db import fetchone, txn


class PollStateRepository(Protocol):
    def get(self, state_id: str) -> dict[str, Any] | None: ...

    def upsert(self, state_id: str, *, source: str, cursor: str, payload: dict[str, Any]) -> None: ...


class InMemoryPollStateRepository:
    """Process-local store; payloads are deep-copied in and out."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}

    def get(self, state_id: str) -> dict[str, Any] | None:
        row = self._rows.get(state_id)
        return copy.deepcopy(row["payload"]) if row else None

    def upsert(self, state_id: str, *, source: str, cursor: str, payload: dict[str, Any]) -> None:
        self._rows[state_id] = {
            "source": source,
            "cursor": cursor,
            "payload": copy.deepcopy(payload),
        }

    def clear(self) -> None:
        self._rows.clear()


def select_state(cur: PgCursor, state_id: str) -> dict[str, Any] | None:
    row = fetchone(
        cur,
        "SELECT payload FROM processed_integration_events WHERE id = %s",
        (state_id,),
    )
    if row is None:
        return None
    payload = row[0]
    # psycopg2 decodes jsonb; json columns may come back as text
    return json.loads(payload) if isinstance(payload, str) else payload


def upsert_state(
    cur: PgCursor,
    *,
    state_id: str,
    source: str,
    cursor: str,
    payload: dict[str, Any],
) -> None:
    cur.execute(
        """
        INSERT INTO processed_integration_events (id, source, cursor, payload)
        VALUES (%s, %s, %s, %s::jsonb)
        ON CONFLICT (id) DO UPDATE
        SET cursor = EXCLUDED.cursor,
            payload = EXCLUDED.payload,
            updated_at = now()
        """,
        (state_id, source, cursor, json.dumps(payload)),
    )


class PostgresPollStateRepository:
    """Poll state rows in Postgres, one short transaction per call."""

    def get(self, state_id: str) -> dict[str, Any] | None:
        with txn() as cur:
            return select_state(cur, state_id)

    def upsert(self, state_id: str, *, source: str, cursor: str, payload: dict[str, Any]) -> None:
        with txn() as cur:
            upsert_state(cur, state_id=state_id, source=source, cursor=cursor, payload=payload)
