"""processed_integration_events table (poll choice state).

Revision ID: 001_processed_integration_events
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op


revision = "001_processed_integration_events"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(
        """
        CREATE TABLE processed_integration_events (
            id          TEXT PRIMARY KEY,
            source      TEXT NOT NULL,
            cursor      TEXT,
            payload     JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX processed_integration_events_source_idx
            ON processed_integration_events (source);
        """
    )


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql("DROP TABLE processed_integration_events;")
