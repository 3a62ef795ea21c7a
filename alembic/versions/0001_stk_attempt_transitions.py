"""stk attempt transition log

Revision ID: 0001_stk_attempt_transitions
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_stk_attempt_transitions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.stk_attempt_transitions (
            attempt_id text NOT NULL,
            seq integer NOT NULL,
            correlation_token text,
            from_state text NOT NULL,
            to_state text NOT NULL,
            event text NOT NULL,
            occurred_at timestamptz NOT NULL,
            metadata jsonb NOT NULL DEFAULT '{}'::jsonb,
            created_at timestamptz NOT NULL DEFAULT now(),
            PRIMARY KEY (attempt_id, seq)
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_stk_attempt_transitions_token
        ON app.stk_attempt_transitions (correlation_token);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.stk_attempt_transitions;")
