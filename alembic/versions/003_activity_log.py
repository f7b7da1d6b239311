"""003 – Activity and audit log.

Revision ID: 003
Revises: 002
Create Date: 2026-10-19

Tracks who started, paused, cancelled or reset a migration and when a run
finished.
"""

from alembic import op

# revision identifiers
revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade():
    op.execute("""
        CREATE TABLE IF NOT EXISTS activity_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            ts TIMESTAMPTZ NOT NULL DEFAULT now(),
            actor TEXT,
            action TEXT NOT NULL,
            details JSONB DEFAULT '{}'::jsonb,
            run_id TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_activity_log_ts
            ON activity_log (ts DESC);

        CREATE INDEX IF NOT EXISTS idx_activity_log_action
            ON activity_log (action);

        CREATE INDEX IF NOT EXISTS idx_activity_log_run
            ON activity_log (run_id);
    """)


def downgrade():
    op.execute("""DROP TABLE IF EXISTS activity_log;""")
