"""001 – Migration run state, attachment catalog and migration markers.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

migration_runs holds a single row (id = 1) describing the current run.
media_attachments is the catalog of uploaded files the markers refer to;
migration_markers records where each migrated attachment now lives.
"""

from alembic import op

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute('''
        CREATE TABLE IF NOT EXISTS migration_runs (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            status TEXT NOT NULL DEFAULT 'ready'
                CHECK (status IN ('ready', 'running', 'paused', 'cancelled', 'finished', 'error')),
            run_id TEXT NOT NULL,
            file_list JSONB NOT NULL DEFAULT '[]'::jsonb,
            cursor_position INTEGER NOT NULL DEFAULT 0 CHECK (cursor_position >= 0),
            total INTEGER NOT NULL DEFAULT 0 CHECK (total >= 0),
            processing INTEGER NOT NULL DEFAULT 0,
            uploaded_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            errors JSONB NOT NULL DEFAULT '[]'::jsonb,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            last_error TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (cursor_position <= total)
        )
    ''')

    # Seed the singleton row
    op.execute('''
        INSERT INTO migration_runs (id, status, run_id)
        VALUES (1, 'ready', md5(random()::text || clock_timestamp()::text))
        ON CONFLICT (id) DO NOTHING
    ''')

    op.execute('''
        CREATE TABLE IF NOT EXISTS media_attachments (
            id BIGSERIAL PRIMARY KEY,
            relative_path TEXT NOT NULL UNIQUE,
            mime_type TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE IF NOT EXISTS migration_markers (
            attachment_id BIGINT PRIMARY KEY
                REFERENCES media_attachments(id) ON DELETE CASCADE,
            bucket TEXT NOT NULL,
            object_key TEXT NOT NULL,
            url TEXT,
            migrated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE INDEX IF NOT EXISTS idx_migration_markers_key
        ON migration_markers (bucket, object_key)
    ''')


def downgrade() -> None:
    op.execute('DROP INDEX IF EXISTS idx_migration_markers_key')
    op.execute('DROP TABLE IF EXISTS migration_markers')
    op.execute('DROP TABLE IF EXISTS media_attachments')
    op.execute('DROP TABLE IF EXISTS migration_runs')
