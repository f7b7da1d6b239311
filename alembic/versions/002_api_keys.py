"""002 – API keys table for remote authentication.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Stores hashed API keys and the permissions granted to each.
Full keys are never stored, only their SHA-256 hashes.
"""

from alembic import op

# revision identifiers
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute('''
        CREATE TABLE IF NOT EXISTS api_keys (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            key_hash TEXT NOT NULL UNIQUE,
            key_prefix TEXT NOT NULL,
            permissions TEXT[] NOT NULL DEFAULT ARRAY['migration.manage'],
            created_at TIMESTAMPTZ DEFAULT NOW(),
            last_used_at TIMESTAMPTZ,
            revoked_at TIMESTAMPTZ,
            expires_at TIMESTAMPTZ
        )
    ''')

    # Index for fast lookup by hash (only active keys)
    op.execute('''
        CREATE INDEX IF NOT EXISTS idx_api_keys_hash
        ON api_keys (key_hash)
        WHERE revoked_at IS NULL
    ''')


def downgrade() -> None:
    op.execute('DROP INDEX IF EXISTS idx_api_keys_hash')
    op.execute('DROP TABLE IF EXISTS api_keys')
