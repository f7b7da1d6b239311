"""
Database schema migration runner for the media offload migrator.

Can be called from api.py startup, a container entrypoint, or the CLI.

Usage:
    # From Python:
    from migrate import run_migrations
    run_migrations()

    # From CLI:
    python migrate.py
"""

import sys
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

# Directory where this file lives (project root)
PROJECT_ROOT = Path(__file__).parent.resolve()


def _get_alembic_config() -> Config:
    """Create Alembic config pointing to alembic.ini in project root."""
    alembic_ini = PROJECT_ROOT / "alembic.ini"
    cfg = Config(str(alembic_ini))
    # Ensure script_location is absolute
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    return cfg


def _get_database_url() -> str:
    """Get database URL from application config."""
    from config import get_config
    return get_config().database.connection_string


def _get_pending_migrations(db_url: str, alembic_cfg: Config) -> list:
    """Check for pending migrations.

    Returns list of pending revision IDs, empty if database is up to date.
    """
    engine = create_engine(db_url)
    try:
        with engine.connect() as conn:
            context = MigrationContext.configure(conn)
            current_rev = context.get_current_revision()

        script = ScriptDirectory.from_config(alembic_cfg)
        head_rev = script.get_current_head()

        if current_rev == head_rev:
            return []

        # Collect all revisions between current and head
        pending = []
        for rev in script.walk_revisions():
            if rev.revision == current_rev:
                break
            pending.append(rev.revision)

        return pending
    finally:
        engine.dispose()


def run_migrations() -> bool:
    """Run all pending Alembic migrations.

    Returns:
        True if migrations ran successfully (or no migrations needed),
        False if migrations failed.
    """
    try:
        alembic_cfg = _get_alembic_config()
        db_url = _get_database_url()

        pending = _get_pending_migrations(db_url, alembic_cfg)
        if not pending:
            logger.info("Database schema is up to date, no migrations needed")
            return True

        logger.info(f"Found {len(pending)} pending migration(s): {pending}")
        alembic_cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed successfully")
        return True

    except Exception as e:
        logger.error(f"Database migration failed: {e}")
        logger.error(
            "The migrator will not work correctly until migrations are applied. "
            "Check the database connection and try again."
        )
        return False


if __name__ == "__main__":
    # CLI usage: python migrate.py
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    success = run_migrations()
    sys.exit(0 if success else 1)
