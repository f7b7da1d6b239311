"""
Migration driver.

In-process background loop that keeps calling ProcessBatch while the run is
running, so a migration progresses without a polling client. Batches from
several replicas (or a replica plus polling clients) never overlap because
the controller serializes them with the state store's batch lease.

Enabled by MIGRATION_DRIVER_ENABLED=true (default: disabled).
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from migration_models import (
    MigrationStatus,
    NotRunningError,
    StorageNotConfiguredError,
)

logger = logging.getLogger(__name__)

# Poll interval while the run is not running
IDLE_POLL_INTERVAL = 10.0

# Consecutive loop failures before backing off
MAX_FAILURE_STREAK = 5
FAILURE_BACKOFF_SECONDS = 60.0


class MigrationDriver:
    """Runs migration batches as an asyncio background task.

    Wraps the synchronous controller calls in asyncio.to_thread() to avoid
    blocking the event loop.
    """

    def __init__(self, controller=None, interval: Optional[float] = None):
        self._controller = controller
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._batches_run = 0
        self._failure_streak = 0
        self._last_batch_at: Optional[str] = None
        self._last_error: Optional[str] = None

    @property
    def controller(self):
        if self._controller is None:
            from services import get_controller
            self._controller = get_controller()
        return self._controller

    @property
    def interval(self) -> float:
        if self._interval is None:
            from config import get_config
            self._interval = get_config().migration.driver_interval_seconds
        return self._interval

    @staticmethod
    def is_enabled() -> bool:
        """Check if the driver is enabled via MIGRATION_DRIVER_ENABLED."""
        from config import get_config
        return get_config().migration.driver_enabled

    async def start(self) -> None:
        """Start the driver background task."""
        if self._running:
            logger.warning("Migration driver already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._driver_loop())
        logger.info("Migration driver started (interval %.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the driver; an in-flight batch finishes in its thread."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Migration driver stopped")

    def get_status(self) -> dict:
        """Return current driver status for the health endpoint."""
        return {
            "enabled": self.is_enabled(),
            "running": self._running,
            "batches_run": self._batches_run,
            "last_batch_at": self._last_batch_at,
            "last_error": self._last_error,
            "interval_seconds": self.interval,
        }

    async def _driver_loop(self) -> None:
        """Main loop: run a batch while the migration is running, else idle."""
        while self._running:
            try:
                delay = await self.run_once()
            except asyncio.CancelledError:
                break
            await asyncio.sleep(delay)

    async def run_once(self) -> float:
        """Run at most one batch; return how long to wait before the next."""
        try:
            snapshot = await asyncio.to_thread(self.controller.status)
            if snapshot.status != MigrationStatus.RUNNING.value:
                return IDLE_POLL_INTERVAL

            snapshot = await asyncio.to_thread(self.controller.process_batch)
            self._batches_run += 1
            self._failure_streak = 0
            self._last_error = None
            self._last_batch_at = datetime.now(timezone.utc).isoformat()
            logger.debug(
                "Migration driver: %d/%d (%s)", snapshot.done, snapshot.total, snapshot.status
            )
            return self.interval
        except NotRunningError:
            # Paused or cancelled between the status check and the batch
            return IDLE_POLL_INTERVAL
        except StorageNotConfiguredError as e:
            self._last_error = str(e)
            logger.warning("Migration driver idle: %s", e)
            return FAILURE_BACKOFF_SECONDS
        except Exception as e:
            self._failure_streak += 1
            self._last_error = str(e)
            logger.error("Migration driver loop error: %s", e)
            if self._failure_streak >= MAX_FAILURE_STREAK:
                logger.warning(
                    "Migration driver: %d consecutive failures, backing off %.0fs",
                    self._failure_streak, FAILURE_BACKOFF_SECONDS,
                )
                return FAILURE_BACKOFF_SECONDS
            return self.interval


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_driver: Optional[MigrationDriver] = None


def get_migration_driver() -> MigrationDriver:
    """Get (or create) the module-level migration driver singleton."""
    global _driver
    if _driver is None:
        _driver = MigrationDriver()
    return _driver
