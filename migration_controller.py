"""
Migration controller: the run state machine and batch processing.

Every action loads the run from the state store, applies one transition and
returns a ProgressSnapshot. Batches are claimed under the store's batch lease,
processed without holding the row lock, then committed under the row lock;
results of a batch whose run was reset in the meantime are discarded.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from attachment_index import AttachmentIndex
from file_enumerator import enumerate_files
from migration_models import (
    EnumerationFailedError,
    InvalidTransitionError,
    Marker,
    MarkerNotFoundError,
    MigrationError,
    MigrationRun,
    MigrationStatus,
    NotRunningError,
    ProgressSnapshot,
    RUN_FIELDS,
    StorageNotConfiguredError,
)
from migration_state import MigrationStateStore, fresh_run, utcnow

logger = logging.getLogger(__name__)

BeforeUploadHook = Callable[[str, str], None]
AfterUploadHook = Callable[[str, Marker], None]
FinishedHook = Callable[[ProgressSnapshot], None]


@dataclass
class BatchOutcome:
    """What one batch did, before it is folded into the run."""

    attempted: int = 0
    uploaded: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def record_error(self, path: str, message: str) -> None:
        self.errors.append({"path": path, "error": message})


class MigrationController:
    """Drives one resumable migration run over the uploads root."""

    def __init__(
        self,
        store: MigrationStateStore,
        index: AttachmentIndex,
        object_store=None,
        *,
        uploads_root: str,
        batch_size: int = 10,
        recent_errors_limit: int = 10,
        allowed_extensions: Optional[Iterable[str]] = None,
        follow_symlinks: bool = False,
        delete_local: bool = False,
        enumerator: Callable[..., List[str]] = enumerate_files,
        before_upload: Optional[BeforeUploadHook] = None,
        after_upload: Optional[AfterUploadHook] = None,
        on_finished: Optional[FinishedHook] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.index = index
        self.object_store = object_store
        self.uploads_root = os.path.abspath(uploads_root)
        self.batch_size = batch_size
        self.recent_errors_limit = recent_errors_limit
        self.allowed_extensions = list(allowed_extensions) if allowed_extensions else None
        self.follow_symlinks = follow_symlinks
        self.delete_local = delete_local
        self.enumerator = enumerator
        self.before_upload = before_upload
        self.after_upload = after_upload
        self.on_finished = on_finished

    def _snapshot(self, run: MigrationRun, message: str = "", complete: Optional[bool] = None) -> ProgressSnapshot:
        return ProgressSnapshot.from_run(
            run,
            recent_errors=self.recent_errors_limit,
            message=message,
            complete=complete,
        )

    # ------------------------------------------------------------------
    # Lifecycle actions
    # ------------------------------------------------------------------

    def status(self) -> ProgressSnapshot:
        return self._snapshot(self.store.load())

    def start(self, reset: bool = False) -> ProgressSnapshot:
        """Move the run to running, optionally from a fresh state.

        Raises:
            InvalidTransitionError: From a terminal state without reset.
        """
        with self.store.transaction() as run:
            if run.status == MigrationStatus.RUNNING:
                return self._snapshot(run, message="Migration already running")
            if reset:
                fresh = fresh_run()
                for name in RUN_FIELDS:
                    setattr(run, name, getattr(fresh, name))
            elif run.status.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot start a {run.status.value} migration without reset"
                )
            self._enter_running(run)
            snapshot = self._snapshot(run, message="Migration started")
        logger.info("Migration run %s started (reset=%s)", run.run_id, reset)
        return snapshot

    def resume(self) -> ProgressSnapshot:
        """Continue a paused (or never started) run.

        Raises:
            InvalidTransitionError: From a terminal state.
        """
        with self.store.transaction() as run:
            if run.status == MigrationStatus.RUNNING:
                return self._snapshot(run, message="Migration already running")
            if run.status.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot resume a {run.status.value} migration; start with reset instead"
                )
            self._enter_running(run)
            snapshot = self._snapshot(run, message="Migration resumed")
        logger.info("Migration run %s resumed", run.run_id)
        return snapshot

    def pause(self) -> ProgressSnapshot:
        with self.store.transaction() as run:
            if run.status != MigrationStatus.RUNNING:
                return self._snapshot(run, message="Migration is not running")
            run.status = MigrationStatus.PAUSED
            snapshot = self._snapshot(run, message="Migration paused")
        logger.info("Migration run %s paused at %d/%d", run.run_id, run.cursor, run.total)
        return snapshot

    def cancel(self) -> ProgressSnapshot:
        """Stop the run for good, keeping its progress for inspection.

        Raises:
            InvalidTransitionError: From ready, finished or error.
        """
        with self.store.transaction() as run:
            if run.status == MigrationStatus.CANCELLED:
                return self._snapshot(run, message="Migration already cancelled")
            if run.status not in (MigrationStatus.RUNNING, MigrationStatus.PAUSED):
                raise InvalidTransitionError(
                    f"Cannot cancel a {run.status.value} migration"
                )
            run.status = MigrationStatus.CANCELLED
            snapshot = self._snapshot(run, message="Migration cancelled")
        logger.info("Migration run %s cancelled at %d/%d", run.run_id, run.cursor, run.total)
        return snapshot

    def reset(self) -> ProgressSnapshot:
        run = self.store.reset()
        return self._snapshot(run, message="Migration reset")

    def recent_errors(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        run = self.store.load()
        limit = self.recent_errors_limit if limit is None else limit
        if limit <= 0:
            return []
        return [dict(e) for e in run.errors[-limit:]]

    @staticmethod
    def _enter_running(run: MigrationRun) -> None:
        run.status = MigrationStatus.RUNNING
        if run.started_at is None:
            run.started_at = utcnow()
        run.last_error = None

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def process_batch(self) -> ProgressSnapshot:
        """Process the next batch of files.

        Returns immediately with the current snapshot when another batch
        holds the lease.

        Raises:
            NotRunningError: If the run is not running.
            EnumerationFailedError: If the file list could not be built
                (the run is moved to error).
            StorageNotConfiguredError: If there is no object store.
        """
        if self.object_store is None:
            raise StorageNotConfiguredError("Object storage is not configured (set S3_BUCKET)")

        with self.store.batch_lock() as acquired:
            if not acquired:
                return self._snapshot(
                    self.store.load(), message="Another batch is already in progress"
                )

            run = self.store.load()
            if run.status != MigrationStatus.RUNNING:
                raise NotRunningError(f"Migration is not running (status: {run.status.value})")

            if not run.file_list:
                empty = self._enumerate(run.run_id)
                if empty is not None:
                    return empty

            run_id, batch = self._claim_batch()
            outcome = self._process_files(batch)
            return self._commit_batch(run_id, outcome)

    def _enumerate(self, run_id: str) -> Optional[ProgressSnapshot]:
        """Build and persist the run's file list.

        Returns a snapshot when there is nothing to migrate, else None.
        """
        try:
            files = self.enumerator(
                self.uploads_root,
                allowed_extensions=self.allowed_extensions,
                follow_symlinks=self.follow_symlinks,
            )
        except EnumerationFailedError as e:
            logger.error("Enumeration of %s failed: %s", self.uploads_root, e)
            with self.store.transaction() as run:
                if run.run_id == run_id:
                    run.status = MigrationStatus.ERROR
                    run.last_error = str(e)
            raise

        with self.store.transaction() as run:
            if run.run_id != run_id or run.status != MigrationStatus.RUNNING:
                raise NotRunningError(f"Migration is not running (status: {run.status.value})")
            if run.file_list:
                return None
            if not files:
                run.status = MigrationStatus.READY
                run.total = 0
                run.cursor = 0
                logger.info("No files to migrate under %s", self.uploads_root)
                return self._snapshot(run, message="No files to migrate", complete=True)
            run.file_list = list(files)
            run.total = len(files)
            run.cursor = 0
        logger.info("Migration run %s: %d files queued", run_id, len(files))
        return None

    def _claim_batch(self):
        with self.store.transaction() as run:
            if run.status != MigrationStatus.RUNNING:
                raise NotRunningError(f"Migration is not running (status: {run.status.value})")
            batch = run.file_list[run.cursor:run.cursor + self.batch_size]
            run.processing = len(batch)
            return run.run_id, batch

    def _process_files(self, batch: List[str]) -> BatchOutcome:
        outcome = BatchOutcome()
        for path in batch:
            outcome.attempted += 1
            try:
                self._migrate_file(path, outcome)
            except MigrationError as e:
                logger.error("Failed to migrate %s: %s", path, e)
                outcome.record_error(path, str(e))
            except Exception as e:
                logger.exception("Unexpected error migrating %s", path)
                outcome.record_error(path, f"Exception: {e}")
        return outcome

    def _migrate_file(self, path: str, outcome: BatchOutcome) -> None:
        identity = self.index.lookup_identity(path)
        if identity is None:
            raise MarkerNotFoundError("No attachment record")
        if self.index.get_marker(identity) is not None:
            logger.debug("Skipping already migrated %s", path)
            outcome.skipped += 1
            return

        key = self.object_store.key_for(path)
        if self.before_upload:
            self.before_upload(path, key)
        self.object_store.upload(path, key)
        marker = Marker(
            bucket=self.object_store.bucket,
            key=key,
            url=self.object_store.url_for(key),
        )
        self.index.set_marker(identity, marker)
        outcome.uploaded += 1

        # The marker is written; a failing hook must not turn this into an error
        if self.after_upload:
            try:
                self.after_upload(path, marker)
            except Exception as e:
                logger.warning("after_upload hook failed for %s: %s", path, e, exc_info=True)
        if self.delete_local:
            self._remove_local(path)

    @staticmethod
    def _remove_local(path: str) -> None:
        try:
            os.remove(path)
        except OSError as e:
            logger.warning("Uploaded %s but could not delete the local copy: %s", path, e)

    def _commit_batch(self, run_id: str, outcome: BatchOutcome) -> ProgressSnapshot:
        message = (
            f"Processed {outcome.attempted} files. "
            f"Skipped {outcome.skipped} already migrated files."
        )
        with self.store.transaction() as run:
            if run.run_id != run_id:
                logger.warning(
                    "Migration run %s was reset during a batch; discarding %d results",
                    run_id, outcome.attempted,
                )
                return self._snapshot(run, message="Migration was reset during the batch")

            run.cursor = min(run.cursor + outcome.attempted, run.total)
            run.uploaded_count += outcome.uploaded
            run.skipped_count += outcome.skipped
            if outcome.errors:
                run.errors = run.errors + outcome.errors
            run.processing = 0

            finished = run.cursor >= run.total
            if finished:
                if run.status != MigrationStatus.RUNNING:
                    logger.info(
                        "Migration run %s reached the end while %s; marking finished",
                        run_id, run.status.value,
                    )
                run.status = MigrationStatus.FINISHED
                run.completed_at = utcnow()
                run.file_list = []
                message += " Migration complete."
            snapshot = self._snapshot(run, message=message)

        logger.info(
            "Batch done: %d attempted, %d uploaded, %d skipped, %d failed (%d/%d)",
            outcome.attempted, outcome.uploaded, outcome.skipped, len(outcome.errors),
            snapshot.done, snapshot.total,
        )
        if finished:
            logger.info(
                "Migration run %s finished with %d errors", run_id, snapshot.error_count
            )
            if self.on_finished:
                try:
                    self.on_finished(snapshot)
                except Exception as e:
                    logger.warning(
                        "on_finished hook failed for run %s: %s", run_id, e, exc_info=True
                    )
        return snapshot

    # ------------------------------------------------------------------
    # Offloaded objects
    # ------------------------------------------------------------------

    def remove_offloaded(self, path: str) -> Marker:
        """Delete the uploaded object for *path* and forget its marker.

        Relative paths are resolved against the uploads root.

        Raises:
            MarkerNotFoundError: If the file has no attachment or no marker.
            DeleteFailedError: If the object store refuses the delete.
        """
        if self.object_store is None:
            raise StorageNotConfiguredError("Object storage is not configured (set S3_BUCKET)")
        if not os.path.isabs(path):
            path = os.path.join(self.uploads_root, path)
        identity = self.index.lookup_identity(path)
        if identity is None:
            raise MarkerNotFoundError(f"No attachment record for {path}")
        marker = self.index.get_marker(identity)
        if marker is None:
            raise MarkerNotFoundError(f"File has not been migrated: {path}")
        self.object_store.delete(marker.key)
        self.index.clear_marker(identity)
        logger.info("Removed offloaded object %s for %s", marker.key, path)
        return marker


def _log_finished(snapshot: ProgressSnapshot) -> None:
    from activity_log import log_activity
    log_activity(
        "migration_finished",
        actor="controller",
        run_id=snapshot.run_id,
        details={
            "total": snapshot.total,
            "uploaded": snapshot.uploaded_count,
            "skipped": snapshot.skipped_count,
            "errors": snapshot.error_count,
        },
    )


def build_controller(config=None) -> MigrationController:
    """Create a controller wired to the configured backends."""
    from attachment_index import get_attachment_index
    from config import get_config
    from migration_state import get_state_store
    from object_store import S3ObjectStore

    config = config or get_config()
    object_store = None
    if config.storage.is_configured():
        object_store = S3ObjectStore.from_config(config.storage, config.migration)
    else:
        logger.warning("S3 bucket not configured; batches will be refused")

    return MigrationController(
        get_state_store(),
        get_attachment_index(),
        object_store,
        uploads_root=config.migration.uploads_root,
        batch_size=config.migration.batch_size,
        recent_errors_limit=config.migration.recent_errors_limit,
        allowed_extensions=config.migration.allowed_extensions,
        follow_symlinks=config.migration.follow_symlinks,
        delete_local=config.migration.delete_local,
        on_finished=_log_finished,
    )

