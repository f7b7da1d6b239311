"""
Data models and exceptions for the batch migration core.

MigrationRun is the single persisted record describing the current run.
ProgressSnapshot is what callers get back from every controller action.
"""

import copy
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base exception for migration errors."""
    pass


class NotRunningError(MigrationError):
    """A batch was requested while the run is not running."""
    pass


class InvalidTransitionError(MigrationError):
    """An action is not allowed from the run's current status."""
    pass


class EnumerationFailedError(MigrationError):
    """The uploads root could not be listed."""
    pass


class UploadFailedError(MigrationError):
    """A single file could not be uploaded to the object store."""
    pass


class DeleteFailedError(MigrationError):
    """An object could not be deleted from the object store."""
    pass


class MarkerNotFoundError(MigrationError):
    """A file has no attachment record or no migration marker."""
    pass


class StorageNotConfiguredError(MigrationError):
    """No bucket is configured, so nothing can be uploaded."""
    pass


class MigrationStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationStatus.CANCELLED, MigrationStatus.FINISHED, MigrationStatus.ERROR)


@dataclass(frozen=True)
class Marker:
    """Proof that a file was uploaded: where its object lives."""

    bucket: str
    key: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"bucket": self.bucket, "key": self.key, "url": self.url}


def new_run_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MigrationRun:
    """The persisted state of the (single) migration run."""

    status: MigrationStatus = MigrationStatus.READY
    run_id: str = field(default_factory=new_run_id)
    file_list: List[str] = field(default_factory=list)
    cursor: int = 0
    total: int = 0
    processing: int = 0
    uploaded_count: int = 0
    skipped_count: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def copy(self) -> "MigrationRun":
        return copy.deepcopy(self)

    @property
    def queued(self) -> int:
        return max(self.total - self.cursor - self.processing, 0)

    @property
    def percent_complete(self) -> int:
        """Whole percent of attempted files, rounded half up."""
        if self.total <= 0:
            return 0
        return (200 * self.cursor + self.total) // (2 * self.total)

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.cursor >= self.total


# Persisted fields, in column order.
RUN_FIELDS = tuple(f.name for f in fields(MigrationRun))


def changed_fields(before: MigrationRun, after: MigrationRun) -> Dict[str, Any]:
    """Return the fields of *after* that differ from *before*."""
    return {
        name: getattr(after, name)
        for name in RUN_FIELDS
        if getattr(before, name) != getattr(after, name)
    }


@dataclass
class ProgressSnapshot:
    """Progress report returned by every controller action."""

    status: str
    done: int
    total: int
    processing: int
    queued: int
    percent_complete: int
    complete: bool
    migrated_count: int
    uploaded_count: int
    skipped_count: int
    error_count: int
    errors: List[Dict[str, str]]
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None
    message: str = ""
    run_id: Optional[str] = None

    @classmethod
    def from_run(
        cls,
        run: MigrationRun,
        *,
        recent_errors: int = 10,
        message: str = "",
        complete: Optional[bool] = None,
    ) -> "ProgressSnapshot":
        """Build a snapshot; migrated_count mirrors done (files attempted)."""
        return cls(
            status=run.status.value,
            done=run.cursor,
            total=run.total,
            processing=run.processing,
            queued=run.queued,
            percent_complete=run.percent_complete,
            complete=run.is_complete if complete is None else complete,
            migrated_count=run.cursor,
            uploaded_count=run.uploaded_count,
            skipped_count=run.skipped_count,
            error_count=len(run.errors),
            errors=[dict(e) for e in run.errors[-recent_errors:]] if recent_errors > 0 else [],
            started_at=run.started_at.isoformat() if run.started_at else None,
            completed_at=run.completed_at.isoformat() if run.completed_at else None,
            last_error=run.last_error,
            message=message,
            run_id=run.run_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
