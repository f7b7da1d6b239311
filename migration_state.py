"""
Migration state store.

Persists the singleton MigrationRun so a run survives restarts and can be
driven by independent, concurrent requests. Two disciplines keep the record
consistent:

- transaction(): load-modify-save under an exclusive lock. Only the fields
  the caller changed are written back.
- batch_lock(): a non-blocking lease held for the duration of one batch, so
  two batch requests never work on the same slice of the file list.

PostgresStateStore keeps the record in the ``migration_runs`` table (a
single row with id = 1) and uses ``SELECT ... FOR UPDATE`` plus a
session-level advisory lock. MemoryStateStore does the same with process
locks and is meant for single-process deployments and tests.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from migration_models import (
    MigrationRun,
    MigrationStatus,
    RUN_FIELDS,
    changed_fields,
    new_run_id,
)

logger = logging.getLogger(__name__)

# CRC32("media_offload_migration_batch") → deterministic constant
MIGRATION_BATCH_LOCK_ID = 1738451990

RUN_ROW_ID = 1

# Dataclass field → column. "cursor" is spelled out to stay clear of SQL keywords.
_COLUMN_FOR_FIELD = {
    "status": "status",
    "run_id": "run_id",
    "file_list": "file_list",
    "cursor": "cursor_position",
    "total": "total",
    "processing": "processing",
    "uploaded_count": "uploaded_count",
    "skipped_count": "skipped_count",
    "errors": "errors",
    "started_at": "started_at",
    "completed_at": "completed_at",
    "last_error": "last_error",
}

_JSON_FIELDS = ("file_list", "errors")

_COLUMNS = tuple(_COLUMN_FOR_FIELD[name] for name in RUN_FIELDS)


def fresh_run() -> MigrationRun:
    """A run in its initial Ready state with a new run id."""
    return MigrationRun(status=MigrationStatus.READY, run_id=new_run_id())


class MigrationStateStore:
    """Interface shared by the state store backends."""

    def load(self) -> MigrationRun:
        raise NotImplementedError

    def save(self, **fields: Any) -> None:
        raise NotImplementedError

    def reset(self) -> MigrationRun:
        raise NotImplementedError

    def transaction(self):
        raise NotImplementedError

    def batch_lock(self):
        raise NotImplementedError


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - set(RUN_FIELDS)
    if unknown:
        raise ValueError(f"Unknown migration run fields: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------


class MemoryStateStore(MigrationStateStore):
    """Process-local store guarded by threading locks."""

    def __init__(self, run: Optional[MigrationRun] = None):
        self._run = run.copy() if run else fresh_run()
        self._lock = threading.RLock()
        self._batch_lock = threading.Lock()

    def load(self) -> MigrationRun:
        with self._lock:
            return self._run.copy()

    def save(self, **fields: Any) -> None:
        _check_fields(fields)
        with self._lock:
            for name, value in fields.items():
                setattr(self._run, name, value)

    def reset(self) -> MigrationRun:
        with self._lock:
            self._run = fresh_run()
            logger.info("Migration state reset (run %s)", self._run.run_id)
            return self._run.copy()

    @contextmanager
    def transaction(self) -> Iterator[MigrationRun]:
        with self._lock:
            before = self._run.copy()
            working = self._run.copy()
            yield working
            changes = changed_fields(before, working)
            for name, value in changes.items():
                setattr(self._run, name, value)

    @contextmanager
    def batch_lock(self) -> Iterator[bool]:
        acquired = self._batch_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._batch_lock.release()


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------


def _row_to_run(row) -> MigrationRun:
    """Convert a DB row tuple (in _COLUMNS order) to a MigrationRun."""
    d = dict(zip(RUN_FIELDS, row))
    for name in _JSON_FIELDS:
        value = d.get(name)
        if isinstance(value, str):
            d[name] = json.loads(value)
        elif value is None:
            d[name] = []
    d["status"] = MigrationStatus(d["status"])
    d["run_id"] = str(d["run_id"])
    for name in ("cursor", "total", "processing", "uploaded_count", "skipped_count"):
        d[name] = int(d[name] or 0)
    return MigrationRun(**d)


def _to_db_value(name: str, value: Any) -> Any:
    if name in _JSON_FIELDS:
        return json.dumps(value)
    if isinstance(value, MigrationStatus):
        return value.value
    return value


def _update_sql(fields: Dict[str, Any]):
    """Build an UPDATE touching only *fields*."""
    assignments = []
    params = []
    for name, value in fields.items():
        column = _COLUMN_FOR_FIELD[name]
        cast = "::jsonb" if name in _JSON_FIELDS else ""
        assignments.append(f"{column} = %s{cast}")
        params.append(_to_db_value(name, value))
    assignments.append("updated_at = now()")
    sql = "UPDATE migration_runs SET {} WHERE id = %s".format(", ".join(assignments))
    params.append(RUN_ROW_ID)
    return sql, tuple(params)


class PostgresStateStore(MigrationStateStore):
    """Store backed by the ``migration_runs`` table."""

    def __init__(self, db_manager=None):
        self._db = db_manager

    @property
    def db(self):
        if self._db is None:
            from database import get_db_manager
            self._db = get_db_manager()
        return self._db

    def _select(self, cur, for_update: bool = False) -> MigrationRun:
        cur.execute(
            "SELECT {cols} FROM migration_runs WHERE id = %s{lock}".format(
                cols=", ".join(_COLUMNS),
                lock=" FOR UPDATE" if for_update else "",
            ),
            (RUN_ROW_ID,),
        )
        row = cur.fetchone()
        if row is None:
            run = fresh_run()
            cur.execute(
                """
                INSERT INTO migration_runs (id, status, run_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (RUN_ROW_ID, run.status.value, run.run_id),
            )
            if for_update:
                # Another request may have won the insert; lock whichever row exists.
                return self._select(cur, for_update=True)
            return run
        return _row_to_run(row)

    def load(self) -> MigrationRun:
        with self.db.get_connection() as conn:
            with conn.cursor() as cur:
                run = self._select(cur)
            conn.commit()
        return run

    def save(self, **fields: Any) -> None:
        _check_fields(fields)
        if not fields:
            return
        sql, params = _update_sql(fields)
        with self.db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

    def reset(self) -> MigrationRun:
        run = fresh_run()
        with self.transaction() as current:
            for name in RUN_FIELDS:
                setattr(current, name, getattr(run, name))
        logger.info("Migration state reset (run %s)", run.run_id)
        return run

    @contextmanager
    def transaction(self) -> Iterator[MigrationRun]:
        with self.db.get_connection() as conn:
            with conn.cursor() as cur:
                before = self._select(cur, for_update=True)
                working = before.copy()
                yield working
                changes = changed_fields(before, working)
                if changes:
                    sql, params = _update_sql(changes)
                    cur.execute(sql, params)
            conn.commit()

    @contextmanager
    def batch_lock(self) -> Iterator[bool]:
        with self.db.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT pg_try_advisory_lock(%s)", (MIGRATION_BATCH_LOCK_ID,))
            acquired = bool(cur.fetchone()[0])
            conn.commit()
            try:
                yield acquired
            finally:
                if acquired:
                    cur.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_BATCH_LOCK_ID,))
                    conn.commit()
                cur.close()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_store: Optional[MigrationStateStore] = None


def get_state_store() -> MigrationStateStore:
    """Get (or create) the state store selected by MIGRATION_BACKEND."""
    global _store
    if _store is None:
        from config import get_config
        backend = get_config().migration.backend
        _store = MemoryStateStore() if backend == "memory" else PostgresStateStore()
        logger.debug("Using %s migration state store", backend)
    return _store


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
