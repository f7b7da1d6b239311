"""
Activity and audit log for migration runs.

Records who started, paused, cancelled or reset a run and when batches
finished a run. Logging is best effort: failures are logged as warnings and
never interrupt the action being audited. With the memory backend nothing
is persisted.
"""

import csv
import io
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _enabled() -> bool:
    from config import get_config
    return get_config().migration.backend == "postgres"


def _get_db():
    from database import get_db_manager
    return get_db_manager()


_COLUMNS = ("id", "ts", "actor", "action", "details", "run_id")


def _row_to_dict(row) -> Dict[str, Any]:
    """Convert a DB row tuple to a dict with ISO timestamps."""
    d = dict(zip(_COLUMNS, row))
    if d.get("id") is not None:
        d["id"] = str(d["id"])
    ts = d.get("ts")
    if isinstance(ts, datetime):
        d["ts"] = ts.isoformat()
    if isinstance(d.get("details"), str):
        d["details"] = json.loads(d["details"])
    return d


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def log_activity(
    action: str,
    *,
    actor: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    run_id: Optional[str] = None,
) -> Optional[str]:
    """Record an activity log entry.

    Args:
        action: Action type (e.g. 'migration_start', 'migration_cancel',
                'migration_finished', 'object_delete').
        actor: Who performed the action (API key prefix, 'cli', 'driver').
        details: Optional extra details as a JSON-serializable dict.
        run_id: Migration run the action applied to.

    Returns:
        The UUID of the log entry, or None when not recorded.
    """
    if not _enabled():
        return None
    entry_id = str(uuid.uuid4())
    try:
        with _get_db().get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO activity_log (id, actor, action, details, run_id)
                VALUES (%s, %s, %s, %s::jsonb, %s)
                """,
                (entry_id, actor, action, json.dumps(details or {}), run_id),
            )
        return entry_id
    except Exception as e:
        logger.warning("Failed to log activity '%s': %s", action, e)
        return None


# ---------------------------------------------------------------------------
# Querying
# ---------------------------------------------------------------------------


def get_recent(
    limit: int = 50,
    offset: int = 0,
    action: Optional[str] = None,
    run_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Query recent activity log entries, newest first."""
    if not _enabled():
        return []
    sql = "SELECT {cols} FROM activity_log".format(cols=", ".join(_COLUMNS))
    conditions = []
    params: list = []
    if action:
        conditions.append("action = %s")
        params.append(action)
    if run_id:
        conditions.append("run_id = %s")
        params.append(run_id)
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY ts DESC LIMIT %s OFFSET %s"
    params.extend([limit, offset])
    try:
        with _get_db().get_cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [_row_to_dict(r) for r in rows]
    except Exception as e:
        logger.warning("Failed to query activity log: %s", e)
        return []


def get_activity_count(action: Optional[str] = None) -> int:
    """Get total count of activity log entries (for pagination)."""
    if not _enabled():
        return 0
    sql = "SELECT COUNT(*) FROM activity_log"
    params: list = []
    if action:
        sql += " WHERE action = %s"
        params.append(action)
    try:
        with _get_db().get_cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()[0]
    except Exception as e:
        logger.warning("Failed to count activity log: %s", e)
        return 0


def export_csv(action: Optional[str] = None, limit: int = 10000) -> str:
    """Export activity log entries as a CSV string."""
    entries = get_recent(limit=limit, action=action)
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=list(_COLUMNS))
    writer.writeheader()
    for entry in entries:
        row = dict(entry)
        if isinstance(row.get("details"), dict):
            row["details"] = json.dumps(row["details"])
        writer.writerow(row)
    return output.getvalue()


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


def apply_retention(days: int) -> int:
    """Delete activity log entries older than N days; returns how many."""
    if not _enabled():
        return 0
    try:
        with _get_db().get_cursor() as cur:
            cur.execute(
                "DELETE FROM activity_log WHERE ts < now() - make_interval(days => %s)",
                (days,),
            )
            deleted = cur.rowcount
        logger.info("Retention: deleted %d activity log entries older than %d days", deleted, days)
        return deleted
    except Exception as e:
        logger.warning("Failed to apply retention: %s", e)
        return 0
