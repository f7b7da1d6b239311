"""
Migration control routes for the media offload API.

Every route needs the ``migration.manage`` permission; routes that change
state also need a valid ``X-Action-Token``. Responses use the
``{"success": ..., "data": ...}`` envelope.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query, Request

from activity_log import get_activity_count, get_recent, log_activity
from api_models import (
    MigrationActionRequest,
    MigrationStartRequest,
    ProgressResponse,
    RemoveObjectRequest,
)
from auth import (
    MANAGE_PERMISSION,
    create_action_token,
    require_permission,
)
from database import ConnectionPoolError, DatabaseError
from errors import ErrorCode, raise_api_error
from migration_models import (
    DeleteFailedError,
    EnumerationFailedError,
    InvalidTransitionError,
    MarkerNotFoundError,
    NotRunningError,
    ProgressSnapshot,
    StorageNotConfiguredError,
)
from services import get_controller

logger = logging.getLogger(__name__)

migration_router = APIRouter(prefix="/migration", tags=["Migration"])

require_manage = require_permission(MANAGE_PERMISSION)
require_manage_action = require_permission(MANAGE_PERMISSION, action_token=True)

_ERROR_CODES = (
    (NotRunningError, ErrorCode.MIGRATION_NOT_RUNNING),
    (InvalidTransitionError, ErrorCode.INVALID_TRANSITION),
    (EnumerationFailedError, ErrorCode.ENUMERATION_FAILED),
    (StorageNotConfiguredError, ErrorCode.STORAGE_NOT_CONFIGURED),
    (MarkerNotFoundError, ErrorCode.MARKER_NOT_FOUND),
    (DeleteFailedError, ErrorCode.OBJECT_DELETE_FAILED),
    (ConnectionPoolError, ErrorCode.DATABASE_CONNECTION_ERROR),
    (DatabaseError, ErrorCode.DATABASE_QUERY_ERROR),
)


def _raise_for(exc: Exception):
    for exc_type, error_code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            logger.info("Migration request rejected (%s): %s", error_code.code, exc)
            raise_api_error(error_code, str(exc) or None)
    logger.error("Migration action failed: %s", exc, exc_info=True)
    raise_api_error(ErrorCode.INTERNAL_SERVER_ERROR, details={"error": str(exc)})


def _actor(request: Request, key_record: Optional[dict]) -> str:
    if key_record:
        return key_record.get("key_prefix") or str(key_record.get("id"))
    return request.client.host if request.client else "unknown"


def _envelope(snapshot: ProgressSnapshot) -> dict:
    return {"success": True, "data": snapshot.to_dict()}


def _perform(action: str, fn: Callable[[], ProgressSnapshot], actor: str, audit: bool = True) -> dict:
    try:
        snapshot = fn()
    except Exception as e:
        _raise_for(e)
    if audit:
        log_activity(
            f"migration_{action}",
            actor=actor,
            run_id=snapshot.run_id,
            details={"status": snapshot.status, "done": snapshot.done, "total": snapshot.total},
        )
    return _envelope(snapshot)


# ---------------------------------------------------------------------------
# Read-only routes
# ---------------------------------------------------------------------------


@migration_router.get("/status", response_model=ProgressResponse)
def migration_status(key_record: Optional[dict] = Depends(require_manage)):
    """Current progress of the migration run."""
    try:
        return _envelope(get_controller().status())
    except Exception as e:
        _raise_for(e)


@migration_router.get("/token")
def action_token(key_record: Optional[dict] = Depends(require_manage)):
    """Issue an action token for the mutating routes."""
    from config import get_config
    return {
        "success": True,
        "data": {
            "token": create_action_token(),
            "header": "X-Action-Token",
            "expires_in": get_config().api.token_lifetime_seconds,
        },
    }


@migration_router.get("/errors")
def migration_errors(
    limit: int = Query(default=10, ge=1, le=1000),
    key_record: Optional[dict] = Depends(require_manage),
):
    """Most recent per-file failures of the current run."""
    try:
        controller = get_controller()
        snapshot = controller.status()
        errors = controller.recent_errors(limit)
    except Exception as e:
        _raise_for(e)
    return {
        "success": True,
        "data": {"errors": errors, "error_count": snapshot.error_count},
    }


@migration_router.get("/activity")
def migration_activity(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action: Optional[str] = Query(default=None),
    key_record: Optional[dict] = Depends(require_manage),
):
    """Audit trail of migration actions, newest first."""
    return {
        "success": True,
        "data": {
            "entries": get_recent(limit=limit, offset=offset, action=action),
            "total": get_activity_count(action=action),
        },
    }


# ---------------------------------------------------------------------------
# Mutating routes
# ---------------------------------------------------------------------------


@migration_router.post("/start", response_model=ProgressResponse)
def start_migration(
    request: Request,
    body: Optional[MigrationStartRequest] = None,
    key_record: Optional[dict] = Depends(require_manage_action),
):
    """Start (or restart with reset) the migration run."""
    reset = body.reset if body else False
    return _perform(
        "start", lambda: get_controller().start(reset=reset), _actor(request, key_record)
    )


@migration_router.post("/pause", response_model=ProgressResponse)
def pause_migration(request: Request, key_record: Optional[dict] = Depends(require_manage_action)):
    return _perform("pause", lambda: get_controller().pause(), _actor(request, key_record))


@migration_router.post("/resume", response_model=ProgressResponse)
def resume_migration(request: Request, key_record: Optional[dict] = Depends(require_manage_action)):
    return _perform("resume", lambda: get_controller().resume(), _actor(request, key_record))


@migration_router.post("/cancel", response_model=ProgressResponse)
def cancel_migration(request: Request, key_record: Optional[dict] = Depends(require_manage_action)):
    return _perform("cancel", lambda: get_controller().cancel(), _actor(request, key_record))


@migration_router.post("/reset", response_model=ProgressResponse)
def reset_migration(request: Request, key_record: Optional[dict] = Depends(require_manage_action)):
    """Discard the current run. The only way out of a stalled run."""
    return _perform("reset", lambda: get_controller().reset(), _actor(request, key_record))


@migration_router.post("/batch", response_model=ProgressResponse)
def process_batch(request: Request, key_record: Optional[dict] = Depends(require_manage_action)):
    """Process the next batch of files.

    Polling clients call this repeatedly while the run is running; a call
    that overlaps another batch returns the current progress without work.
    """
    return _perform(
        "batch", lambda: get_controller().process_batch(), _actor(request, key_record), audit=False
    )


@migration_router.post("/actions", response_model=ProgressResponse)
def dispatch_action(
    body: MigrationActionRequest,
    request: Request,
    key_record: Optional[dict] = Depends(require_manage_action),
):
    """Single entry point for all controller actions."""
    controller = get_controller()
    handlers = {
        "start": lambda: controller.start(reset=body.reset),
        "pause": controller.pause,
        "resume": controller.resume,
        "cancel": controller.cancel,
        "reset": controller.reset,
        "batch": controller.process_batch,
        "status": controller.status,
    }
    audit = body.action not in ("batch", "status")
    return _perform(body.action, handlers[body.action], _actor(request, key_record), audit=audit)


@migration_router.delete("/objects")
def remove_offloaded_object(
    body: RemoveObjectRequest,
    request: Request,
    key_record: Optional[dict] = Depends(require_manage_action),
):
    """Delete the uploaded copy of a migrated file and clear its marker."""
    try:
        marker = get_controller().remove_offloaded(body.path)
    except Exception as e:
        _raise_for(e)
    log_activity(
        "object_delete",
        actor=_actor(request, key_record),
        details={"path": body.path, **marker.to_dict()},
    )
    return {"success": True, "data": {"path": body.path, "removed": marker.to_dict()}}
