"""
FastAPI REST API for the media offload migrator.

Exposes the migration controller over HTTP so a polling client (or the
in-process driver) can start, pause, resume, cancel and reset a run and
push it forward batch by batch.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from api_models import API_VERSION, HealthResponse
from config import get_config
from database import DatabaseError, close_db_manager, get_db_manager
from errors import ErrorCode
from migration_driver import get_migration_driver
from routers.migration_api import migration_router
from services import get_controller
from version import __version__

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    logger.info("Starting media offload API v%s...", __version__)
    driver = get_migration_driver()
    if driver.is_enabled():
        await driver.start()

    yield

    logger.info("Shutting down media offload API...")
    await driver.stop()
    close_db_manager()
    logger.info("Cleanup complete")


# Create FastAPI app
config = get_config()
app = FastAPI(
    title="Media Offload Migrator API",
    description="Resumable batch migration of an uploads directory to S3-compatible storage",
    version=__version__,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(migration_router, prefix=f"/api/v{API_VERSION}")


# API Endpoints

@app.get("/api", tags=["General"])
async def api_info():
    """API information endpoint."""
    return {
        "name": "Media Offload Migrator API",
        "version": __version__,
        "api_version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "migration": f"/api/v{API_VERSION}/migration/status",
        "driver": get_migration_driver().get_status(),
    }


@app.get("/health", response_model=HealthResponse, tags=["General"])
def health_check():
    """Check database and bucket reachability."""
    if get_config().migration.backend == "postgres":
        try:
            db_health = get_db_manager().health_check()
        except DatabaseError as e:
            logger.error(f"Health check failed: {e}")
            db_health = {"status": "unhealthy", "error": str(e)}
    else:
        db_health = {"status": "healthy", "backend": "memory"}

    object_store = get_controller().object_store
    if object_store is None:
        storage_health = {"status": "unconfigured"}
    else:
        storage_health = object_store.check_bucket()

    healthy = db_health.get("status") == "healthy" and storage_health.get("status") == "healthy"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        database=db_health,
        storage=storage_health,
    )


# Error handlers
def _failure(status_code: int, error_code: str, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": {"error_code": error_code, "message": message, "details": details},
        },
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Flatten HTTPExceptions into the failure envelope."""
    detail = exc.detail
    if isinstance(detail, dict) and "error_code" in detail:
        return _failure(
            exc.status_code, detail["error_code"], detail.get("message", ""),
            detail.get("details"), exc.headers,
        )
    code = ErrorCode.UNAUTHORIZED.code if exc.status_code == status.HTTP_401_UNAUTHORIZED else f"HTTP_{exc.status_code}"
    return _failure(exc.status_code, code, str(detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    return _failure(
        ErrorCode.VALIDATION_ERROR.status_code,
        ErrorCode.VALIDATION_ERROR.code,
        ErrorCode.VALIDATION_ERROR.message,
        {"errors": [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _failure(
        ErrorCode.INTERNAL_SERVER_ERROR.status_code,
        ErrorCode.INTERNAL_SERVER_ERROR.code,
        ErrorCode.INTERNAL_SERVER_ERROR.message,
        {"error": str(exc)},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api:app",
        host=config.api.host,
        port=config.api.port,
        reload=config.api.reload,
        log_level=config.api.log_level
    )
