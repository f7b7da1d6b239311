"""
Pydantic models for the media offload API.

This module centralizes request and response models shared by the routers.
"""

from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field

# API Version Constants
API_VERSION = "1"


class MigrationStartRequest(BaseModel):
    """Request model for starting a migration."""
    reset: bool = Field(default=False, description="Discard the current run and start from scratch")


class MigrationActionRequest(BaseModel):
    """Request model for the single-endpoint action dispatch."""
    action: Literal["start", "pause", "resume", "cancel", "reset", "batch", "status"] = Field(
        ..., description="Controller action to perform"
    )
    reset: bool = Field(default=False, description="Only used by 'start'")


class RemoveObjectRequest(BaseModel):
    """Request model for deleting an offloaded object."""
    path: str = Field(..., min_length=1, description="Local path of the migrated file")


class FileError(BaseModel):
    """A file that failed to migrate."""
    path: str
    error: str


class ProgressData(BaseModel):
    """Progress snapshot returned by every migration route."""
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
    errors: List[FileError]
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None
    message: str = ""
    run_id: Optional[str] = None


class ProgressResponse(BaseModel):
    """Envelope for progress snapshots."""
    success: bool = True
    data: ProgressData


class ErrorData(BaseModel):
    """Body of a failure envelope."""
    error_code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Envelope for failures."""
    success: bool = False
    data: ErrorData


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    timestamp: str
    database: Dict[str, Any]
    storage: Dict[str, Any]
