from enum import Enum
from typing import Optional, Dict, Any
from fastapi import HTTPException, status

class ErrorCode(Enum):
    """
    Central registry of API error codes.
    Each code maps to an HTTP status and a default user-facing message.
    """
    # System Errors (1xxx)
    INTERNAL_SERVER_ERROR = ("SYS_1001", status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected internal server error occurred.")
    VALIDATION_ERROR = ("SYS_1002", status.HTTP_422_UNPROCESSABLE_ENTITY, "The request body or parameters are invalid.")

    # Auth & Security (2xxx)
    UNAUTHORIZED = ("AUTH_2001", status.HTTP_401_UNAUTHORIZED, "Authentication required.")
    PERMISSION_DENIED = ("AUTH_2002", status.HTTP_403_FORBIDDEN, "Permission denied")
    INVALID_API_KEY = ("AUTH_2003", status.HTTP_401_UNAUTHORIZED, "The provided API key is invalid or expired.")
    INVALID_ACTION_TOKEN = ("AUTH_2004", status.HTTP_403_FORBIDDEN, "Missing or expired action token.")

    # Database Errors (5xxx)
    DATABASE_CONNECTION_ERROR = ("DB_5001", status.HTTP_503_SERVICE_UNAVAILABLE, "Failed to connect to the database.")
    DATABASE_QUERY_ERROR = ("DB_5002", status.HTTP_500_INTERNAL_SERVER_ERROR, "A database query error occurred.")

    # Migration Errors (6xxx)
    MIGRATION_NOT_RUNNING = ("MIG_6001", status.HTTP_409_CONFLICT, "The migration is not running.")
    ENUMERATION_FAILED = ("MIG_6002", status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to list the uploads directory.")
    INVALID_TRANSITION = ("MIG_6003", status.HTTP_409_CONFLICT, "This action is not allowed in the current migration state.")
    STORAGE_NOT_CONFIGURED = ("MIG_6004", status.HTTP_503_SERVICE_UNAVAILABLE, "Object storage is not configured.")
    MARKER_NOT_FOUND = ("MIG_6005", status.HTTP_404_NOT_FOUND, "The file has not been migrated.")
    OBJECT_DELETE_FAILED = ("MIG_6006", status.HTTP_502_BAD_GATEWAY, "The object store refused to delete the object.")

    def __init__(self, code: str, status_code: int, message: str):
        self.code = code
        self.status_code = status_code
        self.message = message

def raise_api_error(error_code: ErrorCode, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                    headers: Optional[Dict[str, str]] = None):
    """
    Raise a structured HTTPException using the centralized ErrorRegistry.
    """
    raise HTTPException(
        status_code=error_code.status_code,
        detail={
            "error_code": error_code.code,
            "message": message or error_code.message,
            "details": details
        },
        headers=headers,
    )
