"""
Unified Error Handler for NoteVault
Provides consistent error conversion for the database core and its routers
"""

import logging
import sqlite3
import uuid
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from notevault.errors.types import (
    ErrorType,
    NoteVaultError,
    QueryError,
)

logger = logging.getLogger(__name__)

STATEMENT_PREVIEW_CHARS = 100

# Error types whose internals stay server-side
_ADMIN_ONLY_TYPES = {
    ErrorType.BACKUP_FAILED,
    ErrorType.RESTORE_FAILED,
}

_GENERIC_MESSAGES = {
    ErrorType.BACKUP_FAILED: "Backup operation failed",
    ErrorType.RESTORE_FAILED: "Restore operation failed",
}


def preview_statement(sql: str, limit: int = STATEMENT_PREVIEW_CHARS) -> str:
    """Collapse whitespace and truncate a statement for logs and errors"""
    flattened = " ".join(sql.split())
    if len(flattened) <= limit:
        return flattened
    return flattened[:limit] + "..."


class ErrorHandler:
    """Centralized error handling"""

    @staticmethod
    def handle_database_error(
        error: Exception,
        operation: str,
        sql: str = ""
    ) -> QueryError:
        """Convert a driver error into a QueryError without parameter values"""
        statement = preview_statement(sql) if sql else ""

        if isinstance(error, sqlite3.IntegrityError):
            kind = "constraint violation"
        elif isinstance(error, sqlite3.OperationalError):
            kind = "operational error"
        elif isinstance(error, sqlite3.ProgrammingError):
            kind = "programming error"
        else:
            kind = type(error).__name__

        return QueryError(
            message=f"Database {operation} failed ({kind}): {error}",
            operation=operation,
            statement=statement,
            details={"driver_error": type(error).__name__}
        )

    @staticmethod
    def to_http_exception(error: NoteVaultError) -> HTTPException:
        """Convert NoteVaultError to FastAPI HTTPException"""
        if error.error_type in _ADMIN_ONLY_TYPES and error.status_code >= 500:
            return HTTPException(
                status_code=error.status_code,
                detail={
                    "error": _GENERIC_MESSAGES[error.error_type],
                    "type": error.error_type.value,
                    "details": {}
                }
            )

        return HTTPException(
            status_code=error.status_code,
            detail={
                "error": error.message,
                "type": error.error_type.value,
                "details": error.details
            }
        )


async def notevault_exception_handler(request: Request, exc: NoteVaultError) -> JSONResponse:
    """
    Global exception handler for NoteVaultError

    Logs the full error server-side and returns the sanitized form.
    """
    error_id = str(uuid.uuid4())[:8]
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        f"[{error_id}] {exc.error_type.value} on {request.method} {request.url.path}: {exc.message}",
        exc_info=exc if exc.status_code >= 500 else None,
    )

    http_exc = ErrorHandler.to_http_exception(exc)
    content: dict = dict(http_exc.detail)
    content["error_id"] = error_id
    headers: Optional[dict] = None
    if exc.error_type in (ErrorType.CONNECTION_TIMEOUT, ErrorType.POOL_DRAIN_TIMEOUT):
        headers = {"Retry-After": "1"}

    return JSONResponse(status_code=http_exc.status_code, content=content, headers=headers)
