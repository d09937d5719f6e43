"""
Error Types - Enums and exception classes for the database core

Contains:
- ErrorType enum (standardized error types)
- Exception classes (NoteVaultError and subclasses)

Messages and details never carry bound SQL parameter values.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorType(Enum):
    """Standard error types"""
    # Startup
    INITIALIZATION_FAILED = "initialization_failed"

    # Pool
    CONNECTION_TIMEOUT = "connection_timeout"
    POOL_CLOSED = "pool_closed"
    POOL_DRAIN_TIMEOUT = "pool_drain_timeout"

    # Statements
    QUERY_FAILED = "query_failed"
    TRANSACTION_FAILED = "transaction_failed"

    # Backups
    BACKUP_FAILED = "backup_failed"
    BACKUP_IN_PROGRESS = "backup_in_progress"
    BACKUP_NOT_FOUND = "backup_not_found"
    RESTORE_FAILED = "restore_failed"

    # Generic
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


class NoteVaultError(Exception):
    """Base exception for NoteVault"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class InitializationError(NoteVaultError):
    """Startup failure - the process should not serve traffic"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_type=ErrorType.INITIALIZATION_FAILED,
            status_code=503,
            details=details
        )


class ConnectionTimeoutError(NoteVaultError):
    """Pool exhausted for longer than the acquire timeout (retryable)"""

    retryable = True

    def __init__(self, timeout_ms: int, details: Optional[Dict[str, Any]] = None):
        self.timeout_ms = timeout_ms
        super().__init__(
            message=f"Timed out acquiring a database connection after {timeout_ms}ms",
            error_type=ErrorType.CONNECTION_TIMEOUT,
            status_code=503,
            details={"timeout_ms": timeout_ms, **(details or {})}
        )


class PoolClosedError(NoteVaultError):
    """Acquire attempted on a closed pool"""

    def __init__(self, message: str = "Connection pool is closed"):
        super().__init__(
            message=message,
            error_type=ErrorType.POOL_CLOSED,
            status_code=503
        )


class PoolDrainTimeoutError(NoteVaultError):
    """In-flight operations did not finish within the drain timeout"""

    def __init__(self, timeout_ms: int, in_use: int):
        super().__init__(
            message=f"Pool did not drain within {timeout_ms}ms ({in_use} connections still in use)",
            error_type=ErrorType.POOL_DRAIN_TIMEOUT,
            status_code=503,
            details={"timeout_ms": timeout_ms, "in_use": in_use}
        )


class QueryError(NoteVaultError):
    """Statement execution failure"""

    def __init__(
        self,
        message: str,
        operation: str,
        statement: str = "",
        details: Optional[Dict[str, Any]] = None
    ):
        self.operation = operation
        self.statement = statement
        super().__init__(
            message=message,
            error_type=ErrorType.QUERY_FAILED,
            status_code=500,
            details={"operation": operation, "statement": statement, **(details or {})}
        )


class TransactionError(NoteVaultError):
    """Rollback failed after the transaction body raised"""

    def __init__(self, original_error: BaseException, rollback_error: BaseException):
        self.original_error = original_error
        self.rollback_error = rollback_error
        super().__init__(
            message=(
                f"Transaction rollback failed ({type(rollback_error).__name__}) "
                f"after {type(original_error).__name__}: {original_error}"
            ),
            error_type=ErrorType.TRANSACTION_FAILED,
            status_code=500,
            details={
                "original_error": type(original_error).__name__,
                "rollback_error": str(rollback_error),
            }
        )


class BackupError(NoteVaultError):
    """Backup creation or bookkeeping failure"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.BACKUP_FAILED,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_type=error_type,
            status_code=status_code,
            details=details
        )


class BackupNotFoundError(BackupError):
    """No catalog entry for the requested backup id"""

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(
            message=f"Backup {backup_id} not found",
            error_type=ErrorType.BACKUP_NOT_FOUND,
            status_code=404,
            details={"backup_id": backup_id}
        )


class RestoreError(NoteVaultError):
    """Restore attempt failed

    The live database is untouched unless details carry pre_restore_path,
    which means the file was swapped but the pool could not reopen it.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_type=ErrorType.RESTORE_FAILED,
            status_code=500,
            details=details
        )


__all__ = [
    # Enum
    "ErrorType",
    # Exception classes
    "NoteVaultError",
    "InitializationError",
    "ConnectionTimeoutError",
    "PoolClosedError",
    "PoolDrainTimeoutError",
    "QueryError",
    "TransactionError",
    "BackupError",
    "BackupNotFoundError",
    "RestoreError",
]
