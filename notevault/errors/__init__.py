"""
Errors Package

Provides standardized error handling for NoteVault:
- ErrorType enum for error categories
- Exception classes (NoteVaultError and subclasses)
- ErrorHandler for converting errors to standardized format
- FastAPI exception handler for sanitized HTTP responses
"""

from notevault.errors.types import (
    ErrorType,
    NoteVaultError,
    InitializationError,
    ConnectionTimeoutError,
    PoolClosedError,
    PoolDrainTimeoutError,
    QueryError,
    TransactionError,
    BackupError,
    BackupNotFoundError,
    RestoreError,
)
from notevault.errors.handler import (
    ErrorHandler,
    notevault_exception_handler,
    preview_statement,
)

__all__ = [
    # Error types
    "ErrorType",
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
    # Handler
    "ErrorHandler",
    "notevault_exception_handler",
    "preview_statement",
]
