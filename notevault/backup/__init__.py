"""
Backup Package

Provides snapshot backup and restore for the NoteVault database:
- BackupManager: creation, verification, retention, restore
- BackupScheduler: periodic scheduled backups
- Router: administrative API endpoints
- Types: records and request/response models
"""

from notevault.backup.scheduler import BackupScheduler, parse_interval
from notevault.backup.service import BackupConfig, BackupManager
from notevault.backup.types import (
    BackupCreateRequest,
    BackupRecord,
    BackupRestoreRequest,
    BackupStatus,
    BackupType,
    RestoreResult,
    RetentionPolicy,
    ScheduleUpdateRequest,
    VerificationResult,
)

__all__ = [
    # Core classes
    "BackupManager",
    "BackupConfig",
    "BackupScheduler",
    "parse_interval",
    # Types
    "BackupType",
    "BackupStatus",
    "BackupRecord",
    "VerificationResult",
    "RestoreResult",
    "RetentionPolicy",
    "BackupCreateRequest",
    "BackupRestoreRequest",
    "ScheduleUpdateRequest",
]
