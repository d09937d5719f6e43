"""
Backup Types - Records and request/response models for backup operations

Contains:
- BackupType, BackupStatus enums
- BackupRecord (catalog entry, persisted as <id>.json)
- VerificationResult, RestoreResult, RetentionPolicy
- Request models for the backup router
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class BackupType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class BackupStatus(str, Enum):
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"


# Statuses whose snapshot file exists on disk
RESTORABLE_STATUSES = frozenset({
    BackupStatus.COMPLETED,
    BackupStatus.VERIFIED,
    BackupStatus.VERIFICATION_FAILED,
})


class BackupRecord(BaseModel):
    """Metadata describing one snapshot attempt and its outcome"""
    id: str
    type: BackupType = BackupType.MANUAL
    filename: str
    compressed: bool = False
    encrypted: bool = False
    status: BackupStatus = BackupStatus.REQUESTED
    created_at: datetime
    completed_at: Optional[datetime] = None
    size_bytes: Optional[int] = None
    source_size_bytes: Optional[int] = None
    checksum: Optional[str] = None  # SHA-256 of the stored file
    source_checksum: Optional[str] = None  # SHA-256 of the plain snapshot
    verified_at: Optional[datetime] = None
    requested_by: Optional[str] = None
    error: Optional[str] = None

    @property
    def manifest_name(self) -> str:
        return f"{self.id}.json"


class VerificationResult(BaseModel):
    valid: bool
    backup_id: str
    checksum: Optional[str] = None
    expected_checksum: Optional[str] = None
    details: str = ""
    verified_at: datetime


class RestoreResult(BaseModel):
    backup_id: str
    dry_run: bool
    restored: bool
    integrity_check: str
    pre_restore_path: Optional[str] = None
    size_bytes: Optional[int] = None
    duration_ms: float = 0.0
    details: str = ""


class RetentionPolicy(BaseModel):
    """Keep the N most recent backups and/or those newer than max_age_days"""
    keep_count: Optional[int] = Field(default=None, ge=1)
    max_age_days: Optional[int] = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return self.keep_count is not None or self.max_age_days is not None


class BackupCreateRequest(BaseModel):
    """Request to create a new backup"""
    compress: Optional[bool] = None  # None = configured default
    encrypt: bool = False
    requested_by: Optional[str] = None


class BackupRestoreRequest(BaseModel):
    """Request to restore a backup over the live database"""
    dry_run: bool = False
    confirm: bool = False
    requested_by: Optional[str] = None

    @model_validator(mode="after")
    def require_confirmation(self) -> "BackupRestoreRequest":
        if not self.dry_run and not self.confirm:
            raise ValueError("Restore requires confirm=true (or dry_run=true)")
        return self


class ScheduleUpdateRequest(BaseModel):
    """Request to change the backup schedule at runtime"""
    enabled: Optional[bool] = None
    interval: Optional[str] = None
    keep_count: Optional[int] = Field(default=None, ge=1)
    max_age_days: Optional[int] = Field(default=None, ge=1)


class BackupListResponse(BaseModel):
    backups: list[BackupRecord]
    total: int


class CleanupResponse(BaseModel):
    deleted: list[str]
    remaining: int


__all__ = [
    "BackupType",
    "BackupStatus",
    "RESTORABLE_STATUSES",
    "BackupRecord",
    "VerificationResult",
    "RestoreResult",
    "RetentionPolicy",
    "BackupCreateRequest",
    "BackupRestoreRequest",
    "ScheduleUpdateRequest",
    "BackupListResponse",
    "CleanupResponse",
]
