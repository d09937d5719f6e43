"""
Backup Router for NoteVault

Administrative endpoints for snapshot creation, verification, retention,
scheduling, download and restore. Failures surface as generic messages;
full context stays in the server log.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from notevault.backup.scheduler import BackupScheduler
from notevault.backup.service import BackupManager
from notevault.backup.types import (
    BackupCreateRequest,
    BackupListResponse,
    BackupRecord,
    BackupRestoreRequest,
    CleanupResponse,
    RestoreResult,
    RetentionPolicy,
    ScheduleUpdateRequest,
    VerificationResult,
)
from notevault.deps import get_backup_manager, get_backup_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/backups", tags=["backups"])


@router.post("", response_model=BackupRecord, status_code=201)
async def create_backup(
    payload: BackupCreateRequest,
    manager: BackupManager = Depends(get_backup_manager)
):
    """
    Create a new manual backup

    Body:
        - compress: gzip the snapshot (defaults to configuration)
        - encrypt: AES-256-GCM with the configured passphrase
        - requested_by: operator identity recorded on the backup
    """
    record = await manager.create_backup(
        compress=payload.compress,
        encrypt=payload.encrypt,
        requested_by=payload.requested_by,
    )
    logger.info(f"Backup {record.id} created via API by {payload.requested_by or 'unknown'}")
    return record


@router.get("", response_model=BackupListResponse)
async def list_backups(manager: BackupManager = Depends(get_backup_manager)):
    """List all backup records, newest first"""
    backups = manager.list_backups()
    return BackupListResponse(backups=backups, total=len(backups))


@router.get("/statistics")
async def backup_statistics(manager: BackupManager = Depends(get_backup_manager)) -> Dict[str, Any]:
    return manager.get_statistics()


@router.get("/schedule")
async def get_schedule(scheduler: BackupScheduler = Depends(get_backup_scheduler)) -> Dict[str, Any]:
    return scheduler.status()


@router.put("/schedule")
async def update_schedule(
    payload: ScheduleUpdateRequest,
    scheduler: BackupScheduler = Depends(get_backup_scheduler)
) -> Dict[str, Any]:
    """
    Enable/disable scheduled backups or change interval and retention

    Retention fields left out keep their current values.
    """
    retention = None
    if "keep_count" in payload.model_fields_set or "max_age_days" in payload.model_fields_set:
        current = scheduler.manager.config.retention
        retention = RetentionPolicy(
            keep_count=(
                payload.keep_count if "keep_count" in payload.model_fields_set else current.keep_count
            ),
            max_age_days=(
                payload.max_age_days if "max_age_days" in payload.model_fields_set else current.max_age_days
            ),
        )

    try:
        return await scheduler.update(
            enabled=payload.enabled,
            interval=payload.interval,
            retention=retention,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_backups(manager: BackupManager = Depends(get_backup_manager)):
    """Apply the retention policy now"""
    deleted = await manager.cleanup_old_backups()
    return CleanupResponse(deleted=deleted, remaining=len(manager.list_backups()))


@router.get("/{backup_id}/verify", response_model=VerificationResult)
async def verify_backup(backup_id: str, manager: BackupManager = Depends(get_backup_manager)):
    return await manager.verify_backup(backup_id)


@router.post("/{backup_id}/restore", response_model=RestoreResult)
async def restore_backup(
    backup_id: str,
    payload: BackupRestoreRequest,
    manager: BackupManager = Depends(get_backup_manager)
):
    """
    Restore a backup over the live database

    Body:
        - confirm: must be true unless dry_run is set
        - dry_run: validate the backup without touching the live database
        - requested_by: operator identity for the log
    """
    result = await manager.restore_backup(
        backup_id,
        dry_run=payload.dry_run,
        requested_by=payload.requested_by,
    )
    return result


@router.get("/{backup_id}/download")
async def download_backup(backup_id: str, manager: BackupManager = Depends(get_backup_manager)):
    path = manager.backup_path(backup_id)
    return FileResponse(
        path,
        media_type="application/octet-stream",
        filename=path.name,
    )
