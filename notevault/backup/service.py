"""
Backup Manager for the NoteVault database

Features:
- Consistent snapshots (WAL checkpoint, then VACUUM INTO a staging file)
- Optional gzip compression and AES-256-GCM encryption
- SHA-256 checksums of both the plain snapshot and the stored file
- On-disk manifest per backup (<id>.json), reloaded on start
- Verification, retention pruning, statistics
- Restore with dry run; the live file is swapped only while the pool is quiesced

Backup directory layout:
backups/
├── manual-20250101-020000-1a2b3c4d.db.gz       (stored snapshot)
├── manual-20250101-020000-1a2b3c4d.json        (manifest)
└── scheduled-20250101-080000-5e6f7a8b.db.gz.enc
"""

import asyncio
import gzip
import logging
import os
import secrets
import shutil
import sqlite3
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiosqlite
from pydantic import ValidationError

from notevault.backup.codec import (
    InvalidTag,
    calculate_checksum,
    decode_snapshot,
    encode_snapshot,
)
from notevault.backup.types import (
    RESTORABLE_STATUSES,
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreResult,
    RetentionPolicy,
    VerificationResult,
)
from notevault.config import NoteVaultSettings
from notevault.db.pool import ConnectionPool
from notevault.errors import (
    BackupError,
    BackupNotFoundError,
    ErrorType,
    InitializationError,
    PoolDrainTimeoutError,
    RestoreError,
)

logger = logging.getLogger(__name__)

SNAPSHOT_EXTENSION = ".db"
_DECODE_ERRORS = (OSError, EOFError, zlib.error, gzip.BadGzipFile, sqlite3.Error)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupConfig:
    """Configuration for the backup manager"""
    backup_dir: Path
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    compress: bool = True
    passphrase: Optional[str] = None
    drain_timeout_ms: Optional[int] = None

    def __post_init__(self):
        self.backup_dir = Path(self.backup_dir).expanduser()

    @classmethod
    def from_settings(cls, settings: NoteVaultSettings) -> "BackupConfig":
        """Create config from application settings"""
        return cls(
            backup_dir=settings.backup_dir,
            retention=RetentionPolicy(
                keep_count=settings.backup_retention_count,
                max_age_days=settings.backup_retention_days,
            ),
            compress=settings.backup_compress,
            passphrase=(
                settings.backup_passphrase.get_secret_value()
                if settings.backup_passphrase else None
            ),
            drain_timeout_ms=settings.db_drain_timeout_ms,
        )


class BackupManager:
    """
    Creates, verifies, prunes and restores snapshots of the pooled database

    Only one backup or restore runs at a time.
    """

    def __init__(self, pool: ConnectionPool, config: BackupConfig):
        self.pool = pool
        self.config = config
        self._records: Dict[str, BackupRecord] = {}
        self._lock = asyncio.Lock()

    @property
    def backup_dir(self) -> Path:
        return self.config.backup_dir

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    # ===== Catalog =====

    async def load_catalog(self) -> int:
        """
        Rebuild the catalog from manifests on disk

        Returns:
            Number of records loaded
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        loaded = 0

        for manifest in sorted(self.backup_dir.glob("*.json")):
            try:
                async with aiofiles.open(manifest, "r") as f:
                    record = BackupRecord.model_validate_json(await f.read())
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping unreadable backup manifest {manifest.name}: {e}")
                continue
            self._records[record.id] = record
            loaded += 1

        logger.info(f"Loaded {loaded} backup records from {self.backup_dir}")
        return loaded

    def list_backups(self) -> List[BackupRecord]:
        """All records, newest first"""
        records = sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)
        return [r.model_copy() for r in records]

    def get_backup(self, backup_id: str) -> BackupRecord:
        return self._require(backup_id).model_copy()

    def backup_path(self, backup_id: str) -> Path:
        """Path of the stored file, for downloads"""
        record = self._require(backup_id)
        path = self.backup_dir / record.filename
        if record.status not in RESTORABLE_STATUSES or not path.exists():
            raise BackupNotFoundError(backup_id)
        return path

    def _require(self, backup_id: str) -> BackupRecord:
        record = self._records.get(backup_id)
        if record is None:
            raise BackupNotFoundError(backup_id)
        return record

    async def _write_manifest(self, record: BackupRecord) -> None:
        manifest = self.backup_dir / record.manifest_name
        tmp = manifest.with_suffix(".json.tmp")
        async with aiofiles.open(tmp, "w") as f:
            await f.write(record.model_dump_json(indent=2))
        os.replace(tmp, manifest)

    def _remove_files(self, record: BackupRecord) -> None:
        for path in (self.backup_dir / record.filename, self.backup_dir / record.manifest_name):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Could not delete {path.name}: {e}")

    # ===== Create =====

    def _claim(self, action: str) -> None:
        if self._lock.locked():
            raise BackupError(
                f"Cannot {action}: a backup operation is already in progress",
                error_type=ErrorType.BACKUP_IN_PROGRESS,
                status_code=409,
            )

    async def create_backup(
        self,
        type: BackupType = BackupType.MANUAL,
        compress: Optional[bool] = None,
        encrypt: bool = False,
        requested_by: Optional[str] = None,
    ) -> BackupRecord:
        """
        Snapshot the live database into the backup directory

        Args:
            type: manual or scheduled
            compress: gzip the snapshot (None = configured default)
            encrypt: AES-256-GCM with the configured passphrase
            requested_by: Operator identity for the record

        Returns:
            The completed BackupRecord

        Raises:
            BackupError: Another backup is running, encryption is not
                configured, or the snapshot failed (partial files removed)
        """
        self._claim("start backup")
        async with self._lock:
            if encrypt and not self.config.passphrase:
                raise BackupError(
                    "Encrypted backup requested but no backup passphrase is configured",
                    status_code=400,
                )

            compress = self.config.compress if compress is None else compress
            created_at = _utcnow()
            backup_id = f"{type.value}-{created_at:%Y%m%d-%H%M%S}-{secrets.token_hex(4)}"
            filename = backup_id + SNAPSHOT_EXTENSION
            if compress:
                filename += ".gz"
            if encrypt:
                filename += ".enc"

            record = BackupRecord(
                id=backup_id,
                type=type,
                filename=filename,
                compressed=compress,
                encrypted=encrypt,
                status=BackupStatus.REQUESTED,
                created_at=created_at,
                requested_by=requested_by,
            )
            self._records[backup_id] = record

            staging = self.backup_dir / f".{backup_id}.snapshot"
            stored = self.backup_dir / filename
            start = time.perf_counter()

            try:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                record.status = BackupStatus.IN_PROGRESS
                logger.info(f"Starting {type.value} backup {backup_id}")

                await self._snapshot(staging)
                record.source_size_bytes = staging.stat().st_size
                record.source_checksum = await calculate_checksum(staging)

                await encode_snapshot(
                    staging,
                    stored,
                    compress=compress,
                    passphrase=self.config.passphrase if encrypt else None,
                )
                os.chmod(stored, 0o600)

                record.size_bytes = stored.stat().st_size
                record.checksum = await calculate_checksum(stored)
                record.status = BackupStatus.COMPLETED
                record.completed_at = _utcnow()
                await self._write_manifest(record)

            except Exception as e:
                record.status = BackupStatus.FAILED
                record.error = str(e)
                record.completed_at = _utcnow()
                self._remove_files(record)
                logger.error(f"Backup {backup_id} failed: {e}", exc_info=True)
                raise BackupError(
                    f"Backup {backup_id} failed: {e}",
                    details={"backup_id": backup_id}
                ) from e

            finally:
                staging.unlink(missing_ok=True)

            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                f"Backup {backup_id} completed: {record.size_bytes} bytes "
                f"(source {record.source_size_bytes}) in {duration_ms:.0f}ms"
            )
            return record.model_copy()

    async def _snapshot(self, staging: Path) -> None:
        """Checkpoint the WAL and write a consistent copy of the database"""
        async with self.pool.connection() as pc:
            async with pc.connection.execute("PRAGMA wal_checkpoint(TRUNCATE)") as cursor:
                await cursor.fetchall()
            await pc.connection.execute("VACUUM INTO ?", (str(staging),))

    # ===== Verify =====

    async def verify_backup(self, backup_id: str) -> VerificationResult:
        """
        Recompute the stored file checksum and compare with the record

        Marks the record verified or verification_failed.
        """
        record = self._require(backup_id)
        if record.status not in RESTORABLE_STATUSES:
            raise BackupError(
                f"Backup {backup_id} has no stored file (status {record.status.value})",
                status_code=409,
                details={"backup_id": backup_id},
            )

        path = self.backup_dir / record.filename
        actual: Optional[str] = None
        if not path.exists():
            valid = False
            details = "Backup file is missing"
        else:
            actual = await calculate_checksum(path)
            valid = actual == record.checksum
            details = "Checksum matches" if valid else "Checksum mismatch"

        verified_at = _utcnow()
        record.status = BackupStatus.VERIFIED if valid else BackupStatus.VERIFICATION_FAILED
        record.verified_at = verified_at
        await self._write_manifest(record)

        if valid:
            logger.info(f"Backup verified: {backup_id}")
        else:
            logger.error(f"Backup verification failed for {backup_id}: {details}")

        return VerificationResult(
            valid=valid,
            backup_id=backup_id,
            checksum=actual,
            expected_checksum=record.checksum,
            details=details,
            verified_at=verified_at,
        )

    # ===== Restore =====

    async def restore_backup(
        self,
        backup_id: str,
        dry_run: bool = False,
        requested_by: Optional[str] = None,
    ) -> RestoreResult:
        """
        Restore a backup over the live database

        The backup is verified, decoded into a staging file beside the live
        database and integrity-checked before anything is touched. A dry run
        stops there. Otherwise the pool is quiesced, the live file is copied
        to ``<db>.pre-restore-<timestamp>`` and the staging file atomically
        replaces it.

        Raises:
            BackupNotFoundError: Unknown backup id
            RestoreError: Any failure before the swap (live database untouched)
        """
        record = self._require(backup_id)
        if record.status not in RESTORABLE_STATUSES:
            raise RestoreError(
                f"Backup {backup_id} cannot be restored (status {record.status.value})",
                details={"backup_id": backup_id},
            )
        if record.encrypted and not self.config.passphrase:
            raise RestoreError(
                f"Backup {backup_id} is encrypted but no backup passphrase is configured",
                details={"backup_id": backup_id},
            )

        self._claim("restore")
        async with self._lock:
            live = self.pool.config.database
            staging = live.with_name(f"{live.name}.restore-{secrets.token_hex(4)}")
            start = time.perf_counter()
            logger.info(
                f"Restore of {backup_id} requested by {requested_by or 'unknown'} "
                f"(dry_run={dry_run})"
            )

            try:
                verification = await self.verify_backup(backup_id)
                if not verification.valid:
                    raise RestoreError(
                        f"Backup {backup_id} failed verification: {verification.details}",
                        details={"backup_id": backup_id},
                    )

                await decode_snapshot(
                    self.backup_dir / record.filename,
                    staging,
                    compressed=record.compressed,
                    passphrase=self.config.passphrase if record.encrypted else None,
                )

                if record.source_checksum:
                    actual = await calculate_checksum(staging)
                    if actual != record.source_checksum:
                        raise RestoreError(
                            f"Decoded snapshot of {backup_id} does not match its source checksum",
                            details={"backup_id": backup_id},
                        )

                integrity = await self._integrity_check(staging)
                if integrity != "ok":
                    raise RestoreError(
                        f"Snapshot of {backup_id} failed integrity check: {integrity}",
                        details={"backup_id": backup_id},
                    )

                size_bytes = staging.stat().st_size

                if dry_run:
                    duration_ms = (time.perf_counter() - start) * 1000
                    logger.info(f"Dry-run restore of {backup_id} passed all checks")
                    return RestoreResult(
                        backup_id=backup_id,
                        dry_run=True,
                        restored=False,
                        integrity_check=integrity,
                        size_bytes=size_bytes,
                        duration_ms=round(duration_ms, 2),
                        details="Backup is restorable",
                    )

                pre_restore = live.with_name(f"{live.name}.pre-restore-{_utcnow():%Y%m%d-%H%M%S}")
                try:
                    async with self.pool.quiesce(self.config.drain_timeout_ms):
                        if live.exists():
                            await asyncio.to_thread(shutil.copy2, live, pre_restore)
                        os.replace(staging, live)
                        for suffix in ("-wal", "-shm"):
                            Path(f"{live}{suffix}").unlink(missing_ok=True)
                except PoolDrainTimeoutError as e:
                    raise RestoreError(
                        f"Restore of {backup_id} aborted: {e.message}",
                        details={"backup_id": backup_id},
                    ) from e
                except InitializationError as e:
                    raise RestoreError(
                        f"Database file replaced from {backup_id} but could not be reopened: {e.message}",
                        details={
                            "backup_id": backup_id,
                            "pre_restore_path": str(pre_restore) if pre_restore.exists() else None,
                        },
                    ) from e

            except RestoreError as e:
                if "pre_restore_path" in e.details:
                    logger.critical(
                        f"Restore of {backup_id} swapped the database but the pool did not come back; "
                        f"previous file at {e.details['pre_restore_path']}"
                    )
                else:
                    logger.error(f"Restore of {backup_id} failed; live database untouched")
                raise
            except InvalidTag as e:
                logger.error(f"Restore of {backup_id} failed: backup could not be decrypted")
                raise RestoreError(
                    f"Backup {backup_id} could not be decrypted (wrong passphrase or tampered file)",
                    details={"backup_id": backup_id},
                ) from e
            except _DECODE_ERRORS as e:
                logger.error(f"Restore of {backup_id} failed: {e}", exc_info=True)
                raise RestoreError(
                    f"Restore of {backup_id} failed: {e}",
                    details={"backup_id": backup_id},
                ) from e
            finally:
                staging.unlink(missing_ok=True)

            duration_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                f"Database restored from {backup_id} in {duration_ms:.0f}ms "
                f"(previous file kept at {pre_restore.name})"
            )
            return RestoreResult(
                backup_id=backup_id,
                dry_run=False,
                restored=True,
                integrity_check=integrity,
                pre_restore_path=str(pre_restore) if pre_restore.exists() else None,
                size_bytes=size_bytes,
                duration_ms=round(duration_ms, 2),
                details="Database restored",
            )

    async def _integrity_check(self, path: Path) -> str:
        async with aiosqlite.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True) as conn:
            async with conn.execute("PRAGMA integrity_check") as cursor:
                rows = await cursor.fetchall()
        messages = [row[0] for row in rows]
        if messages == ["ok"]:
            return "ok"
        return "; ".join(messages[:5]) or "no result"

    # ===== Retention =====

    async def cleanup_old_backups(self, now: Optional[datetime] = None) -> List[str]:
        """
        Apply the retention policy

        A stored backup is deleted when it falls outside the keep_count
        newest or is older than max_age_days. Failed records are dropped
        from history once older than max_age_days.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            Ids of the deleted backups
        """
        policy = self.config.retention
        if not policy.enabled:
            return []

        now = now or _utcnow()
        cutoff = now - timedelta(days=policy.max_age_days) if policy.max_age_days else None

        stored = sorted(
            (r for r in self._records.values() if r.status in RESTORABLE_STATUSES),
            key=lambda r: r.created_at,
            reverse=True,
        )
        doomed: List[BackupRecord] = []
        for rank, record in enumerate(stored):
            beyond_count = policy.keep_count is not None and rank >= policy.keep_count
            too_old = cutoff is not None and record.created_at < cutoff
            if beyond_count or too_old:
                doomed.append(record)

        if cutoff is not None:
            doomed.extend(
                r for r in self._records.values()
                if r.status == BackupStatus.FAILED and r.created_at < cutoff
            )

        deleted = []
        for record in doomed:
            self._remove_files(record)
            self._records.pop(record.id, None)
            deleted.append(record.id)
            logger.info(f"Deleted old backup: {record.id}")

        if deleted:
            logger.info(f"Cleaned up {len(deleted)} old backups")
        return deleted

    # ===== Statistics =====

    def get_statistics(self) -> Dict[str, Any]:
        stored = [r for r in self._records.values() if r.status in RESTORABLE_STATUSES]
        stored.sort(key=lambda r: r.created_at)
        by_type = {t.value: 0 for t in BackupType}
        for record in stored:
            by_type[record.type.value] += 1

        latest = max(self._records.values(), key=lambda r: r.created_at, default=None)

        return {
            "total_backups": len(stored),
            "failed_backups": sum(1 for r in self._records.values() if r.status == BackupStatus.FAILED),
            "total_size_bytes": sum(r.size_bytes or 0 for r in stored),
            "by_type": by_type,
            "oldest_backup": stored[0].created_at.isoformat() if stored else None,
            "newest_backup": stored[-1].created_at.isoformat() if stored else None,
            "last_backup": latest.model_dump(mode="json") if latest else None,
            "backup_in_progress": self.in_progress,
            "retention": self.config.retention.model_dump(),
            "backup_dir": str(self.backup_dir),
        }
