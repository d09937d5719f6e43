"""
Scheduled Backups

Runs create_backup(type=scheduled) followed by retention cleanup on a fixed
interval. Failures are logged and counted; the schedule keeps going.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from notevault.backup.service import BackupManager
from notevault.backup.types import BackupType, RetentionPolicy
from notevault.config import INTERVAL_PATTERN
from notevault.errors import NoteVaultError

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400}


def parse_interval(value: Union[str, int, float]) -> float:
    """
    Convert '30m', '6h', '1d' or a number of seconds into seconds

    Raises:
        ValueError: Unrecognized or non-positive interval
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        if INTERVAL_PATTERN.match(text):
            seconds = float(int(text[:-1]) * _UNIT_SECONDS[text[-1]])
        elif text.isdigit():
            seconds = float(text)
        else:
            raise ValueError(f"Invalid backup interval {value!r}; use e.g. '30m', '6h', '1d'")

    if seconds <= 0:
        raise ValueError("Backup interval must be positive")
    return seconds


class BackupScheduler:
    """
    Periodic backup job with runtime enable/disable

    Usage:
        scheduler = BackupScheduler(manager, interval="6h")
        await scheduler.start()
        ...
        await scheduler.update(interval="1d")
        await scheduler.stop()
    """

    def __init__(self, manager: BackupManager, interval: Union[str, int, float] = "6h"):
        self.manager = manager
        self.interval = str(interval)
        self.interval_seconds = parse_interval(interval)
        self.last_run: Optional[datetime] = None
        self.last_backup_id: Optional[str] = None
        self.last_error: Optional[str] = None
        self.run_count = 0
        self.error_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, interval: Optional[Union[str, int, float]] = None) -> None:
        """Start (or restart with a new interval)"""
        if interval is not None:
            self.interval_seconds = parse_interval(interval)
            self.interval = str(interval)

        if self.running:
            await self.stop()

        self._task = asyncio.create_task(self._run_loop(), name="notevault-backup-scheduler")
        logger.info(f"Scheduled backups enabled (every {self.interval})")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Scheduled backups stopped")

    async def update(
        self,
        enabled: Optional[bool] = None,
        interval: Optional[Union[str, int, float]] = None,
        retention: Optional[RetentionPolicy] = None,
    ) -> Dict[str, Any]:
        """Change schedule settings at runtime"""
        if interval is not None:
            # Validate before touching a running schedule
            seconds = parse_interval(interval)
            self.interval_seconds = seconds
            self.interval = str(interval)

        if retention is not None:
            self.manager.config.retention = retention
            logger.info(f"Backup retention updated: {retention.model_dump()}")

        if enabled is True or (enabled is None and interval is not None and self.running):
            await self.start()
        elif enabled is False:
            await self.stop()

        return self.status()

    async def run_once(self) -> None:
        """One scheduled tick: backup then cleanup"""
        self.last_run = datetime.now(timezone.utc)
        try:
            record = await self.manager.create_backup(type=BackupType.SCHEDULED)
            self.last_backup_id = record.id
            self.last_error = None
            self.run_count += 1
        except NoteVaultError as e:
            self.error_count += 1
            self.last_error = e.message
            logger.error(f"Scheduled backup failed: {e.message}")
            return

        try:
            await self.manager.cleanup_old_backups()
        except OSError as e:
            self.error_count += 1
            self.last_error = str(e)
            logger.error(f"Backup cleanup failed: {e}")

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                self.error_count += 1
                logger.error(f"Scheduled backup tick failed: {e}", exc_info=True)

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.running,
            "interval": self.interval,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_backup_id": self.last_backup_id,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "retention": self.manager.config.retention.model_dump(),
        }
