"""
Services Container

Builds every database-core component from settings and owns their
start/stop lifecycle. The app factory keeps one instance on app.state;
tests build their own.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from notevault.backup.scheduler import BackupScheduler
from notevault.backup.service import BackupConfig, BackupManager
from notevault.config import NoteVaultSettings
from notevault.db.connection import PoolConfig
from notevault.db.executor import QueryExecutor
from notevault.db.pool import ConnectionPool
from notevault.monitoring.health import HealthReporter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: NoteVaultSettings
    pool: ConnectionPool
    executor: QueryExecutor
    backups: BackupManager
    scheduler: BackupScheduler
    health: HealthReporter

    async def start(self) -> None:
        """Initialize the pool, load the backup catalog, start the schedule if enabled"""
        report = await self.pool.initialize()
        if report is not None and report.warnings:
            for warning in report.warnings:
                logger.warning(f"Setup warning: index {warning.index} on {warning.table}: {warning.message}")

        await self.backups.load_catalog()

        if self.settings.backup_schedule_enabled:
            await self.scheduler.start()

        logger.info("NoteVault database services started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.pool.close()
        logger.info("NoteVault database services stopped")


def build_services(
    settings: NoteVaultSettings,
    pool_config: Optional[PoolConfig] = None,
) -> Services:
    """
    Wire the components together

    Args:
        settings: Application settings
        pool_config: Override for the derived pool configuration
    """
    pool = ConnectionPool(pool_config or PoolConfig.from_settings(settings))
    backups = BackupManager(pool, BackupConfig.from_settings(settings))
    return Services(
        settings=settings,
        pool=pool,
        executor=QueryExecutor(pool),
        backups=backups,
        scheduler=BackupScheduler(backups, interval=settings.backup_schedule_interval),
        health=HealthReporter(pool),
    )
