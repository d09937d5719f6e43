"""
Shared dependency injection helpers for FastAPI routes.

Routers pull their components from the Services container stored on
``app.state.services`` by the app factory, so no module-level singletons
are needed.
"""

from fastapi import Request

from notevault.backup.scheduler import BackupScheduler
from notevault.backup.service import BackupManager
from notevault.db.executor import QueryExecutor
from notevault.db.pool import ConnectionPool
from notevault.errors import ErrorType, NoteVaultError
from notevault.monitoring.health import HealthReporter
from notevault.services import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise NoteVaultError(
            "Database services are not running",
            error_type=ErrorType.SERVICE_UNAVAILABLE,
            status_code=503
        )
    return services


def get_pool(request: Request) -> ConnectionPool:
    return get_services(request).pool


def get_executor(request: Request) -> QueryExecutor:
    return get_services(request).executor


def get_backup_manager(request: Request) -> BackupManager:
    return get_services(request).backups


def get_backup_scheduler(request: Request) -> BackupScheduler:
    return get_services(request).scheduler


def get_health_reporter(request: Request) -> HealthReporter:
    return get_services(request).health


__all__ = [
    "get_services",
    "get_pool",
    "get_executor",
    "get_backup_manager",
    "get_backup_scheduler",
    "get_health_reporter",
]
