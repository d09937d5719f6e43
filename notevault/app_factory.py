"""
FastAPI application factory for NoteVault.

Creates the administrative API: database health/maintenance routes and
backup routes, with the database services started and stopped by the
lifespan handler.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from notevault import __version__
from notevault.backup.router import router as backup_router
from notevault.config import NoteVaultSettings, get_settings
from notevault.errors import NoteVaultError, notevault_exception_handler
from notevault.monitoring.routes import router as database_router
from notevault.services import Services, build_services
from notevault.utils.structured_logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[NoteVaultSettings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        settings: Settings to use (defaults to the cached environment settings)
        services: Pre-built services (defaults to build_services(settings))
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ===== STARTUP =====
        setup_logging(settings.log_level, json_format=settings.log_json)
        logger.info(f"Starting NoteVault database core ({settings.environment})")

        app.state.services = services or build_services(settings)
        await app.state.services.start()

        yield

        # ===== SHUTDOWN =====
        logger.info("Shutting down NoteVault database core...")
        await app.state.services.stop()
        app.state.services = None

    app = FastAPI(
        title="NoteVault Database Core",
        description="Connection pool, backup and health administration",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_exception_handler(NoteVaultError, notevault_exception_handler)
    app.include_router(database_router)
    app.include_router(backup_router)

    return app
