"""
Unified Configuration Management for NoteVault

Consolidates database, backup and server configuration into a single source
of truth using Pydantic BaseSettings. All settings can be overridden via
environment variables with the NOTEVAULT_ prefix.

Usage:
    from notevault.config import get_settings

    settings = get_settings()
    print(settings.db_path)
    print(settings.backup_dir)
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

INTERVAL_PATTERN = re.compile(r"^\d+[mhd]$")


class NoteVaultSettings(BaseSettings):
    """
    Unified configuration for NoteVault

    All settings can be overridden via environment variables with NOTEVAULT_ prefix.
    Example: NOTEVAULT_DB_POOL_SIZE=20
    """

    model_config = SettingsConfigDict(
        env_prefix="NOTEVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # SYSTEM SETTINGS
    # ============================================

    environment: Literal["development", "production", "testing"] = Field(
        default="development",
        description="Application environment"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_json: bool = Field(
        default=False,
        description="Emit JSON-formatted log lines"
    )

    # ============================================
    # API SERVER SETTINGS
    # ============================================

    api_host: str = Field(
        default="localhost",
        description="API server host"
    )

    api_port: int = Field(
        default=8000,
        description="API server port"
    )

    # ============================================
    # DATABASE SETTINGS
    # ============================================

    db_path: Path = Field(
        default_factory=lambda: Path.cwd() / "database" / "notevault.db",
        description="Path to the primary SQLite database file"
    )

    db_pool_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of pooled connections"
    )

    db_initial_connections: int = Field(
        default=3,
        ge=0,
        description="Connections opened eagerly at startup (capped at pool size)"
    )

    db_acquire_timeout_ms: int = Field(
        default=30000,
        gt=0,
        description="How long a caller may wait for a free connection"
    )

    db_idle_timeout_ms: int = Field(
        default=600000,  # 10 minutes
        gt=0,
        description="Idle time after which a connection is reaped"
    )

    db_busy_timeout_ms: int = Field(
        default=30000,
        ge=0,
        description="SQLite busy timeout for lock contention"
    )

    db_slow_query_ms: int = Field(
        default=10000,
        ge=0,
        description="Queries slower than this are counted and logged"
    )

    db_reap_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Idle connection sweep interval"
    )

    db_maintenance_interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="PRAGMA optimize / incremental vacuum interval"
    )

    db_metrics_log_interval_seconds: float = Field(
        default=600.0,
        ge=0,
        description="Periodic metrics log interval (0 disables)"
    )

    db_drain_timeout_ms: int = Field(
        default=30000,
        gt=0,
        description="How long a restore waits for in-flight operations"
    )

    # ============================================
    # BACKUP SETTINGS
    # ============================================

    backup_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "backups",
        description="Directory holding snapshot files and manifests"
    )

    backup_retention_count: Optional[int] = Field(
        default=None,
        ge=1,
        description="Keep only the N most recent backups (unset = no count limit)"
    )

    backup_retention_days: Optional[int] = Field(
        default=30,
        ge=1,
        description="Delete backups older than this many days (unset = no age limit)"
    )

    backup_schedule_enabled: bool = Field(
        default=False,
        description="Create scheduled backups automatically"
    )

    backup_schedule_interval: str = Field(
        default="6h",
        description="Scheduled backup interval, e.g. 30m, 6h, 1d"
    )

    backup_compress: bool = Field(
        default=True,
        description="Compress backups unless the request says otherwise"
    )

    backup_passphrase: Optional[SecretStr] = Field(
        default=None,
        description="Passphrase for encrypted backups (AES-256-GCM)"
    )

    @field_validator("backup_schedule_interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        """Interval must look like 30m, 6h or 1d"""
        v = v.strip().lower()
        if not INTERVAL_PATTERN.match(v):
            raise ValueError("backup_schedule_interval must match <number><m|h|d>, e.g. '6h'")
        return v

    @model_validator(mode="after")
    def validate_pool_sizes(self) -> "NoteVaultSettings":
        """Initial connections never exceed the pool size"""
        if self.db_initial_connections > self.db_pool_size:
            object.__setattr__(self, "db_initial_connections", self.db_pool_size)
        return self


@lru_cache()
def get_settings() -> NoteVaultSettings:
    """
    Get cached settings instance (singleton pattern)

    Returns:
        NoteVaultSettings: Application settings
    """
    return NoteVaultSettings()
