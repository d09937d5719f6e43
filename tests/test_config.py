"""
Tests for notevault/config.py and the config adapters built from it
"""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from notevault.backup.service import BackupConfig
from notevault.config import NoteVaultSettings
from notevault.db.connection import PoolConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate settings from the developer's environment and .env file"""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("NOTEVAULT_"):
            monkeypatch.delenv(name)


class TestSettings:
    """Tests for NoteVaultSettings"""

    def test_defaults(self):
        settings = NoteVaultSettings()

        assert settings.db_pool_size == 10
        assert settings.db_acquire_timeout_ms == 30000
        assert settings.db_idle_timeout_ms == 600000
        assert settings.db_slow_query_ms == 10000
        assert settings.backup_retention_days == 30
        assert settings.backup_retention_count is None
        assert settings.backup_schedule_enabled is False
        assert settings.backup_schedule_interval == "6h"
        assert settings.db_path.name == "notevault.db"
        assert settings.db_path.parent.name == "database"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("NOTEVAULT_DB_POOL_SIZE", "20")
        monkeypatch.setenv("NOTEVAULT_DB_PATH", "/srv/notevault/main.db")
        monkeypatch.setenv("NOTEVAULT_BACKUP_SCHEDULE_INTERVAL", "1D")

        settings = NoteVaultSettings()

        assert settings.db_pool_size == 20
        assert settings.db_path == Path("/srv/notevault/main.db")
        assert settings.backup_schedule_interval == "1d"

    @pytest.mark.parametrize("interval", ["six hours", "6", "h", "6w"])
    def test_invalid_interval(self, interval):
        with pytest.raises(ValidationError):
            NoteVaultSettings(backup_schedule_interval=interval)

    def test_pool_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            NoteVaultSettings(db_pool_size=0)

    def test_initial_connections_capped(self):
        settings = NoteVaultSettings(db_pool_size=2, db_initial_connections=5)

        assert settings.db_initial_connections == 2

    def test_passphrase_is_secret(self):
        settings = NoteVaultSettings(backup_passphrase="s3cret")

        assert "s3cret" not in repr(settings)
        assert settings.backup_passphrase.get_secret_value() == "s3cret"


class TestDerivedConfig:
    """Tests for PoolConfig/BackupConfig.from_settings"""

    def test_pool_config(self, tmp_path):
        settings = NoteVaultSettings(
            db_path=tmp_path / "n.db",
            db_pool_size=4,
            db_initial_connections=2,
            db_acquire_timeout_ms=1500,
        )

        config = PoolConfig.from_settings(settings)

        assert config.database == tmp_path / "n.db"
        assert config.max_connections == 4
        assert config.initial_connections == 2
        assert config.acquire_timeout_ms == 1500
        assert config.start_background_tasks

    def test_pool_config_rejects_zero_connections(self, tmp_path):
        with pytest.raises(ValueError):
            PoolConfig(database=tmp_path / "n.db", max_connections=0)

    def test_backup_config(self, tmp_path):
        settings = NoteVaultSettings(
            backup_dir=tmp_path / "b",
            backup_retention_count=7,
            backup_retention_days=14,
            backup_compress=False,
            backup_passphrase="pw",
        )

        config = BackupConfig.from_settings(settings)

        assert config.backup_dir == tmp_path / "b"
        assert config.retention.keep_count == 7
        assert config.retention.max_age_days == 14
        assert config.compress is False
        assert config.passphrase == "pw"
        assert config.drain_timeout_ms == settings.db_drain_timeout_ms
