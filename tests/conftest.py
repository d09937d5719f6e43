"""
Shared pytest fixtures for NoteVault database core tests.

Provides:
- Temporary database and backup directories
- Pool / executor / backup manager fixtures (closed after each test)
- A sleep_ms() SQL function for simulating slow statements
- Seed helpers for notes data and backup manifests
"""

import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, List

import pytest

from notevault.backup.service import BackupConfig, BackupManager
from notevault.backup.types import BackupRecord, BackupStatus, BackupType, RetentionPolicy
from notevault.db.connection import PoolConfig
from notevault.db.executor import QueryExecutor
from notevault.db.pool import ConnectionPool


# ========== Helpers ==========

async def register_sleep(conn) -> None:
    """on_connect hook adding sleep_ms(ms) to a connection"""
    def sleep_ms(ms):
        time.sleep(ms / 1000)
        return ms

    await conn.create_function("sleep_ms", 1, sleep_ms)


def make_pool_config(database: Path, **overrides) -> PoolConfig:
    options = dict(
        database=database,
        max_connections=5,
        initial_connections=1,
        acquire_timeout_ms=2000,
        start_background_tasks=False,
    )
    options.update(overrides)
    return PoolConfig(**options)


async def seed_workspace(executor: QueryExecutor) -> str:
    """Create a user and a workspace; returns the workspace id"""
    user_id = str(uuid.uuid4())
    workspace_id = str(uuid.uuid4())
    await executor.run(
        "INSERT INTO users (id, username, email, password_hash, display_name) VALUES (?, ?, ?, ?, ?)",
        (user_id, f"user-{user_id[:8]}", f"{user_id[:8]}@example.com", "x", "Test User"),
    )
    await executor.run(
        "INSERT INTO workspaces (id, name, color, owner_id) VALUES (?, ?, ?, ?)",
        (workspace_id, "Research", "#336699", user_id),
    )
    return workspace_id


async def add_note(executor: QueryExecutor, workspace_id: str, title: str) -> str:
    owner = await executor.get("SELECT owner_id FROM workspaces WHERE id = ?", (workspace_id,))
    note_id = str(uuid.uuid4())
    await executor.run(
        "INSERT INTO notes (id, title, content, workspace_id, author_id, color) VALUES (?, ?, ?, ?, ?, ?)",
        (note_id, title, f"content of {title}", workspace_id, owner["owner_id"], "#ffee88"),
    )
    return note_id


async def count_notes(executor: QueryExecutor) -> int:
    row = await executor.get("SELECT COUNT(*) AS n FROM notes")
    return row["n"]


def seed_backup_manifest(backup_dir: Path, backup_id: str, created_at: datetime) -> BackupRecord:
    """Write a stored file and manifest for a completed backup created at a known time"""
    backup_dir.mkdir(parents=True, exist_ok=True)
    record = BackupRecord(
        id=backup_id,
        type=BackupType.SCHEDULED,
        filename=f"{backup_id}.db",
        status=BackupStatus.COMPLETED,
        created_at=created_at,
        completed_at=created_at,
        size_bytes=8,
        checksum="0" * 64,
    )
    (backup_dir / record.filename).write_bytes(b"snapshot")
    (backup_dir / record.manifest_name).write_text(record.model_dump_json())
    return record


# ========== Fixtures ==========

@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "data" / "notevault.db"


@pytest.fixture
def backup_dir(tmp_path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
async def pool_factory(db_path) -> Callable[..., ConnectionPool]:
    """Build pools on the test database; all are closed at teardown"""
    pools: List[ConnectionPool] = []

    def factory(**overrides) -> ConnectionPool:
        pool = ConnectionPool(make_pool_config(db_path, **overrides))
        pools.append(pool)
        return pool

    yield factory

    for pool in pools:
        await pool.close()


@pytest.fixture
async def pool(pool_factory) -> ConnectionPool:
    pool = pool_factory()
    await pool.initialize()
    return pool


@pytest.fixture
def executor(pool) -> QueryExecutor:
    return QueryExecutor(pool)


@pytest.fixture
def backup_manager(pool, backup_dir) -> BackupManager:
    return BackupManager(
        pool,
        BackupConfig(backup_dir=backup_dir, retention=RetentionPolicy(), compress=True),
    )
