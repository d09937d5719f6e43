"""
Database Connection Utilities

Opens aiosqlite connections with the NoteVault performance pragmas.

Features:
- WAL mode (Write-Ahead Logging) so readers never block on the writer
- Foreign key constraints enabled by default
- Performance optimizations (synchronous=NORMAL, 64MB cache, 256MB mmap)
- Busy timeout so lock contention waits instead of failing immediately

Usage:
    conn = await open_connection(config)
    async with conn.execute("SELECT * FROM notes") as cursor:
        rows = await cursor.fetchall()
"""

import time
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiosqlite

from notevault.config import NoteVaultSettings

logger = logging.getLogger(__name__)

CACHE_SIZE_KB = 64000  # 64MB
MMAP_SIZE_BYTES = 268435456  # 256MB

ConnectHook = Callable[[aiosqlite.Connection], Awaitable[None]]


@dataclass
class PoolConfig:
    """Configuration for the database connection pool."""

    database: Path
    max_connections: int = 10
    initial_connections: int = 3
    acquire_timeout_ms: int = 30000
    idle_timeout_ms: int = 600000  # 10 minutes
    busy_timeout_ms: int = 30000
    slow_query_ms: int = 10000
    drain_timeout_ms: int = 30000
    min_idle: int = 0
    enable_wal: bool = True
    enable_foreign_keys: bool = True
    reap_interval_seconds: float = 300.0
    maintenance_interval_seconds: float = 3600.0
    metrics_log_interval_seconds: float = 600.0
    start_background_tasks: bool = True
    on_connect: Optional[ConnectHook] = None

    def __post_init__(self):
        self.database = Path(self.database).expanduser()
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")

    @classmethod
    def from_settings(cls, settings: NoteVaultSettings) -> "PoolConfig":
        """Create config from application settings."""
        return cls(
            database=settings.db_path,
            max_connections=settings.db_pool_size,
            initial_connections=settings.db_initial_connections,
            acquire_timeout_ms=settings.db_acquire_timeout_ms,
            idle_timeout_ms=settings.db_idle_timeout_ms,
            busy_timeout_ms=settings.db_busy_timeout_ms,
            slow_query_ms=settings.db_slow_query_ms,
            drain_timeout_ms=settings.db_drain_timeout_ms,
            reap_interval_seconds=settings.db_reap_interval_seconds,
            maintenance_interval_seconds=settings.db_maintenance_interval_seconds,
            metrics_log_interval_seconds=settings.db_metrics_log_interval_seconds,
            start_background_tasks=True,
        )


@dataclass(eq=False)
class PooledConnection:
    """Wrapper for a connection in the pool"""
    connection: aiosqlite.Connection
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    in_use: bool = False
    checkout_count: int = 0

    def idle_for(self, now: Optional[float] = None) -> float:
        """Seconds since the connection was last released"""
        return (now if now is not None else time.monotonic()) - self.last_used


async def open_connection(config: PoolConfig) -> aiosqlite.Connection:
    """
    Open a new connection with per-connection pragmas applied.

    The connection runs in autocommit mode (isolation_level=None) so the
    executor controls transactions with explicit BEGIN/COMMIT.

    Args:
        config: Pool configuration

    Returns:
        Configured aiosqlite connection
    """
    conn = await aiosqlite.connect(
        str(config.database),
        timeout=config.busy_timeout_ms / 1000,
        isolation_level=None,
    )
    try:
        conn.row_factory = aiosqlite.Row

        await conn.executescript(f"""
            PRAGMA busy_timeout = {int(config.busy_timeout_ms)};
            PRAGMA cache_size = -{CACHE_SIZE_KB};
            PRAGMA temp_store = MEMORY;
            PRAGMA mmap_size = {MMAP_SIZE_BYTES};
        """)

        if config.enable_wal:
            await conn.executescript("""
                PRAGMA journal_mode = WAL;
                PRAGMA synchronous = NORMAL;
            """)

        if config.enable_foreign_keys:
            await conn.execute("PRAGMA foreign_keys = ON")

        if config.on_connect is not None:
            await config.on_connect(conn)
    except BaseException:
        await conn.close()
        raise

    logger.debug(f"Opened connection to {config.database}")
    return conn


async def apply_database_pragmas(conn: aiosqlite.Connection, config: PoolConfig) -> None:
    """
    Apply database-level settings once, on the setup connection.

    auto_vacuum only takes effect on a fresh database (or after VACUUM);
    on an existing file it is recorded for the next rebuild.
    """
    await conn.executescript(f"""
        PRAGMA auto_vacuum = INCREMENTAL;
        PRAGMA journal_mode = {'WAL' if config.enable_wal else 'DELETE'};
        PRAGMA synchronous = NORMAL;
        PRAGMA cache_size = -{CACHE_SIZE_KB};
        PRAGMA temp_store = MEMORY;
        PRAGMA mmap_size = {MMAP_SIZE_BYTES};
        PRAGMA foreign_keys = {'ON' if config.enable_foreign_keys else 'OFF'};
        PRAGMA trusted_schema = OFF;
        PRAGMA optimize;
    """)
    logger.info("Database optimizations applied")


async def fetch_pragma(conn: aiosqlite.Connection, name: str):
    """Read a single PRAGMA value"""
    async with conn.execute(f"PRAGMA {name}") as cursor:
        row = await cursor.fetchone()
    return row[0] if row is not None else None
