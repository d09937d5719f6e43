"""
Database Package

Async SQLite access for NoteVault:
- ConnectionPool: bounded pool with FIFO waiting, reaping and quiesce
- QueryExecutor: query/get/run/transaction with latency metrics
- Schema initializer: core tables and the declarative index set
"""

from notevault.db.connection import PoolConfig, PooledConnection, open_connection
from notevault.db.executor import ConnectionScope, QueryExecutor, RunResult
from notevault.db.metrics import DatabaseMetrics
from notevault.db.pool import ConnectionPool
from notevault.db.schema import (
    INDEXES,
    SCHEMA_VERSION,
    TABLES,
    IndexSpec,
    SchemaReport,
    SetupWarning,
    apply_indexes,
    indexes_by_table,
    init_schema,
    list_indexes,
    table_sizes,
)

__all__ = [
    "PoolConfig",
    "PooledConnection",
    "open_connection",
    "ConnectionPool",
    "DatabaseMetrics",
    "QueryExecutor",
    "ConnectionScope",
    "RunResult",
    "INDEXES",
    "SCHEMA_VERSION",
    "TABLES",
    "IndexSpec",
    "SchemaReport",
    "SetupWarning",
    "apply_indexes",
    "indexes_by_table",
    "init_schema",
    "list_indexes",
    "table_sizes",
]
