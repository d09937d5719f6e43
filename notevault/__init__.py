"""
NoteVault Database Core

Embedded-database infrastructure for the NoteVault workspace server:
- ConnectionPool: bounded async SQLite connection pool (WAL mode)
- QueryExecutor: query/get/run/transaction with latency metrics
- Schema/index initializer (idempotent, tolerant)
- BackupManager: snapshot, verify, restore, retention
- HealthReporter: pool occupancy, counters and health verdict
"""

__version__ = "0.1.0"
