"""
Schema and Index Initializer

Creates the NoteVault core tables and the declarative index set.

Safe to run on every startup:
1. Tables use CREATE TABLE IF NOT EXISTS
2. Indexes use CREATE INDEX IF NOT EXISTS and are applied one at a time
3. An index that cannot be created (missing table or column) becomes a
   SetupWarning in the returned report instead of aborting startup
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

TABLES: List[str] = [
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        display_name TEXT NOT NULL,
        avatar TEXT,
        role TEXT DEFAULT 'user' CHECK (role IN ('admin', 'moderator', 'user')),
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        last_active DATETIME DEFAULT CURRENT_TIMESTAMP,
        is_online BOOLEAN DEFAULT FALSE
    )""",
    """CREATE TABLE IF NOT EXISTS workspaces (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        color TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        is_public BOOLEAN DEFAULT FALSE,
        FOREIGN KEY (owner_id) REFERENCES users (id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS workspace_members (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT DEFAULT 'member' CHECK (role IN ('owner', 'admin', 'member', 'viewer')),
        joined_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (workspace_id) REFERENCES workspaces (id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
        UNIQUE(workspace_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        type TEXT DEFAULT 'text' CHECK (type IN ('text', 'rich', 'code', 'canvas')),
        workspace_id TEXT NOT NULL,
        author_id TEXT NOT NULL,
        position_x REAL DEFAULT 0,
        position_y REAL DEFAULT 0,
        width REAL DEFAULT 300,
        height REAL DEFAULT 200,
        color TEXT NOT NULL,
        tags TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        is_public BOOLEAN DEFAULT FALSE,
        FOREIGN KEY (workspace_id) REFERENCES workspaces (id) ON DELETE CASCADE,
        FOREIGN KEY (author_id) REFERENCES users (id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        author_id TEXT NOT NULL,
        channel_id TEXT,
        reply_to_id TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        edited_at DATETIME,
        FOREIGN KEY (author_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (reply_to_id) REFERENCES chat_messages (id) ON DELETE SET NULL
    )""",
    """CREATE TABLE IF NOT EXISTS message_reactions (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        emoji TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (message_id) REFERENCES chat_messages (id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
        UNIQUE(message_id, user_id, emoji)
    )""",
    """CREATE TABLE IF NOT EXISTS files (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        original_name TEXT NOT NULL,
        type TEXT NOT NULL,
        size INTEGER NOT NULL,
        path TEXT NOT NULL,
        uploader_id TEXT NOT NULL,
        workspace_id TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        is_public BOOLEAN DEFAULT FALSE,
        FOREIGN KEY (uploader_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (workspace_id) REFERENCES workspaces (id) ON DELETE SET NULL
    )""",
    """CREATE TABLE IF NOT EXISTS announcements (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        author_id TEXT NOT NULL,
        priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high', 'urgent')),
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        expires_at DATETIME,
        is_active BOOLEAN DEFAULT TRUE,
        FOREIGN KEY (author_id) REFERENCES users (id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        user_id TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        details TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        expires_at DATETIME NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        ip_address TEXT,
        user_agent TEXT,
        is_active BOOLEAN DEFAULT TRUE,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS api_keys (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        key_hash TEXT UNIQUE NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        last_used DATETIME,
        active BOOLEAN DEFAULT TRUE,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )""",
]


@dataclass(frozen=True)
class IndexSpec:
    """One named secondary index"""
    name: str
    table: str
    columns: Sequence[str]

    def create_sql(self) -> str:
        return f"CREATE INDEX IF NOT EXISTS {self.name} ON {self.table}({', '.join(self.columns)})"


@dataclass(frozen=True)
class SetupWarning:
    """Non-fatal problem found while applying the index set"""
    index: str
    table: str
    message: str


@dataclass
class SchemaReport:
    tables_created: int = 0
    indexes_applied: List[str] = field(default_factory=list)
    warnings: List[SetupWarning] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION

    @property
    def ok(self) -> bool:
        return not self.warnings


def _idx(table: str, *columns: str) -> IndexSpec:
    return IndexSpec(name=f"idx_{table}_{'_'.join(columns)}", table=table, columns=columns)


INDEXES: List[IndexSpec] = [
    # Users
    _idx("users", "email"),
    _idx("users", "username"),
    _idx("users", "created_at"),
    _idx("users", "last_active"),

    # Workspaces
    _idx("workspaces", "owner_id"),
    _idx("workspaces", "created_at"),
    _idx("workspace_members", "workspace_id"),
    _idx("workspace_members", "user_id"),

    # Notes
    _idx("notes", "workspace_id"),
    _idx("notes", "author_id"),
    _idx("notes", "created_at"),
    _idx("notes", "updated_at"),
    _idx("notes", "title"),
    _idx("notes", "workspace_id", "updated_at"),

    # Chat
    _idx("chat_messages", "author_id"),
    _idx("chat_messages", "channel_id", "created_at"),
    _idx("message_reactions", "message_id"),

    # Files
    _idx("files", "workspace_id"),
    _idx("files", "uploader_id"),
    _idx("files", "created_at"),
    _idx("files", "name"),

    # Announcements
    _idx("announcements", "is_active", "created_at"),

    # Sessions and API keys
    _idx("sessions", "user_id"),
    _idx("sessions", "expires_at"),
    _idx("api_keys", "user_id"),
    _idx("api_keys", "created_at"),
    _idx("api_keys", "active"),

    # Audit logs
    _idx("audit_logs", "user_id"),
    _idx("audit_logs", "action"),
    _idx("audit_logs", "created_at"),
    _idx("audit_logs", "ip_address"),
]


async def apply_indexes(
    conn: aiosqlite.Connection,
    indexes: Iterable[IndexSpec],
    report: SchemaReport | None = None,
) -> SchemaReport:
    """
    Apply each index independently.

    Args:
        conn: Open connection (autocommit)
        indexes: Index definitions to create
        report: Report to append to (a new one is created if omitted)

    Returns:
        SchemaReport with applied index names and any warnings
    """
    report = report if report is not None else SchemaReport()

    for spec in indexes:
        try:
            await conn.execute(spec.create_sql())
            report.indexes_applied.append(spec.name)
        except sqlite3.Error as e:
            warning = SetupWarning(index=spec.name, table=spec.table, message=str(e))
            report.warnings.append(warning)
            logger.warning(f"Index {spec.name} on {spec.table} skipped: {e}")

    return report


async def init_schema(conn: aiosqlite.Connection) -> SchemaReport:
    """Create core tables, record the schema version and apply INDEXES"""
    report = SchemaReport()

    for statement in TABLES:
        await conn.execute(statement)
        report.tables_created += 1

    await conn.execute(
        "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )

    await apply_indexes(conn, INDEXES, report)

    if report.warnings:
        logger.warning(f"Schema initialized with {len(report.warnings)} setup warning(s)")
    else:
        logger.info(
            f"Schema initialized: {report.tables_created} tables, "
            f"{len(report.indexes_applied)} indexes (version {SCHEMA_VERSION})"
        )
    return report


async def list_indexes(conn: aiosqlite.Connection) -> List[str]:
    """Names of user-defined indexes, for diagnostics"""
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def indexes_by_table(conn: aiosqlite.Connection) -> Dict[str, List[str]]:
    """User-defined index names grouped by the table they cover"""
    grouped: Dict[str, List[str]] = {}
    async with conn.execute(
        "SELECT tbl_name, name FROM sqlite_master "
        "WHERE type = 'index' AND name NOT LIKE 'sqlite_%' ORDER BY tbl_name, name"
    ) as cursor:
        async for table, name in cursor:
            grouped.setdefault(table, []).append(name)
    return grouped


async def table_sizes(conn: aiosqlite.Connection) -> Optional[Dict[str, int]]:
    """
    Bytes on disk per table and index

    Reads the dbstat virtual table. Returns None when the SQLite build
    does not include it.
    """
    try:
        async with conn.execute("SELECT name, SUM(pgsize) FROM dbstat GROUP BY name") as cursor:
            rows = await cursor.fetchall()
    except sqlite3.OperationalError as e:
        logger.debug(f"dbstat unavailable: {e}")
        return None
    return {row[0]: row[1] for row in rows}
