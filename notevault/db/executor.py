"""
Query Executor

Runs statements over the connection pool with latency tracking.

Every operation:
- borrows a connection and releases it in ``finally``
- counts toward total_queries and the running latency mean
- logs a warning past the slow-query threshold (statement preview and
  parameter count only, never the bound values)
- turns driver errors into QueryError chained to the cause

Usage:
    executor = QueryExecutor(pool)
    notes = await executor.query("SELECT * FROM notes WHERE workspace_id = ?", (ws_id,))

    async def move(scope):
        await scope.run("UPDATE notes SET workspace_id = ? WHERE id = ?", (dest, note_id))
        await scope.run("UPDATE workspaces SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (dest,))

    await executor.transaction(move)
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

import aiosqlite

from notevault.db.connection import PooledConnection
from notevault.db.pool import ConnectionPool
from notevault.errors import (
    ConnectionTimeoutError,
    ErrorHandler,
    TransactionError,
    preview_statement,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]


@dataclass(frozen=True)
class RunResult:
    """Outcome of a write statement"""
    changes: int
    last_insert_id: Optional[int]


async def _fetch_all(conn: aiosqlite.Connection, sql: str, params: Params) -> List[Dict[str, Any]]:
    async with conn.execute(sql, params) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def _fetch_one(conn: aiosqlite.Connection, sql: str, params: Params) -> Optional[Dict[str, Any]]:
    async with conn.execute(sql, params) as cursor:
        row = await cursor.fetchone()
    return dict(row) if row is not None else None


async def _run(conn: aiosqlite.Connection, sql: str, params: Params) -> RunResult:
    async with conn.execute(sql, params) as cursor:
        return RunResult(changes=max(cursor.rowcount, 0), last_insert_id=cursor.lastrowid)


async def _execute(conn: aiosqlite.Connection, sql: str, params: Params) -> None:
    async with conn.execute(sql, params) as cursor:
        await cursor.fetchall()


class ConnectionScope:
    """Statement helpers bound to the single connection of a transaction"""

    def __init__(self, executor: "QueryExecutor", pc: PooledConnection):
        self._executor = executor
        self._pc = pc

    async def query(self, sql: str, params: Params = None) -> List[Dict[str, Any]]:
        return await self._executor._timed("query", self._pc, sql, params, _fetch_all)

    async def get(self, sql: str, params: Params = None) -> Optional[Dict[str, Any]]:
        return await self._executor._timed("get", self._pc, sql, params, _fetch_one)

    async def run(self, sql: str, params: Params = None) -> RunResult:
        return await self._executor._timed("run", self._pc, sql, params, _run)

    async def execute(self, sql: str, params: Params = None) -> None:
        await self._executor._timed("execute", self._pc, sql, params, _execute)


class QueryExecutor:
    """Executes statements on pooled connections and keeps latency metrics"""

    def __init__(self, pool: ConnectionPool, slow_query_ms: Optional[float] = None):
        self.pool = pool
        self.metrics = pool.metrics
        self.slow_query_ms = slow_query_ms if slow_query_ms is not None else pool.config.slow_query_ms

    async def query(self, sql: str, params: Params = None) -> List[Dict[str, Any]]:
        """Run a SELECT and return every row as a dict"""
        return await self._borrow_and_run("query", sql, params, _fetch_all)

    async def get(self, sql: str, params: Params = None) -> Optional[Dict[str, Any]]:
        """Run a SELECT and return the first row, or None"""
        return await self._borrow_and_run("get", sql, params, _fetch_one)

    async def run(self, sql: str, params: Params = None) -> RunResult:
        """Run a write statement and report affected rows and the last rowid"""
        return await self._borrow_and_run("run", sql, params, _run)

    async def transaction(
        self,
        callback: Callable[[ConnectionScope], Awaitable[T]],
        immediate: bool = False,
    ) -> T:
        """
        Run callback inside BEGIN/COMMIT on one connection

        Any exception from the callback (or from COMMIT) rolls the
        transaction back and is re-raised. If the rollback itself fails the
        connection is discarded and TransactionError is raised from the
        original error.

        Args:
            callback: Coroutine function receiving a ConnectionScope
            immediate: Use BEGIN IMMEDIATE to take the write lock up front

        Returns:
            Whatever the callback returns
        """
        pc = await self._acquire("transaction", "BEGIN")
        discarded = False
        try:
            try:
                await pc.connection.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            except sqlite3.Error as e:
                self.metrics.errors += 1
                raise ErrorHandler.handle_database_error(e, "transaction", "BEGIN") from e

            try:
                result = await callback(ConnectionScope(self, pc))
                await pc.connection.execute("COMMIT")
                return result
            except BaseException as original:
                try:
                    if pc.connection.in_transaction:
                        await pc.connection.execute("ROLLBACK")
                except (sqlite3.Error, ValueError) as rollback_error:
                    logger.error(
                        f"Transaction rollback failed after {type(original).__name__}: {rollback_error}"
                    )
                    self.metrics.errors += 1
                    discarded = True
                    await self.pool.discard(pc)
                    raise TransactionError(original, rollback_error) from original

                if isinstance(original, sqlite3.Error):
                    # COMMIT itself failed
                    self.metrics.errors += 1
                    raise ErrorHandler.handle_database_error(original, "transaction", "COMMIT") from original
                raise
        finally:
            if not discarded:
                await self.pool.release(pc)

    async def _acquire(self, operation: str, sql: str) -> PooledConnection:
        try:
            return await self.pool.acquire()
        except ConnectionTimeoutError:
            self.metrics.errors += 1
            raise
        except sqlite3.Error as e:
            self.metrics.errors += 1
            raise ErrorHandler.handle_database_error(e, operation, sql) from e

    async def _borrow_and_run(
        self,
        operation: str,
        sql: str,
        params: Params,
        fn: Callable[[aiosqlite.Connection, str, Params], Awaitable[T]],
    ) -> T:
        pc = await self._acquire(operation, sql)
        try:
            return await self._timed(operation, pc, sql, params, fn)
        finally:
            await self.pool.release(pc)

    async def _timed(
        self,
        operation: str,
        pc: PooledConnection,
        sql: str,
        params: Params,
        fn: Callable[[aiosqlite.Connection, str, Params], Awaitable[T]],
    ) -> T:
        start = time.perf_counter()
        try:
            return await fn(pc.connection, sql, params)
        except sqlite3.Error as e:
            self.metrics.errors += 1
            logger.error(f"Database {operation} failed: {preview_statement(sql)} - {e}")
            raise ErrorHandler.handle_database_error(e, operation, sql) from e
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.metrics.record_query(elapsed_ms)
            if elapsed_ms > self.slow_query_ms:
                self.metrics.slow_queries += 1
                param_count = len(params) if params else 0
                logger.warning(
                    f"Slow {operation} ({elapsed_ms:.1f}ms, {param_count} params): "
                    f"{preview_statement(sql)}"
                )
