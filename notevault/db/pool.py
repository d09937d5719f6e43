"""
Async SQLite Connection Pool

Bounded pool of aiosqlite connections shared by every request handler.

Features:
- Lazy growth up to max_connections; connections being opened count toward the limit
- FIFO wait queue; new acquirers never overtake queued waiters
- Acquire timeout with no late grants
- Periodic idle reaping, hourly maintenance and metrics logging
- Quiesce mode (drain, close, swap, reopen) used by restore
- Graceful shutdown with WAL checkpoint

Usage:
    pool = ConnectionPool(PoolConfig(database="notevault.db"))
    await pool.initialize()

    async with pool.connection() as pc:
        async with pc.connection.execute("SELECT * FROM notes") as cursor:
            rows = await cursor.fetchall()

    await pool.close()
"""

import asyncio
import logging
import sqlite3
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Set

from notevault.db.connection import (
    PoolConfig,
    PooledConnection,
    apply_database_pragmas,
    open_connection,
)
from notevault.db.metrics import DatabaseMetrics
from notevault.db.schema import SchemaReport, init_schema
from notevault.errors import (
    ConnectionTimeoutError,
    ErrorHandler,
    InitializationError,
    PoolClosedError,
    PoolDrainTimeoutError,
)

logger = logging.getLogger(__name__)

UTILIZATION_WARNING = 0.7
UTILIZATION_CRITICAL = 0.9


async def _execute_all(pc: PooledConnection, sql: str) -> List[Any]:
    """Run a statement and step it to completion"""
    async with pc.connection.execute(sql) as cursor:
        return list(await cursor.fetchall())


class ConnectionPool:
    """
    Bounded async connection pool for the NoteVault database

    All bookkeeping runs on the event loop between awaits, so no lock is
    needed around the connection list or the wait queue. Initialization is
    guarded by an asyncio.Lock so concurrent callers share one setup.
    """

    def __init__(self, config: PoolConfig, metrics: Optional[DatabaseMetrics] = None):
        self.config = config
        self.metrics = metrics or DatabaseMetrics()
        self.schema_report: Optional[SchemaReport] = None

        self._connections: List[PooledConnection] = []
        self._waiters: Deque[asyncio.Future] = deque()
        self._pending = 0
        self._initialized = False
        self._closed = False
        self._paused = False
        self._drained: Optional[asyncio.Event] = None
        self._init_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._fill_tasks: Set[asyncio.Task] = set()

    # ===== Lifecycle =====

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def closed(self) -> bool:
        return self._closed

    async def initialize(self) -> Optional[SchemaReport]:
        """
        Prepare the database and pre-populate the pool (idempotent)

        Returns:
            SchemaReport from the schema/index initializer

        Raises:
            InitializationError: Directory or first connection could not be created
            PoolClosedError: Pool was already closed
        """
        if self._initialized:
            return self.schema_report

        async with self._init_lock:
            if self._initialized:
                return self.schema_report
            if self._closed:
                raise PoolClosedError()

            await self._setup()
            self._initialized = True

            if self.config.start_background_tasks:
                self._start_background_tasks()

            logger.info(
                f"Connection pool initialized for {self.config.database}: "
                f"{len(self._connections)} connections (max {self.config.max_connections})"
            )

        return self.schema_report

    async def _setup(self) -> None:
        """Create the directory, apply database settings and schema, pre-populate"""
        try:
            self.config.database.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InitializationError(
                f"Cannot create database directory {self.config.database.parent}: {e}",
                details={"path": str(self.config.database.parent)}
            ) from e

        try:
            setup_conn = await open_connection(self.config)
        except (sqlite3.Error, OSError) as e:
            raise InitializationError(
                f"Cannot open database {self.config.database}: {e}",
                details={"path": str(self.config.database)}
            ) from e

        try:
            await apply_database_pragmas(setup_conn, self.config)
            self.schema_report = await init_schema(setup_conn)
        except sqlite3.Error as e:
            raise InitializationError(f"Database setup failed: {e}") from e
        finally:
            await setup_conn.close()

        target = min(self.config.initial_connections, self.config.max_connections)
        while len(self._connections) + self._pending < target:
            try:
                conn = await open_connection(self.config)
            except (sqlite3.Error, OSError) as e:
                raise InitializationError(f"Cannot pre-populate connection pool: {e}") from e
            self._connections.append(PooledConnection(connection=conn))
            self.metrics.total_connections += 1

        self._sync_metrics()

    async def close(self) -> None:
        """
        Stop background tasks, fail waiters and close every connection

        Should be called on application shutdown.
        """
        if self._closed:
            return

        logger.info(f"Closing connection pool for {self.config.database}")
        self._closed = True

        tasks = self._tasks + list(self._fill_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._fill_tasks.clear()

        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_exception(PoolClosedError())

        await self._close_all(checkpoint=True)
        self._initialized = False
        logger.info("Connection pool closed")

    # ===== Acquire / release =====

    async def acquire(self) -> PooledConnection:
        """
        Borrow a connection

        Raises:
            PoolClosedError: Pool is closed
            ConnectionTimeoutError: No connection freed up within acquire_timeout_ms
            sqlite3.Error, OSError: A new connection could not be opened
        """
        if self._closed:
            raise PoolClosedError()
        if not self._initialized:
            await self.initialize()

        if not self._paused and not self._has_live_waiters():
            pc = self._take_idle()
            if pc is not None:
                return pc
            if self._capacity_available():
                try:
                    pc = await self._open_in_use()
                except BaseException:
                    # waiters may have queued behind this open
                    self._schedule_fill()
                    raise
                if pc is not None:
                    return pc

        return await self._wait_for_connection()

    async def release(self, pc: PooledConnection) -> None:
        """Return a connection, handing it straight to the next waiter if any"""
        if not self._owns(pc):
            logger.debug("Release of a connection the pool no longer tracks ignored")
            return
        if not pc.in_use:
            logger.warning("Attempted to release a connection that is already idle")
            return

        pc.last_used = time.monotonic()

        if not self._paused:
            while self._waiters:
                fut = self._waiters.popleft()
                if fut.done():
                    continue
                pc.checkout_count += 1
                fut.set_result(pc)
                self._sync_metrics()
                return

        pc.in_use = False
        self._sync_metrics()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[PooledConnection]:
        """
        Context manager for borrowing a connection

        Usage:
            async with pool.connection() as pc:
                await pc.connection.execute("SELECT 1")
        """
        pc = await self.acquire()
        try:
            yield pc
        finally:
            await self.release(pc)

    async def discard(self, pc: PooledConnection) -> None:
        """Close and drop a connection that can no longer be trusted"""
        if self._owns(pc):
            self._connections.remove(pc)
        await self._close_quietly(pc)
        self._sync_metrics()
        logger.warning("Discarded pooled connection")
        await self._fill_waiters()

    def _owns(self, pc: PooledConnection) -> bool:
        return any(c is pc for c in self._connections)

    def _take_idle(self) -> Optional[PooledConnection]:
        for pc in self._connections:
            if not pc.in_use:
                pc.in_use = True
                pc.checkout_count += 1
                self._sync_metrics()
                return pc
        return None

    def _capacity_available(self) -> bool:
        return len(self._connections) + self._pending < self.config.max_connections

    def _has_live_waiters(self) -> bool:
        return any(not fut.done() for fut in self._waiters)

    async def _open_in_use(self) -> Optional[PooledConnection]:
        """
        Open a new connection already marked in use

        Returns None when the pool was quiesced while the connection was
        opening. That connection is closed before its slot is given back,
        so a drain never finishes while an open is still in flight.
        """
        self._pending += 1
        try:
            conn = await open_connection(self.config)
            if self._closed or self._paused:
                await conn.close()
                if self._closed:
                    raise PoolClosedError()
                logger.debug("Connection opened during quiesce closed again")
                return None
        finally:
            self._pending -= 1
            self._sync_metrics()

        pc = PooledConnection(connection=conn, in_use=True, checkout_count=1)
        self._connections.append(pc)
        self.metrics.total_connections += 1
        self._sync_metrics()
        logger.debug(f"Pool grew to {len(self._connections)} connections")
        return pc

    async def _wait_for_connection(self) -> PooledConnection:
        """Queue FIFO until a connection is handed over or the timeout expires"""
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        self._sync_metrics()

        timeout_ms = self.config.acquire_timeout_ms
        try:
            return await asyncio.wait_for(fut, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            await self._reclaim_grant(fut)
            logger.warning(
                f"Connection acquire timed out after {timeout_ms}ms "
                f"({self._active_count()} in use, {len(self._waiters) - 1} other waiters)"
            )
            raise ConnectionTimeoutError(timeout_ms) from None
        except asyncio.CancelledError:
            await self._reclaim_grant(fut)
            raise
        finally:
            try:
                self._waiters.remove(fut)
            except ValueError:
                pass
            self._sync_metrics()

    async def _reclaim_grant(self, fut: asyncio.Future) -> None:
        """A connection handed to a waiter that already gave up goes back to the pool"""
        if fut.done() and not fut.cancelled() and fut.exception() is None:
            await self.release(fut.result())

    async def _fill_waiters(self) -> None:
        """Serve queued waiters from idle connections or freed capacity"""
        while self._has_live_waiters() and not self._paused and not self._closed:
            pc = self._take_idle()
            if pc is None:
                if not self._capacity_available():
                    return
                try:
                    pc = await self._open_in_use()
                except PoolClosedError:
                    return
                except (sqlite3.Error, OSError) as e:
                    logger.error(f"Could not open connection for queued waiter: {e}")
                    self._fail_next_waiter(e)
                    continue
                if pc is None:
                    return
            await self.release(pc)

    def _fail_next_waiter(self, error: BaseException) -> None:
        """Give the oldest live waiter the open error instead of its timeout"""
        for fut in self._waiters:
            if not fut.done():
                fut.set_exception(error)
                self._sync_metrics()
                return

    def _schedule_fill(self) -> None:
        """Serve waiters that queued behind an open that did not produce a connection"""
        if self._closed or self._paused or not self._has_live_waiters():
            return
        task = asyncio.get_running_loop().create_task(self._fill_waiters())
        self._fill_tasks.add(task)
        task.add_done_callback(self._fill_done)

    def _fill_done(self, task: asyncio.Task) -> None:
        self._fill_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Serving queued waiters failed: {task.exception()}")

    # ===== Quiesce (restore support) =====

    @asynccontextmanager
    async def quiesce(self, drain_timeout_ms: Optional[int] = None) -> AsyncIterator[None]:
        """
        Take the database offline for a file swap

        New acquirers queue, in-flight operations drain, every connection is
        checkpointed and closed. After the body runs the database is set up
        again and the queued waiters are served.

        Raises:
            PoolDrainTimeoutError: In-use connections did not drain in time
                (the pool resumes normal service)
        """
        if self._closed:
            raise PoolClosedError()
        if not self._initialized:
            await self.initialize()

        timeout_ms = drain_timeout_ms or self.config.drain_timeout_ms
        self._paused = True
        logger.info(f"Quiescing connection pool ({self._active_count()} in use)")

        try:
            await self._wait_for_drain(timeout_ms)
        except BaseException:
            self._paused = False
            await self._fill_waiters()
            raise

        try:
            await self._close_all(checkpoint=True)
            yield
        finally:
            try:
                await self._setup()
            finally:
                self._paused = False
                logger.info("Connection pool resumed")
                await self._fill_waiters()

    async def _wait_for_drain(self, timeout_ms: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        try:
            while self._active_count() > 0 or self._pending > 0:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PoolDrainTimeoutError(timeout_ms, self._active_count() + self._pending)
                self._drained = asyncio.Event()
                try:
                    await asyncio.wait_for(self._drained.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._drained = None

    async def _close_all(self, checkpoint: bool) -> None:
        connections = list(self._connections)
        self._connections.clear()

        if checkpoint and connections:
            try:
                await _execute_all(connections[0], "PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                logger.warning(f"WAL checkpoint before close failed: {e}")

        for pc in connections:
            await self._close_quietly(pc)
        self._sync_metrics()

    async def _close_quietly(self, pc: PooledConnection) -> None:
        try:
            await pc.connection.close()
        except (sqlite3.Error, ValueError, OSError) as e:
            logger.error(f"Error closing pooled connection: {e}")

    # ===== Maintenance =====

    async def reap_idle_connections(self) -> int:
        """
        Close connections idle longer than idle_timeout_ms

        Never reaps below min_idle idle connections.

        Returns:
            Number of connections closed
        """
        now = time.monotonic()
        idle_timeout = self.config.idle_timeout_ms / 1000
        idle = sorted(
            (pc for pc in self._connections if not pc.in_use),
            key=lambda pc: pc.last_used,
        )
        budget = len(idle) - self.config.min_idle

        reaped = 0
        for pc in idle:
            if reaped >= budget:
                break
            if pc.in_use or not self._owns(pc) or pc.idle_for(now) <= idle_timeout:
                continue
            self._connections.remove(pc)
            reaped += 1
            await self._close_quietly(pc)

        if reaped:
            self._sync_metrics()
            logger.info(f"Reaped {reaped} idle connections ({len(self._connections)} remain)")
        return reaped

    async def run_maintenance(self) -> None:
        """Hourly PRAGMA optimize and incremental vacuum; failures are logged"""
        try:
            async with self.connection() as pc:
                await _execute_all(pc, "PRAGMA optimize")
                await _execute_all(pc, "PRAGMA incremental_vacuum(1000)")
            logger.info("Database maintenance completed")
        except (sqlite3.Error, ConnectionTimeoutError, PoolClosedError) as e:
            logger.error(f"Database maintenance failed: {e}")

    async def optimize(self) -> Dict[str, Any]:
        """Operator-triggered optimize, incremental vacuum and ANALYZE"""
        start = time.perf_counter()
        async with self.connection() as pc:
            try:
                await _execute_all(pc, "PRAGMA optimize")
                await _execute_all(pc, "PRAGMA incremental_vacuum(5000)")
                await _execute_all(pc, "ANALYZE")
            except sqlite3.Error as e:
                raise ErrorHandler.handle_database_error(e, "optimize") from e
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"Database optimization completed in {duration_ms:.1f}ms")
        return {"success": True, "duration_ms": round(duration_ms, 2)}

    async def checkpoint_wal(self) -> Dict[str, int]:
        """Checkpoint and truncate the write-ahead log"""
        async with self.connection() as pc:
            try:
                rows = await _execute_all(pc, "PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                raise ErrorHandler.handle_database_error(e, "checkpoint") from e
        busy, log_frames, checkpointed = rows[0] if rows else (0, 0, 0)
        logger.info(f"WAL checkpoint: {checkpointed}/{log_frames} frames (busy={busy})")
        return {"busy": busy, "log_frames": log_frames, "checkpointed": checkpointed}

    def _start_background_tasks(self) -> None:
        self._tasks.append(asyncio.create_task(
            self._periodic("idle reaper", self.config.reap_interval_seconds, self.reap_idle_connections),
            name="notevault-pool-reaper",
        ))
        self._tasks.append(asyncio.create_task(
            self._periodic("maintenance", self.config.maintenance_interval_seconds, self.run_maintenance),
            name="notevault-pool-maintenance",
        ))
        if self.config.metrics_log_interval_seconds > 0:
            self._tasks.append(asyncio.create_task(
                self._periodic("metrics log", self.config.metrics_log_interval_seconds, self._log_metrics),
                name="notevault-pool-metrics",
            ))

    async def _periodic(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.error(f"Pool {name} task failed: {e}", exc_info=True)

    async def _log_metrics(self) -> None:
        status = self.status()
        snapshot = self.metrics.snapshot()
        logger.info(
            f"Database metrics: {snapshot['total_queries']} queries, "
            f"avg {snapshot['avg_query_time_ms']}ms, {snapshot['slow_queries']} slow, "
            f"{snapshot['errors']} errors; pool {status['active']}/{status['max_connections']} active, "
            f"{status['queued']} queued"
        )

    # ===== Status =====

    def _active_count(self) -> int:
        return sum(1 for pc in self._connections if pc.in_use)

    def _sync_metrics(self) -> None:
        active = self._active_count()
        self.metrics.active_connections = active
        self.metrics.queue_length = sum(1 for fut in self._waiters if not fut.done())
        if self._drained is not None and active == 0 and self._pending == 0:
            self._drained.set()

    def status(self) -> Dict[str, Any]:
        """
        Get pool statistics

        Returns:
            Dictionary with occupancy, utilization and a health label
        """
        total = len(self._connections)
        active = self._active_count()
        utilization = active / self.config.max_connections

        if utilization < UTILIZATION_WARNING:
            health = "healthy"
        elif utilization < UTILIZATION_CRITICAL:
            health = "warning"
        else:
            health = "critical"

        return {
            "database": str(self.config.database),
            "total_connections": total,
            "active": active,
            "idle": total - active,
            "queued": sum(1 for fut in self._waiters if not fut.done()),
            "pending": self._pending,
            "max_connections": self.config.max_connections,
            "utilization": round(utilization, 3),
            "health": health,
            "initialized": self._initialized,
            "paused": self._paused,
            "closed": self._closed,
        }
