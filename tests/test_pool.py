"""
Tests for notevault/db/pool.py

Covers initialization, bounded acquire/release with FIFO hand-off,
acquire timeouts, idle reaping, quiesce/drain, maintenance and status.
"""

import asyncio
import sqlite3
import time

import pytest

from notevault.db.connection import fetch_pragma, open_connection
from notevault.db.executor import QueryExecutor
from notevault.errors import (
    ConnectionTimeoutError,
    InitializationError,
    PoolClosedError,
    PoolDrainTimeoutError,
)
from tests.conftest import register_sleep


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# ========== Initialization ==========

class TestInitialize:
    """Tests for ConnectionPool.initialize"""

    @pytest.mark.asyncio
    async def test_creates_directory_schema_and_connections(self, pool_factory, db_path):
        pool = pool_factory(initial_connections=2)

        report = await pool.initialize()

        assert db_path.exists()
        assert report is not None and report.ok
        status = pool.status()
        assert status["total_connections"] == 2
        assert status["active"] == 0
        assert pool.initialized

    @pytest.mark.asyncio
    async def test_is_idempotent(self, pool_factory):
        pool = pool_factory(initial_connections=2)

        first = await pool.initialize()
        second = await pool.initialize()

        assert first is second
        assert pool.status()["total_connections"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_setup(self, pool_factory):
        pool = pool_factory(initial_connections=3)

        reports = await asyncio.gather(*(pool.initialize() for _ in range(5)))

        assert all(r is reports[0] for r in reports)
        assert pool.status()["total_connections"] == 3
        assert pool.metrics.total_connections == 3

    @pytest.mark.asyncio
    async def test_initial_connections_capped_at_max(self, pool_factory):
        pool = pool_factory(initial_connections=10, max_connections=2)

        await pool.initialize()

        assert pool.status()["total_connections"] == 2

    @pytest.mark.asyncio
    async def test_connections_have_pragmas(self, pool):
        async with pool.connection() as pc:
            assert (await fetch_pragma(pc.connection, "journal_mode")).lower() == "wal"
            assert await fetch_pragma(pc.connection, "foreign_keys") == 1
            assert await fetch_pragma(pc.connection, "synchronous") == 1
            assert await fetch_pragma(pc.connection, "busy_timeout") == 30000

    @pytest.mark.asyncio
    async def test_unusable_directory_raises_initialization_error(self, tmp_path):
        from notevault.db.pool import ConnectionPool
        from tests.conftest import make_pool_config

        blocker = tmp_path / "not-a-directory"
        blocker.write_text("file in the way")
        pool = ConnectionPool(make_pool_config(blocker / "notevault.db"))

        with pytest.raises(InitializationError):
            await pool.initialize()

        assert not pool.initialized
        await pool.close()

    @pytest.mark.asyncio
    async def test_acquire_initializes_lazily(self, pool_factory):
        pool = pool_factory()

        pc = await pool.acquire()

        assert pool.initialized
        assert pc.in_use
        await pool.release(pc)


# ========== Acquire / Release ==========

class TestAcquireRelease:
    """Tests for bounded acquire, FIFO waiting and release"""

    @pytest.mark.asyncio
    async def test_concurrent_acquires_within_max_all_succeed(self, pool_factory):
        pool = pool_factory(max_connections=4, initial_connections=0)

        held = await asyncio.gather(*(pool.acquire() for _ in range(4)))

        assert len({id(pc) for pc in held}) == 4
        assert pool.status()["total_connections"] == 4
        assert pool.metrics.total_connections == 4
        assert pool.metrics.active_connections == 4

        for pc in held:
            await pool.release(pc)
        assert pool.status()["idle"] == 4

    @pytest.mark.asyncio
    async def test_never_opens_more_than_max(self, pool_factory):
        pool = pool_factory(max_connections=2, initial_connections=0, acquire_timeout_ms=100)

        results = await asyncio.gather(
            *(pool.acquire() for _ in range(3)),
            return_exceptions=True,
        )

        granted = [r for r in results if not isinstance(r, BaseException)]
        timed_out = [r for r in results if isinstance(r, ConnectionTimeoutError)]
        assert len(granted) == 2
        assert len(timed_out) == 1
        assert pool.status()["total_connections"] == 2

        for pc in granted:
            await pool.release(pc)

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_fifo_order(self, pool_factory):
        pool = pool_factory(max_connections=2, initial_connections=2)
        held = [await pool.acquire(), await pool.acquire()]
        order = []

        async def waiter(i):
            pc = await pool.acquire()
            order.append(i)
            return pc

        tasks = []
        for i in range(3):
            tasks.append(asyncio.create_task(waiter(i)))
            await _settle()

        assert pool.status()["queued"] == 3

        await pool.release(held[0])
        await _settle()
        assert order == [0]

        await pool.release(held[1])
        await _settle()
        assert order == [0, 1]

        first = await tasks[0]
        await pool.release(first)
        await _settle()
        assert order == [0, 1, 2]

        for task in tasks[1:]:
            await pool.release(await task)
        assert pool.status()["queued"] == 0
        assert pool.status()["active"] == 0

    @pytest.mark.asyncio
    async def test_release_hands_connection_directly_to_waiter(self, pool_factory):
        pool = pool_factory(max_connections=1, initial_connections=1)
        pc = await pool.acquire()
        waiting = asyncio.create_task(pool.acquire())
        await _settle()

        await pool.release(pc)
        handed = await waiting

        assert handed is pc
        assert handed.in_use
        assert pc.checkout_count == 2
        await pool.release(handed)

    @pytest.mark.asyncio
    async def test_timeout_on_exhausted_pool(self, pool_factory):
        pool = pool_factory(max_connections=1, initial_connections=1, acquire_timeout_ms=50)
        held = await pool.acquire()

        start = time.monotonic()
        with pytest.raises(ConnectionTimeoutError) as exc_info:
            await pool.acquire()
        elapsed = time.monotonic() - start

        assert 0.045 <= elapsed < 0.3
        assert exc_info.value.timeout_ms == 50
        assert exc_info.value.retryable
        await pool.release(held)

    @pytest.mark.asyncio
    async def test_timed_out_waiter_is_never_granted_later(self, pool_factory):
        pool = pool_factory(max_connections=1, initial_connections=1, acquire_timeout_ms=50)
        held = await pool.acquire()

        with pytest.raises(ConnectionTimeoutError):
            await pool.acquire()
        assert pool.status()["queued"] == 0

        await pool.release(held)

        status = pool.status()
        assert status["active"] == 0
        assert status["idle"] == 1
        assert not held.in_use

    @pytest.mark.asyncio
    async def test_third_get_waits_for_a_release(self, pool_factory):
        pool = pool_factory(max_connections=2, initial_connections=0, on_connect=register_sleep)
        executor = QueryExecutor(pool)
        events = []

        original_acquire = pool.acquire
        original_release = pool.release

        async def tracking_acquire():
            pc = await original_acquire()
            events.append("acquire")
            return pc

        async def tracking_release(pc):
            events.append("release")
            await original_release(pc)

        pool.acquire = tracking_acquire
        pool.release = tracking_release

        results = await asyncio.gather(
            *(executor.get("SELECT sleep_ms(150) AS slept") for _ in range(3))
        )

        assert results == [{"slept": 150}] * 3
        assert events[:2] == ["acquire", "acquire"]
        third_acquire = [i for i, e in enumerate(events) if e == "acquire"][2]
        first_release = events.index("release")
        assert third_acquire > first_release
        assert pool.status()["total_connections"] == 2

    @pytest.mark.asyncio
    async def test_double_release_is_ignored_with_warning(self, pool, caplog):
        pc = await pool.acquire()
        await pool.release(pc)

        with caplog.at_level("WARNING", logger="notevault.db.pool"):
            await pool.release(pc)

        assert "already idle" in caplog.text
        assert pool.status()["idle"] == pool.status()["total_connections"]

    @pytest.mark.asyncio
    async def test_discard_frees_capacity_for_waiters(self, pool_factory):
        pool = pool_factory(max_connections=1, initial_connections=1)
        pc = await pool.acquire()
        waiting = asyncio.create_task(pool.acquire())
        await _settle()

        await pool.discard(pc)
        replacement = await waiting

        assert replacement is not pc
        assert pool.status()["total_connections"] == 1
        await pool.release(replacement)

    @pytest.mark.asyncio
    async def test_failed_open_frees_slot_for_queued_waiter(self, pool_factory, monkeypatch):
        pool = pool_factory(max_connections=1, initial_connections=0, acquire_timeout_ms=1000)
        await pool.initialize()
        attempts = []

        async def flaky_open(config):
            attempts.append(config)
            await asyncio.sleep(0.1)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("unable to open database file")
            return await open_connection(config)

        monkeypatch.setattr("notevault.db.pool.open_connection", flaky_open)
        first = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.02)
        second = asyncio.create_task(pool.acquire())
        await _settle()

        with pytest.raises(sqlite3.OperationalError):
            await first
        granted = await asyncio.wait_for(second, timeout=0.5)

        assert len(attempts) == 2
        assert pool.status()["active"] == 1
        await pool.release(granted)

    @pytest.mark.asyncio
    async def test_queued_waiter_gets_open_error_instead_of_timeout(self, pool_factory, monkeypatch):
        pool = pool_factory(max_connections=1, initial_connections=1, acquire_timeout_ms=2000)
        held = await pool.acquire()
        waiting = asyncio.create_task(pool.acquire())
        await _settle()

        async def broken_open(config):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr("notevault.db.pool.open_connection", broken_open)
        start = time.monotonic()
        await pool.discard(held)

        with pytest.raises(sqlite3.OperationalError, match="disk I/O error"):
            await waiting
        assert time.monotonic() - start < 1.0
        assert pool.status()["total_connections"] == 0
        assert pool.status()["pending"] == 0


# ========== Close ==========

class TestClose:
    """Tests for ConnectionPool.close"""

    @pytest.mark.asyncio
    async def test_acquire_after_close_raises(self, pool):
        await pool.close()

        with pytest.raises(PoolClosedError):
            await pool.acquire()
        assert pool.status()["total_connections"] == 0

    @pytest.mark.asyncio
    async def test_close_fails_waiters(self, pool_factory):
        pool = pool_factory(max_connections=1, initial_connections=1)
        await pool.acquire()
        waiting = asyncio.create_task(pool.acquire())
        await _settle()

        await pool.close()

        with pytest.raises(PoolClosedError):
            await waiting

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, pool):
        await pool.close()
        await pool.close()

        assert pool.closed

    @pytest.mark.asyncio
    async def test_close_cancels_background_tasks(self, pool_factory):
        pool = pool_factory(start_background_tasks=True)
        await pool.initialize()
        tasks = list(pool._tasks)
        assert len(tasks) == 3

        await pool.close()

        assert all(task.done() for task in tasks)


# ========== Reaping ==========

class TestReaping:
    """Tests for idle connection reaping"""

    @pytest.mark.asyncio
    async def test_reaps_connections_past_idle_timeout(self, pool_factory):
        pool = pool_factory(initial_connections=3, idle_timeout_ms=1)
        await pool.initialize()
        await asyncio.sleep(0.02)

        reaped = await pool.reap_idle_connections()

        assert reaped == 3
        assert pool.status()["total_connections"] == 0

    @pytest.mark.asyncio
    async def test_keeps_fresh_connections(self, pool_factory):
        pool = pool_factory(initial_connections=2, idle_timeout_ms=60000)
        await pool.initialize()

        assert await pool.reap_idle_connections() == 0
        assert pool.status()["total_connections"] == 2

    @pytest.mark.asyncio
    async def test_respects_min_idle(self, pool_factory):
        pool = pool_factory(initial_connections=3, idle_timeout_ms=1, min_idle=1)
        await pool.initialize()
        await asyncio.sleep(0.02)

        assert await pool.reap_idle_connections() == 2
        assert pool.status()["idle"] == 1

    @pytest.mark.asyncio
    async def test_never_reaps_in_use_connections(self, pool_factory):
        pool = pool_factory(initial_connections=2, idle_timeout_ms=1)
        await pool.initialize()
        held = await pool.acquire()
        await asyncio.sleep(0.02)

        assert await pool.reap_idle_connections() == 1
        assert pool.status()["total_connections"] == 1
        await pool.release(held)

    @pytest.mark.asyncio
    async def test_pool_grows_again_after_reaping(self, pool_factory):
        pool = pool_factory(initial_connections=1, idle_timeout_ms=1)
        await pool.initialize()
        await asyncio.sleep(0.02)
        await pool.reap_idle_connections()

        async with pool.connection() as pc:
            assert pc.in_use

        assert pool.metrics.total_connections == 2


# ========== Quiesce ==========

class TestQuiesce:
    """Tests for drain/quiesce used by restore"""

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_and_queues_new_acquirers(self, pool_factory):
        pool = pool_factory(max_connections=2, initial_connections=1)
        await pool.initialize()
        held = await pool.acquire()
        swapped = asyncio.Event()
        seen = {}

        async def run_quiesce():
            async with pool.quiesce(drain_timeout_ms=2000):
                seen["connections_during_swap"] = pool.status()["total_connections"]
                swapped.set()

        quiesce_task = asyncio.create_task(run_quiesce())
        await asyncio.sleep(0.05)
        assert not swapped.is_set()
        assert pool.status()["paused"]

        late = asyncio.create_task(pool.acquire())
        await _settle()
        assert not late.done()

        await pool.release(held)
        await quiesce_task

        assert seen["connections_during_swap"] == 0
        granted = await late
        assert not pool.status()["paused"]
        await pool.release(granted)

    @pytest.mark.asyncio
    async def test_drain_timeout_resumes_service(self, pool_factory):
        pool = pool_factory(max_connections=2, initial_connections=1)
        await pool.initialize()
        held = await pool.acquire()

        with pytest.raises(PoolDrainTimeoutError):
            async with pool.quiesce(drain_timeout_ms=50):
                pytest.fail("body must not run when the drain times out")

        assert not pool.status()["paused"]
        other = await pool.acquire()
        assert other is not held
        await pool.release(other)
        await pool.release(held)

    @pytest.mark.asyncio
    async def test_connection_opening_at_quiesce_is_not_handed_out(self, pool_factory, monkeypatch):
        pool = pool_factory(max_connections=2, initial_connections=0)
        await pool.initialize()

        async def slow_open(config):
            await asyncio.sleep(0.2)
            return await open_connection(config)

        monkeypatch.setattr("notevault.db.pool.open_connection", slow_open)
        acquirer = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.02)
        assert pool.status()["pending"] == 1
        seen = {}

        async with pool.quiesce(drain_timeout_ms=2000):
            seen["pending"] = pool.status()["pending"]
            await asyncio.sleep(0.3)
            seen["in_use"] = pool.status()["active"]
            seen["connections"] = pool.status()["total_connections"]
            seen["acquirer_done"] = acquirer.done()

        assert seen == {"pending": 0, "in_use": 0, "connections": 0, "acquirer_done": False}
        granted = await acquirer
        assert pool.status()["active"] == 1
        await pool.release(granted)

    @pytest.mark.asyncio
    async def test_reopens_database_after_body(self, pool):
        executor = QueryExecutor(pool)

        async with pool.quiesce():
            pass

        row = await executor.get("SELECT version FROM schema_version")
        assert row is not None
        assert pool.status()["total_connections"] >= 1


# ========== Maintenance & Status ==========

class TestMaintenance:
    """Tests for maintenance, optimize and WAL checkpoint"""

    @pytest.mark.asyncio
    async def test_run_maintenance_releases_connection(self, pool, caplog):
        with caplog.at_level("INFO", logger="notevault.db.pool"):
            await pool.run_maintenance()

        assert "maintenance completed" in caplog.text
        assert pool.status()["active"] == 0

    @pytest.mark.asyncio
    async def test_optimize(self, pool):
        result = await pool.optimize()

        assert result["success"] is True
        assert result["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_checkpoint_wal(self, pool):
        result = await pool.checkpoint_wal()

        assert set(result) == {"busy", "log_frames", "checkpointed"}
        assert result["busy"] == 0


class TestStatus:
    """Tests for ConnectionPool.status"""

    @pytest.mark.asyncio
    async def test_health_labels_follow_utilization(self, pool_factory):
        pool = pool_factory(max_connections=10, initial_connections=0)
        held = []

        assert pool.status()["health"] == "healthy"

        for _ in range(7):
            held.append(await pool.acquire())
        assert pool.status()["utilization"] == 0.7
        assert pool.status()["health"] == "warning"

        for _ in range(2):
            held.append(await pool.acquire())
        assert pool.status()["health"] == "critical"

        for pc in held:
            await pool.release(pc)
        assert pool.status()["health"] == "healthy"
