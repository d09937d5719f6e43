"""
Database Health and Metrics Reporter

Combines pool occupancy and executor counters into:
- a metrics snapshot (counters + pool size / availability)
- a health verdict (healthy / degraded / unhealthy) with reasons
- a 0-100 performance score and tuning recommendations
- an optimization analysis of index coverage, table sizes and free pages

Thresholds:
- queue length > 5, error rate > 5%, average latency > 1000ms or the
  database volume >= 90% full -> degraded
- failed SELECT 1 round-trip -> unhealthy
"""

import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil

from notevault.db.connection import fetch_pragma
from notevault.db.pool import ConnectionPool
from notevault.db.schema import INDEXES, indexes_by_table, list_indexes, table_sizes
from notevault.errors import ErrorHandler, NoteVaultError

logger = logging.getLogger(__name__)

MAX_QUEUE_LENGTH = 5
MAX_ERROR_RATE = 0.05
MAX_AVG_QUERY_MS = 1000
MAX_DISK_PERCENT = 90.0

# Storage analysis
ARCHIVE_RECORD_THRESHOLD = 100_000
LARGE_AUDIT_LOG = 10_000
MIN_AUDIT_LOG_INDEXES = 3
MAX_FREELIST_RATIO = 0.1

# Tables counted in the metrics report
COUNTED_TABLES = ("users", "workspaces", "notes", "files", "api_keys", "audit_logs")


def performance_score(metrics: Dict[str, Any]) -> int:
    """
    Score pool and query health from 0 to 100

    Deductions: error rate (proportional), average latency (5/10/20),
    queue length (10/15), utilization (10/20).
    """
    score = 100.0

    score -= (metrics["errors"] / max(metrics["total_queries"], 1)) * 100

    avg = metrics["avg_query_time_ms"]
    if avg > 1000:
        score -= 20
    elif avg > 500:
        score -= 10
    elif avg > 100:
        score -= 5

    queue = metrics["queue_length"]
    if queue > 10:
        score -= 15
    elif queue > 5:
        score -= 10

    utilization = metrics["active_connections"] / max(metrics["max_connections"], 1)
    if utilization > 0.9:
        score -= 20
    elif utilization > 0.7:
        score -= 10

    return max(0, round(score))


def recommendations(metrics: Dict[str, Any]) -> List[Dict[str, str]]:
    """Tuning suggestions derived from the metrics snapshot"""
    result = []

    if metrics["avg_query_time_ms"] > 1000:
        result.append({
            "type": "performance",
            "priority": "high",
            "message": "Average query time is high. Consider adding indexes or optimizing queries.",
            "action": "analyze_slow_queries",
        })

    if metrics["queue_length"] > 5:
        result.append({
            "type": "capacity",
            "priority": "medium",
            "message": "Connection queue is building up. Consider increasing pool size.",
            "action": "increase_pool_size",
        })

    if metrics["slow_queries"] > metrics["total_queries"] * 0.1:
        result.append({
            "type": "optimization",
            "priority": "high",
            "message": "High number of slow queries detected. Database optimization needed.",
            "action": "run_optimization",
        })

    utilization = metrics["active_connections"] / max(metrics["max_connections"], 1)
    if utilization > 0.8:
        result.append({
            "type": "scaling",
            "priority": "medium",
            "message": "High connection pool utilization. Monitor for capacity issues.",
            "action": "monitor_scaling",
        })

    return result


def optimization_recommendations(analysis: Dict[str, Any]) -> List[Dict[str, str]]:
    """Index and storage suggestions derived from an optimization analysis"""
    result = []
    indexes = analysis["indexes"]
    tables = analysis["tables"]
    storage = analysis["storage"]

    if indexes["missing"]:
        result.append({
            "type": "performance",
            "priority": "high",
            "message": f"Declared indexes are missing: {', '.join(indexes['missing'])}. Restart to recreate them.",
            "action": "recreate_indexes",
        })

    for table, info in tables.items():
        count = info.get("record_count")
        if count is not None and count > ARCHIVE_RECORD_THRESHOLD:
            result.append({
                "type": "scaling",
                "priority": "medium",
                "message": f"Table {table} has {count} records. Consider archiving old data.",
                "action": "archive_old_data",
            })

    audit_count = tables.get("audit_logs", {}).get("record_count") or 0
    audit_indexes = indexes["by_table"].get("audit_logs", [])
    if audit_count > LARGE_AUDIT_LOG and len(audit_indexes) < MIN_AUDIT_LOG_INDEXES:
        result.append({
            "type": "performance",
            "priority": "high",
            "message": "Audit logs table is large but may lack sufficient indexes.",
            "action": "add_audit_indexes",
        })

    if storage["page_count"] and storage["freelist_count"] / storage["page_count"] > MAX_FREELIST_RATIO:
        result.append({
            "type": "maintenance",
            "priority": "low",
            "message": (
                f"{storage['freelist_count']} of {storage['page_count']} pages are free. "
                "Run optimization to reclaim space."
            ),
            "action": "run_optimization",
        })

    return result


class HealthReporter:
    """Reads pool and executor counters on demand"""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    def get_metrics(self) -> Dict[str, Any]:
        """Metrics snapshot plus pool size, available and max connections"""
        status = self.pool.status()
        snapshot = self.pool.metrics.snapshot()
        snapshot["active_connections"] = status["active"]
        snapshot["pool_size"] = status["total_connections"]
        snapshot["available_connections"] = status["idle"]
        snapshot["max_connections"] = status["max_connections"]
        return snapshot

    def disk_usage_percent(self) -> Optional[float]:
        """Fill level of the volume holding the database, None if unknown"""
        try:
            return psutil.disk_usage(str(self.pool.config.database.parent)).percent
        except OSError as e:
            logger.warning(f"Could not read disk usage: {e}")
            return None

    async def health_check(self) -> Dict[str, Any]:
        """
        Round-trip the database and grade current metrics

        Returns:
            Dict with status, checks, reasons, metrics, pool,
            response_time_ms and timestamp
        """
        start = time.perf_counter()
        checks: Dict[str, Any] = {}
        reasons: List[str] = []

        try:
            async with self.pool.connection() as pc:
                async with pc.connection.execute("SELECT 1") as cursor:
                    await cursor.fetchone()
            checks["database"] = "ok"
            self.pool.metrics.last_health_check = datetime.now(timezone.utc)
            reachable = True
        except (NoteVaultError, sqlite3.Error) as e:
            checks["database"] = "failed"
            reasons.append(f"Database round-trip failed: {e}")
            logger.error(f"Database health check failed: {e}")
            reachable = False

        response_time_ms = (time.perf_counter() - start) * 1000
        metrics = self.get_metrics()

        checks["queue_length"] = metrics["queue_length"]
        if metrics["queue_length"] > MAX_QUEUE_LENGTH:
            reasons.append(f"Connection queue length {metrics['queue_length']} exceeds {MAX_QUEUE_LENGTH}")

        checks["error_rate"] = metrics["error_rate"]
        if metrics["error_rate"] > MAX_ERROR_RATE:
            reasons.append(f"Error rate {metrics['error_rate']:.1%} exceeds {MAX_ERROR_RATE:.0%}")

        checks["avg_query_time_ms"] = metrics["avg_query_time_ms"]
        if metrics["avg_query_time_ms"] > MAX_AVG_QUERY_MS:
            reasons.append(f"Average query time {metrics['avg_query_time_ms']:.0f}ms exceeds {MAX_AVG_QUERY_MS}ms")

        disk_percent = self.disk_usage_percent()
        checks["disk_percent"] = disk_percent
        if disk_percent is not None and disk_percent >= MAX_DISK_PERCENT:
            reasons.append(f"Database volume is {disk_percent:.0f}% full")

        if not reachable:
            status = "unhealthy"
        elif reasons:
            status = "degraded"
        else:
            status = "healthy"

        if status == "degraded":
            logger.warning(f"Database health degraded: {'; '.join(reasons)}")

        return {
            "status": status,
            "checks": checks,
            "reasons": reasons,
            "metrics": metrics,
            "pool": self.pool.status(),
            "response_time_ms": round(response_time_ms, 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def table_statistics(self) -> Dict[str, Any]:
        """Row counts of the core tables; unreadable tables report their error"""
        stats: Dict[str, Any] = {}
        async with self.pool.connection() as pc:
            for table in COUNTED_TABLES:
                try:
                    async with pc.connection.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                        row = await cursor.fetchone()
                    stats[table] = row[0]
                except sqlite3.Error as e:
                    stats[table] = {"error": str(e)}
        return stats

    async def optimization_analysis(self) -> Dict[str, Any]:
        """
        Analyze index coverage, table sizes and free space

        Table sizes come from dbstat and are None when the SQLite build
        lacks it.

        Returns:
            Dictionary with indexes, tables, storage and recommendations
        """
        counts = await self.table_statistics()

        async with self.pool.connection() as pc:
            conn = pc.connection
            try:
                present = set(await list_indexes(conn))
                by_table = await indexes_by_table(conn)
                sizes = await table_sizes(conn)
                page_size = await fetch_pragma(conn, "page_size")
                page_count = await fetch_pragma(conn, "page_count")
                freelist_count = await fetch_pragma(conn, "freelist_count")
            except sqlite3.Error as e:
                raise ErrorHandler.handle_database_error(e, "optimization_analysis") from e

        tables: Dict[str, Any] = {}
        for table, count in counts.items():
            if isinstance(count, dict):
                tables[table] = count
                continue
            tables[table] = {
                "record_count": count,
                "size_bytes": sizes.get(table) if sizes is not None else None,
                "indexes": len(by_table.get(table, [])),
            }

        analysis = {
            "indexes": {
                "total": len(present),
                "by_table": by_table,
                "missing": [spec.name for spec in INDEXES if spec.name not in present],
            },
            "tables": tables,
            "storage": {
                "page_size": page_size,
                "page_count": page_count,
                "freelist_count": freelist_count,
                "size_bytes": page_size * page_count,
            },
        }
        analysis["recommendations"] = optimization_recommendations(analysis)

        if analysis["indexes"]["missing"]:
            logger.warning(f"Optimization analysis found {len(analysis['indexes']['missing'])} missing indexes")
        return analysis

    def get_recommendations(self) -> List[Dict[str, str]]:
        return recommendations(self.get_metrics())

    def get_performance_score(self) -> int:
        return performance_score(self.get_metrics())
