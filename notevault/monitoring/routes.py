"""
Database Health Routes

Operator endpoints for health, metrics, pool status and maintenance.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from notevault.db.pool import ConnectionPool
from notevault.deps import get_health_reporter, get_pool
from notevault.monitoring.health import HealthReporter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/database", tags=["database"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def database_health(reporter: HealthReporter = Depends(get_health_reporter)):
    """
    Database health verdict

    Returns 503 when the database is unreachable so load balancers can act on it.
    """
    health = await reporter.health_check()
    status_code = 503 if health["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=health)


@router.get("/metrics")
async def database_metrics(reporter: HealthReporter = Depends(get_health_reporter)) -> Dict[str, Any]:
    metrics = reporter.get_metrics()
    return {
        "metrics": metrics,
        "table_stats": await reporter.table_statistics(),
        "performance_score": reporter.get_performance_score(),
        "timestamp": _now(),
    }


@router.get("/pool")
async def pool_status(pool: ConnectionPool = Depends(get_pool)) -> Dict[str, Any]:
    return {"pool": pool.status(), "timestamp": _now()}


@router.get("/recommendations")
async def database_recommendations(reporter: HealthReporter = Depends(get_health_reporter)) -> Dict[str, Any]:
    metrics = reporter.get_metrics()
    return {
        "slow_query_threshold_ms": reporter.pool.config.slow_query_ms,
        "slow_queries": metrics["slow_queries"],
        "recommendations": reporter.get_recommendations(),
        "timestamp": _now(),
    }


@router.get("/optimization")
async def optimization_analysis(reporter: HealthReporter = Depends(get_health_reporter)) -> Dict[str, Any]:
    """Index coverage, table sizes and storage recommendations"""
    return {"optimization": await reporter.optimization_analysis(), "timestamp": _now()}


@router.post("/optimize")
async def optimize_database(pool: ConnectionPool = Depends(get_pool)) -> Dict[str, Any]:
    """Run PRAGMA optimize, incremental vacuum and ANALYZE"""
    result = await pool.optimize()
    logger.info("Database optimization triggered via API")
    return {**result, "timestamp": _now()}


@router.post("/checkpoint-wal")
async def checkpoint_wal(pool: ConnectionPool = Depends(get_pool)) -> Dict[str, Any]:
    result = await pool.checkpoint_wal()
    return {"checkpoint": result, "timestamp": _now()}
