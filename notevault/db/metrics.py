"""
Database Metrics

Process-wide counters shared by the pool and the query executor.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class DatabaseMetrics:
    """Counters for pool occupancy and statement latency"""
    total_queries: int = 0
    total_connections: int = 0  # opened over the pool's lifetime
    active_connections: int = 0
    queue_length: int = 0
    avg_query_time_ms: float = 0.0
    slow_queries: int = 0
    errors: int = 0
    last_health_check: Optional[datetime] = None

    def record_query(self, elapsed_ms: float) -> None:
        """Count a statement and fold its latency into the running mean"""
        self.total_queries += 1
        self.avg_query_time_ms += (elapsed_ms - self.avg_query_time_ms) / self.total_queries

    @property
    def error_rate(self) -> float:
        if self.total_queries == 0:
            return 0.0
        return self.errors / self.total_queries

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time copy safe to hand to callers"""
        data = asdict(self)
        data["avg_query_time_ms"] = round(self.avg_query_time_ms, 3)
        data["error_rate"] = round(self.error_rate, 4)
        data["last_health_check"] = (
            self.last_health_check.isoformat() if self.last_health_check else None
        )
        return data
