"""
Monitoring Package

Database health verdicts, metrics, performance score and recommendations.
"""

from notevault.monitoring.health import (
    HealthReporter,
    optimization_recommendations,
    performance_score,
    recommendations,
)

__all__ = [
    "HealthReporter",
    "optimization_recommendations",
    "performance_score",
    "recommendations",
]
