"""
Liveness and readiness checks for the session coordinator.
"""

from health.service import (
    DependencyHealth,
    HealthCheckService,
    HealthStatus,
)

__all__ = [
    "HealthCheckService",
    "HealthStatus",
    "DependencyHealth",
]
