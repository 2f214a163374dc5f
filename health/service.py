"""
Health checks for the session coordinator.

Liveness only says the process answers. Readiness checks the session
storage backend, which is the one dependency the service cannot work
without, under a timeout and with response time reported.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

SESSION_STORAGE = "session_storage"


def _timestamp(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


@dataclass
class DependencyHealth:
    """
    Health of a single dependency.

    Attributes:
        name: Dependency name (e.g. "session_storage")
        healthy: Whether the dependency answered in time
        response_time_ms: Duration of the check in milliseconds
        backend: Backend kind behind the dependency, if known
        error: Failure description when unhealthy
    """
    name: str
    healthy: bool
    response_time_ms: float
    backend: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.backend is not None:
            result["backend"] = self.backend
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class HealthStatus:
    """Aggregate status: "healthy", "degraded" or "unhealthy"."""
    status: str
    timestamp: datetime
    dependencies: list[DependencyHealth] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": _timestamp(self.timestamp),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


class HealthCheckService:
    """
    Readiness and liveness checks.

    Attributes:
        session_manager: Manager whose storage backend is checked
        check_timeout: Timeout in seconds for each dependency check
    """

    critical_dependencies = frozenset({SESSION_STORAGE})

    def __init__(self, session_manager: Any, check_timeout: float = 5.0):
        self.session_manager = session_manager
        self.check_timeout = check_timeout

    async def check_readiness(self) -> HealthStatus:
        dependencies = [await self._check_session_storage()]
        return HealthStatus(
            status=self._determine_overall_status(dependencies),
            timestamp=datetime.now(timezone.utc),
            dependencies=dependencies,
        )

    async def check_liveness(self) -> dict[str, Any]:
        return {"status": "alive", "timestamp": _timestamp(datetime.now(timezone.utc))}

    async def check_health(self) -> dict[str, Any]:
        return {"status": "ok", "timestamp": _timestamp(datetime.now(timezone.utc))}

    async def _check_session_storage(self) -> DependencyHealth:
        """Ask the session manager about its backend, bounded by check_timeout."""
        start_time = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.session_manager.check_storage_health(),
                timeout=self.check_timeout,
            )
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Session storage health check timed out after {self.check_timeout} seconds"
            logger.warning(error_msg)
            return DependencyHealth(SESSION_STORAGE, False, elapsed_ms, error=error_msg)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Session storage health check failed: {e}"
            logger.error(error_msg, exc_info=True)
            return DependencyHealth(SESSION_STORAGE, False, elapsed_ms, error=error_msg)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        healthy = bool(result.get("healthy"))
        if not healthy:
            logger.warning(
                "Session storage reported unhealthy",
                extra={"extra_data": {"backend": result.get("backend"), "response_time_ms": elapsed_ms}}
            )
        return DependencyHealth(
            name=SESSION_STORAGE,
            healthy=healthy,
            response_time_ms=elapsed_ms,
            backend=result.get("backend"),
            error=None if healthy else result.get("message"),
        )

    def _determine_overall_status(self, dependencies: list[DependencyHealth]) -> str:
        """Unhealthy if a critical dependency failed, degraded if any other did."""
        failed = {dep.name for dep in dependencies if not dep.healthy}
        if not failed:
            return "healthy"
        if failed & self.critical_dependencies:
            return "unhealthy"
        return "degraded"
