"""
Unit tests for the health check service.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from health.service import SESSION_STORAGE, DependencyHealth, HealthCheckService


def manager_reporting(result=None, side_effect=None) -> MagicMock:
    manager = MagicMock()
    manager.check_storage_health = AsyncMock(return_value=result, side_effect=side_effect)
    return manager


class TestReadiness:
    """Tests for check_readiness."""

    @pytest.mark.asyncio
    async def test_healthy_storage(self):
        service = HealthCheckService(manager_reporting({"healthy": True, "backend": "redis", "message": "ok"}))

        status = await service.check_readiness()

        assert status.status == "healthy"
        dep = status.dependencies[0]
        assert dep.name == SESSION_STORAGE
        assert dep.healthy is True
        assert dep.backend == "redis"
        assert dep.response_time_ms >= 0

    @pytest.mark.asyncio
    async def test_unreachable_storage_is_unhealthy(self):
        service = HealthCheckService(manager_reporting(
            {"healthy": False, "backend": "redis", "message": "storage backend unreachable"}
        ))

        status = await service.check_readiness()

        assert status.status == "unhealthy"
        assert status.dependencies[0].error == "storage backend unreachable"

    @pytest.mark.asyncio
    async def test_check_timeout(self):
        async def hang():
            await asyncio.sleep(1)

        manager = MagicMock()
        manager.check_storage_health = hang
        service = HealthCheckService(manager, check_timeout=0.01)

        status = await service.check_readiness()

        assert status.status == "unhealthy"
        assert "timed out" in status.dependencies[0].error

    @pytest.mark.asyncio
    async def test_check_exception_is_reported(self):
        service = HealthCheckService(manager_reporting(side_effect=RuntimeError("pool closed")))

        status = await service.check_readiness()

        assert status.status == "unhealthy"
        assert "pool closed" in status.dependencies[0].error

    @pytest.mark.asyncio
    async def test_to_dict(self):
        service = HealthCheckService(manager_reporting({"healthy": True, "backend": "memory", "message": "ok"}))

        data = (await service.check_readiness()).to_dict()

        assert data["status"] == "healthy"
        assert data["timestamp"].endswith("Z")
        assert data["dependencies"][0]["backend"] == "memory"
        assert "error" not in data["dependencies"][0]


class TestOverallStatus:
    """Tests for status aggregation."""

    def test_non_critical_failure_is_degraded(self):
        service = HealthCheckService(MagicMock())

        status = service._determine_overall_status([
            DependencyHealth(SESSION_STORAGE, True, 1.0),
            DependencyHealth("otel_collector", False, 1.0, error="down"),
        ])

        assert status == "degraded"

    def test_no_dependencies_is_healthy(self):
        assert HealthCheckService(MagicMock())._determine_overall_status([]) == "healthy"


class TestLiveness:
    """Tests for the dependency-free checks."""

    @pytest.mark.asyncio
    async def test_liveness_and_basic_health(self):
        service = HealthCheckService(manager_reporting(side_effect=RuntimeError("unused")))

        assert (await service.check_liveness())["status"] == "alive"
        assert (await service.check_health())["status"] == "ok"
