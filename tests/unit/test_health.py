"""Tests for HealthChecker and backend check selection."""

from __future__ import annotations

import pytest

from commerce_bus.core.config import Settings
from commerce_bus.observability.health import HealthChecker, build_health_checker


class TestHealthChecker:
    @pytest.mark.asyncio
    async def test_all_healthy(self):
        checker = HealthChecker()

        async def ok():
            return True, "fine"

        checker.register_check("broker", ok)
        [result] = await checker.check_all()

        assert result.component == "broker"
        assert result.healthy is True
        assert result.message == "fine"
        assert result.latency_ms >= 0
        assert await checker.is_healthy()

    @pytest.mark.asyncio
    async def test_raising_check_reported_unhealthy(self):
        checker = HealthChecker()

        async def ok():
            return True, "fine"

        async def broken():
            raise OSError("connection refused")

        checker.register_check("broker", ok)
        checker.register_check("idempotency_store", broken)
        results = {r.component: r for r in await checker.check_all()}

        assert results["broker"].healthy
        assert not results["idempotency_store"].healthy
        assert "connection refused" in results["idempotency_store"].message
        assert not await checker.is_healthy()


class TestBuildHealthChecker:
    @pytest.mark.asyncio
    async def test_memory_backends_in_process(self):
        checker = build_health_checker(Settings())
        assert checker.components == ["broker", "idempotency_store"]
        assert await checker.is_healthy()

    def test_redis_and_sql_backends_registered(self):
        settings = Settings(
            broker={"kind": "redis"},
            idempotency={"backend": "sql", "database_url": "sqlite+aiosqlite:///x.db"},
        )
        assert build_health_checker(settings).components == ["broker", "idempotency_store"]
