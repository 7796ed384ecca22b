"""Health checks for the broker and the idempotency store.

Each check is an async callable returning ``(healthy, message)``; a check
that raises is reported unhealthy with the exception text.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

from commerce_bus.core.config import Settings
from commerce_bus.core.enums import IdempotencyBackend, TransportKind

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[tuple[bool, str]]]


class ComponentHealth(BaseModel):
    """Result of one component check."""

    component: str
    healthy: bool
    message: str = ""
    latency_ms: float = 0.0


class HealthChecker:
    """Checks health of bus components."""

    def __init__(self) -> None:
        self._checks: dict[str, HealthCheck] = {}

    def register_check(self, component: str, check_fn: HealthCheck) -> None:
        """Register a health check function for a component.

        check_fn should be async and return (healthy: bool, message: str).
        """
        self._checks[component] = check_fn

    @property
    def components(self) -> list[str]:
        return list(self._checks)

    async def check_all(self) -> list[ComponentHealth]:
        """Run all health checks and return results."""
        results = []

        for component, check_fn in self._checks.items():
            start = time.monotonic()
            try:
                healthy, message = await check_fn()
            except Exception as e:
                logger.warning("Health check %s raised", component, exc_info=True)
                healthy, message = False, f"Check failed: {e}"
            results.append(
                ComponentHealth(
                    component=component,
                    healthy=healthy,
                    message=message,
                    latency_ms=(time.monotonic() - start) * 1000,
                )
            )

        return results

    async def is_healthy(self) -> bool:
        """Quick check: are all components healthy?"""
        results = await self.check_all()
        return all(r.healthy for r in results)


async def check_redis(redis_url: str) -> tuple[bool, str]:
    """Health check for a Redis connection."""
    import redis.asyncio as aioredis
    from redis.exceptions import RedisError

    client = aioredis.from_url(redis_url)
    try:
        await client.ping()
        return True, "Redis connected"
    except RedisError as e:
        return False, f"Redis error: {e}"
    finally:
        await client.aclose()


async def check_database(database_url: str) -> tuple[bool, str]:
    """Health check for the SQL idempotency database."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(database_url)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True, "Database connected"
    except SQLAlchemyError as e:
        return False, f"Database error: {e}"
    finally:
        await engine.dispose()


async def _in_process() -> tuple[bool, str]:
    return True, "in-process"


def build_health_checker(settings: Settings) -> HealthChecker:
    """Register the checks that apply to the configured backends."""
    checker = HealthChecker()

    if settings.broker.kind == TransportKind.REDIS:
        url = settings.broker.url
        checker.register_check("broker", lambda: check_redis(url))
    else:
        checker.register_check("broker", _in_process)

    backend = settings.idempotency.backend
    if backend == IdempotencyBackend.REDIS:
        store_url = settings.idempotency_redis_url
        checker.register_check("idempotency_store", lambda: check_redis(store_url))
    elif backend == IdempotencyBackend.SQL:
        db_url = settings.idempotency.database_url or ""
        checker.register_check("idempotency_store", lambda: check_database(db_url))
    else:
        checker.register_check("idempotency_store", _in_process)

    return checker
