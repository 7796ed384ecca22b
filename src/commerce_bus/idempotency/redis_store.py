"""Redis-backed idempotency store.

Each processed message id is a key under a configurable prefix (default
``commerce:processed:``) holding the processing timestamp.  The claim is
``SET key value NX EX retention``, a single atomic round trip, and Redis
expires records on its own, so ``purge_expired()`` has nothing to do.

Uses ``redis.asyncio`` for non-blocking I/O.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from commerce_bus.core.errors import IdempotencyStoreError
from commerce_bus.core.ids import utc_now

logger = logging.getLogger(__name__)


def _processed_key(prefix: str, message_id: str) -> str:
    return f"{prefix}{message_id}"


class RedisIdempotencyStore:
    """Idempotency records as Redis keys with TTL.

    Parameters
    ----------
    redis_url:
        Connection URL, ignored when *client* is given.
    retention_seconds:
        TTL for every record.
    prefix:
        Key namespace so several services can share one Redis.
    client:
        Pre-built ``redis.asyncio.Redis`` (tests, shared pools).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        retention_seconds: int = 7 * 24 * 3600,
        prefix: str = "commerce:processed:",
        client: aioredis.Redis | None = None,
    ) -> None:
        self._url = redis_url
        self._retention = int(retention_seconds)
        self._prefix = prefix
        self._redis: aioredis.Redis | None = client
        self._owns_client = client is None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._url, decode_responses=True)
        return self._redis

    async def try_mark_processed(self, message_id: str) -> bool:
        key = _processed_key(self._prefix, message_id)
        try:
            result = await self.redis.set(
                key, utc_now().isoformat(), nx=True, ex=self._retention,
            )
        except RedisError as exc:
            raise IdempotencyStoreError(
                f"Redis claim failed for {message_id}: {exc}"
            ) from exc
        is_new = bool(result)
        if not is_new:
            logger.debug("Idempotency key already present: %s", message_id)
        return is_new

    async def is_processed(self, message_id: str) -> bool:
        key = _processed_key(self._prefix, message_id)
        try:
            return bool(await self.redis.exists(key))
        except RedisError as exc:
            raise IdempotencyStoreError(
                f"Redis probe failed for {message_id}: {exc}"
            ) from exc

    async def release(self, message_id: str) -> None:
        key = _processed_key(self._prefix, message_id)
        try:
            await self.redis.delete(key)
        except RedisError as exc:
            raise IdempotencyStoreError(
                f"Redis release failed for {message_id}: {exc}"
            ) from exc

    async def purge_expired(self) -> int:
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as exc:
            raise IdempotencyStoreError(f"Redis unreachable: {exc}") from exc

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
