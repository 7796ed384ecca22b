"""Tests for RedisIdempotencyStore (mocked client, no live Redis)."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from commerce_bus.core.errors import IdempotencyStoreError
from commerce_bus.idempotency.redis_store import RedisIdempotencyStore


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def store(client) -> RedisIdempotencyStore:
    return RedisIdempotencyStore(client=client, retention_seconds=600, prefix="test:")


class TestRedisIdempotencyStore:
    @pytest.mark.asyncio
    async def test_claim_uses_set_nx_ex(self, store, client):
        client.set.return_value = True

        assert await store.try_mark_processed("billing:m-1") is True

        args, kwargs = client.set.call_args
        assert args[0] == "test:billing:m-1"
        assert kwargs == {"nx": True, "ex": 600}

    @pytest.mark.asyncio
    async def test_existing_key_is_duplicate(self, store, client):
        client.set.return_value = None
        assert await store.try_mark_processed("m-1") is False

    @pytest.mark.asyncio
    async def test_is_processed_uses_exists(self, store, client):
        client.exists.return_value = 1
        assert await store.is_processed("m-1") is True
        client.exists.assert_awaited_once_with("test:m-1")
        client.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_deletes_key(self, store, client):
        await store.release("m-1")
        client.delete.assert_awaited_once_with("test:m-1")

    @pytest.mark.asyncio
    async def test_purge_is_noop(self, store, client):
        assert await store.purge_expired() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, call", [
        ("set", lambda s: s.try_mark_processed("m-1")),
        ("exists", lambda s: s.is_processed("m-1")),
        ("delete", lambda s: s.release("m-1")),
        ("ping", lambda s: s.ping()),
    ])
    async def test_redis_errors_wrapped(self, store, client, method, call):
        getattr(client, method).side_effect = RedisConnectionError("refused")
        with pytest.raises(IdempotencyStoreError):
            await call(store)

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self, store, client):
        await store.close()
        client.aclose.assert_not_awaited()
