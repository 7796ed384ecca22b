"""Idempotency stores: which message ids a consumer has already processed."""

from commerce_bus.idempotency.base import IdempotencyRecord, IIdempotencyStore
from commerce_bus.idempotency.memory import InMemoryIdempotencyStore

__all__ = ["IIdempotencyStore", "IdempotencyRecord", "InMemoryIdempotencyStore"]
