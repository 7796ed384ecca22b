"""Event bus factory.

Builds transport, idempotency store and ``EventBus`` from ``Settings``:

- ``broker.kind = memory``: ``MemoryTransport`` (no external deps)
- ``broker.kind = redis``: ``RedisStreamsTransport``
- ``idempotency.backend`` picks the memory, Redis or SQL store.

The SQL store expects the ``processed_messages`` table to exist
(``alembic upgrade head``, or ``SqlIdempotencyStore.create_schema()``).
"""

from __future__ import annotations

from collections.abc import Sequence

from commerce_bus.core.config import Settings
from commerce_bus.core.enums import IdempotencyBackend, TransportKind
from commerce_bus.idempotency.base import IIdempotencyStore

from .event_bus import EventBus
from .pipeline import Filter
from .registry import EventTypeRegistry


def create_transport(settings: Settings, on_handler_error=None):
    """Create the transport selected by ``settings.broker.kind``."""
    broker = settings.broker
    consumer = settings.consumer

    if broker.kind == TransportKind.MEMORY:
        from commerce_bus.transport.memory import MemoryTransport

        return MemoryTransport(
            max_delivery_attempts=consumer.max_delivery_attempts,
            prefetch=consumer.prefetch,
            redelivery_delay=consumer.redelivery_delay_seconds,
            on_handler_error=on_handler_error,
        )

    from commerce_bus.transport.redis_streams import RedisStreamsTransport

    return RedisStreamsTransport(
        broker.url,
        stream_prefix=broker.stream_prefix,
        dead_letter_stream=broker.dead_letter_stream,
        max_stream_length=broker.max_stream_length,
        block_ms=broker.block_ms,
        batch_size=broker.batch_size,
        publish_retries=broker.publish_retries,
        retry_backoff_seconds=broker.retry_backoff_seconds,
        max_backoff_seconds=broker.max_backoff_seconds,
        max_delivery_attempts=consumer.max_delivery_attempts,
        prefetch=consumer.prefetch,
        redelivery_idle_ms=consumer.redelivery_idle_ms,
        consumer_name=consumer.consumer_name,
        on_handler_error=on_handler_error,
    )


def create_idempotency_store(settings: Settings) -> IIdempotencyStore:
    """Create the store selected by ``settings.idempotency.backend``."""
    cfg = settings.idempotency

    if cfg.backend == IdempotencyBackend.REDIS:
        from commerce_bus.idempotency.redis_store import RedisIdempotencyStore

        return RedisIdempotencyStore(
            settings.idempotency_redis_url,
            retention_seconds=cfg.retention_seconds,
            prefix=cfg.key_prefix,
        )

    if cfg.backend == IdempotencyBackend.SQL:
        from commerce_bus.idempotency.sql_store import SqlIdempotencyStore

        return SqlIdempotencyStore(
            cfg.database_url,
            retention_seconds=cfg.retention_seconds,
        )

    from commerce_bus.idempotency.memory import InMemoryIdempotencyStore

    return InMemoryIdempotencyStore(retention_seconds=cfg.retention_seconds)


def create_event_bus(
    settings: Settings | None = None,
    *,
    type_registry: EventTypeRegistry | None = None,
    filters: Sequence[Filter] = (),
    on_handler_error=None,
) -> EventBus:
    """Wire an ``EventBus`` from *settings* (defaults: all in memory).

    Args:
        settings: Resolved settings; validated with ``validate_backends()``.
        type_registry: Pre-populated contract registry, e.g. from
            ``register_contracts``.
        filters: Extra pipeline filters run before the handler.
        on_handler_error: Optional callback ``(event_type, group, msg_id, exc)``
            invoked when a delivery fails.  Useful for external metrics.
    """
    settings = settings or Settings()
    settings.validate_backends()

    return EventBus(
        create_transport(settings, on_handler_error=on_handler_error),
        create_idempotency_store(settings),
        type_registry=type_registry,
        filters=filters,
        release_on_failure=settings.idempotency.release_on_failure,
        purge_interval=settings.idempotency.purge_interval_seconds,
        shutdown_timeout=settings.consumer.shutdown_timeout_seconds,
    )
