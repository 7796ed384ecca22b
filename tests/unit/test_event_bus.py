"""Tests for the EventBus facade over MemoryTransport."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from commerce_bus.bus.codec import EnvelopeCodec
from commerce_bus.bus.event_bus import EventBus
from commerce_bus.bus.filters import IdempotencyFilter, LoggingFilter
from commerce_bus.contracts.catalog import ProductCreated
from commerce_bus.contracts.ordering import OrderCreated
from commerce_bus.core.errors import (
    HandlerError,
    IdempotencyStoreError,
    RegistryFrozenError,
    TransportError,
    UnknownEventTypeError,
)
from commerce_bus.idempotency.memory import InMemoryIdempotencyStore
from commerce_bus.observability.logger import current_correlation_id
from commerce_bus.transport.memory import MemoryTransport


class TestRegistration:
    def test_subscribe_registers_type(self, memory_transport):
        bus = EventBus(memory_transport)

        async def on_order(event):
            pass

        descriptor = bus.subscribe(OrderCreated, on_order)

        assert "OrderCreated" in bus.type_registry
        assert bus.subscriptions.handlers_for("OrderCreated") == [descriptor]

    @pytest.mark.asyncio
    async def test_subscribe_after_start_rejected(self, memory_transport):
        bus = EventBus(memory_transport)
        await bus.start()

        async def late(event):
            pass

        with pytest.raises(RegistryFrozenError):
            bus.subscribe(OrderCreated, late)
        await bus.stop()

    def test_reference_filter_order(self, memory_transport):
        async def extra(ctx, next):
            await next(ctx)

        bus = EventBus(memory_transport, filters=[extra])
        filters = bus._filters
        assert isinstance(filters[0], IdempotencyFilter)
        assert isinstance(filters[1], LoggingFilter)
        assert filters[2] is extra


class TestPublish:
    @pytest.mark.asyncio
    async def test_handler_receives_typed_event(self, memory_transport, order):
        received = []

        async def on_order(event):
            received.append(event)

        bus = EventBus(memory_transport)
        bus.subscribe(OrderCreated, on_order)

        async with bus:
            envelope = await bus.publish(order, headers={"tenant": "eu"})
            await memory_transport.drain()

        assert received == [order]
        assert envelope.message_id == str(order.event_id)
        assert envelope.headers["tenant"] == "eu"
        assert not bus.is_running

    @pytest.mark.asyncio
    async def test_publish_propagates_transport_error(self, memory_transport, order):
        bus = EventBus(memory_transport)
        async with bus:
            memory_transport.set_available(False)
            with pytest.raises(TransportError):
                await bus.publish(order)

    @pytest.mark.asyncio
    async def test_publish_raw_validates_into_contract(self, memory_transport, product):
        received = []

        async def on_product(event):
            received.append(event)

        bus = EventBus(memory_transport)
        bus.subscribe(ProductCreated, on_product)

        async with bus:
            await bus.publish_raw(
                "ProductCreated",
                {"product_id": str(product.product_id), "name": "Mouse", "sku": "MS-1"},
            )
            await memory_transport.drain()

        [event] = received
        assert isinstance(event, ProductCreated)
        assert event.name == "Mouse"

    @pytest.mark.asyncio
    async def test_publish_raw_unknown_type(self, memory_transport):
        bus = EventBus(memory_transport)
        async with bus:
            with pytest.raises(UnknownEventTypeError):
                await bus.publish_raw("Nope", {})

    @pytest.mark.asyncio
    async def test_register_event_type_without_subscription(self, memory_transport, product):
        bus = EventBus(memory_transport)
        bus.register_event_type(ProductCreated)
        async with bus:
            envelope = await bus.publish_raw(
                "ProductCreated",
                {"product_id": str(product.product_id), "name": "Mouse", "sku": "MS-1"},
            )
        assert envelope.event_type == "ProductCreated"


class TestConsume:
    @pytest.mark.asyncio
    async def test_handler_error_wrapped(self, order):
        errors = []
        transport = MemoryTransport(
            max_delivery_attempts=1,
            on_handler_error=lambda et, group, mid, exc: errors.append(exc),
        )

        async def on_order(event):
            raise ValueError("smtp down")

        bus = EventBus(transport)
        descriptor = bus.subscribe(OrderCreated, on_order)
        async with bus:
            await bus.publish(order)
            await transport.drain()

        [exc] = errors
        assert isinstance(exc, HandlerError)
        assert exc.handler == descriptor.name
        assert exc.message_id == str(order.event_id)
        assert exc.event_type == "OrderCreated"
        assert isinstance(exc.__cause__, ValueError)
        assert len(bus.dead_letters) == 1

    @pytest.mark.asyncio
    async def test_object_handler(self, memory_transport, order):
        class Mailer:
            def __init__(self):
                self.sent = []

            async def handle(self, event):
                self.sent.append(event.order_id)

        mailer = Mailer()
        bus = EventBus(memory_transport)
        bus.subscribe(OrderCreated, mailer)
        async with bus:
            await bus.publish(order)
            await memory_transport.drain()

        assert mailer.sent == [order.order_id]

    @pytest.mark.asyncio
    async def test_extra_filter_runs_before_handler(self, memory_transport, order):
        seen = []

        async def tag(ctx, next):
            seen.append(("filter", ctx.consumer))
            await next(ctx)

        async def on_order(event):
            seen.append(("handler", event.order_id))

        bus = EventBus(memory_transport, filters=[tag])
        bus.subscribe(OrderCreated, on_order, name="billing")
        async with bus:
            await bus.publish(order)
            await memory_transport.drain()

        assert seen == [("filter", "billing"), ("handler", order.order_id)]

    @pytest.mark.asyncio
    async def test_stop_closes_store(self, memory_transport):
        class Store:
            closed = False

            async def try_mark_processed(self, message_id):
                return True

            async def is_processed(self, message_id):
                return False

            async def release(self, message_id):
                pass

            async def purge_expired(self):
                return 0

            async def close(self):
                Store.closed = True

        bus = EventBus(memory_transport, Store())
        await bus.start()
        await bus.stop()
        assert Store.closed


class TestMetrics:
    @pytest.mark.asyncio
    async def test_get_metrics(self, memory_transport, order):
        async def on_order(event):
            pass

        bus = EventBus(memory_transport)
        bus.subscribe(OrderCreated, on_order, name="billing")
        async with bus:
            await bus.publish(order)
            await memory_transport.drain()
            metrics = bus.get_metrics()

        assert metrics["running"] is True
        assert metrics["messages_processed"] == 1
        assert metrics["dead_letters"] == 0
        assert metrics["error_counts"] == {}
        assert metrics["subscriptions"] == {"OrderCreated": ["billing"]}


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_follow_up_event_keeps_correlation_id(self, memory_transport, order, product):
        bus = EventBus(memory_transport)

        async def on_order(event):
            await bus.publish(product)

        bus.subscribe(OrderCreated, on_order)
        bus.register_event_type(ProductCreated)

        async with bus:
            await bus.publish(order, headers={"correlation-id": "flow-42"})
            await memory_transport.drain()

        [follow_up] = memory_transport.get_history("ProductCreated")
        assert follow_up.correlation_id == "flow-42"

    @pytest.mark.asyncio
    async def test_uncorrelated_message_uses_message_id(self, memory_transport, product):
        codec = EnvelopeCodec()
        seen = []

        async def on_product(event):
            seen.append(current_correlation_id())

        bus = EventBus(memory_transport)
        bus.subscribe(ProductCreated, on_product)

        async with bus:
            envelope = codec.encode(product)
            headers = {k: v for k, v in envelope.headers.items() if k != "correlation-id"}
            await memory_transport.publish(envelope.model_copy(update={"headers": headers}))
            await memory_transport.drain()

        assert seen == [envelope.message_id]
        assert current_correlation_id() is None


class TestPurge:
    @pytest.mark.asyncio
    async def test_expired_records_purged_while_running(self, memory_transport, sim_clock):
        store = InMemoryIdempotencyStore(retention_seconds=60, clock=sim_clock)
        await store.try_mark_processed("billing:old")
        sim_clock.advance(120)
        await store.try_mark_processed("billing:fresh")

        bus = EventBus(memory_transport, store, purge_interval=0.01)
        async with bus:
            for _ in range(100):
                if len(store) == 1:
                    break
                await asyncio.sleep(0.01)

        assert store.get_record("billing:old") is None
        assert store.get_record("billing:fresh") is not None

    @pytest.mark.asyncio
    async def test_purge_failure_keeps_bus_running(self, memory_transport):
        store = AsyncMock()
        store.purge_expired.side_effect = IdempotencyStoreError("down")

        bus = EventBus(memory_transport, store, purge_interval=0.01)
        await bus.start()
        for _ in range(100):
            if store.purge_expired.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        assert bus.is_running
        await bus.stop()

        assert store.purge_expired.await_count >= 2
        store.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_zero_interval_disables_purge(self, memory_transport):
        store = AsyncMock()
        bus = EventBus(memory_transport, store, purge_interval=0)
        await bus.start()
        await asyncio.sleep(0.02)
        await bus.stop()

        store.purge_expired.assert_not_awaited()
