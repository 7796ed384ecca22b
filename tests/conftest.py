"""Shared fixtures for the commerce-bus test suite."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import structlog

from commerce_bus.bus.registry import EventTypeRegistry
from commerce_bus.contracts import register_contracts
from commerce_bus.contracts.catalog import ProductCreated
from commerce_bus.contracts.ordering import OrderCreated, OrderItem
from commerce_bus.core.clock import SimClock
from commerce_bus.idempotency.memory import InMemoryIdempotencyStore
from commerce_bus.transport.memory import MemoryTransport


@pytest.fixture(autouse=True)
def _reset_structlog():
    """CLI tests configure structlog globally; undo it after every test."""
    yield
    structlog.reset_defaults()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def make_order(**overrides) -> OrderCreated:
    defaults = dict(
        order_id=uuid.uuid4(),
        customer_name="Ada Lovelace",
        customer_email="ada@example.com",
        total_amount=Decimal("59.90"),
        items=(
            OrderItem(
                product_id=uuid.uuid4(),
                product_name="Keyboard",
                quantity=2,
                unit_price=Decimal("29.95"),
            ),
        ),
    )
    defaults.update(overrides)
    return OrderCreated(**defaults)


def make_product(**overrides) -> ProductCreated:
    defaults = dict(product_id=uuid.uuid4(), name="Keyboard", sku="KB-001")
    defaults.update(overrides)
    return ProductCreated(**defaults)


@pytest.fixture
def order() -> OrderCreated:
    return make_order()


@pytest.fixture
def product() -> ProductCreated:
    return make_product()


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    return SimClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def memory_store(sim_clock) -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(retention_seconds=3600, clock=sim_clock)


@pytest.fixture
def memory_transport() -> MemoryTransport:
    return MemoryTransport(max_delivery_attempts=3)


@pytest.fixture
def contract_registry() -> EventTypeRegistry:
    registry = EventTypeRegistry()
    register_contracts(registry)
    return registry


@pytest.fixture
def order_factory():
    """Build ``OrderCreated`` events with overridable fields."""
    return make_order
