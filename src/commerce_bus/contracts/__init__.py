"""Commerce integration contracts shared by catalog, users, ordering and payments.

Each contract's class name is its wire ``eventType``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from commerce_bus.contracts.catalog import PriceChanged, ProductCreated, StockUpdated
from commerce_bus.contracts.ordering import OrderCreated, OrderItem
from commerce_bus.contracts.payments import (
    PaymentCancelled,
    PaymentFailed,
    PaymentIntentCreated,
    PaymentRefunded,
    PaymentSucceeded,
)
from commerce_bus.contracts.users import AddressAdded, ProfileUpdated, UserRegistered

if TYPE_CHECKING:
    from commerce_bus.bus.registry import EventTypeRegistry

ALL_CONTRACTS = (
    ProductCreated,
    PriceChanged,
    StockUpdated,
    UserRegistered,
    ProfileUpdated,
    AddressAdded,
    OrderCreated,
    PaymentIntentCreated,
    PaymentSucceeded,
    PaymentFailed,
    PaymentCancelled,
    PaymentRefunded,
)


def register_contracts(registry: EventTypeRegistry) -> None:
    """Register every commerce contract on *registry*."""
    for contract in ALL_CONTRACTS:
        registry.register(contract)


__all__ = [
    "ALL_CONTRACTS",
    "AddressAdded",
    "OrderCreated",
    "OrderItem",
    "PaymentCancelled",
    "PaymentFailed",
    "PaymentIntentCreated",
    "PaymentRefunded",
    "PaymentSucceeded",
    "PriceChanged",
    "ProductCreated",
    "ProfileUpdated",
    "StockUpdated",
    "UserRegistered",
    "register_contracts",
]
