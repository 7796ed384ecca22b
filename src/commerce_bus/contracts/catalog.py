"""Catalog service integration events."""

from __future__ import annotations

import uuid
from decimal import Decimal

from commerce_bus.core.events import IntegrationEvent


class ProductCreated(IntegrationEvent):
    product_id: uuid.UUID
    name: str
    sku: str


class PriceChanged(IntegrationEvent):
    product_id: uuid.UUID
    new_price: Decimal
    old_price: Decimal


class StockUpdated(IntegrationEvent):
    product_id: uuid.UUID
    new_stock: int
    reserved_stock: int = 0
