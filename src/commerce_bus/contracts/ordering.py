"""Ordering integration events."""

from __future__ import annotations

import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from commerce_bus.core.events import IntegrationEvent


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderCreated(IntegrationEvent):
    """Raised once an order is committed by the ordering service."""

    order_id: uuid.UUID
    customer_name: str
    customer_email: str
    total_amount: Decimal
    items: tuple[OrderItem, ...] = ()
