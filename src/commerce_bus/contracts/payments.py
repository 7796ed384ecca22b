"""Payment service integration events.

Amounts are in the currency's minor unit (cents), as reported by the
payment provider.
"""

from __future__ import annotations

import uuid

from commerce_bus.core.events import IntegrationEvent


class PaymentIntentCreated(IntegrationEvent):
    payment_intent_id: str
    order_id: uuid.UUID
    amount: int
    currency: str
    customer_email: str


class PaymentSucceeded(IntegrationEvent):
    payment_intent_id: str
    order_id: uuid.UUID
    amount_received: int
    currency: str
    customer_email: str


class PaymentFailed(IntegrationEvent):
    payment_intent_id: str
    order_id: uuid.UUID
    error_message: str
    error_code: str | None = None


class PaymentCancelled(IntegrationEvent):
    payment_intent_id: str
    order_id: uuid.UUID
    reason: str


class PaymentRefunded(IntegrationEvent):
    refund_id: str
    payment_intent_id: str
    order_id: uuid.UUID
    amount_refunded: int
    reason: str | None = None
