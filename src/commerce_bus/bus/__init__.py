"""Event bus: envelopes, registries, consume pipeline and the EventBus facade."""

from commerce_bus.bus.codec import Envelope, EnvelopeCodec
from commerce_bus.bus.event_bus import EventBus
from commerce_bus.bus.factory import create_event_bus
from commerce_bus.bus.pipeline import MessageContext, Pipeline
from commerce_bus.bus.registry import (
    EventTypeRegistry,
    HandlerDescriptor,
    SubscriptionRegistry,
)

__all__ = [
    "Envelope",
    "EnvelopeCodec",
    "EventBus",
    "EventTypeRegistry",
    "HandlerDescriptor",
    "MessageContext",
    "Pipeline",
    "SubscriptionRegistry",
    "create_event_bus",
]
