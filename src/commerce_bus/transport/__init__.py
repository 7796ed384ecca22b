"""Transports: publish envelopes and run consumer loops against a broker."""

from commerce_bus.transport.base import DeadLetter, ITransport, TransportStats
from commerce_bus.transport.memory import MemoryTransport

__all__ = ["DeadLetter", "ITransport", "MemoryTransport", "TransportStats"]
