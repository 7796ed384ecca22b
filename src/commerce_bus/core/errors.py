"""Custom exception hierarchy for the integration-event bus."""


class BusError(Exception):
    """Base exception for all event bus errors."""


# --- Configuration ---
class ConfigError(BusError):
    """Invalid or missing configuration."""


# --- Codec ---
class DecodeError(BusError):
    """Malformed or unrecognized envelope.  Never retried."""


class UnknownEventTypeError(DecodeError):
    """Envelope names an event type with no registered contract."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type!r}")


# --- Transport ---
class TransportError(BusError):
    """Broker unreachable or connection lost."""


# --- Consumption ---
class HandlerError(BusError):
    """A subscriber raised while handling a message."""

    def __init__(self, message_id: str, event_type: str, handler: str, reason: str):
        self.message_id = message_id
        self.event_type = event_type
        self.handler = handler
        self.reason = reason
        super().__init__(
            f"Handler {handler} failed on {event_type} [{message_id}]: {reason}"
        )


class IdempotencyStoreError(BusError):
    """The idempotency store is unavailable."""


class PipelineError(BusError):
    """A filter broke the pipeline contract (e.g. called next twice)."""


# --- Registration ---
class RegistrationError(BusError):
    """Invalid event type or handler registration."""


class DuplicateSubscriptionError(RegistrationError):
    """The same handler is already registered for the event type."""


class RegistryFrozenError(RegistrationError):
    """Registration attempted after the bus was started."""
