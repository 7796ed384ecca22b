"""Event type and handler registries.

``EventTypeRegistry`` maps wire type names to contract classes (used to
rebuild typed events on the consuming side).  ``SubscriptionRegistry``
maps type names to the handlers subscribed to them.

Both are built once during process startup and frozen when the bus
starts; runtime re-registration is not supported.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from commerce_bus.core.errors import (
    DuplicateSubscriptionError,
    RegistrationError,
    RegistryFrozenError,
)
from commerce_bus.core.events import IntegrationEvent

logger = logging.getLogger(__name__)

# Async callable or an object exposing ``async handle(event)``.
EventHandler = Callable[[Any], Awaitable[None]]


def _handler_name(handler: Any) -> str:
    target = handler if inspect.isroutine(handler) or inspect.isclass(handler) else type(handler)
    return f"{target.__module__}.{target.__qualname__}"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventTypeRegistry:
    """Type name -> contract class lookup."""

    def __init__(self) -> None:
        self._types: dict[str, type[IntegrationEvent]] = {}

    def register(self, event_type: type[IntegrationEvent]) -> None:
        """Register *event_type* under its type name.

        Re-registering the same class is a no-op; a different class under
        an existing name is rejected.
        """
        if not (inspect.isclass(event_type) and issubclass(event_type, IntegrationEvent)):
            raise RegistrationError(
                f"{event_type!r} is not an IntegrationEvent subclass"
            )
        name = event_type.event_type_name()
        existing = self._types.get(name)
        if existing is not None and existing is not event_type:
            raise RegistrationError(
                f"Event type name {name!r} already bound to "
                f"{existing.__module__}.{existing.__qualname__}"
            )
        self._types[name] = event_type

    def get(self, name: str) -> type[IntegrationEvent] | None:
        """Look up event class by name."""
        return self._types.get(name)

    def names(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __len__(self) -> int:
        return len(self._types)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HandlerDescriptor:
    """One handler subscribed to one event type.

    ``name`` doubles as the consumer group, so every handler gets its own
    delivery, retry and dead-letter path.
    """

    name: str
    event_type: str
    handler: Any

    async def invoke(self, event: IntegrationEvent) -> None:
        target = getattr(self.handler, "handle", self.handler)
        result = target(event)
        if inspect.isawaitable(result):
            await result


class SubscriptionRegistry:
    """Type name -> list of handler descriptors."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[HandlerDescriptor]] = defaultdict(list)
        self._frozen = False

    @property
    def is_empty(self) -> bool:
        return not any(self._handlers.values())

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Make the registry immutable for the rest of the process."""
        self._frozen = True

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                "Subscriptions are fixed once the bus has started"
            )

    def add(
        self,
        event_type: type[IntegrationEvent],
        handler: Any,
        name: str | None = None,
    ) -> HandlerDescriptor:
        """Subscribe *handler* to *event_type*."""
        self._check_mutable()
        if not (callable(handler) or callable(getattr(handler, "handle", None))):
            raise RegistrationError(f"Handler {handler!r} is not callable")

        type_name = event_type.event_type_name()
        descriptor = HandlerDescriptor(
            name=name or _handler_name(handler),
            event_type=type_name,
            handler=handler,
        )
        for existing in self._handlers[type_name]:
            if existing.handler is handler or existing.name == descriptor.name:
                raise DuplicateSubscriptionError(
                    f"Handler {descriptor.name} already registered for {type_name!r}"
                )

        self._handlers[type_name].append(descriptor)
        logger.debug("Subscribed %s to %s", descriptor.name, type_name)
        return descriptor

    def remove(self, event_type: type[IntegrationEvent], handler: Any) -> None:
        """Unsubscribe *handler*; drops the type once it has no handlers."""
        self._check_mutable()
        type_name = event_type.event_type_name()
        handlers = self._handlers.get(type_name)
        if not handlers:
            return
        remaining = [d for d in handlers if d.handler is not handler]
        if remaining:
            self._handlers[type_name] = remaining
        else:
            del self._handlers[type_name]

    def has_subscriptions(self, type_name: str) -> bool:
        return bool(self._handlers.get(type_name))

    def handlers_for(self, type_name: str) -> list[HandlerDescriptor]:
        return list(self._handlers.get(type_name, []))

    def event_type_names(self) -> list[str]:
        return [name for name, handlers in self._handlers.items() if handlers]

    def descriptors(self) -> list[HandlerDescriptor]:
        return [d for handlers in self._handlers.values() for d in handlers]

    def clear(self) -> None:
        self._check_mutable()
        self._handlers.clear()
