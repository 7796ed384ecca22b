"""EventBus facade: the single entry point for producers and consumers.

Usage::

    bus = EventBus(MemoryTransport(), InMemoryIdempotencyStore())
    bus.subscribe(OrderCreated, send_confirmation_email)

    async with bus:
        await bus.publish(OrderCreated(order_id=..., ...))

Handlers are registered during startup only.  ``start()`` freezes the
subscription registry, then opens one transport subscription per handler;
the handler name is the consumer group, so fan-out handlers retry
independently.

Consume path for every delivery::

    transport -> load typed event -> IdempotencyFilter -> LoggingFilter
              -> extra filters -> handler

A ``DecodeError`` from loading the event propagates to the transport,
which dead-letters the message; the pipeline never runs for it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from commerce_bus.core.errors import (
    HandlerError,
    IdempotencyStoreError,
    UnknownEventTypeError,
)
from commerce_bus.core.events import IntegrationEvent
from commerce_bus.idempotency.base import IIdempotencyStore
from commerce_bus.idempotency.memory import InMemoryIdempotencyStore

from .codec import Envelope, EnvelopeCodec
from .filters import IdempotencyFilter, LoggingFilter
from .pipeline import Filter, MessageContext, Pipeline
from .registry import EventTypeRegistry, HandlerDescriptor, SubscriptionRegistry

if TYPE_CHECKING:
    from commerce_bus.transport.base import DeadLetter, ITransport, MessageCallback

logger = logging.getLogger(__name__)


class EventBus:
    """Publishes integration events and dispatches them to subscribers.

    Parameters
    ----------
    transport:
        Broker adapter (``MemoryTransport`` or ``RedisStreamsTransport``).
    store:
        Idempotency store shared by every consumer in the process.
        Defaults to a non-durable ``InMemoryIdempotencyStore``.
    type_registry:
        Contract lookup for typed decoding.  Types passed to
        ``subscribe()`` are registered automatically.
    filters:
        Extra filters run after logging and before the handler.
    release_on_failure:
        Passed to ``IdempotencyFilter``.
    shutdown_timeout:
        Default grace period for ``stop()``.
    purge_interval:
        Seconds between ``purge_expired()`` calls on the store while the
        bus runs.  ``0`` disables the background purge.
    """

    def __init__(
        self,
        transport: ITransport,
        store: IIdempotencyStore | None = None,
        *,
        type_registry: EventTypeRegistry | None = None,
        filters: Sequence[Filter] = (),
        release_on_failure: bool = True,
        codec: EnvelopeCodec | None = None,
        shutdown_timeout: float = 10.0,
        purge_interval: float = 3600.0,
    ) -> None:
        self._transport = transport
        self._store: IIdempotencyStore = (
            store if store is not None else InMemoryIdempotencyStore()
        )
        self._types = type_registry if type_registry is not None else EventTypeRegistry()
        self._subscriptions = SubscriptionRegistry()
        self._codec = codec or EnvelopeCodec()
        self._filters: list[Filter] = [
            IdempotencyFilter(self._store, release_on_failure=release_on_failure),
            LoggingFilter(),
            *filters,
        ]
        self._shutdown_timeout = shutdown_timeout
        self._purge_interval = purge_interval
        self._purge_task: asyncio.Task | None = None
        self._pipelines: dict[str, Pipeline] = {}
        self._running = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def transport(self) -> ITransport:
        return self._transport

    @property
    def store(self) -> IIdempotencyStore:
        return self._store

    @property
    def type_registry(self) -> EventTypeRegistry:
        return self._types

    @property
    def subscriptions(self) -> SubscriptionRegistry:
        return self._subscriptions

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return self._transport.dead_letters

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_event_type(self, event_type: type[IntegrationEvent]) -> None:
        """Make *event_type* decodable without subscribing to it."""
        self._types.register(event_type)

    def subscribe(
        self,
        event_type: type[IntegrationEvent],
        handler: Any,
        name: str | None = None,
    ) -> HandlerDescriptor:
        """Register *handler* for *event_type*.  Startup only."""
        self._types.register(event_type)
        descriptor = self._subscriptions.add(event_type, handler, name)
        logger.info("Handler %s subscribed to %s", descriptor.name, descriptor.event_type)
        return descriptor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Freeze registrations, open subscriptions and start the transport."""
        if self._running:
            return
        self._subscriptions.freeze()

        for descriptor in self._subscriptions.descriptors():
            self._pipelines[descriptor.name] = Pipeline(
                self._filters, self._dispatcher(descriptor),
            )
            await self._transport.subscribe(
                descriptor.event_type,
                descriptor.name,
                self._on_message(descriptor),
            )

        await self._transport.start()
        self._running = True
        if self._purge_interval > 0:
            self._purge_task = asyncio.create_task(
                self._purge_loop(), name="idempotency-purge",
            )
        logger.info(
            "EventBus started: %d handler(s) across %d event type(s)",
            len(self._pipelines),
            len(self._subscriptions.event_type_names()),
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Drain in-flight deliveries, stop the transport, close the store."""
        if not self._running:
            return
        self._running = False
        if self._purge_task is not None:
            self._purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._purge_task
            self._purge_task = None
        await self._transport.stop(
            self._shutdown_timeout if timeout is None else timeout,
        )
        await self._store.close()
        logger.info("EventBus stopped")

    async def __aenter__(self) -> EventBus:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(
        self,
        event: IntegrationEvent,
        headers: dict[str, str] | None = None,
    ) -> Envelope:
        """Publish *event*; returns once the broker has accepted it.

        Raises ``TransportError`` when the broker is unreachable.
        """
        envelope = self._codec.encode(event, headers=headers)
        await self._transport.publish(envelope)
        logger.debug("Published %s [%s]", envelope.event_type, envelope.message_id)
        return envelope

    async def publish_raw(
        self,
        event_type: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> Envelope:
        """Publish a payload by type name, validated against its contract."""
        event_cls = self._types.get(event_type)
        if event_cls is None:
            raise UnknownEventTypeError(event_type)
        return await self.publish(event_cls.model_validate(payload), headers=headers)

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def _on_message(self, descriptor: HandlerDescriptor) -> MessageCallback:
        async def on_message(envelope: Envelope, attempt: int) -> None:
            event = self._codec.load_event(envelope, self._types)
            ctx = MessageContext(
                envelope=envelope,
                event=event,
                consumer=descriptor.name,
                attempt=attempt,
            )
            await self._pipelines[descriptor.name].run(ctx)

        return on_message

    @staticmethod
    def _dispatcher(descriptor: HandlerDescriptor):
        async def dispatch(ctx: MessageContext) -> None:
            try:
                await descriptor.invoke(ctx.event)
            except Exception as exc:
                raise HandlerError(
                    message_id=ctx.message_id,
                    event_type=ctx.event_type,
                    handler=descriptor.name,
                    reason=str(exc),
                ) from exc

        return dispatch

    async def _purge_loop(self) -> None:
        """Evict expired idempotency records every ``purge_interval``."""
        while self._running:
            await asyncio.sleep(self._purge_interval)
            try:
                purged = await self._store.purge_expired()
            except IdempotencyStoreError:
                logger.warning("Idempotency purge failed; retrying next interval", exc_info=True)
                continue
            if purged:
                logger.debug("Purged %d expired idempotency record(s)", purged)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_metrics(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "messages_processed": self._transport.messages_processed,
            "dead_letters": len(self._transport.dead_letters),
            "error_counts": self._transport.get_error_counts(),
            "subscriptions": {
                name: [d.name for d in self._subscriptions.handlers_for(name)]
                for name in self._subscriptions.event_type_names()
            },
        }
