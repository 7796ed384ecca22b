"""Consume-side filter pipeline.

A pipeline is an ordered list of filters wrapped around a terminal step.
Each filter is an async callable ``(ctx, next)`` and must either

* await ``next(ctx)`` exactly once and let its outcome propagate, or
* short-circuit by returning without calling ``next``.

Composition is explicit so ordering and short-circuit behaviour can be
tested directly::

    pipeline = Pipeline([IdempotencyFilter(store), LoggingFilter()], dispatch)
    await pipeline.run(ctx)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from commerce_bus.core.errors import PipelineError
from commerce_bus.core.events import IntegrationEvent

from .codec import Envelope


@dataclass
class MessageContext:
    """State for one delivery of one message to one consumer group."""

    envelope: Envelope
    event: IntegrationEvent
    consumer: str
    attempt: int = 1
    duplicate: bool = False
    items: dict[str, Any] = field(default_factory=dict)

    @property
    def message_id(self) -> str:
        return self.envelope.message_id

    @property
    def event_type(self) -> str:
        return self.envelope.event_type

    @property
    def correlation_id(self) -> str | None:
        return self.envelope.correlation_id

    @property
    def idempotency_key(self) -> str:
        """Per-consumer key so fan-out handlers are deduplicated independently."""
        return f"{self.consumer}:{self.message_id}"


Next = Callable[[MessageContext], Awaitable[None]]


@runtime_checkable
class Filter(Protocol):
    """Middleware wrapping the rest of the pipeline."""

    async def __call__(self, ctx: MessageContext, next: Next) -> None: ...


class Pipeline:
    """Ordered filters around a terminal step."""

    def __init__(self, filters: Sequence[Filter], terminal: Next) -> None:
        self._filters = tuple(filters)
        self._terminal = terminal

    @property
    def filters(self) -> tuple[Filter, ...]:
        return self._filters

    async def run(self, ctx: MessageContext) -> None:
        # The chain is rebuilt per delivery so each continuation guard
        # tracks exactly one message.
        await self._step(0)(ctx)

    def _step(self, index: int) -> Next:
        if index == len(self._filters):
            return self._terminal

        current = self._filters[index]
        rest = self._guard(self._step(index + 1), current)

        async def invoke(ctx: MessageContext) -> None:
            await current(ctx, rest)

        return invoke

    @staticmethod
    def _guard(continuation: Next, owner: Filter) -> Next:
        """Reject a second call of *continuation*."""
        called = False

        async def once(ctx: MessageContext) -> None:
            nonlocal called
            if called:
                raise PipelineError(
                    f"{type(owner).__name__} invoked the pipeline continuation twice "
                    f"for message {ctx.message_id}"
                )
            called = True
            await continuation(ctx)

        return once
