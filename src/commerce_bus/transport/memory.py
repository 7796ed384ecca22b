"""In-memory transport for tests and local development.

No external dependencies.  Mimics a broker with one queue per
``(event_type, group)`` pair:

* ``publish()`` fans a message out to every group subscribed to its type;
* a nack re-enqueues the message with ``attempt + 1``;
* every delivery is handled in its own task, bounded by ``prefetch``.

Messages are carried as wire bytes, so the full encode / decode path runs
exactly as it does against Redis.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from commerce_bus.bus.codec import Envelope, EnvelopeCodec
from commerce_bus.core.enums import DeadLetterReason
from commerce_bus.core.errors import DecodeError, TransportError

from .base import DeadLetter, HandlerErrorCallback, MessageCallback, TransportStats

logger = logging.getLogger(__name__)


@dataclass
class _Delivery:
    raw: bytes
    attempt: int = 1


@dataclass
class _Subscription:
    event_type: str
    group: str
    on_message: MessageCallback
    queue: asyncio.Queue
    task: asyncio.Task | None = None


class MemoryTransport(TransportStats):
    """In-memory broker. Safe within a single asyncio event loop."""

    def __init__(
        self,
        *,
        max_delivery_attempts: int = 5,
        prefetch: int = 16,
        redelivery_delay: float = 0.0,
        codec: EnvelopeCodec | None = None,
        on_handler_error: HandlerErrorCallback | None = None,
    ) -> None:
        super().__init__(on_handler_error=on_handler_error)
        self._max_attempts = max_delivery_attempts
        self._prefetch = prefetch
        self._redelivery_delay = redelivery_delay
        self._codec = codec or EnvelopeCodec()
        self._subscriptions: dict[tuple[str, str], _Subscription] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._history: list[Envelope] = []
        self._running = False
        self._available = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        for sub in self._subscriptions.values():
            self._launch(sub)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop consuming, let in-flight deliveries finish, then cancel."""
        self._running = False
        loops = [s.task for s in self._subscriptions.values() if s.task is not None]
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        for sub in self._subscriptions.values():
            sub.task = None

        if self._in_flight:
            pending = set(self._in_flight)
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(
                    "Cancelled %d in-flight deliveries at shutdown", len(still_running),
                )
                await asyncio.gather(*still_running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Publish / Subscribe
    # ------------------------------------------------------------------

    async def publish(self, envelope: Envelope) -> None:
        if not self._running:
            raise TransportError("MemoryTransport not started")
        if not self._available:
            raise TransportError("MemoryTransport unavailable")

        raw = self._codec.to_wire(envelope)
        self._history.append(envelope)
        targets = [
            s for (event_type, _), s in self._subscriptions.items()
            if event_type == envelope.event_type
        ]
        if not targets:
            logger.debug("No subscription for %s; message not routed", envelope.event_type)
        for sub in targets:
            sub.queue.put_nowait(_Delivery(raw))

    async def subscribe(
        self,
        event_type: str,
        group: str,
        on_message: MessageCallback,
    ) -> None:
        key = (event_type, group)
        if key in self._subscriptions:
            return
        sub = _Subscription(
            event_type=event_type,
            group=group,
            on_message=on_message,
            queue=asyncio.Queue(),
        )
        self._subscriptions[key] = sub
        if self._running:
            self._launch(sub)

    async def read_dead_letters(self, count: int = 100) -> list[DeadLetter]:
        return self.dead_letters[-count:]

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    def _launch(self, sub: _Subscription) -> None:
        if sub.task is None or sub.task.done():
            sub.task = asyncio.create_task(
                self._consume_loop(sub),
                name=f"consumer-{sub.event_type}-{sub.group}",
            )

    async def _consume_loop(self, sub: _Subscription) -> None:
        slots = asyncio.Semaphore(self._prefetch)
        while self._running:
            await slots.acquire()
            try:
                delivery = await sub.queue.get()
            except asyncio.CancelledError:
                slots.release()
                raise
            task = asyncio.create_task(self._deliver(sub, delivery, slots))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _deliver(
        self,
        sub: _Subscription,
        delivery: _Delivery,
        slots: asyncio.Semaphore,
    ) -> None:
        message_id = "unknown"
        try:
            envelope = self._codec.from_wire(delivery.raw)
            message_id = envelope.message_id
            await sub.on_message(envelope, delivery.attempt)
            self.record_success()
        except DecodeError as exc:
            self.record_dead_letter(
                DeadLetter(
                    event_type=sub.event_type,
                    group=sub.group,
                    message_id=message_id,
                    reason=DeadLetterReason.DECODE_ERROR,
                    error=str(exc),
                    attempts=delivery.attempt,
                )
            )
        except asyncio.CancelledError:
            # Unacked at shutdown: keep it queued like a broker would.
            sub.queue.put_nowait(_Delivery(delivery.raw, delivery.attempt + 1))
            raise
        except Exception as exc:
            self.record_failure(sub.event_type, sub.group, message_id, exc)
            if delivery.attempt >= self._max_attempts:
                self.record_dead_letter(
                    DeadLetter(
                        event_type=sub.event_type,
                        group=sub.group,
                        message_id=message_id,
                        reason=DeadLetterReason.MAX_ATTEMPTS,
                        error=str(exc),
                        attempts=delivery.attempt,
                    )
                )
            else:
                logger.warning(
                    "Nack %s [%s] for %s (attempt %d/%d): %s",
                    sub.event_type,
                    message_id,
                    sub.group,
                    delivery.attempt,
                    self._max_attempts,
                    exc,
                )
                retry = _Delivery(delivery.raw, delivery.attempt + 1)
                if self._redelivery_delay:
                    try:
                        await asyncio.sleep(self._redelivery_delay)
                    except asyncio.CancelledError:
                        sub.queue.put_nowait(retry)
                        raise
                sub.queue.put_nowait(retry)
        finally:
            sub.queue.task_done()
            slots.release()

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    def set_available(self, available: bool) -> None:
        """Simulate a broker outage: publish raises ``TransportError``."""
        self._available = available

    def redeliver(self, envelope: Envelope, group: str | None = None) -> None:
        """Simulate a broker redelivery of an already delivered message."""
        raw = self._codec.to_wire(envelope)
        for (event_type, sub_group), sub in self._subscriptions.items():
            if event_type == envelope.event_type and group in (None, sub_group):
                sub.queue.put_nowait(_Delivery(raw))

    def inject_raw(self, event_type: str, raw: bytes, group: str | None = None) -> None:
        """Enqueue raw bytes as if the broker delivered them."""
        for (sub_type, sub_group), sub in self._subscriptions.items():
            if sub_type == event_type and group in (None, sub_group):
                sub.queue.put_nowait(_Delivery(raw))

    def pending(self, event_type: str, group: str) -> int:
        """Messages queued for *group* and not yet picked up."""
        sub = self._subscriptions.get((event_type, group))
        return sub.queue.qsize() if sub is not None else 0

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until every queue is empty and no delivery is in flight."""

        async def _idle() -> None:
            while True:
                for sub in list(self._subscriptions.values()):
                    await sub.queue.join()
                if not self._in_flight and all(
                    s.queue.empty() for s in self._subscriptions.values()
                ):
                    return
                await asyncio.sleep(0)

        await asyncio.wait_for(_idle(), timeout)

    def get_history(self, event_type: str | None = None) -> list[Envelope]:
        """Published envelopes, optionally filtered by type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.event_type == event_type]

    def clear_history(self) -> None:
        self._history.clear()
