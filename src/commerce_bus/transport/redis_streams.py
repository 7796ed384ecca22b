"""Redis Streams transport.

One stream per event type (``<stream_prefix><EventType>``) and one consumer
group per subscribing handler, so every handler sees every message and
retries independently of the others.

Delivery:

- Messages are acked only *after* ``on_message`` returns.
- A failed message stays pending in its group; once it has been idle for
  ``redelivery_idle_ms`` it is reclaimed with XAUTOCLAIM and delivered
  again.  The attempt number is the group's delivery counter.
- After ``max_delivery_attempts`` the message is copied to the dead-letter
  stream and acked so it no longer blocks the group.
- Entries left pending by a previous run of the same consumer name are
  replayed before new messages are read.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from commerce_bus.bus.codec import Envelope, EnvelopeCodec
from commerce_bus.core.enums import DeadLetterReason
from commerce_bus.core.errors import DecodeError, TransportError
from commerce_bus.core.ids import new_id

from .base import DeadLetter, HandlerErrorCallback, MessageCallback, TransportStats

logger = logging.getLogger(__name__)

ENVELOPE_FIELD = "envelope"


class RedisStreamsTransport(TransportStats):
    """Production transport backed by Redis Streams consumer groups."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        stream_prefix: str = "commerce:events:",
        dead_letter_stream: str = "commerce:dead-letter",
        max_stream_length: int = 100_000,
        block_ms: int = 1000,
        batch_size: int = 10,
        publish_retries: int = 5,
        retry_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
        max_delivery_attempts: int = 5,
        prefetch: int = 16,
        redelivery_idle_ms: int = 30_000,
        consumer_name: str = "",
        codec: EnvelopeCodec | None = None,
        client: aioredis.Redis | None = None,
        on_handler_error: HandlerErrorCallback | None = None,
    ) -> None:
        super().__init__(on_handler_error=on_handler_error)
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = client
        self._owns_client = client is None
        self._prefix = stream_prefix
        self._dlq_stream = dead_letter_stream
        self._max_len = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._publish_retries = max(1, publish_retries)
        self._backoff = retry_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._max_attempts = max_delivery_attempts
        self._prefetch = prefetch
        self._idle_ms = redelivery_idle_ms
        self._consumer = consumer_name or f"consumer-{new_id()[:12]}"
        self._codec = codec or EnvelopeCodec()

        self._subscriptions: list[tuple[str, str, MessageCallback]] = []
        self._tasks: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    @property
    def consumer_name(self) -> str:
        return self._consumer

    def stream_for(self, event_type: str) -> str:
        return f"{self._prefix}{event_type}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to Redis and start consumer loops."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise TransportError(f"Redis unreachable at {self._redis_url}: {exc}") from exc
        self._running = True

        for event_type, group, on_message in self._subscriptions:
            await self._launch(event_type, group, on_message)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop reading, let in-flight deliveries finish, close the client.

        Deliveries still running after *timeout* are cancelled; they were
        never acked and will be redelivered.
        """
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._in_flight:
            _, still_running = await asyncio.wait(set(self._in_flight), timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(
                    "Cancelled %d in-flight deliveries at shutdown", len(still_running),
                )
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Publish / Subscribe
    # ------------------------------------------------------------------

    async def publish(self, envelope: Envelope) -> None:
        """XADD the envelope, retrying connection failures with backoff.

        Raises ``TransportError`` once ``publish_retries`` attempts failed.
        """
        if self._redis is None:
            raise TransportError("RedisStreamsTransport not started")

        stream = self.stream_for(envelope.event_type)
        fields = {ENVELOPE_FIELD: self._codec.to_wire(envelope).decode("utf-8")}
        delay = self._backoff
        for attempt in range(1, self._publish_retries + 1):
            try:
                await self._redis.xadd(
                    stream, fields, maxlen=self._max_len, approximate=True,
                )
                return
            except RedisError as exc:
                if attempt >= self._publish_retries:
                    raise TransportError(
                        f"Publish of {envelope.event_type} [{envelope.message_id}] "
                        f"failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Publish to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    stream,
                    attempt,
                    self._publish_retries,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_backoff)

    async def subscribe(
        self,
        event_type: str,
        group: str,
        on_message: MessageCallback,
    ) -> None:
        """Register a consumer group.

        Can be called before or after start().  If the transport is
        already running the group is created and its loop launched now.
        """
        self._subscriptions.append((event_type, group, on_message))
        if self._running and self._redis is not None:
            await self._launch(event_type, group, on_message)

    async def read_dead_letters(self, count: int = 100) -> list[DeadLetter]:
        """Most recent entries of the dead-letter stream, newest first."""
        if self._redis is None:
            raise TransportError("RedisStreamsTransport not started")
        try:
            entries = await self._redis.xrevrange(self._dlq_stream, count=count)
        except RedisError as exc:
            raise TransportError(f"Cannot read {self._dlq_stream}: {exc}") from exc
        return [_dead_letter_from_fields(entry_id, fields) for entry_id, fields in entries]

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _launch(self, event_type: str, group: str, on_message: MessageCallback) -> None:
        stream = self.stream_for(event_type)
        await self._ensure_group(stream, group)
        task = asyncio.create_task(
            self._consume_loop(event_type, stream, group, on_message),
            name=f"consumer-{stream}-{group}",
        )
        self._tasks.append(task)

    async def _consume_loop(
        self,
        event_type: str,
        stream: str,
        group: str,
        on_message: MessageCallback,
    ) -> None:
        assert self._redis is not None
        slots = asyncio.Semaphore(self._prefetch)
        error_key = f"{event_type}/{group}"

        async def dispatch(msg_id: str, fields: Mapping[str, str] | None, attempt: int | None) -> None:
            await slots.acquire()
            task = asyncio.create_task(
                self._process_message(
                    event_type, stream, group, on_message, msg_id, fields, attempt, slots,
                )
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

        # Entries this consumer read but never acked in a previous run.
        try:
            entries = await self._redis.xreadgroup(
                groupname=group,
                consumername=self._consumer,
                streams={stream: "0"},
                count=self._batch_size * 10,
            )
            for _stream, messages in entries or []:
                for msg_id, fields in messages:
                    await dispatch(msg_id, fields, None)
        except asyncio.CancelledError:
            return
        except RedisError:
            logger.exception("Pending recovery failed for %s/%s", stream, group)
            self.count_loop_error(error_key)

        while self._running:
            try:
                claimed = await self._redis.xautoclaim(
                    stream,
                    group,
                    self._consumer,
                    min_idle_time=self._idle_ms,
                    start_id="0-0",
                    count=self._batch_size,
                )
                for msg_id, fields in claimed[1]:
                    await dispatch(msg_id, fields, None)

                entries = await self._redis.xreadgroup(
                    groupname=group,
                    consumername=self._consumer,
                    streams={stream: ">"},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                for _stream, messages in entries or []:
                    for msg_id, fields in messages:
                        await dispatch(msg_id, fields, 1)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Consumer loop error for %s/%s", stream, group)
                self.count_loop_error(error_key)
                await asyncio.sleep(1)

    async def _process_message(
        self,
        event_type: str,
        stream: str,
        group: str,
        on_message: MessageCallback,
        msg_id: str,
        fields: Mapping[str, str] | None,
        attempt: int | None,
        slots: asyncio.Semaphore,
    ) -> None:
        try:
            if attempt is None:
                attempt = await self._delivery_count(stream, group, msg_id)
            message_id = str(msg_id)
            try:
                raw = (fields or {}).get(ENVELOPE_FIELD)
                if not raw:
                    raise DecodeError(f"Stream entry {msg_id} has no envelope")
                envelope = self._codec.from_wire(raw)
                message_id = envelope.message_id
                await on_message(envelope, attempt)
            except DecodeError as exc:
                await self._dead_letter(
                    stream, group, msg_id, fields,
                    DeadLetter(
                        event_type=event_type,
                        group=group,
                        message_id=message_id,
                        reason=DeadLetterReason.DECODE_ERROR,
                        error=str(exc),
                        attempts=attempt,
                    ),
                )
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.record_failure(event_type, group, message_id, exc)
                if attempt >= self._max_attempts:
                    await self._dead_letter(
                        stream, group, msg_id, fields,
                        DeadLetter(
                            event_type=event_type,
                            group=group,
                            message_id=message_id,
                            reason=DeadLetterReason.MAX_ATTEMPTS,
                            error=str(exc),
                            attempts=attempt,
                        ),
                    )
                else:
                    # Left pending; reclaimed after redelivery_idle_ms.
                    logger.warning(
                        "Nack %s [%s] for %s (attempt %d/%d): %s",
                        event_type,
                        message_id,
                        group,
                        attempt,
                        self._max_attempts,
                        exc,
                    )
                return

            await self._ack(stream, group, msg_id)
            self.record_success()
        finally:
            slots.release()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_group(self, stream: str, group: str) -> None:
        """Create consumer group, ignoring BUSYGROUP if it already exists."""
        assert self._redis is not None
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _delivery_count(self, stream: str, group: str, msg_id: str) -> int:
        assert self._redis is not None
        try:
            pending = await self._redis.xpending_range(
                stream, group, min=msg_id, max=msg_id, count=1,
            )
        except RedisError:
            logger.warning("XPENDING failed for %s on %s", msg_id, stream, exc_info=True)
            return 1
        if not pending:
            return 1
        return max(1, int(pending[0]["times_delivered"]))

    async def _ack(self, stream: str, group: str, msg_id: str) -> None:
        assert self._redis is not None
        try:
            await self._redis.xack(stream, group, msg_id)
        except RedisError:
            logger.warning(
                "Ack of %s on %s/%s failed; it will be redelivered",
                msg_id, stream, group, exc_info=True,
            )

    async def _dead_letter(
        self,
        stream: str,
        group: str,
        msg_id: str,
        fields: Mapping[str, str] | None,
        dead_letter: DeadLetter,
    ) -> None:
        assert self._redis is not None
        record = {
            "event_type": dead_letter.event_type,
            "group": dead_letter.group,
            "message_id": dead_letter.message_id,
            "reason": dead_letter.reason.value,
            "error": dead_letter.error,
            "attempts": str(dead_letter.attempts),
            "source_stream": stream,
            ENVELOPE_FIELD: (fields or {}).get(ENVELOPE_FIELD, ""),
        }
        try:
            await self._redis.xadd(self._dlq_stream, record, maxlen=self._max_len, approximate=True)
        except RedisError:
            # Not acked: the entry stays pending and is dead-lettered again later.
            logger.exception("Cannot write %s to %s", msg_id, self._dlq_stream)
            return
        self.record_dead_letter(dead_letter)
        await self._ack(stream, group, msg_id)


def _dead_letter_from_fields(entry_id: str, fields: Mapping[str, str]) -> DeadLetter:
    """Rebuild a ``DeadLetter``; tolerates entries written by other tools."""
    millis = int(str(entry_id).split("-", 1)[0])
    try:
        reason = DeadLetterReason(fields.get("reason", ""))
    except ValueError:
        logger.warning(
            "Dead letter %s has unknown reason %r", entry_id, fields.get("reason"),
        )
        reason = DeadLetterReason.MAX_ATTEMPTS
    try:
        attempts = int(fields.get("attempts", 0))
    except ValueError:
        attempts = 0
    return DeadLetter(
        event_type=fields.get("event_type", "unknown"),
        group=fields.get("group", ""),
        message_id=fields.get("message_id", ""),
        reason=reason,
        error=fields.get("error", ""),
        attempts=attempts,
        timestamp=millis / 1000.0,
    )
